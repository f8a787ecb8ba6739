from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any

from calmirror.errors import MalformedComponentError


DEFAULT_LOOKAHEAD_DAYS = 180
DUPLICATE_HANDLE_CODES = {"TAKEN"}
NOT_FOUND_CODES = {"NOT_FOUND", "RECORD_NOT_FOUND"}


def _ensure_tz(dt: datetime, tz: tzinfo = timezone.utc) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    return dt


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def format_timestamp(value: datetime) -> str:
    utc = _ensure_tz(value).astimezone(timezone.utc)
    return f"{utc:%Y-%m-%dT%H:%M:%S}.{utc.microsecond // 1000:03d}Z"


def date_to_datetime(value: datetime | date | None, tz: tzinfo = timezone.utc) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value, tz)
    return datetime.combine(value, time.min, tzinfo=tz)


def _positive_int(value: Any, default: int, minimum: int = 1) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return max(minimum, parsed)


def _non_negative_float(value: Any, default: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return max(0.0, parsed)


@dataclass
class FeedConfig:
    ics_url: str = ""
    lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS
    timeout_seconds: int = 30
    remote_config_id: str = ""
    remote_config_type: str = "calendar_config"
    remote_config_query: str = "status:active"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FeedConfig":
        data = data or {}
        return cls(
            ics_url=str(data.get("ics_url", "") or "").strip(),
            lookahead_days=_positive_int(data.get("lookahead_days"), DEFAULT_LOOKAHEAD_DAYS),
            timeout_seconds=_positive_int(data.get("timeout_seconds"), 30),
            remote_config_id=str(data.get("remote_config_id", "") or "").strip(),
            remote_config_type=str(data.get("remote_config_type", "calendar_config") or "").strip(),
            remote_config_query=str(data.get("remote_config_query", "status:active") or "").strip(),
        )


@dataclass
class StoreConfig:
    shop_domain: str = ""
    access_token: str = ""
    api_version: str = "2025-07"
    metaobject_type: str = "event"
    timeout_seconds: int = 30
    publish: bool = True
    all_day_field: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StoreConfig":
        data = data or {}
        return cls(
            shop_domain=str(data.get("shop_domain", "") or "").strip(),
            access_token=str(data.get("access_token", "") or "").strip(),
            api_version=str(data.get("api_version", "2025-07") or "").strip() or "2025-07",
            metaobject_type=str(data.get("metaobject_type", "event") or "").strip() or "event",
            timeout_seconds=_positive_int(data.get("timeout_seconds"), 30),
            publish=bool(data.get("publish", True)),
            all_day_field=str(data.get("all_day_field", "") or "").strip(),
        )

    def is_configured(self) -> bool:
        return bool(self.shop_domain and self.access_token)


@dataclass
class SyncConfig:
    interval_seconds: int = 10800
    timezone: str = "UTC"
    pacing_seconds: float = 0.35
    backoff_seconds: float = 1.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=_positive_int(data.get("interval_seconds"), 10800, minimum=60),
            timezone=str(data.get("timezone", "UTC") or "").strip() or "UTC",
            pacing_seconds=_non_negative_float(data.get("pacing_seconds"), 0.35),
            backoff_seconds=_non_negative_float(data.get("backoff_seconds"), 1.0),
        )


@dataclass
class ServerConfig:
    sync_secret: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ServerConfig":
        data = data or {}
        return cls(sync_secret=str(data.get("sync_secret", "") or "").strip())


@dataclass
class AppConfig:
    feed: FeedConfig = field(default_factory=FeedConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            feed=FeedConfig.from_dict(data.get("feed")),
            store=StoreConfig.from_dict(data.get("store")),
            sync=SyncConfig.from_dict(data.get("sync")),
            server=ServerConfig.from_dict(data.get("server")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RemoteFeedConfig:
    ics_url: str = ""
    lookahead_days: int | None = None


@dataclass
class FeedSettings:
    ics_url: str
    lookahead_days: int
    source: str


@dataclass
class RawCalendarComponent:
    uid: str = ""
    summary: str = ""
    description: str = ""
    location: str = ""
    url: str = ""
    start: datetime | None = None
    end: datetime | None = None
    duration: timedelta | None = None
    rrule: str = ""
    rdates: list[datetime] = field(default_factory=list)
    exdates: set[datetime] = field(default_factory=set)
    recurrence_id: datetime | None = None
    status: str = ""

    @property
    def is_cancelled(self) -> bool:
        return self.status.strip().upper() == "CANCELLED"

    @property
    def is_recurring(self) -> bool:
        return bool(self.rrule or self.rdates) and self.recurrence_id is None

    def span(self) -> timedelta | None:
        if self.start is not None and self.end is not None:
            return self.end - self.start
        return self.duration

    @property
    def label(self) -> str:
        return self.uid or self.summary or "<unnamed>"


@dataclass
class Occurrence:
    start: datetime
    uid: str = ""
    summary: str = ""
    description: str = ""
    location: str = ""
    url: str = ""
    end: datetime | None = None
    recurrence_instant: datetime | None = None
    all_day: bool = False

    def __post_init__(self) -> None:
        if self.start is None:
            raise MalformedComponentError(f"occurrence {self.uid or self.summary!r} has no start")
        if self.start.tzinfo is None:
            raise MalformedComponentError(f"occurrence {self.uid or self.summary!r} has a naive start")
        if self.end is not None and self.end < self.start:
            raise MalformedComponentError(
                f"occurrence {self.uid or self.summary!r} ends before it starts "
                f"({serialize_datetime(self.end)} < {serialize_datetime(self.start)})"
            )


@dataclass
class RejectedComponent:
    label: str
    reason: str


@dataclass
class ExpansionResult:
    occurrences: list[Occurrence] = field(default_factory=list)
    rejected: list[RejectedComponent] = field(default_factory=list)


@dataclass
class RemoteRecord:
    record_id: str
    handle: str
    fields: dict[str, str] = field(default_factory=dict)


@dataclass
class ReconciliationPlan:
    creates: list[Occurrence] = field(default_factory=list)
    updates: list[tuple[str, Occurrence]] = field(default_factory=list)
    deletes: list[RemoteRecord] = field(default_factory=list)

    @property
    def delete_ids(self) -> list[str]:
        return [record.record_id for record in self.deletes]

    def __len__(self) -> int:
        return len(self.creates) + len(self.updates) + len(self.deletes)


@dataclass
class UserError:
    message: str
    code: str = ""
    field: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "UserError":
        data = data or {}
        raw_field = data.get("field") or []
        if not isinstance(raw_field, list):
            raw_field = [raw_field]
        return cls(
            message=str(data.get("message", "") or ""),
            code=str(data.get("code", "") or ""),
            field=[str(x) for x in raw_field],
        )

    def __str__(self) -> str:
        location = ".".join(self.field)
        prefix = f"{self.code} " if self.code else ""
        suffix = f" ({location})" if location else ""
        return f"{prefix}{self.message}{suffix}"


@dataclass
class MutationResult:
    record_id: str | None = None
    user_errors: list[UserError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.user_errors

    @property
    def duplicate_handle(self) -> bool:
        return any(error.code in DUPLICATE_HANDLE_CODES for error in self.user_errors)

    @property
    def not_found(self) -> bool:
        return any(error.code in NOT_FOUND_CODES for error in self.user_errors)

    def error_text(self) -> str:
        return "; ".join(str(error) for error in self.user_errors)


class ItemState(str, Enum):
    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"
    SKIPPED = "skipped"


@dataclass
class PlanItem:
    action: str
    handle: str
    occurrence: Occurrence | None = None
    record_id: str = ""
    state: ItemState = ItemState.PENDING
    error: str = ""


@dataclass
class ExecutionReport:
    items: list[PlanItem] = field(default_factory=list)

    def count(self, action: str | None = None, state: ItemState = ItemState.APPLIED) -> int:
        return sum(
            1
            for item in self.items
            if item.state == state and (action is None or item.action == action)
        )

    @property
    def applied(self) -> int:
        return self.count()

    @property
    def skipped(self) -> int:
        return self.count(state=ItemState.SKIPPED)


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def applied(self) -> int:
        return self.created + self.updated + self.deleted

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "applied": self.applied,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()


def lookahead_window(now: datetime, lookahead_days: int) -> tuple[datetime, datetime]:
    start = _ensure_tz(now)
    return start, start + timedelta(days=max(1, int(lookahead_days)))
