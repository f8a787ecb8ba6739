from __future__ import annotations

import logging
import time as time_module
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any

import requests
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar.prop import vRecur

from calmirror.errors import FeedError
from calmirror.models import RawCalendarComponent, date_to_datetime


logger = logging.getLogger(__name__)


def with_cache_buster(url: str, now_ms: int | None = None) -> str:
    stamp = int(time_module.time() * 1000) if now_ms is None else int(now_ms)
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}t={stamp}"


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def fetch_feed(url: str, timeout: int = 30) -> str:
    target = with_cache_buster(url)
    try:
        response = requests.get(target, headers={"Accept": "text/calendar"}, timeout=timeout)
    except requests.RequestException as exc:
        raise FeedError(f"ICS fetch failed: {type(exc).__name__}: {exc}") from exc
    if not response.ok:
        raise FeedError(f"ICS fetch error {response.status_code}")
    return _decode_raw_ical(response.content)


def _decoded(vevent: ICEvent, name: str) -> Any:
    if vevent.get(name) is None:
        return None
    return vevent.decoded(name)


def _coerce_instant(value: Any, tz: tzinfo) -> datetime | None:
    if isinstance(value, tuple):
        # RDATE periods come as (start, end-or-duration).
        value = value[0] if value else None
    if isinstance(value, (datetime, date)):
        return date_to_datetime(value, tz)
    return None


def _instant_list(prop: Any, tz: tzinfo) -> list[datetime]:
    if prop is None:
        return []
    groups = prop if isinstance(prop, list) else [prop]
    instants: list[datetime] = []
    for group in groups:
        for item in getattr(group, "dts", []):
            instant = _coerce_instant(item.dt, tz)
            if instant is not None:
                instants.append(instant)
    return instants


def _normalize_until(value: Any, tz: tzinfo) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=tz)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        # A date-only UNTIL includes the whole day.
        end_of_day = datetime.combine(value, time(23, 59, 59), tzinfo=tz)
        return end_of_day.astimezone(timezone.utc)
    return value


def _rrule_text(prop: Any, tz: tzinfo) -> str:
    if prop is None:
        return ""
    if isinstance(prop, list):
        prop = prop[0] if prop else None
        if prop is None:
            return ""
    rule = vRecur(dict(prop))
    if "UNTIL" in rule:
        rule["UNTIL"] = [_normalize_until(value, tz) for value in rule["UNTIL"]]
    return rule.to_ical().decode("utf-8")


def _component_from_vevent(vevent: ICEvent, tz: tzinfo) -> RawCalendarComponent:
    start = _coerce_instant(_decoded(vevent, "DTSTART"), tz)
    end = _coerce_instant(_decoded(vevent, "DTEND"), tz)
    duration = _decoded(vevent, "DURATION")
    if not isinstance(duration, timedelta):
        duration = None
    return RawCalendarComponent(
        uid=str(vevent.get("UID", "") or "").strip(),
        summary=str(vevent.get("SUMMARY", "") or "").strip(),
        description=str(vevent.get("DESCRIPTION", "") or "").strip(),
        location=str(vevent.get("LOCATION", "") or "").strip(),
        url=str(vevent.get("URL", "") or "").strip(),
        start=start,
        end=end,
        duration=duration,
        rrule=_rrule_text(vevent.get("RRULE"), tz),
        rdates=_instant_list(vevent.get("RDATE"), tz),
        exdates=set(_instant_list(vevent.get("EXDATE"), tz)),
        recurrence_id=_coerce_instant(_decoded(vevent, "RECURRENCE-ID"), tz),
        status=str(vevent.get("STATUS", "") or "").strip(),
    )


def parse_feed(raw_text: str | bytes, tz: tzinfo = timezone.utc) -> list[RawCalendarComponent]:
    text = _decode_raw_ical(raw_text)
    if not text.strip():
        raise FeedError("ICS feed is empty.")
    try:
        calendar_obj = ICalendar.from_ical(text)
    except ValueError as exc:
        raise FeedError(f"ICS feed could not be parsed: {exc}") from exc
    components = [_component_from_vevent(vevent, tz) for vevent in calendar_obj.walk("VEVENT")]
    logger.debug("Parsed %d VEVENT components", len(components))
    return components
