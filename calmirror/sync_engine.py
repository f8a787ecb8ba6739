from __future__ import annotations

import logging
import time
import traceback
from datetime import datetime, timezone
from typing import Callable

from calmirror.config_manager import ConfigManager, resolve_feed_settings
from calmirror.errors import ConfigurationError
from calmirror.executor import MutationExecutor, RetryPolicy
from calmirror.expander import expand_components, resolve_timezone
from calmirror.feed_client import fetch_feed, parse_feed
from calmirror.models import ExecutionReport, ItemState, PlanItem, SyncResult, serialize_datetime
from calmirror.reconciler import plan_reconciliation
from calmirror.shopify_client import ShopifyMetaobjectStore
from calmirror.state_store import StateStore


logger = logging.getLogger(__name__)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self._sleep = sleep

    def _audit_item(self, run_id: int, trigger: str, item: PlanItem) -> None:
        details: dict[str, object] = {"trigger": trigger, "record_id": item.record_id}
        if item.occurrence is not None:
            details["start"] = serialize_datetime(item.occurrence.start)
            details["title"] = item.occurrence.summary
        if item.state == ItemState.SKIPPED:
            details["error"] = item.error
            action = f"skip_{item.action}"
        else:
            action = item.action
        self.state_store.record_audit_event(handle=item.handle, action=action, details=details, run_id=run_id)

    def run_once(
        self,
        trigger: str = "manual",
        *,
        feed_url_override: str | None = None,
        lookahead_override: int | None = None,
        now: datetime | None = None,
    ) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        run_id = self.state_store.start_sync_run(trigger=trigger)
        report = ExecutionReport()

        try:
            config = self.config_manager.load()
            if not config.store.is_configured():
                raise ConfigurationError("Store config missing shop_domain/access_token.")
            store = ShopifyMetaobjectStore(config.store)

            remote = None
            if not feed_url_override or lookahead_override is None:
                remote = store.fetch_remote_config(
                    config_id=config.feed.remote_config_id,
                    config_type=config.feed.remote_config_type,
                    query=config.feed.remote_config_query,
                )
            settings = resolve_feed_settings(
                config,
                remote,
                feed_url_override=feed_url_override,
                lookahead_override=lookahead_override,
            )
            tz = resolve_timezone(config.sync.timezone)
            logger.info(
                "Sync %s started: feed from %s tier, lookahead %d days",
                trigger,
                settings.source,
                settings.lookahead_days,
            )

            components = parse_feed(fetch_feed(settings.ics_url, timeout=config.feed.timeout_seconds), tz)
            expansion = expand_components(
                components,
                now=now or datetime.now(timezone.utc),
                lookahead_days=settings.lookahead_days,
                tz=tz,
            )
            for rejected in expansion.rejected:
                self.state_store.record_audit_event(
                    handle=rejected.label,
                    action="reject_component",
                    details={"trigger": trigger, "reason": rejected.reason},
                    run_id=run_id,
                )

            existing = store.list_records()
            plan = plan_reconciliation(existing, expansion.occurrences)
            executor = MutationExecutor(
                store,
                RetryPolicy(
                    pacing_seconds=config.sync.pacing_seconds,
                    backoff_seconds=config.sync.backoff_seconds,
                ),
                all_day_field=config.store.all_day_field,
                sleep=self._sleep,
                on_item=lambda item: self._audit_item(run_id, trigger, item),
            )
            report = executor.apply(plan)

            result = SyncResult(
                status="success",
                message=(
                    f"{len(expansion.occurrences)} occurrences, {len(existing)} existing records, "
                    f"{report.applied} applied, {report.skipped} skipped. run_id={run_id}"
                ),
                duration_ms=_elapsed_ms(started_at),
                trigger=trigger,
                created=report.count("create"),
                updated=report.count("update"),
                deleted=report.count("delete"),
                skipped=report.skipped,
            )
            logger.info("Sync %s finished: %s", trigger, result.message)
        except Exception as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            logger.exception("Sync %s failed", trigger)
            self.state_store.record_audit_event(
                handle="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
                run_id=run_id,
            )
            result = SyncResult(
                status="error",
                message=error_message,
                duration_ms=_elapsed_ms(started_at),
                trigger=trigger,
                created=report.count("create"),
                updated=report.count("update"),
                deleted=report.count("delete"),
                skipped=report.skipped,
            )

        self.state_store.finish_sync_run(
            run_id=run_id,
            status=result.status,
            message=result.message,
            duration_ms=result.duration_ms,
            created=result.created,
            updated=result.updated,
            deleted=result.deleted,
            skipped=result.skipped,
        )
        return result
