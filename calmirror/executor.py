from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from calmirror.errors import CalmirrorError, StoreError, StoreTransportError
from calmirror.fields import project_fields
from calmirror.handles import build_handle
from calmirror.models import (
    ExecutionReport,
    ItemState,
    MutationResult,
    PlanItem,
    ReconciliationPlan,
    RemoteRecord,
)


logger = logging.getLogger(__name__)

PROGRESS_EVERY = 5


class RecordStore(Protocol):
    def list_records(self) -> list[RemoteRecord]: ...

    def find_record(self, handle: str) -> RemoteRecord | None: ...

    def create_record(self, handle: str, fields: list[tuple[str, str]]) -> MutationResult: ...

    def update_record(self, record_id: str, fields: list[tuple[str, str]]) -> MutationResult: ...

    def delete_record(self, record_id: str) -> MutationResult: ...


@dataclass(frozen=True)
class RetryPolicy:
    """One attempt per item per run; failed items wait for the next run."""

    pacing_seconds: float = 0.35
    backoff_seconds: float = 1.0


def build_items(plan: ReconciliationPlan) -> list[PlanItem]:
    items = [PlanItem(action="create", handle=build_handle(occ), occurrence=occ) for occ in plan.creates]
    items.extend(
        PlanItem(action="update", handle=build_handle(occ), occurrence=occ, record_id=record_id)
        for record_id, occ in plan.updates
    )
    items.extend(
        PlanItem(action="delete", handle=record.handle, record_id=record.record_id) for record in plan.deletes
    )
    return items


class MutationExecutor:
    def __init__(
        self,
        store: RecordStore,
        policy: RetryPolicy | None = None,
        *,
        all_day_field: str = "",
        sleep: Callable[[float], None] = time.sleep,
        on_item: Callable[[PlanItem], None] | None = None,
    ) -> None:
        self.store = store
        self.policy = policy or RetryPolicy()
        self.all_day_field = all_day_field
        self._sleep = sleep
        self._on_item = on_item

    def _fields(self, item: PlanItem) -> list[tuple[str, str]]:
        if item.occurrence is None:
            raise ValueError(f"{item.action} of {item.handle} has no occurrence")
        return project_fields(item.occurrence, self.all_day_field)

    def _create(self, item: PlanItem) -> MutationResult:
        fields = self._fields(item)
        result = self.store.create_record(item.handle, fields)
        if not result.duplicate_handle:
            return result
        # Someone else created this handle since we listed; converge by updating it.
        existing = self.store.find_record(item.handle)
        if existing is None:
            return result
        logger.info("Handle %s already exists as %s; updating instead", item.handle, existing.record_id)
        item.record_id = existing.record_id
        return self.store.update_record(existing.record_id, fields)

    def _delete(self, item: PlanItem) -> MutationResult:
        result = self.store.delete_record(item.record_id)
        if result.not_found:
            logger.info("Record %s (%s) was already gone", item.record_id, item.handle)
            return MutationResult(record_id=item.record_id)
        return result

    def _apply_item(self, item: PlanItem) -> MutationResult:
        if item.action == "create":
            return self._create(item)
        if item.action == "update":
            return self.store.update_record(item.record_id, self._fields(item))
        if item.action == "delete":
            return self._delete(item)
        raise ValueError(f"Unknown plan action: {item.action}")

    def apply(self, plan: ReconciliationPlan) -> ExecutionReport:
        report = ExecutionReport(items=build_items(plan))
        applied = 0
        for item in report.items:
            item.state = ItemState.APPLYING
            error = ""
            try:
                result = self._apply_item(item)
            except StoreTransportError as exc:
                error = f"transport error: {exc}"
            except StoreError as exc:
                error = f"store error: {exc}"
            except CalmirrorError as exc:
                error = f"{type(exc).__name__}: {exc}"
            else:
                if result.ok:
                    item.record_id = result.record_id or item.record_id
                else:
                    error = result.error_text() or "rejected by store"

            if error:
                item.state = ItemState.SKIPPED
                item.error = error
                logger.warning("Skipped %s of %s: %s", item.action, item.handle, error)
                self._sleep(self.policy.backoff_seconds)
            else:
                item.state = ItemState.APPLIED
                applied += 1
                if applied % PROGRESS_EVERY == 0:
                    logger.info("%d of %d items applied", applied, len(report.items))
                self._sleep(self.policy.pacing_seconds)

            if self._on_item is not None:
                self._on_item(item)

        logger.info("Applied %d items, skipped %d", report.applied, report.skipped)
        return report
