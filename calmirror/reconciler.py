from __future__ import annotations

import logging
from typing import Iterable

from calmirror.handles import build_handle
from calmirror.models import Occurrence, ReconciliationPlan, RemoteRecord


logger = logging.getLogger(__name__)


def desired_by_handle(occurrences: Iterable[Occurrence]) -> dict[str, Occurrence]:
    desired: dict[str, Occurrence] = {}
    for occurrence in occurrences:
        handle = build_handle(occurrence)
        if handle in desired:
            logger.debug("Duplicate occurrence for handle %s ignored", handle)
            continue
        desired[handle] = occurrence
    return desired


def plan_reconciliation(
    existing: Iterable[RemoteRecord],
    desired: Iterable[Occurrence],
) -> ReconciliationPlan:
    existing_by_handle: dict[str, RemoteRecord] = {}
    for record in existing:
        existing_by_handle.setdefault(record.handle, record)
    desired_map = desired_by_handle(desired)

    plan = ReconciliationPlan()
    for handle, occurrence in desired_map.items():
        record = existing_by_handle.get(handle)
        if record is None:
            plan.creates.append(occurrence)
        else:
            plan.updates.append((record.record_id, occurrence))
    plan.deletes = [record for handle, record in existing_by_handle.items() if handle not in desired_map]

    logger.info(
        "Reconciliation plan: %d to create, %d to update, %d to delete",
        len(plan.creates),
        len(plan.updates),
        len(plan.deletes),
    )
    return plan
