import unittest
from datetime import datetime, timedelta, timezone

from calmirror.handles import build_handle
from calmirror.models import Occurrence, RemoteRecord
from calmirror.reconciler import desired_by_handle, plan_reconciliation


BASE = datetime(2026, 11, 2, 9, 0, tzinfo=timezone.utc)


def _occ(uid: str, offset_days: int = 0, summary: str = "") -> Occurrence:
    return Occurrence(start=BASE + timedelta(days=offset_days), uid=uid, summary=summary or uid)


def _record(occurrence: Occurrence, record_id: str) -> RemoteRecord:
    return RemoteRecord(record_id=record_id, handle=build_handle(occurrence))


class ReconcilerTests(unittest.TestCase):
    def test_plan_partitions_existing_and_desired(self) -> None:
        a, b, c, d = _occ("a", 0), _occ("b", 1), _occ("c", 2), _occ("d", 3)
        existing = [_record(a, "gid://A"), _record(b, "gid://B"), _record(c, "gid://C")]

        plan = plan_reconciliation(existing, [b, c, d])

        self.assertEqual(plan.creates, [d])
        self.assertEqual(plan.updates, [("gid://B", b), ("gid://C", c)])
        self.assertEqual(plan.delete_ids, ["gid://A"])
        self.assertEqual(len(plan), 4)

    def test_plan_sets_are_disjoint(self) -> None:
        desired = [_occ(f"event-{index}", index) for index in range(6)]
        existing = [_record(occ, f"gid://{index}") for index, occ in enumerate(desired[2:], start=2)]
        existing.append(RemoteRecord(record_id="gid://stale", handle="stale-1700000000"))

        plan = plan_reconciliation(existing, desired)

        created = {build_handle(occ) for occ in plan.creates}
        updated = {build_handle(occ) for _, occ in plan.updates}
        deleted = {record.handle for record in plan.deletes}
        self.assertFalse(created & updated)
        self.assertFalse(created & deleted)
        self.assertFalse(updated & deleted)
        self.assertEqual(created | updated, {build_handle(occ) for occ in desired})

    def test_plan_is_deterministic(self) -> None:
        desired = [_occ("x", 0), _occ("y", 1)]
        existing = [_record(desired[1], "gid://Y"), RemoteRecord(record_id="gid://Z", handle="z-1")]

        first = plan_reconciliation(existing, desired)
        second = plan_reconciliation(existing, desired)

        self.assertEqual(first, second)

    def test_converged_store_only_produces_updates(self) -> None:
        desired = [_occ("x", 0), _occ("y", 1)]
        existing = [_record(occ, f"gid://{occ.uid}") for occ in desired]

        plan = plan_reconciliation(existing, desired)

        self.assertEqual(plan.creates, [])
        self.assertEqual(plan.deletes, [])
        self.assertEqual([record_id for record_id, _ in plan.updates], ["gid://x", "gid://y"])

    def test_empty_desired_deletes_everything(self) -> None:
        existing = [RemoteRecord(record_id="gid://1", handle="a-1"), RemoteRecord(record_id="gid://2", handle="b-2")]

        plan = plan_reconciliation(existing, [])

        self.assertEqual(plan.delete_ids, ["gid://1", "gid://2"])
        self.assertEqual(plan.creates, [])

    def test_duplicate_desired_handle_keeps_first(self) -> None:
        first = _occ("dup", 0, summary="First")
        second = _occ("dup", 0, summary="Second")

        desired = desired_by_handle([first, second])

        self.assertEqual(list(desired.values()), [first])


if __name__ == "__main__":
    unittest.main()
