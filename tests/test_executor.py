import unittest
from datetime import datetime, timedelta, timezone

from calmirror.errors import ConfigurationError, StoreError, StoreTransportError
from calmirror.executor import MutationExecutor, RetryPolicy, build_items
from calmirror.handles import build_handle
from calmirror.models import (
    ItemState,
    MutationResult,
    Occurrence,
    ReconciliationPlan,
    RemoteRecord,
    UserError,
)


BASE = datetime(2026, 11, 2, 9, 0, tzinfo=timezone.utc)


def _occ(uid: str, offset_days: int = 0) -> Occurrence:
    return Occurrence(start=BASE + timedelta(days=offset_days), uid=uid, summary=uid.title())


class FakeStore:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.create_results: dict[str, MutationResult] = {}
        self.update_results: dict[str, MutationResult] = {}
        self.delete_results: dict[str, MutationResult] = {}
        self.raise_on: dict[str, Exception] = {}
        self.existing: dict[str, RemoteRecord] = {}

    def _maybe_raise(self, key: str) -> None:
        if key in self.raise_on:
            raise self.raise_on[key]

    def list_records(self) -> list[RemoteRecord]:
        return list(self.existing.values())

    def find_record(self, handle: str) -> RemoteRecord | None:
        self.calls.append(("find", handle))
        return self.existing.get(handle)

    def create_record(self, handle: str, fields: list[tuple[str, str]]) -> MutationResult:
        self.calls.append(("create", handle))
        self._maybe_raise(handle)
        return self.create_results.get(handle, MutationResult(record_id=f"gid://new/{handle}"))

    def update_record(self, record_id: str, fields: list[tuple[str, str]]) -> MutationResult:
        self.calls.append(("update", record_id))
        self._maybe_raise(record_id)
        return self.update_results.get(record_id, MutationResult(record_id=record_id))

    def delete_record(self, record_id: str) -> MutationResult:
        self.calls.append(("delete", record_id))
        self._maybe_raise(record_id)
        return self.delete_results.get(record_id, MutationResult(record_id=record_id))


class MutationExecutorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = FakeStore()
        self.sleeps: list[float] = []
        self.seen: list[tuple[str, ItemState]] = []
        self.executor = MutationExecutor(
            self.store,
            RetryPolicy(pacing_seconds=0.35, backoff_seconds=1.0),
            sleep=self.sleeps.append,
            on_item=lambda item: self.seen.append((item.handle, item.state)),
        )

    def test_creates_then_updates_then_deletes(self) -> None:
        new, kept = _occ("new", 0), _occ("kept", 1)
        plan = ReconciliationPlan(
            creates=[new],
            updates=[("gid://kept", kept)],
            deletes=[RemoteRecord(record_id="gid://old", handle="old-1")],
        )

        report = self.executor.apply(plan)

        self.assertEqual(
            self.store.calls,
            [("create", build_handle(new)), ("update", "gid://kept"), ("delete", "gid://old")],
        )
        self.assertEqual(report.applied, 3)
        self.assertEqual(report.skipped, 0)
        self.assertEqual(self.sleeps, [0.35, 0.35, 0.35])
        self.assertTrue(all(state == ItemState.APPLIED for _, state in self.seen))

    def test_duplicate_handle_on_create_falls_back_to_update(self) -> None:
        occurrence = _occ("raced", 0)
        handle = build_handle(occurrence)
        self.store.create_results[handle] = MutationResult(
            user_errors=[UserError(message="Handle has already been taken", code="TAKEN", field=["handle"])]
        )
        self.store.existing[handle] = RemoteRecord(record_id="gid://raced", handle=handle)

        report = self.executor.apply(ReconciliationPlan(creates=[occurrence]))

        self.assertEqual(self.store.calls, [("create", handle), ("find", handle), ("update", "gid://raced")])
        self.assertEqual(report.count("create"), 1)
        self.assertEqual(report.items[0].record_id, "gid://raced")

    def test_user_error_skips_item_and_backs_off(self) -> None:
        bad, good = _occ("bad", 0), _occ("good", 1)
        self.store.create_results[build_handle(bad)] = MutationResult(
            user_errors=[UserError(message="Value is invalid", code="INVALID", field=["fields", "0"])]
        )

        report = self.executor.apply(ReconciliationPlan(creates=[bad, good]))

        self.assertEqual(report.skipped, 1)
        self.assertEqual(report.applied, 1)
        self.assertIn("INVALID Value is invalid", report.items[0].error)
        self.assertEqual(self.sleeps, [1.0, 0.35])

    def test_transport_and_store_errors_do_not_abort_the_run(self) -> None:
        self.store.raise_on["gid://a"] = StoreTransportError("HTTP 503")
        self.store.raise_on["gid://b"] = StoreError("GraphQL error")
        plan = ReconciliationPlan(
            updates=[("gid://a", _occ("a", 0)), ("gid://b", _occ("b", 1)), ("gid://c", _occ("c", 2))],
        )

        report = self.executor.apply(plan)

        self.assertEqual([item.state for item in report.items], [ItemState.SKIPPED, ItemState.SKIPPED, ItemState.APPLIED])
        self.assertTrue(report.items[0].error.startswith("transport error"))
        self.assertTrue(report.items[1].error.startswith("store error"))
        self.assertEqual(self.sleeps, [1.0, 1.0, 0.35])

    def test_configuration_error_from_store_skips_item(self) -> None:
        self.store.raise_on["gid://a"] = ConfigurationError("Store config is incomplete")
        plan = ReconciliationPlan(updates=[("gid://a", _occ("a", 0)), ("gid://b", _occ("b", 1))])

        report = self.executor.apply(plan)

        self.assertEqual([item.state for item in report.items], [ItemState.SKIPPED, ItemState.APPLIED])
        self.assertTrue(report.items[0].error.startswith("ConfigurationError"))
        self.assertEqual(self.sleeps, [1.0, 0.35])

    def test_deleting_missing_record_counts_as_applied(self) -> None:
        self.store.delete_results["gid://gone"] = MutationResult(
            user_errors=[UserError(message="Record not found", code="RECORD_NOT_FOUND")]
        )

        report = self.executor.apply(ReconciliationPlan(deletes=[RemoteRecord(record_id="gid://gone", handle="gone-1")]))

        self.assertEqual(report.count("delete"), 1)
        self.assertEqual(report.skipped, 0)

    def test_build_items_order_and_handles(self) -> None:
        created, updated = _occ("c", 0), _occ("u", 1)
        items = build_items(
            ReconciliationPlan(
                creates=[created],
                updates=[("gid://u", updated)],
                deletes=[RemoteRecord(record_id="gid://d", handle="d-1")],
            )
        )
        self.assertEqual([item.action for item in items], ["create", "update", "delete"])
        self.assertEqual(items[0].handle, build_handle(created))
        self.assertEqual(items[1].record_id, "gid://u")
        self.assertEqual(items[2].handle, "d-1")
        self.assertTrue(all(item.state == ItemState.PENDING for item in items))


if __name__ == "__main__":
    unittest.main()
