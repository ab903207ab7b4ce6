import tempfile
import threading
import time
import unittest
from datetime import datetime, timezone
from pathlib import Path

from mirrorsync.identity_map import IdentityMap
from mirrorsync.models import DesiredState, EntityKey, SyncSettings
from mirrorsync.reconciler import Reconciler
from mirrorsync.state_store import StateStore
from mirrorsync.target_adapter import TargetAdapter


class FakeAdapter(TargetAdapter):
    def __init__(
        self,
        name: str,
        *,
        enabled: bool = True,
        create_result: str | None = "remote-1",
        update_result: bool = True,
        create_gate: threading.Event | None = None,
    ) -> None:
        super().__init__()
        self.name = name
        self.enabled = enabled
        self.create_result = create_result
        self.update_result = update_result
        self.create_gate = create_gate
        self.create_started = threading.Event()
        self.create_calls: list[DesiredState] = []
        self.update_calls: list[tuple[str, DesiredState]] = []

    def is_enabled(self) -> bool:
        return self.enabled

    def create(self, desired: DesiredState) -> str | None:
        self.create_calls.append(desired)
        self.create_started.set()
        if self.create_gate is not None:
            self.create_gate.wait(timeout=5)
        return self.create_result

    def update(self, remote_id: str, desired: DesiredState) -> bool:
        self.update_calls.append((remote_id, desired))
        return self.update_result


class ExplodingAdapter(FakeAdapter):
    def create(self, desired: DesiredState) -> str | None:
        raise RuntimeError("boom")


def _desired(**kwargs) -> DesiredState:
    values = {
        "entity_id": "item-1",
        "variant_id": "en",
        "title": "Spring campaign",
        "due_at": datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc),
    }
    values.update(kwargs)
    return DesiredState(**values)


class ReconcilerTests(unittest.TestCase):
    def test_first_reconcile_creates_then_updates(self) -> None:
        calendar = FakeAdapter("calendar", create_result="evt-1")
        reconciler = Reconciler([calendar])

        result = reconciler.reconcile(_desired())
        self.assertEqual(result.actions, {"calendar": "created"})
        self.assertEqual(len(calendar.create_calls), 1)
        self.assertEqual(reconciler.identity_map.get(EntityKey("item-1", "en")).calendar_event_id, "evt-1")

        second = reconciler.reconcile(_desired())
        self.assertEqual(second.actions, {"calendar": "updated"})
        self.assertEqual(len(calendar.create_calls), 1)
        self.assertEqual(calendar.update_calls[0][0], "evt-1")

    def test_repeated_reconcile_with_known_ids_only_updates(self) -> None:
        identity_map = IdentityMap()
        key = EntityKey("item-1", "en")
        identity_map.set_field(key, "calendar", "evt-1")
        identity_map.set_field(key, "tasks", "task-1")
        calendar = FakeAdapter("calendar")
        tasks = FakeAdapter("tasks")
        reconciler = Reconciler([calendar, tasks], identity_map=identity_map)

        for _ in range(3):
            reconciler.reconcile(_desired())

        self.assertEqual(calendar.create_calls, [])
        self.assertEqual(tasks.create_calls, [])
        self.assertEqual([call[0] for call in calendar.update_calls], ["evt-1"] * 3)
        self.assertEqual([call[0] for call in tasks.update_calls], ["task-1"] * 3)

    def test_disabled_adapter_is_inert(self) -> None:
        calendar = FakeAdapter("calendar", create_result="evt-1")
        tasks = FakeAdapter("tasks", enabled=False, create_result="task-1")
        reconciler = Reconciler([calendar, tasks])

        result = reconciler.reconcile(_desired(assignees=("a@example.com",)))
        reconciler.reconcile(_desired())

        self.assertEqual(result.actions["tasks"], "skipped")
        self.assertEqual(tasks.create_calls, [])
        self.assertEqual(tasks.update_calls, [])
        record = reconciler.identity_map.get(EntityKey("item-1", "en"))
        self.assertEqual(record.calendar_event_id, "evt-1")
        self.assertIsNone(record.task_id)

    def test_sync_settings_gate_adapters(self) -> None:
        calendar = FakeAdapter("calendar")
        tasks = FakeAdapter("tasks", create_result="task-1")
        reconciler = Reconciler(
            [calendar, tasks],
            sync_settings=SyncSettings(create_calendar_events=False),
        )

        result = reconciler.reconcile(_desired())

        self.assertEqual(result.actions, {"calendar": "skipped", "tasks": "created"})
        self.assertEqual(calendar.create_calls, [])
        self.assertIsNone(reconciler.identity_map.get(EntityKey("item-1", "en")).calendar_event_id)

    def test_partial_failure_is_isolated(self) -> None:
        calendar = FakeAdapter("calendar", create_result=None)
        tasks = FakeAdapter("tasks", create_result="task-1")
        reconciler = Reconciler([calendar, tasks])

        result = reconciler.reconcile(_desired())

        self.assertEqual(result.actions, {"calendar": "create_failed", "tasks": "created"})
        self.assertEqual(result.status, "partial")
        record = reconciler.identity_map.get(EntityKey("item-1", "en"))
        self.assertIsNone(record.calendar_event_id)
        self.assertEqual(record.task_id, "task-1")

        calendar.create_result = "evt-9"
        reconciler.reconcile(_desired())
        self.assertEqual(len(calendar.create_calls), 2)
        self.assertEqual(len(tasks.create_calls), 1)
        self.assertEqual(len(tasks.update_calls), 1)

    def test_adapter_exception_does_not_escape(self) -> None:
        calendar = ExplodingAdapter("calendar")
        tasks = FakeAdapter("tasks", create_result="task-1")
        reconciler = Reconciler([calendar, tasks])

        result = reconciler.reconcile(_desired())

        self.assertEqual(result.actions, {"calendar": "create_failed", "tasks": "created"})

    def test_failed_update_keeps_remote_id(self) -> None:
        identity_map = IdentityMap()
        identity_map.set_field(EntityKey("item-1", "en"), "calendar", "evt-stale")
        calendar = FakeAdapter("calendar", update_result=False)
        reconciler = Reconciler([calendar], identity_map=identity_map)

        first = reconciler.reconcile(_desired())
        second = reconciler.reconcile(_desired())

        self.assertEqual(first.actions, {"calendar": "update_failed"})
        self.assertEqual(second.actions, {"calendar": "update_failed"})
        self.assertEqual(calendar.create_calls, [])
        self.assertEqual(identity_map.get(EntityKey("item-1", "en")).calendar_event_id, "evt-stale")

    def test_overlapping_reconciles_for_same_key_create_once(self) -> None:
        gate = threading.Event()
        calendar = FakeAdapter("calendar", create_result="evt-1", create_gate=gate)
        reconciler = Reconciler([calendar])

        first = threading.Thread(target=reconciler.reconcile, args=(_desired(),))
        second = threading.Thread(target=reconciler.reconcile, args=(_desired(),))
        first.start()
        self.assertTrue(calendar.create_started.wait(timeout=2))
        second.start()
        gate.set()
        first.join(timeout=5)
        second.join(timeout=5)

        self.assertEqual(len(calendar.create_calls), 1)
        self.assertEqual(len(calendar.update_calls), 1)
        self.assertEqual(calendar.update_calls[0][0], "evt-1")

    def test_queued_reconciles_for_same_key_run_in_arrival_order(self) -> None:
        gate = threading.Event()
        calendar = FakeAdapter("calendar", create_result="evt-1", create_gate=gate)
        reconciler = Reconciler([calendar])
        key = EntityKey("item-1", "en")

        threads = [
            threading.Thread(target=reconciler.reconcile, args=(_desired(title=title),))
            for title in ("first", "second", "third")
        ]
        threads[0].start()
        self.assertTrue(calendar.create_started.wait(timeout=2))
        for expected_waiters, thread in enumerate(threads[1:], start=2):
            thread.start()
            for _ in range(200):
                if len(reconciler._turns.get(key, ())) == expected_waiters:
                    break
                time.sleep(0.01)
            self.assertEqual(len(reconciler._turns[key]), expected_waiters)
        gate.set()
        for thread in threads:
            thread.join(timeout=5)

        self.assertEqual([desired.title for desired in calendar.create_calls], ["first"])
        self.assertEqual([desired.title for _id, desired in calendar.update_calls], ["second", "third"])

    def test_idle_keys_are_released(self) -> None:
        reconciler = Reconciler([FakeAdapter("calendar", create_result=None)])

        for entity_id in ("item-1", "item-2", "item-3"):
            reconciler.reconcile(_desired(entity_id=entity_id))

        self.assertEqual(reconciler._turns, {})
        self.assertEqual(len(reconciler.identity_map), 0)

    def test_different_keys_are_not_serialized(self) -> None:
        gate = threading.Event()
        blocked = FakeAdapter("calendar", create_result="evt-1", create_gate=gate)
        reconciler = Reconciler([blocked])

        first = threading.Thread(target=reconciler.reconcile, args=(_desired(),))
        first.start()
        self.assertTrue(blocked.create_started.wait(timeout=2))

        blocked.create_gate = None
        other = threading.Thread(target=reconciler.reconcile, args=(_desired(entity_id="item-2"),))
        other.start()
        other.join(timeout=2)
        self.assertFalse(other.is_alive())
        self.assertIn(EntityKey("item-2", "en"), reconciler.identity_map)

        gate.set()
        first.join(timeout=5)
        self.assertIn(EntityKey("item-1", "en"), reconciler.identity_map)

    def test_reconcile_writes_audit_trail(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            store = StateStore(str(Path(temp_dir) / "state.db"))
            calendar = FakeAdapter("calendar", create_result="evt-1")
            tasks = FakeAdapter("tasks", enabled=False)
            reconciler = Reconciler([calendar, tasks], state_store=store)

            reconciler.reconcile(_desired())

            runs = store.recent_reconcile_runs()
            self.assertEqual(len(runs), 1)
            self.assertEqual(runs[0]["status"], "success")
            self.assertEqual(runs[0]["actions"], {"calendar": "created", "tasks": "skipped"})
            created = store.recent_audit_events(action="created")
            self.assertEqual(created[0]["details"]["remote_id"], "evt-1")
            skipped = store.recent_audit_events(action="skipped")
            self.assertEqual(skipped[0]["details"]["reason"], "adapter_not_configured")
            self.assertEqual(created[0]["run_id"], runs[0]["id"])
            self.assertEqual(skipped[0]["run_id"], runs[0]["id"])

            reconciler.reconcile(_desired(title="Renamed"))

            second_run = store.recent_reconcile_runs()[0]
            updated = store.recent_audit_events(action="updated")
            self.assertNotEqual(second_run["id"], runs[0]["id"])
            self.assertEqual(updated[0]["run_id"], second_run["id"])


if __name__ == "__main__":
    unittest.main()
