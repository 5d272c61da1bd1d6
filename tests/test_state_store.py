import sqlite3
import tempfile
import time
import unittest
from datetime import date, datetime, timezone
from pathlib import Path

from estatesync.models import CalendarEvent
from estatesync.records import InspectionItemRecord, InspectionPhotoRecord, InspectionRecord, TenantRecord
from estatesync.state_store import StateStore
from helpers import seed_building


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_transaction_rolls_back_on_error(self) -> None:
        with self.assertRaises(RuntimeError):
            with self.store.transaction() as tx:
                tx.insert(TenantRecord(id="", email="ann@example.com"))
                raise RuntimeError("abort")
        with self.store.transaction() as tx:
            self.assertEqual(tx.fetch_all(TenantRecord), [])

    def test_unique_constraint_surfaces_as_sqlite_error(self) -> None:
        with self.assertRaises(sqlite3.IntegrityError):
            with self.store.transaction() as tx:
                tx.insert(TenantRecord(id="", email="ann@example.com"))
                tx.insert(TenantRecord(id="", email="ann@example.com"))
        with self.store.transaction() as tx:
            self.assertEqual(tx.fetch_all(TenantRecord), [])

    def test_long_statement_is_interrupted_past_timeout(self) -> None:
        with self.assertRaises(sqlite3.OperationalError):
            with self.store.transaction(timeout_seconds=0.05) as tx:
                tx.insert(TenantRecord(id="", email="ann@example.com"))
                tx.conn.execute(
                    "WITH RECURSIVE n(i) AS (SELECT 1 UNION ALL SELECT i + 1 FROM n WHERE i < 100000000) "
                    "SELECT max(i) FROM n"
                ).fetchall()
        with self.store.transaction() as tx:
            self.assertEqual(tx.fetch_all(TenantRecord), [])

    def test_commit_is_refused_past_timeout(self) -> None:
        with self.assertRaises(sqlite3.OperationalError):
            with self.store.transaction(timeout_seconds=0.05) as tx:
                tx.insert(TenantRecord(id="", email="ann@example.com"))
                time.sleep(0.1)
        with self.store.transaction() as tx:
            self.assertEqual(tx.fetch_all(TenantRecord), [])

    def test_transaction_within_timeout_commits(self) -> None:
        with self.store.transaction(timeout_seconds=5) as tx:
            tx.insert(TenantRecord(id="", email="ann@example.com"))
        with self.store.transaction() as tx:
            self.assertEqual(len(tx.fetch_all(TenantRecord)), 1)

    def test_insert_assigns_id_and_timestamps(self) -> None:
        with self.store.transaction() as tx:
            stored = tx.insert(TenantRecord(id="", email="ann@example.com", name="Ann"))
            loaded = tx.get(TenantRecord, stored.id)
        self.assertEqual(len(stored.id), 32)
        self.assertIsNotNone(loaded.created_at)
        self.assertEqual(loaded.name, "Ann")

    def test_update_and_find_first(self) -> None:
        with self.store.transaction() as tx:
            stored = tx.insert(TenantRecord(id="", email="ann@example.com"))
            self.assertEqual(tx.update(TenantRecord, stored.id, {"name": "Ann B"}), 1)
            found = tx.find_first(TenantRecord, email="ann@example.com")
        self.assertEqual(found.name, "Ann B")
        self.assertIsNotNone(found.updated_at)

    def test_current_state_attaches_nested_blocks(self) -> None:
        ids = seed_building(self.store)
        with self.store.transaction() as tx:
            inspection = tx.insert(InspectionRecord(id="", tenancy_id=ids["tenancy"], inspection_type="MOVE_IN"))
            item = InspectionItemRecord(category="Kitchen", photos=[InspectionPhotoRecord(filename="a.jpg")])
            self.assertEqual(tx.replace_inspection_items(inspection.id, [item]), 1)
        state = self.store.current_state()
        self.assertEqual(state["units"][0].property.id, ids["property"])
        self.assertEqual(state["inspections"][0].items[0].category, "Kitchen")
        self.assertEqual(state["inspections"][0].items[0].photos[0].filename, "a.jpg")

        with self.store.transaction() as tx:
            tx.replace_inspection_items(inspection.id, [])
            self.assertEqual(tx.inspection_items(inspection.id), [])

    def test_calendar_event_queries(self) -> None:
        seed_building(self.store)
        events = [
            CalendarEvent("A", date(2024, 1, 8), "GARBAGE_SCHEDULE", "b1", building_name="Maple Court"),
            CalendarEvent("B", date(2024, 1, 1), "TENANT_MOVE", "t1", building_name="Maple Court"),
        ]
        with self.store.transaction() as tx:
            stored = tx.insert_calendar_events(events)
            self.assertTrue(all(event.id for event in stored))
            self.assertEqual([e.title for e in tx.calendar_events(building_name="Maple Court")], ["B", "A"])
            self.assertEqual(tx.count_active_tenancies("Maple Court"), 1)
            self.assertEqual(tx.delete_calendar_events(["GARBAGE_SCHEDULE"], "other"), 0)
            self.assertEqual(tx.delete_calendar_events(["GARBAGE_SCHEDULE", "TENANT_MOVE"]), 2)
            self.assertEqual(tx.delete_calendar_events([]), 0)

    def test_sync_runs_and_audit_events(self) -> None:
        run_id = self.store.start_sync_run(trigger="full")
        self.store.finish_sync_run(
            run_id=run_id,
            status="success",
            message="ok",
            duration_ms=12,
            events_created=3,
            events_deleted=1,
        )
        run = self.store.recent_sync_runs()[0]
        self.assertEqual((run["status"], run["events_created"], run["events_deleted"]), ("success", 3, 1))

        self.store.record_audit_event(action="A", details={"n": 1}, actor_id="admin")
        self.store.record_audit_event(action="B", details={"n": 2})
        self.assertEqual([event["action"] for event in self.store.recent_audit_events()], ["B", "A"])
        only_a = self.store.recent_audit_events(action="A")
        self.assertEqual(only_a[0]["details"], {"n": 1})
        self.assertEqual(only_a[0]["actor_id"], "admin")

    def test_token_rows(self) -> None:
        expires = datetime(2024, 1, 1, 12, 15, tzinfo=timezone.utc)
        self.store.put_token("tok", "hash", expires)
        self.assertEqual(self.store.get_token("tok"), ("hash", expires))
        self.assertEqual(self.store.sweep_tokens(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)), 0)
        self.assertTrue(self.store.delete_token("tok"))
        self.assertFalse(self.store.delete_token("tok"))
        self.assertIsNone(self.store.get_token("tok"))


if __name__ == "__main__":
    unittest.main()
