import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from estatesync.errors import SCHEMA_INCOMPATIBLE, ValidationError
from estatesync.preview import build_preview
from estatesync.records import (
    ChecklistItemRecord,
    InspectionItemRecord,
    InspectionPhotoRecord,
    InspectionRecord,
    InvoiceRecord,
    UnitRecord,
)
from estatesync.snapshot import content_hash, dump_snapshot, export_snapshot, parse_snapshot
from estatesync.state_store import StateStore
from helpers import seed_building, snapshot_document, snapshot_text, tenant_payload, unit_payload


class ParseSnapshotTests(unittest.TestCase):
    def test_same_major_version_is_accepted(self) -> None:
        snapshot = parse_snapshot(snapshot_text("1.0.0"), "1.0.0")
        self.assertEqual(snapshot.schema_version, "1.0.0")
        self.assertEqual(snapshot.records("units"), [])
        minor = parse_snapshot(snapshot_text("1.4.2"), "1.0.0")
        self.assertEqual(minor.schema_version, "1.4.2")

    def test_major_mismatch_lists_both_versions(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            parse_snapshot(snapshot_text("1.0.0"), "2.0.0")
        self.assertEqual(ctx.exception.code, SCHEMA_INCOMPATIBLE)
        self.assertEqual(ctx.exception.errors, ["Incompatible schema version. Import: 1.0.0, Current: 2.0.0"])

    def test_invalid_json(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            parse_snapshot("{not json", "1.0.0")
        self.assertTrue(ctx.exception.errors[0].startswith("Failed to parse import file"))

    def test_missing_version(self) -> None:
        document = snapshot_document()
        del document["schemaVersion"]
        with self.assertRaises(ValidationError) as ctx:
            parse_snapshot(json.dumps(document), "1.0.0")
        self.assertEqual(ctx.exception.errors, ["Missing schema version in import file"])

    def test_missing_sections_reported_in_fixed_order(self) -> None:
        document = snapshot_document()
        del document["data"]["buildingInfos"]
        del document["data"]["units"]
        with self.assertRaises(ValidationError) as ctx:
            parse_snapshot(json.dumps(document), "1.0.0")
        self.assertEqual(ctx.exception.errors, ["Missing data sections: units, buildingInfos"])

    def test_record_without_required_field_is_rejected(self) -> None:
        broken = tenant_payload()
        del broken["email"]
        with self.assertRaises(ValidationError) as ctx:
            parse_snapshot(snapshot_text(tenants=[broken]), "1.0.0")
        self.assertEqual(ctx.exception.errors, ["Invalid Tenant record at index 0: missing email"])
        self.assertEqual(ctx.exception.to_response()["valid"], False)

    def test_records_are_typed_and_nested(self) -> None:
        snapshot = parse_snapshot(snapshot_text(units=[unit_payload()]), "1.0.0")
        unit = snapshot.records("units")[0]
        self.assertIsInstance(unit, UnitRecord)
        self.assertEqual(unit.property.name, "Maple Court")
        self.assertEqual(snapshot.index()["units"]["unit-old"], unit)

    def test_content_hash_is_sha256_of_exact_text(self) -> None:
        text = snapshot_text()
        snapshot = parse_snapshot(text, "1.0.0")
        self.assertEqual(snapshot.content_hash, content_hash(text))
        self.assertEqual(len(snapshot.content_hash), 64)
        self.assertNotEqual(content_hash(text + " "), snapshot.content_hash)


class ExportSnapshotTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_export_document_shape(self) -> None:
        seed_building(self.store, free_text="Garbage on Monday")
        document = export_snapshot(
            self.store.current_state(),
            schema_version="1.0.0",
            actor={"id": "admin-1"},
            now=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        self.assertEqual(document["schemaVersion"], "1.0.0")
        self.assertEqual(document["exportedBy"], {"id": "admin-1"})
        self.assertEqual(document["recordCounts"]["units"], 1)
        self.assertEqual(document["data"]["units"][0]["property"]["name"], "Maple Court")

    def test_unmodified_export_reimports_as_all_unchanged(self) -> None:
        ids = seed_building(self.store, schedule='{"entries": [{"type": "garbage", "days": [1], "frequency": "weekly"}]}')
        with self.store.transaction() as tx:
            tx.insert(
                InvoiceRecord(
                    id="",
                    unit_id=ids["unit"],
                    tenancy_id=ids["tenancy"],
                    period_month="2024-01",
                    due_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
                    amount_cents=150000,
                )
            )
            tx.insert(ChecklistItemRecord(id="", tenancy_id=ids["tenancy"], item_type="KEYS", title="Pick up keys"))
            inspection = tx.insert(InspectionRecord(id="", tenancy_id=ids["tenancy"], inspection_type="MOVE_IN"))
            item = InspectionItemRecord(category="Kitchen", photos=[InspectionPhotoRecord(filename="sink.jpg")])
            tx.replace_inspection_items(inspection.id, [item])
        text = dump_snapshot(export_snapshot(self.store.current_state(), schema_version="1.0.0"))
        preview = build_preview(self.store.current_state(), parse_snapshot(text, "1.0.0"))
        self.assertEqual(preview.total_creates, 0)
        self.assertEqual(preview.total_updates, 0)
        self.assertEqual(preview.unchanged_counts["units"], 1)
        self.assertEqual(preview.unchanged_counts["tenancies"], 1)
        self.assertEqual(preview.unchanged_counts["buildingInfos"], 1)
        self.assertEqual(preview.unchanged_counts["invoices"], 1)
        self.assertEqual(preview.unchanged_counts["checklistItems"], 1)
        self.assertEqual(preview.unchanged_counts["inspections"], 1)


if __name__ == "__main__":
    unittest.main()
