import json
import os
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from estatesync.web_admin import create_app
from helpers import seed_building, snapshot_text, tenancy_payload, tenant_payload, unit_payload

SCHEDULE = '{"entries": [{"type": "garbage", "days": [1, 4], "frequency": "weekly"}]}'


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.state_path = str(Path(self.temp_dir.name) / "state.db")
        os.environ["ESTATESYNC_CONFIG_PATH"] = self.config_path
        os.environ["ESTATESYNC_STATE_PATH"] = self.state_path
        self.app = create_app()
        self.client = TestClient(self.app)
        self.store = self.app.state.context.state_store

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_get_and_merge(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"calendar": {"window_days": 30}}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["calendar"]["window_days"], 30)
        config = self.client.get("/api/config").json()
        self.assertEqual(config["calendar"]["window_days"], 30)
        self.assertEqual(config["imports"]["token_ttl_minutes"], 15)

    def test_validate_then_confirm(self) -> None:
        text = snapshot_text(units=[unit_payload()], tenants=[tenant_payload()], tenancies=[tenancy_payload()])
        resp = self.client.post("/api/imports/validate", json={"content": text, "actorId": "admin-1"})
        self.assertEqual(resp.status_code, 200)
        preview = resp.json()
        self.assertTrue(preview["valid"])
        self.assertEqual(len(preview["changePreview"]["units"]["creates"]), 1)
        self.assertEqual(preview["recordCounts"]["tenants"], 1)

        resp = self.client.post(
            "/api/imports/confirm",
            json={"content": text, "confirmationToken": preview["confirmationToken"], "actorId": "admin-1"},
        )
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["summary"]["tenancies"], {"created": 1, "updated": 0, "skipped": 0})

        replay = self.client.post(
            "/api/imports/confirm",
            json={"content": text, "confirmationToken": preview["confirmationToken"]},
        )
        self.assertEqual(replay.status_code, 400)
        self.assertEqual(replay.json()["error"]["code"], "TOKEN_INVALID")

    def test_confirm_with_approved_subset(self) -> None:
        text = snapshot_text(tenants=[tenant_payload(), tenant_payload(tenant_id="b", email="bob@example.com")])
        token = self.client.post("/api/imports/validate", json={"content": text}).json()["confirmationToken"]
        resp = self.client.post(
            "/api/imports/confirm",
            json={
                "content": text,
                "confirmationToken": token,
                "approvedChanges": {"tenants": {"creates": [0], "updates": []}},
            },
        )
        self.assertEqual(resp.json()["summary"]["tenants"], {"created": 1, "updated": 0, "skipped": 1})

    def test_incompatible_schema_is_rejected(self) -> None:
        resp = self.client.post("/api/imports/validate", json={"content": snapshot_text("2.0.0")})
        self.assertEqual(resp.status_code, 400)
        body = resp.json()
        self.assertFalse(body["valid"])
        self.assertEqual(body["error"]["code"], "SCHEMA_INCOMPATIBLE")
        self.assertIn("Import: 2.0.0, Current: 1.0.0", body["errors"][0])

    def test_tampered_content_is_rejected(self) -> None:
        text = snapshot_text(tenants=[tenant_payload()])
        token = self.client.post("/api/imports/validate", json={"content": text}).json()["confirmationToken"]
        resp = self.client.post(
            "/api/imports/confirm",
            json={"content": text.replace("Ann", "Eve"), "confirmationToken": token},
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["code"], "DATA_MISMATCH")

    def test_unresolved_reference_is_422(self) -> None:
        text = snapshot_text(tenancies=[tenancy_payload(user_id="ghost")])
        resp = self.client.post("/api/imports/validate", json={"content": text})
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["error"]["code"], "RECORD_UNRESOLVED")

    def test_export_round_trips_through_validate(self) -> None:
        seed_building(self.store, schedule=SCHEDULE)
        document = self.client.post("/api/exports", json={"actorId": "admin-1", "actorName": "Admin"}).json()
        self.assertEqual(document["exportedBy"]["id"], "admin-1")
        self.assertEqual(document["recordCounts"]["buildingInfos"], 1)
        preview = self.client.post("/api/imports/validate", json={"content": json.dumps(document)}).json()
        for section in preview["changePreview"].values():
            self.assertEqual(section["creates"], [])
            self.assertEqual(section["updates"], [])
        actions = [event["action"] for event in self.client.get("/api/audit/events").json()["events"]]
        self.assertEqual(actions[:2], ["VALIDATE_IMPORT", "EXPORT_DATA"])

    def test_building_sync_status_and_feed(self) -> None:
        ids = seed_building(self.store, schedule=SCHEDULE)
        resp = self.client.post(f"/api/calendar/buildings/{ids['building']}/sync", json={"actorId": "admin-1"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["tenantsAffected"], 1)
        self.assertTrue(resp.json()["success"])

        status = self.client.get("/api/calendar/buildings/Maple Court/status").json()
        self.assertTrue(status["hasSchedule"])
        self.assertTrue(status["prerequisites"]["valid"])
        self.assertEqual(status["eventCount"], resp.json()["adminEventsCreated"])

        feed = self.client.get("/api/calendar/buildings/Maple Court/feed.ics")
        self.assertEqual(feed.status_code, 200)
        self.assertTrue(feed.headers["content-type"].startswith("text/calendar"))
        self.assertIn("X-WR-CALNAME:Building Calendar - Maple Court", feed.text)
        self.assertIn("SUMMARY:Garbage Collection - Maple Court", feed.text)

        runs = self.client.get("/api/sync/status").json()["runs"]
        self.assertEqual(runs[0]["trigger"], "building")

    def test_building_sync_with_explicit_null_clears(self) -> None:
        ids = seed_building(self.store, schedule=SCHEDULE)
        self.client.post(f"/api/calendar/buildings/{ids['building']}/sync", json={})
        resp = self.client.post(f"/api/calendar/buildings/{ids['building']}/sync", json={"scheduleData": None})
        body = resp.json()
        self.assertEqual(body["adminEventsCreated"], 0)
        self.assertGreater(body["adminEventsDeleted"], 0)

    def test_unknown_building_sync_is_404(self) -> None:
        resp = self.client.post("/api/calendar/buildings/missing/sync", json={})
        self.assertEqual(resp.status_code, 404)

    def test_full_sync_and_tenancy_status(self) -> None:
        ids = seed_building(self.store, free_text="Garbage on Monday")
        resp = self.client.post("/api/calendar/full-sync", json={"actorId": "admin-1"})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["success"])
        self.assertGreater(resp.json()["adminEventsCreated"], 0)
        status = self.client.get(f"/api/calendar/tenancies/{ids['tenancy']}/status").json()
        self.assertFalse(status["hasMoveOutEvent"])


if __name__ == "__main__":
    unittest.main()
