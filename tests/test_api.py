import os
import shutil
import tempfile
import unittest

from fastapi.testclient import TestClient

from apis.retention import get_retention_engine
from core.auth import create_access_token
from core.capture import get_writer
from core.db import DB
from core.models.activity_record import ActivityRecord
from core.retention_service import JsonFileArchiveSink, RetentionEngine, RetentionPolicyStore
from web import app


def _headers(user_id, role="user"):
    return {"Authorization": f"Bearer {create_access_token(user_id, username=user_id, role=role)}"}


class TelemetryApiTestCase(unittest.TestCase):
    def setUp(self):
        # 请求线程和写入线程并发访问，用文件库而不是共享连接的内存库
        self.work_dir = tempfile.mkdtemp(prefix="telemetry_api_")
        DB.bind(f"sqlite:///{os.path.join(self.work_dir, 'telemetry.db')}")
        self.archive_dir = os.path.join(self.work_dir, "archives")
        self.engine = RetentionEngine(RetentionPolicyStore.with_defaults(), archive_sink=JsonFileArchiveSink(self.archive_dir))
        app.dependency_overrides[get_retention_engine] = lambda: self.engine
        self.client = TestClient(app)
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)
        app.dependency_overrides.clear()
        DB.engine.dispose()
        shutil.rmtree(self.work_dir, ignore_errors=True)

    def _records(self, **filters):
        self.assertTrue(get_writer().flush(timeout=5))
        session = DB.get_session()
        try:
            query = session.query(ActivityRecord)
            for key, value in filters.items():
                query = query.filter(getattr(ActivityRecord, key) == value)
            return query.all()
        finally:
            session.close()

    def test_health(self):
        resp = self.client.get("/api/health", headers={"X-Request-Id": "req-42"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["status"], "ok")
        self.assertEqual(resp.headers["X-Version"], "1.0.0")
        self.assertEqual(resp.headers["X-Request-Id"], "req-42")

    def test_ingest_batch_partial_acceptance(self):
        resp = self.client.post(
            "/api/activity/track",
            json={"activities": [
                {"action": "READ", "resource": "car", "userId": "someone-else"},
                {"action": "EXPLODE", "resource": "car"},
            ]},
            headers=_headers("alice"),
        )
        self.assertEqual(resp.status_code, 200)
        data = resp.json()["data"]
        self.assertEqual(data["accepted"], 1)
        self.assertEqual(data["rejected"][0]["index"], 1)
        rows = self._records(resource="car")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].user_id, "alice")

    def test_ingest_rejects_non_array(self):
        resp = self.client.post("/api/activity/track", json={"activities": "nope"})
        self.assertEqual(resp.status_code, 400)
        body = resp.json()
        self.assertEqual(body["code"], 400)
        self.assertIn("activities", body["data"]["fields"])

    def test_history_requires_login(self):
        resp = self.client.get("/api/activity/track")
        self.assertEqual(resp.status_code, 401)

    def test_history_returns_own_records(self):
        self.client.post("/api/activity/track", json=[{"action": "LOGIN", "resource": "auth"}], headers=_headers("alice"))
        self.client.post("/api/activity/track", json=[{"action": "LOGIN", "resource": "auth"}], headers=_headers("bob"))
        resp = self.client.get("/api/activity/track?actions=LOGIN", headers=_headers("alice"))
        self.assertEqual(resp.status_code, 200)
        data = resp.json()["data"]
        self.assertEqual(data["total"], 1)
        self.assertEqual(data["activities"][0]["userId"], "alice")

    def test_analytics_scopes_unprivileged_caller(self):
        resp = self.client.get(
            "/api/activity/analytics?startDate=2026-01-01&endDate=2026-01-07&groupBy=day&userId=bob",
            headers=_headers("alice"),
        )
        self.assertEqual(resp.status_code, 200)
        data = resp.json()["data"]
        self.assertEqual(data["userId"], "alice")
        self.assertEqual(len(data["buckets"]), 7)

        # 装饰器已记录的请求，中间件不再重复记录
        rows = self._records(endpoint="/api/activity/analytics")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].resource, "activity_analytics")
        self.assertEqual(rows[0].user_id, "alice")

    def test_analytics_rejects_bad_group_by(self):
        resp = self.client.get("/api/activity/analytics?groupBy=year", headers=_headers("alice"))
        self.assertEqual(resp.status_code, 400)
        self.assertIn("groupBy", resp.json()["data"]["fields"])

    def test_custom_query_allow_list_and_privilege(self):
        resp = self.client.post("/api/activity/analytics", json={"query": "drop_everything"}, headers=_headers("admin-1", "admin"))
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post("/api/activity/analytics", json={"query": "error_analysis"}, headers=_headers("alice"))
        self.assertEqual(resp.status_code, 403)
        resp = self.client.post(
            "/api/activity/analytics",
            json={"query": "performance_metrics", "parameters": {}},
            headers=_headers("admin-1", "admin"),
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["query"], "performance_metrics")

    def test_untracked_route_is_captured_by_middleware(self):
        resp = self.client.get("/api/activity/metrics", headers=_headers("admin-1", "admin"))
        self.assertEqual(resp.status_code, 200)
        self.assertIn("summary", resp.json()["data"])
        rows = self._records(endpoint="/api/activity/metrics")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].action, "READ")
        self.assertEqual(rows[0].resource, "activity")

    def test_retention_endpoints_require_admin(self):
        resp = self.client.get("/api/admin/activity/cleanup?action=policies", headers=_headers("alice"))
        self.assertEqual(resp.status_code, 403)
        resp = self.client.get("/api/admin/activity/cleanup?action=policies", headers=_headers("admin-1", "admin"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()["data"]), 10)

    def test_forbidden_request_becomes_security_event(self):
        resp = self.client.get("/api/admin/activity/cleanup?action=stats", headers=_headers("alice"))
        self.assertEqual(resp.status_code, 403)
        self.assertTrue(get_writer().flush(timeout=5))

        resp = self.client.post(
            "/api/activity/analytics",
            json={"query": "security_events", "parameters": {}},
            headers=_headers("admin-1", "admin"),
        )
        self.assertEqual(resp.status_code, 200)
        events = resp.json()["data"]["result"]
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["eventType"], "security.forbidden")
        self.assertEqual(events[0]["sourceId"], "alice")
        self.assertEqual(events[0]["payload"]["details"]["endpoint"], "/api/admin/activity/cleanup")

    def test_system_event_ingestion_requires_admin(self):
        body = {"events": [
            {"category": "SECURITY_EVENT", "eventType": "login_failed", "userId": "bob", "riskScore": 30},
            {"category": "ADMIN_ACTION", "eventType": "admin.promote"},
        ]}
        resp = self.client.post("/api/activity/events", json=body, headers=_headers("alice"))
        self.assertEqual(resp.status_code, 403)
        resp = self.client.post("/api/activity/events", json=body, headers=_headers("admin-1", "admin"))
        self.assertEqual(resp.status_code, 200)
        data = resp.json()["data"]
        self.assertEqual(data["accepted"], 1)
        self.assertEqual(data["rejected"][0]["index"], 1)
        self.assertEqual(data["events"][0]["eventType"], "security.login_failed")

    def test_live_feed_returns_new_activity(self):
        admin = _headers("admin-1", "admin")
        resp = self.client.get("/api/activity/live", headers=_headers("alice"))
        self.assertEqual(resp.status_code, 403)

        resp = self.client.get("/api/activity/live", headers=admin)
        self.assertEqual(resp.status_code, 200)
        cursor = resp.json()["data"]["cursor"]

        self.client.post(
            "/api/activity/track",
            json=[{"action": "BOOK", "resource": "booking"}, {"action": "READ", "resource": "car"}],
            headers=_headers("bob"),
        )
        resp = self.client.get(f"/api/activity/live?since={cursor}&actions=BOOK&userIds=bob", headers=admin)
        self.assertEqual(resp.status_code, 200)
        data = resp.json()["data"]
        booked = [x["data"] for x in data["items"] if x["type"] == "activity"]
        self.assertEqual(len(booked), 1)
        self.assertEqual(booked[0]["resource"], "booking")
        self.assertEqual(booked[0]["userId"], "bob")
        self.assertGreater(data["cursor"], cursor)

    def test_retention_policy_lifecycle(self):
        admin = _headers("admin-1", "admin")
        resp = self.client.post(
            "/api/admin/activity/cleanup",
            json={"action": "add_policy", "policy": {"name": "page_views", "maxAgeDays": 14, "resources": ["page"]}},
            headers=admin,
        )
        self.assertEqual(resp.status_code, 200)
        self.assertIsNotNone(self.engine.policies.get("page_views"))

        resp = self.client.post("/api/admin/activity/cleanup", json={"action": "remove_policy", "policyName": "missing"}, headers=admin)
        self.assertEqual(resp.status_code, 404)

        resp = self.client.post("/api/admin/activity/cleanup", json={"action": "cleanup", "dryRun": True}, headers=admin)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["state"], "DRY_RUN")

        resp = self.client.post("/api/admin/activity/cleanup", json={"action": "shred"}, headers=admin)
        self.assertEqual(resp.status_code, 400)

    def test_emergency_purge_gates(self):
        resp = self.client.request(
            "DELETE",
            "/api/admin/activity/cleanup",
            json={"olderThanDays": 30, "confirm": "DELETE_ALL_DATA"},
            headers=_headers("admin-1", "admin"),
        )
        self.assertEqual(resp.status_code, 403)
        resp = self.client.request(
            "DELETE",
            "/api/admin/activity/cleanup",
            json={"olderThanDays": 30, "confirm": "wrong"},
            headers=_headers("root-1", "super_admin"),
        )
        self.assertEqual(resp.status_code, 400)
        resp = self.client.request(
            "DELETE",
            "/api/admin/activity/cleanup",
            json={"olderThanDays": 30, "confirm": "DELETE_ALL_DATA"},
            headers=_headers("root-1", "super_admin"),
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["totalDeleted"], 0)


if __name__ == "__main__":
    unittest.main()
