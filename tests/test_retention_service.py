import json
import os
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta

from core.db import DB
from core.errors import ArchiveError, DestructiveOperationError, ValidationError
from core.models.activity_record import ActivityRecord
from core.models.enums import EventCategory, MetricPeriod, RetentionScope
from core.models.metric_row import MetricRow
from core.models.system_event import SystemEvent
from core.retention_service import (
    ArchiveSink,
    JsonFileArchiveSink,
    RetentionEngine,
    RetentionPolicy,
    RetentionPolicyStore,
)
from core.telemetry_store import append_activities

NOW = datetime(2026, 6, 1, 12, 0, 0)
SUPER = {"user_id": "root-1", "role": "super_admin"}
ADMIN = {"user_id": "admin-1", "role": "admin"}


class _FailingSink(ArchiveSink):
    def write(self, policy, records):
        raise ArchiveError("archive bucket unreachable")


class _SecondBatchFailingSink(JsonFileArchiveSink):
    def __init__(self, directory):
        super().__init__(directory)
        self.calls = 0

    def write(self, policy, records):
        self.calls += 1
        if self.calls == 2:
            raise ArchiveError("archive bucket unreachable")
        return super().write(policy, records)


class RetentionServiceTestCase(unittest.TestCase):
    def setUp(self):
        DB.bind("sqlite://")
        DB.create_tables()
        self.archive_dir = tempfile.mkdtemp(prefix="archives_")
        self._seed_activities([
            ("INFO", 40), ("INFO", 45), ("INFO", 10),
            ("ERROR", 40), ("DEBUG", 40), ("WARN", 5),
        ])

    def tearDown(self):
        shutil.rmtree(self.archive_dir, ignore_errors=True)

    def _seed_activities(self, items):
        session = DB.get_session()
        try:
            payloads = [
                {"action": "CUSTOM", "resource": "job", "severity": severity, "timestamp": (NOW - timedelta(days=age)).isoformat()}
                for severity, age in items
            ]
            append_activities(session, payloads, fallback={"user_id": "u-1"})
        finally:
            session.close()

    def _count(self, model=ActivityRecord):
        session = DB.get_session()
        try:
            return session.query(model).count()
        finally:
            session.close()

    def _engine(self, policies, sink=None, batch_size=2):
        return RetentionEngine(
            RetentionPolicyStore(policies),
            archive_sink=sink or JsonFileArchiveSink(self.archive_dir),
            batch_size=batch_size,
        )

    def test_dry_run_count_equals_live_deletion(self):
        engine = self._engine([{"name": "thirty_days", "maxAgeDays": 30, "archiveBeforeDelete": True}])
        before = self._count()

        dry = engine.execute_cleanup(dry_run=True, now=NOW)
        self.assertEqual(dry["state"], "DRY_RUN")
        self.assertEqual(dry["totalRecordsProcessed"], 4)
        self.assertEqual(self._count(), before)

        live = engine.execute_cleanup(dry_run=False, requested_by="admin-1", now=NOW)
        self.assertEqual(live["state"], "COMPLETED")
        self.assertEqual(live["recordsDeleted"], dry["totalRecordsProcessed"])
        self.assertEqual(live["recordsArchived"], 4)
        self.assertEqual(self._count(), before - dry["totalRecordsProcessed"])

        archived = []
        for name in os.listdir(self.archive_dir):
            with open(os.path.join(self.archive_dir, name), encoding="utf-8") as f:
                archived.extend(json.load(f)["records"])
        self.assertEqual(len(archived), 4)

    def test_overlapping_policies_claim_each_record_once(self):
        engine = self._engine([
            {"name": "general", "maxAgeDays": 30},
            {"name": "errors", "maxAgeDays": 365, "severity": ["ERROR", "CRITICAL"]},
            {"name": "debug", "maxAgeDays": 7, "severity": ["DEBUG"]},
        ])
        dry = engine.execute_cleanup(dry_run=True, now=NOW)
        matched = {p["name"]: p["matched"] for p in dry["policies"]}
        # ERROR 记录归 errors 策略，40 天未到 365 天
        self.assertEqual(matched, {"errors": 0, "debug": 1, "general": 2})

        live = engine.execute_cleanup(dry_run=False, now=NOW)
        self.assertEqual(live["recordsDeleted"], 3)
        session = DB.get_session()
        try:
            left = sorted(r[0] for r in session.query(ActivityRecord.severity).all())
        finally:
            session.close()
        self.assertEqual(left, ["ERROR", "INFO", "WARN"])

    def test_archive_failure_aborts_delete(self):
        engine = self._engine([{"name": "archived", "maxAgeDays": 30, "archiveBeforeDelete": True}], sink=_FailingSink())
        before = self._count()
        result = engine.execute_cleanup(dry_run=False, now=NOW)
        self.assertEqual(result["state"], "FAILED")
        self.assertEqual(result["policies"][0]["status"], "FAILED")
        self.assertIn("archive bucket unreachable", result["errors"][0])
        self.assertEqual(self._count(), before)

    def test_archive_failure_keeps_committed_batches_in_result(self):
        sink = _SecondBatchFailingSink(self.archive_dir)
        engine = self._engine([{"name": "archived", "maxAgeDays": 30, "archiveBeforeDelete": True}], sink=sink, batch_size=2)
        before = self._count()
        result = engine.execute_cleanup(dry_run=False, requested_by="admin-1", now=NOW)

        self.assertEqual(result["state"], "FAILED")
        item = result["policies"][0]
        self.assertEqual(item["status"], "FAILED")
        self.assertEqual(item["matched"], 4)
        self.assertEqual(item["archived"], 2)
        self.assertEqual(item["deleted"], 2)
        self.assertIn("archive bucket unreachable", item["error"])
        self.assertEqual(result["recordsDeleted"], 2)
        self.assertEqual(self._count(), before - 2)

        session = DB.get_session()
        try:
            event = session.query(SystemEvent).one()
        finally:
            session.close()
        self.assertEqual(event.status, "FAILED")
        self.assertEqual(json.loads(event.payload_json)["deleted"], 2)

    def test_live_cleanup_writes_audit_event(self):
        engine = self._engine([{"name": "thirty_days", "maxAgeDays": 30}])
        engine.execute_cleanup(dry_run=True, now=NOW)
        self.assertEqual(self._count(SystemEvent), 0)
        engine.execute_cleanup(dry_run=False, requested_by="admin-1", now=NOW)
        session = DB.get_session()
        try:
            event = session.query(SystemEvent).one()
        finally:
            session.close()
        self.assertEqual(event.event_category, EventCategory.ADMIN_ACTION.value)
        self.assertEqual(event.source_id, "admin-1")
        self.assertEqual(json.loads(event.payload_json)["deleted"], 4)

    def test_stats_are_read_only(self):
        engine = self._engine([
            {"name": "thirty_days", "maxAgeDays": 30},
            {"name": "disabled", "maxAgeDays": 1, "severity": ["WARN"], "enabled": False},
        ])
        stats = engine.get_retention_stats(now=NOW)
        self.assertEqual(stats["totalRecords"], 6)
        by_name = {p["name"]: p for p in stats["policies"]}
        self.assertEqual(by_name["thirty_days"]["eligible"], 4)
        self.assertIsNone(by_name["disabled"]["eligible"])
        ages = {r["ageRange"]: r["count"] for r in stats["recordsByAge"]}
        self.assertEqual(ages["Last 7 days"], 1)
        self.assertEqual(ages["Last 90 days"], 4)
        self.assertEqual(self._count(), 6)

    def test_policy_management(self):
        engine = RetentionEngine(RetentionPolicyStore.with_defaults(), archive_sink=JsonFileArchiveSink(self.archive_dir))
        self.assertEqual(len(engine.policies), 10)
        self.assertFalse(engine.remove_policy("does_not_exist"))
        policy = engine.add_policy({"name": "search_noise", "maxAgeDays": 3, "conditions": {"actions": ["search", "filter"]}})
        self.assertEqual(policy.actions, ["SEARCH", "FILTER"])
        with self.assertRaises(ValidationError):
            engine.add_policy({"name": "search_noise", "maxAgeDays": 3})
        self.assertTrue(engine.remove_policy("search_noise"))
        self.assertIsNone(engine.policies.get("search_noise"))

    def test_policy_validation(self):
        with self.assertRaises(ValidationError):
            RetentionPolicy.from_dict({"name": "x", "maxAgeDays": 0})
        with self.assertRaises(ValidationError):
            RetentionPolicy.from_dict({"name": "x", "maxAgeDays": 5, "appliesTo": "logs"})
        with self.assertRaises(ValidationError):
            RetentionPolicy.from_dict({"name": "x", "maxAgeDays": 5, "appliesTo": "metric", "severity": ["INFO"]})
        with self.assertRaises(ValidationError):
            RetentionPolicy.from_dict({"name": "x", "maxAgeDays": 5, "severity": ["LOUD"]})
        policy = RetentionPolicy.from_dict({"name": "events", "maxAgeDays": 5, "appliesTo": "system_event", "statuses": ["failed"]})
        self.assertEqual(policy.scope, RetentionScope.SYSTEM_EVENT)
        self.assertEqual(policy.to_dict()["conditions"], {"statuses": ["FAILED"]})

    def test_emergency_purge_refusals_touch_nothing(self):
        engine = self._engine([])
        before = self._count()
        with self.assertRaises(DestructiveOperationError) as ctx:
            engine.emergency_purge(SUPER, 30, "wrong", now=NOW)
        self.assertEqual(ctx.exception.reason, "confirm")
        with self.assertRaises(DestructiveOperationError) as ctx:
            engine.emergency_purge(ADMIN, 30, "DELETE_ALL_DATA", now=NOW)
        self.assertEqual(ctx.exception.reason, "privilege")
        with self.assertRaises(ValidationError):
            engine.emergency_purge(SUPER, 0, "DELETE_ALL_DATA", now=NOW)
        self.assertEqual(self._count(), before)
        self.assertEqual(self._count(SystemEvent), 0)

    def test_emergency_purge_failure_reports_committed_deletions(self):
        opened = []

        def session_factory():
            session = DB.get_session()
            if not opened:
                commit = session.commit
                calls = {"n": 0}

                def flaky_commit():
                    calls["n"] += 1
                    if calls["n"] == 2:
                        raise RuntimeError("disk I/O error")
                    commit()

                session.commit = flaky_commit
            opened.append(session)
            return session

        engine = RetentionEngine(
            RetentionPolicyStore([]),
            session_factory=session_factory,
            archive_sink=JsonFileArchiveSink(self.archive_dir),
            batch_size=2,
        )
        with self.assertRaises(RuntimeError):
            engine.emergency_purge(SUPER, 30, "DELETE_ALL_DATA", now=NOW)
        self.assertEqual(self._count(), 4)

        session = DB.get_session()
        try:
            audit = session.query(SystemEvent).one()
        finally:
            session.close()
        payload = json.loads(audit.payload_json)
        self.assertEqual(audit.status, "FAILED")
        self.assertEqual(payload["activitiesDeleted"], 2)
        self.assertEqual(payload["totalDeleted"], 2)
        self.assertIn("disk I/O error", payload["error"])

    def test_emergency_purge_deletes_all_stores(self):
        session = DB.get_session()
        try:
            old = NOW - timedelta(days=60)
            session.add(MetricRow(
                id="m-old", metric_type="logins", metric_value=1.0, period=MetricPeriod.DAY.value,
                period_start=old - timedelta(days=1), period_end=old, created_at=old, updated_at=old,
            ))
            session.add(MetricRow(
                id="m-new", metric_type="logins", metric_value=1.0, period=MetricPeriod.DAY.value,
                period_start=NOW - timedelta(days=1), period_end=NOW, created_at=NOW, updated_at=NOW,
            ))
            session.add(SystemEvent(
                id="e-old", event_type="security.login_failed", event_category="SECURITY_EVENT",
                status="COMPLETED", retry_count=0, timestamp=old,
            ))
            session.commit()
        finally:
            session.close()

        engine = self._engine([])
        result = engine.emergency_purge(SUPER, 30, "DELETE_ALL_DATA", now=NOW)
        self.assertEqual(result["activitiesDeleted"], 4)
        self.assertEqual(result["eventsDeleted"], 1)
        self.assertEqual(result["metricsDeleted"], 1)
        self.assertEqual(result["totalDeleted"], 6)
        self.assertEqual(self._count(), 2)
        self.assertEqual(self._count(MetricRow), 1)

        session = DB.get_session()
        try:
            audit = session.query(SystemEvent).filter(SystemEvent.id == result["auditEventId"]).one()
        finally:
            session.close()
        payload = json.loads(audit.payload_json)
        self.assertEqual(audit.event_category, "ADMIN_ACTION")
        self.assertEqual(payload["requestedBy"], "root-1")
        self.assertEqual(payload["totalDeleted"], 6)


if __name__ == "__main__":
    unittest.main()
