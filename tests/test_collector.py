import threading
import unittest
from unittest import mock

import requests

from core.collector import ActivityCollector, CollectorConfig, HttpTransport
from core.models.enums import ActivityAction, Severity


class _RecordingTransport:
    def __init__(self, fail_times=0):
        self.batches = []
        self.fail_times = fail_times
        self.calls = 0
        self.sent = threading.Event()

    def __call__(self, batch):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise requests.ConnectionError("ingest endpoint down")
        self.batches.append([dict(x) for x in batch])
        self.sent.set()
        return {"code": 0}


def _config(**overrides):
    data = {"batch_size": 3, "debounce_interval": 60.0, "auto_flush": True, "backoff_base": 60.0, "endpoint": "http://test"}
    data.update(overrides)
    return CollectorConfig(**data)


class ActivityCollectorTestCase(unittest.TestCase):
    def test_critical_is_sent_immediately_and_alone(self):
        transport = _RecordingTransport()
        collector = ActivityCollector(_config(), transport=transport)
        try:
            collector.track({"action": ActivityAction.READ, "resource": "car", "severity": Severity.INFO})
            collector.track({"action": ActivityAction.READ, "resource": "booking", "severity": Severity.INFO})
            collector.track({"action": ActivityAction.SYSTEM_ERROR, "resource": "checkout", "severity": Severity.CRITICAL})
            self.assertEqual(len(transport.batches), 1)
            self.assertEqual(len(transport.batches[0]), 1)
            self.assertEqual(transport.batches[0][0]["severity"], "CRITICAL")
            self.assertEqual(collector.pending, 2)
        finally:
            collector.close()
        # 关闭时剩下的两条整批发出
        self.assertEqual([x["resource"] for x in transport.batches[1]], ["car", "booking"])

    def test_full_batch_flushes_in_order(self):
        transport = _RecordingTransport()
        collector = ActivityCollector(_config(), transport=transport)
        try:
            for name in ("a", "b", "c", "d"):
                collector.track({"action": "CUSTOM", "resource": name})
            self.assertEqual([x["resource"] for x in transport.batches[0]], ["a", "b", "c"])
            self.assertEqual(collector.pending, 1)
        finally:
            collector.close()
        self.assertEqual([x["resource"] for x in transport.batches[1]], ["d"])
        self.assertEqual(collector.stats()["sent"], 4)

    def test_debounce_flushes_after_idle(self):
        transport = _RecordingTransport()
        collector = ActivityCollector(_config(batch_size=10, debounce_interval=0.05), transport=transport)
        try:
            collector.track({"action": "CUSTOM", "resource": "a"})
            collector.track({"action": "CUSTOM", "resource": "b"})
            self.assertTrue(transport.sent.wait(5))
            self.assertEqual([x["resource"] for x in transport.batches[0]], ["a", "b"])
            self.assertEqual(collector.pending, 0)
        finally:
            collector.close()

    def test_failed_batch_is_retried_before_newer_events(self):
        transport = _RecordingTransport(fail_times=1)
        collector = ActivityCollector(_config(batch_size=10, auto_flush=False), transport=transport)
        collector.track({"action": "CUSTOM", "resource": "a"})
        collector.track({"action": "CUSTOM", "resource": "b"})
        self.assertFalse(collector.flush())
        self.assertEqual(collector.pending, 2)
        collector.track({"action": "CUSTOM", "resource": "c"})
        self.assertTrue(collector.flush())
        self.assertEqual([[x["resource"] for x in b] for b in transport.batches], [["a", "b"], ["c"]])
        self.assertEqual(collector.stats()["consecutive_failures"], 0)

    def test_batch_dropped_after_max_retries(self):
        transport = _RecordingTransport(fail_times=100)
        collector = ActivityCollector(_config(batch_size=10, auto_flush=False, max_retries=2), transport=transport)
        collector.track({"action": "CUSTOM", "resource": "a"})
        self.assertFalse(collector.flush())
        self.assertFalse(collector.flush())
        self.assertEqual(collector.pending, 1)
        self.assertFalse(collector.flush())
        self.assertEqual(collector.pending, 0)
        self.assertEqual(collector.stats()["dropped"], 1)

    def test_retry_limit_counts_per_batch(self):
        transport = _RecordingTransport(fail_times=3)
        collector = ActivityCollector(_config(batch_size=10, auto_flush=False, max_retries=2), transport=transport)
        collector.track({"action": "CUSTOM", "resource": "old"})
        self.assertFalse(collector.flush())
        collector.track({"action": "CUSTOM", "resource": "new"})
        self.assertFalse(collector.flush())
        self.assertEqual(collector.pending, 2)
        self.assertEqual(collector.stats()["retrying"], 1)
        # 第三次失败只丢掉 old，new 还没发过
        self.assertFalse(collector.flush())
        self.assertEqual(collector.stats()["dropped"], 1)
        self.assertEqual(collector.pending, 1)
        self.assertTrue(collector.flush())
        self.assertEqual([[x["resource"] for x in b] for b in transport.batches], [["new"]])

    def test_new_events_do_not_cut_backoff_short(self):
        transport = _RecordingTransport(fail_times=1)
        sleeps = []
        collector = ActivityCollector(_config(), transport=transport, sleep=sleeps.append)
        for name in ("a", "b", "c"):
            collector.track({"action": "CUSTOM", "resource": name})
        self.assertEqual(transport.calls, 1)
        retry_timer = collector._timer
        self.assertIsNotNone(retry_timer)
        for name in ("d", "e", "f"):
            collector.track({"action": "CUSTOM", "resource": name})
        # 退避中：不立即发送，重试计时器保持不变
        self.assertEqual(transport.calls, 1)
        self.assertIs(collector._timer, retry_timer)
        self.assertEqual(collector.pending, 6)
        collector.close()
        self.assertEqual(
            [[x["resource"] for x in b] for b in transport.batches],
            [["a", "b", "c"], ["d", "e", "f"]],
        )
        self.assertEqual(sleeps, [])

    def test_close_retries_with_backoff_until_sent(self):
        transport = _RecordingTransport(fail_times=2)
        sleeps = []
        collector = ActivityCollector(
            _config(batch_size=10, auto_flush=False, backoff_base=0.5),
            transport=transport,
            sleep=sleeps.append,
        )
        collector.track({"action": "CUSTOM", "resource": "a"})
        collector.close()
        self.assertEqual(sleeps, [0.5, 1.0])
        self.assertEqual(len(transport.batches), 1)
        self.assertEqual(collector.pending, 0)
        # 关闭后不再接收
        collector.track({"action": "CUSTOM", "resource": "late"})
        self.assertEqual(collector.pending, 0)

    def test_immediate_send_failure_is_not_retried(self):
        transport = _RecordingTransport(fail_times=1)
        collector = ActivityCollector(_config(), transport=transport)
        collector.track({"action": "SYSTEM_ERROR", "resource": "x", "severity": "ERROR"})
        self.assertEqual(transport.calls, 1)
        self.assertEqual(collector.stats()["immediate_failed"], 1)
        self.assertEqual(collector.pending, 0)
        collector.close()

    def test_disabled_collector_tracks_nothing(self):
        transport = _RecordingTransport()
        collector = ActivityCollector(_config(enabled=False), transport=transport)
        collector.track({"action": "CUSTOM", "resource": "a", "severity": "CRITICAL"})
        self.assertEqual(transport.calls, 0)
        self.assertEqual(collector.pending, 0)

    def test_tracking_level_controls_context_metadata(self):
        context = {"session_id": "s-1", "url": "/cars", "referrer": "/home", "screen": "1080p"}
        minimal = ActivityCollector(_config(tracking_level="minimal", auto_flush=False), transport=_RecordingTransport(), context=context)
        minimal.track_page_view("/cars")
        self.assertEqual(minimal.pending, 0)
        minimal.track({"action": "CUSTOM", "resource": "a"})
        item = minimal._buffer[0]
        self.assertEqual(item["metadata"], {})
        self.assertEqual(item["sessionId"], "s-1")

        verbose = ActivityCollector(_config(tracking_level="verbose", auto_flush=False), transport=_RecordingTransport(), context=context)
        verbose.track_event("filter_used", category="search", label="price")
        meta = verbose._buffer[0]["metadata"]
        self.assertEqual(meta["source"], "client")
        self.assertEqual(meta["url"], "/cars")
        self.assertEqual(meta["screen"], "1080p")
        self.assertEqual(meta["category"], "search")

    def test_context_manager_flushes_on_exit(self):
        transport = _RecordingTransport()
        with ActivityCollector(_config(), transport=transport) as collector:
            collector.track({"action": "CUSTOM", "resource": "a"})
        self.assertEqual(len(transport.batches), 1)


class HttpTransportTestCase(unittest.TestCase):
    def test_posts_batch_with_bearer_token(self):
        session = mock.Mock()
        session.post.return_value.json.return_value = {"code": 0}
        transport = HttpTransport("http://ingest/api/activity/track", token="tok", session=session)
        self.assertEqual(transport([{"action": "READ"}]), {"code": 0})
        args, kwargs = session.post.call_args
        self.assertEqual(args[0], "http://ingest/api/activity/track")
        self.assertEqual(kwargs["json"], {"activities": [{"action": "READ"}]})
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tok")
        session.post.return_value.raise_for_status.assert_called_once()


if __name__ == "__main__":
    unittest.main()
