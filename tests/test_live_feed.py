import threading
import time
import unittest

from core.live_feed import KIND_ACTIVITY, KIND_SYSTEM, LiveFeed, LiveFilters


def _activity(action="READ", resource="car", severity="INFO", user_id="u-1"):
    return {"action": action, "resource": resource, "severity": severity, "userId": user_id}


class LiveFeedTestCase(unittest.TestCase):
    def test_poll_returns_only_events_after_cursor(self):
        feed = LiveFeed(capacity=10)
        start = feed.poll()
        self.assertEqual(start, {"cursor": 0, "items": [], "missed": False})

        feed.publish(KIND_ACTIVITY, [_activity(resource="car"), _activity(resource="booking")])
        first = feed.poll(since=start["cursor"])
        self.assertEqual([x["data"]["resource"] for x in first["items"]], ["car", "booking"])
        self.assertEqual(first["cursor"], 2)

        feed.publish(KIND_SYSTEM, [{"eventType": "system.error", "userId": None}])
        second = feed.poll(since=first["cursor"])
        self.assertEqual(len(second["items"]), 1)
        self.assertEqual(second["items"][0]["type"], "system")
        self.assertEqual(feed.poll(since=second["cursor"])["items"], [])

    def test_filters_apply_to_activity_fields_and_user(self):
        feed = LiveFeed(capacity=10)
        feed.publish(KIND_ACTIVITY, [
            _activity(severity="DEBUG"),
            _activity(severity="ERROR", user_id="u-2"),
            _activity(action="BOOK", severity="WARN"),
        ])
        feed.publish(KIND_SYSTEM, [{"eventType": "security.forbidden", "userId": "u-2"}])

        errors = feed.poll(since=0, filters=LiveFilters(severities=["error", "warn"]))
        self.assertEqual([x["data"].get("severity") for x in errors["items"]], ["ERROR", "WARN", None])
        # 被过滤掉的事件也推进 cursor
        self.assertEqual(errors["cursor"], 4)

        by_user = feed.poll(since=0, filters=LiveFilters(user_ids=["u-2"]))
        self.assertEqual([x["seq"] for x in by_user["items"]], [2, 4])

    def test_overflow_reports_missed_events(self):
        feed = LiveFeed(capacity=3)
        feed.publish(KIND_ACTIVITY, [_activity(resource=str(i)) for i in range(5)])
        result = feed.poll(since=0)
        self.assertTrue(result["missed"])
        self.assertEqual([x["data"]["resource"] for x in result["items"]], ["2", "3", "4"])
        self.assertFalse(feed.poll(since=2)["missed"])
        self.assertEqual(feed.stats(), {"cursor": 5, "buffered": 3, "capacity": 3})

    def test_limit_keeps_remaining_events_for_next_poll(self):
        feed = LiveFeed(capacity=10)
        feed.publish(KIND_ACTIVITY, [_activity(resource=str(i)) for i in range(5)])
        page = feed.poll(since=0, limit=2)
        self.assertEqual(page["cursor"], 2)
        rest = feed.poll(since=page["cursor"])
        self.assertEqual([x["data"]["resource"] for x in rest["items"]], ["2", "3", "4"])

    def test_stale_cursor_restarts_from_head(self):
        feed = LiveFeed(capacity=10)
        feed.publish(KIND_ACTIVITY, [_activity()])
        result = feed.poll(since=99)
        self.assertEqual(result["cursor"], 1)
        self.assertEqual(result["items"], [])

    def test_wait_returns_when_event_is_published(self):
        feed = LiveFeed(capacity=10)
        cursor = feed.poll()["cursor"]

        def publish_later():
            time.sleep(0.1)
            feed.publish(KIND_ACTIVITY, [_activity(resource="late")])

        thread = threading.Thread(target=publish_later)
        thread.start()
        started = time.monotonic()
        result = feed.poll(since=cursor, wait=5)
        thread.join(5)
        self.assertLess(time.monotonic() - started, 4)
        self.assertEqual([x["data"]["resource"] for x in result["items"]], ["late"])

    def test_wait_times_out_empty(self):
        feed = LiveFeed(capacity=10)
        result = feed.poll(wait=0.05)
        self.assertEqual(result, {"cursor": 0, "items": [], "missed": False})


if __name__ == "__main__":
    unittest.main()
