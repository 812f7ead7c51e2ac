"""
进程内实时操作流。

落库成功的 ActivityRecord / SystemEvent 按写入顺序追加到一个有界环形缓冲，
每条带单调递增的 seq。管理端带上次拿到的 cursor 轮询（可长轮询等待），
只拿到 cursor 之后的新事件；缓冲满时丢最旧的，落后太多的订阅方会收到 missed=True。
"""
import threading
from collections import deque
from typing import Any, Dict, Iterable, List, Optional, Sequence

from core.config import cfg

KIND_ACTIVITY = "activity"
KIND_SYSTEM = "system"

MAX_WAIT_SECONDS = 25.0
MAX_POLL_LIMIT = 500


class LiveFilters:
    """severity / actions / resources 只作用于操作记录；userIds 对带 userId 的所有事件生效。"""

    def __init__(
        self,
        severities: Optional[Sequence[str]] = None,
        actions: Optional[Sequence[str]] = None,
        resources: Optional[Sequence[str]] = None,
        user_ids: Optional[Sequence[str]] = None,
    ):
        self.severities = {str(x).upper() for x in severities or ()}
        self.actions = {str(x).upper() for x in actions or ()}
        self.resources = set(resources or ())
        self.user_ids = set(user_ids or ())

    def match(self, kind: str, data: Dict[str, Any]) -> bool:
        if kind == KIND_ACTIVITY:
            if self.severities and data.get("severity") not in self.severities:
                return False
            if self.actions and data.get("action") not in self.actions:
                return False
            if self.resources and data.get("resource") not in self.resources:
                return False
        if self.user_ids:
            user_id = data.get("userId")
            if user_id and user_id not in self.user_ids:
                return False
        return True


class LiveFeed:
    def __init__(self, capacity: Optional[int] = None):
        size = capacity if capacity is not None else cfg.get("telemetry.live_buffer", 1000)
        try:
            size = int(size)
        except (TypeError, ValueError):
            size = 1000
        self.capacity = max(1, size)
        self._items: deque = deque(maxlen=self.capacity)
        self._cond = threading.Condition()
        self._seq = 0

    @property
    def cursor(self) -> int:
        with self._cond:
            return self._seq

    def publish(self, kind: str, items: Iterable[Dict[str, Any]]) -> int:
        count = 0
        with self._cond:
            for data in items:
                self._seq += 1
                self._items.append((self._seq, kind, data))
                count += 1
            if count:
                self._cond.notify_all()
        return count

    def _after(self, since: int, filters: LiveFilters, limit: int):
        oldest = self._items[0][0] if self._items else self._seq + 1
        missed = since + 1 < oldest and since < self._seq
        matched: List[Dict[str, Any]] = []
        last = since
        for seq, kind, data in self._items:
            if seq <= since:
                continue
            last = seq
            if filters.match(kind, data):
                matched.append({"seq": seq, "type": kind, "data": data})
                if len(matched) >= limit:
                    break
        return matched, max(last, since), missed

    def poll(
        self,
        since: Optional[int] = None,
        filters: Optional[LiveFilters] = None,
        limit: int = 100,
        wait: float = 0.0,
    ) -> Dict[str, Any]:
        """
        取 since 之后的事件。since 为空时从当前位置开始，只等新事件。
        wait > 0 且暂无匹配事件时阻塞等待，最多 MAX_WAIT_SECONDS 秒。
        """
        size = max(1, min(int(limit or 100), MAX_POLL_LIMIT))
        timeout = max(0.0, min(float(wait or 0.0), MAX_WAIT_SECONDS))
        criteria = filters or LiveFilters()
        with self._cond:
            # 进程重启后旧 cursor 可能大于当前 seq，从头开始
            position = self._seq if since is None else min(max(0, int(since)), self._seq)
            items, cursor, missed = self._after(position, criteria, size)
            if not items and timeout > 0:
                # 只等一轮：有新事件写入就返回，哪怕都被过滤掉，调用方拿新 cursor 再来
                self._cond.wait_for(lambda: self._seq > cursor, timeout)
                items, cursor, missed_again = self._after(cursor, criteria, size)
                missed = missed or missed_again
        return {"cursor": cursor, "items": items, "missed": missed}

    def stats(self) -> Dict[str, int]:
        with self._cond:
            return {"cursor": self._seq, "buffered": len(self._items), "capacity": self.capacity}


_FEED_LOCK = threading.Lock()
_FEED: Optional[LiveFeed] = None


def get_live_feed() -> LiveFeed:
    global _FEED
    with _FEED_LOCK:
        if _FEED is None:
            _FEED = LiveFeed()
        return _FEED


def set_live_feed(feed: Optional[LiveFeed]) -> Optional[LiveFeed]:
    """替换进程级实时流（测试用），返回旧的。"""
    global _FEED
    with _FEED_LOCK:
        previous = _FEED
        _FEED = feed
        return previous
