import asyncio
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)

POSITION_CREATED = "position_created"
POSITION_UPDATED = "position_updated"
POSITION_DELETED = "position_deleted"
MONITOR_STATE = "monitor_state"

# change events found by a bulk fetch vs pushed by an account notification
SOURCE_POLL = "position_monitor.poll"
SOURCE_NOTIFICATION = "position_monitor.notification"


@dataclass(frozen=True)
class EventEnvelope:
    event_type: str
    data: Any
    ts_ms: int
    source: str
    seq: int
    key: Optional[str] = None


@dataclass
class EventSubscription:
    sub_id: int
    queue: asyncio.Queue
    event_types: Optional[Set[str]] = None


class InProcessEventBus:
    """
    In-memory fan-out of monitor events to bounded per-subscriber queues.
    Publishing never waits on a consumer: a full queue drops the event and
    counts it.
    """

    def __init__(self, max_queue_size: int = 2000):
        self._subs: Dict[int, EventSubscription] = {}
        self._sub_id = 0
        self._seq_by_source: Dict[str, int] = {}
        self._lock = Lock()
        self._max_queue_size = max_queue_size
        self.published_count = 0
        self.dropped_count = 0

    def subscribe(self, event_types: Optional[Set[str]] = None, max_queue_size: Optional[int] = None) -> EventSubscription:
        normalized = {e for e in (event_types or set()) if e} or None
        queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, int(max_queue_size or self._max_queue_size)))
        with self._lock:
            self._sub_id += 1
            sub = EventSubscription(sub_id=self._sub_id, queue=queue, event_types=normalized)
            self._subs[sub.sub_id] = sub
        logger.info(
            "event_bus subscribe sub_id=%s filters=%s total=%s",
            sub.sub_id,
            sorted(list(normalized)) if normalized else "ALL",
            len(self._subs),
        )
        return sub

    def unsubscribe(self, sub: EventSubscription):
        with self._lock:
            removed = self._subs.pop(sub.sub_id, None)
        if removed is not None:
            logger.info("event_bus unsubscribe sub_id=%s total=%s", sub.sub_id, len(self._subs))

    def _next_seq(self, source: str) -> int:
        with self._lock:
            nxt = int(self._seq_by_source.get(source, 0) + 1)
            self._seq_by_source[source] = nxt
        return nxt

    def publish_nowait(
        self,
        event_type: str,
        data: Any,
        *,
        source: str = "system",
        key: Optional[str] = None,
        ts_ms: Optional[int] = None,
    ) -> EventEnvelope:
        if not event_type:
            raise ValueError("event_type is required")

        envelope = EventEnvelope(
            event_type=event_type,
            data=data,
            ts_ms=int(ts_ms or int(time.time() * 1000)),
            source=source,
            seq=self._next_seq(source),
            key=key,
        )

        with self._lock:
            subscriptions = list(self._subs.values())

        for sub in subscriptions:
            if sub.event_types and event_type not in sub.event_types:
                continue
            try:
                sub.queue.put_nowait(envelope)
            except asyncio.QueueFull:
                self.dropped_count += 1
                logger.warning("event_bus queue full sub_id=%s event_type=%s dropped=%s", sub.sub_id, event_type, self.dropped_count)

        self.published_count += 1
        return envelope

    async def publish(self, event_type: str, data: Any, **kwargs) -> EventEnvelope:
        return self.publish_nowait(event_type, data, **kwargs)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total_subs = len(self._subs)
        return {
            "subscriptions": total_subs,
            "published_count": int(self.published_count),
            "dropped_count": int(self.dropped_count),
        }


def drain(queue: asyncio.Queue, limit: Optional[int] = None):
    out = []
    while limit is None or len(out) < limit:
        try:
            out.append(queue.get_nowait())
        except asyncio.QueueEmpty:
            break
    return out
