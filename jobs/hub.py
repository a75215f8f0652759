"""Fan-out of job log lines and status changes to live stream viewers."""
from __future__ import annotations

import threading
from collections import deque
from typing import Any, Deque, Dict, Iterator, List, Optional

from config import SSE_SUBSCRIBER_QUEUE_SIZE
from observability.logger import get_logger
from observability.metrics import get_registry

LOGGER = get_logger("portal.jobs.hub")
REGISTRY = get_registry()
SUBSCRIBER_GAUGE = REGISTRY.gauge("sse.subscribers")
DROPPED_COUNTER = REGISTRY.counter("sse.dropped_total")

Event = Dict[str, Any]


def log_event(line: str) -> Event:
    return {"type": "log", "line": line}


def status_event(status: str, attempt: int) -> Event:
    return {"type": "status", "status": status, "attempt": attempt}


class Subscription:
    """Buffered event queue owned by a single stream connection.

    Producers never block: when a bounded buffer overflows the subscription is
    dropped and its consumer sees the end of the stream.
    """

    def __init__(self, job_id: str, *, maxsize: int = 0) -> None:
        self.job_id = job_id
        self._maxsize = max(0, int(maxsize))
        self._events: Deque[Event] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self.dropped = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def offer(self, event: Event) -> bool:
        with self._cond:
            if self._closed:
                return False
            if self._maxsize and len(self._events) >= self._maxsize:
                self._closed = True
                self.dropped = True
                self._events.clear()
                self._cond.notify_all()
                return False
            self._events.append(event)
            self._cond.notify_all()
            return True

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Return the next event, ``None`` on timeout.

        Raises ``EOFError`` once the subscription is closed and drained.
        """

        with self._cond:
            if not self._events and not self._closed:
                self._cond.wait(timeout)
            if self._events:
                return self._events.popleft()
            if self._closed:
                raise EOFError(self.job_id)
            return None

    def iter_events(self, keepalive_s: float) -> Iterator[Optional[Event]]:
        """Yield events in order; ``None`` marks an idle keepalive interval."""

        while True:
            try:
                event = self.get(timeout=keepalive_s)
            except EOFError:
                return
            yield event


class BroadcastHub:
    """Registry of live subscriptions keyed by job id."""

    def __init__(self, *, queue_size: int = SSE_SUBSCRIBER_QUEUE_SIZE) -> None:
        self._queue_size = max(0, int(queue_size))
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, job_id: str) -> Subscription:
        subscription = Subscription(job_id, maxsize=self._queue_size)
        with self._lock:
            self._subscribers.setdefault(job_id, []).append(subscription)
            self._update_gauge_locked()
        LOGGER.info("sse_subscribed", extra={"job_id": job_id})
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        with self._lock:
            subscribers = self._subscribers.get(subscription.job_id)
            if not subscribers:
                return
            try:
                subscribers.remove(subscription)
            except ValueError:
                return
            if not subscribers:
                self._subscribers.pop(subscription.job_id, None)
            self._update_gauge_locked()

    def publish(self, job_id: str, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(job_id, ()))
        dropped = [sub for sub in subscribers if not sub.offer(event)]
        for subscription in dropped:
            if subscription.dropped:
                DROPPED_COUNTER.inc()
                LOGGER.warning("sse_subscriber_dropped", extra={"job_id": job_id})
            self.unsubscribe(subscription)

    def close(self, job_id: str, final_event: Optional[Event] = None) -> None:
        """Deliver ``final_event`` to every subscriber, then end their streams."""

        with self._lock:
            subscribers = self._subscribers.pop(job_id, [])
            self._update_gauge_locked()
        for subscription in subscribers:
            if final_event is not None:
                subscription.offer(final_event)
            subscription.close()
        if subscribers:
            LOGGER.info("sse_closed", extra={"job_id": job_id, "subscribers": len(subscribers)})

    def subscriber_count(self, job_id: Optional[str] = None) -> int:
        with self._lock:
            if job_id is not None:
                return len(self._subscribers.get(job_id, ()))
            return sum(len(items) for items in self._subscribers.values())

    def close_all(self) -> None:
        with self._lock:
            job_ids = list(self._subscribers)
        for job_id in job_ids:
            self.close(job_id)

    def _update_gauge_locked(self) -> None:
        SUBSCRIBER_GAUGE.set(float(sum(len(items) for items in self._subscribers.values())))


__all__ = ["BroadcastHub", "Event", "Subscription", "log_event", "status_event"]
