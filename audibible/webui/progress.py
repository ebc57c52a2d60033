from __future__ import annotations

import json
import logging
import queue
import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterator, List, Optional

from audibible.errors import ChannelDeliveryError

logger = logging.getLogger(__name__)

DEFAULT_CLOSE_DELAY = 2.0
DEFAULT_KEEPALIVE = 15.0
DEFAULT_SINK_SIZE = 512

_CLOSED = object()


@dataclass(frozen=True)
class ProgressEvent:
    type: str
    progress: int
    message: str
    step: Optional[str] = None
    details: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "progress": self.progress,
            "message": self.message,
        }
        for key in ("step", "details", "result", "error"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload

    def to_wire(self) -> str:
        return f"data: {json.dumps(self.as_dict())}\n\n"

    def rescaled(self, progress: int, message: Optional[str] = None) -> "ProgressEvent":
        return replace(self, progress=progress, message=self.message if message is None else message)


def connected_event() -> ProgressEvent:
    return ProgressEvent(type="connected", progress=0, message="Progress stream connected")


class ProgressSubscription:
    """One live consumer of a job's events, backed by a bounded in-memory queue."""

    def __init__(self, job_id: str, *, maxsize: int = DEFAULT_SINK_SIZE) -> None:
        self.job_id = job_id
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def put(self, event: ProgressEvent) -> None:
        if self._closed.is_set():
            raise ChannelDeliveryError(f"Subscription for job {self.job_id} is closed")
        try:
            self._queue.put_nowait(event)
        except queue.Full as exc:
            raise ChannelDeliveryError(f"Subscriber for job {self.job_id} is not keeping up") from exc

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            # The reader notices the closed flag once it drains the backlog.
            pass

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Return the next event, or ``None`` once the subscription has ended."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            if self._closed.is_set():
                return None
            raise
        if item is _CLOSED:
            return None
        return item  # type: ignore[return-value]

    def stream(self, keepalive: float = DEFAULT_KEEPALIVE) -> Iterator[str]:
        while True:
            try:
                event = self.get(timeout=keepalive)
            except queue.Empty:
                yield ": keep-alive\n\n"
                continue
            if event is None:
                return
            yield event.to_wire()


class ProgressChannel:
    """Routes pipeline events to at most one live subscriber per job id."""

    def __init__(self, *, close_delay: float = DEFAULT_CLOSE_DELAY, sink_size: int = DEFAULT_SINK_SIZE) -> None:
        self.close_delay = close_delay
        self._sink_size = sink_size
        self._subscribers: Dict[str, ProgressSubscription] = {}
        self._timers: List[threading.Timer] = []
        self._lock = threading.Lock()

    def subscribe(self, job_id: str) -> ProgressSubscription:
        subscription = ProgressSubscription(job_id, maxsize=self._sink_size)
        subscription.put(connected_event())
        with self._lock:
            previous = self._subscribers.get(job_id)
            self._subscribers[job_id] = subscription
        if previous is not None:
            logger.debug("Replacing progress subscriber for job %s", job_id)
            previous.close()
        return subscription

    def publish(self, job_id: str, event: ProgressEvent) -> bool:
        with self._lock:
            subscription = self._subscribers.get(job_id)
        if subscription is None:
            return False
        try:
            subscription.put(event)
        except ChannelDeliveryError as exc:
            logger.warning("Dropping progress subscriber for job %s: %s", job_id, exc)
            self.unsubscribe(job_id, subscription)
            return False
        return True

    def unsubscribe(self, job_id: str, subscription: Optional[ProgressSubscription] = None) -> None:
        with self._lock:
            current = self._subscribers.get(job_id)
            if current is not None and (subscription is None or current is subscription):
                self._subscribers.pop(job_id, None)
            else:
                current = None
        target = current or subscription
        if target is not None:
            target.close()

    def close_later(self, job_id: str, delay: Optional[float] = None) -> None:
        with self._lock:
            subscription = self._subscribers.get(job_id)
        if subscription is None:
            return
        wait = self.close_delay if delay is None else delay
        if wait <= 0:
            self.unsubscribe(job_id, subscription)
            return
        timer = threading.Timer(wait, self.unsubscribe, args=(job_id, subscription))
        timer.daemon = True
        with self._lock:
            self._timers = [pending for pending in self._timers if pending.is_alive()]
            self._timers.append(timer)
        timer.start()

    def has_subscriber(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._subscribers

    def shutdown(self) -> None:
        with self._lock:
            timers, self._timers = self._timers, []
            subscribers = list(self._subscribers.values())
            self._subscribers.clear()
        for timer in timers:
            timer.cancel()
        for subscription in subscribers:
            subscription.close()
