from __future__ import annotations

import logging
from dataclasses import dataclass
from queue import Full, Queue
from threading import Lock
from typing import List, Optional

from .storage import AlarmStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlarmEvent:
    alarm_id: str
    previous: Optional[AlarmStatus]
    status: AlarmStatus
    at: int


class EventBus:
    """Fan-out of lifecycle events to read-only subscriber queues."""

    def __init__(self, maxsize: int = 256):
        self.maxsize = maxsize
        self._subscribers: List["Queue[AlarmEvent]"] = []
        self._lock = Lock()

    def subscribe(self) -> "Queue[AlarmEvent]":
        queue: "Queue[AlarmEvent]" = Queue(maxsize=self.maxsize)
        with self._lock:
            self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: "Queue[AlarmEvent]") -> None:
        with self._lock:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def publish(self, event: AlarmEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for queue in subscribers:
            try:
                queue.put_nowait(event)
            except Full:
                logger.warning("Dropping event for slow subscriber (alarm=%s)", event.alarm_id)
