"""
Wake-up channel between the API and the event worker.

The outbox table is the source of truth. The queue only tells a worker which
event ids were just committed so it does not have to wait for the next outbox
poll; a lost message delays an event, it never drops it.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)


class EventQueue(Protocol):
    def push(self, event_ids: Iterable[str]) -> None:
        ...

    def pop(self, *, wait_seconds: float = 0.0) -> Optional[str]:
        """Next event id, waiting up to ``wait_seconds``; 0 returns immediately."""
        ...


@dataclass
class InMemoryEventQueue:
    """Process-local queue; ``pop`` waits on a condition like BLPOP would."""

    items: deque = field(default_factory=deque)

    def __post_init__(self):
        self._ready = threading.Condition()

    def push(self, event_ids: Iterable[str]) -> None:
        with self._ready:
            self.items.extend(event_ids)
            self._ready.notify_all()

    def pop(self, *, wait_seconds: float = 0.0) -> Optional[str]:
        with self._ready:
            if wait_seconds > 0:
                self._ready.wait_for(lambda: self.items, timeout=wait_seconds)
            return self.items.popleft() if self.items else None


@dataclass
class RedisEventQueue:
    """Redis list: RPUSH on commit, BLPOP/LPOP in the worker."""

    url: str
    queue_key: str = "socialape:events"

    def __post_init__(self):
        self.client = self._connect()

    def _connect(self) -> redis.Redis:
        return redis.Redis.from_url(self.url, decode_responses=True)

    def push(self, event_ids: Iterable[str]) -> None:
        ids = list(event_ids)
        if ids:
            self.client.rpush(self.queue_key, *ids)

    def pop(self, *, wait_seconds: float = 0.0) -> Optional[str]:
        try:
            if wait_seconds <= 0:
                return self.client.lpop(self.queue_key)
            result = self.client.blpop([self.queue_key], timeout=wait_seconds)
        except redis_exceptions.ConnectionError as exc:
            # The outbox poll covers whatever was pushed while disconnected.
            logger.warning("Redis connection lost, reconnecting: %s", exc)
            self.client = self._connect()
            return None
        return result[1] if result else None
