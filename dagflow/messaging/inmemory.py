"""In-process queue and notifier for tests and single-process deployments."""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import OrderedDict, defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, DefaultDict, Dict, List, Optional

from .base import MessageQueue, Notifier, QueueMessage


@dataclass
class _Entry:
    message: QueueMessage
    visible_at: float


class InMemoryMessageQueue(MessageQueue):
    """Lease-based in-memory queue.

    Data is not persisted across process restarts.
    """

    def __init__(self) -> None:
        self._queues: DefaultDict[str, "OrderedDict[int, _Entry]"] = defaultdict(OrderedDict)
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def publish(
        self, queue: str, payload: Dict[str, Any], delay: float = 0.0
    ) -> int:
        async with self._lock:
            msg_id = next(self._ids)
            message = QueueMessage(
                msg_id=msg_id,
                queue=queue,
                payload=payload,
                enqueued_at=datetime.now(timezone.utc),
            )
            self._queues[queue][msg_id] = _Entry(message, time.monotonic() + delay)
            return msg_id

    async def read_messages(
        self, queue: str, n: int, visibility_timeout: float
    ) -> List[QueueMessage]:
        now = time.monotonic()
        leased: List[QueueMessage] = []
        async with self._lock:
            for entry in self._queues[queue].values():
                if len(leased) >= n:
                    break
                if entry.visible_at > now:
                    continue
                entry.visible_at = now + visibility_timeout
                entry.message.read_count += 1
                leased.append(entry.message.model_copy())
        return leased

    async def ack_message(self, queue: str, msg_id: int) -> bool:
        async with self._lock:
            self._queues[queue].pop(msg_id, None)
        return True

    async def extend_lease(
        self, queue: str, msg_id: int, visibility_timeout: float
    ) -> bool:
        async with self._lock:
            entry = self._queues[queue].get(msg_id)
            if entry is None:
                return False
            entry.visible_at = time.monotonic() + visibility_timeout
        return True

    async def queue_length(self, queue: str) -> int:
        async with self._lock:
            return len(self._queues[queue])


class InMemoryNotifier(Notifier):
    """Wake waiters in the same event loop through ``asyncio.Event``."""

    def __init__(self) -> None:
        self._events: Dict[str, asyncio.Event] = {}

    def _event(self, queue: str) -> asyncio.Event:
        event = self._events.get(queue)
        if event is None:
            event = self._events[queue] = asyncio.Event()
        return event

    async def notify(self, queue: str, message: Optional[str] = None) -> None:
        self._event(queue).set()

    async def wait(self, queue: str, timeout: float) -> bool:
        event = self._event(queue)
        try:
            await asyncio.wait_for(event.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            event.clear()
