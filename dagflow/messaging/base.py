"""Base interfaces for the durable queue and the notify channel."""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class QueueMessage(BaseModel):
    """A message leased from a durable queue."""

    msg_id: int
    queue: str
    payload: Dict[str, Any]
    enqueued_at: datetime
    read_count: int = 0


class MessageQueue(metaclass=abc.ABCMeta):
    """Durable, lease-based queue with at-least-once delivery.

    A message returned by ``read_messages`` stays invisible to other readers
    until it is acknowledged or its visibility timeout expires, after which it
    is handed out again.
    """

    async def connect(self) -> None:
        """Open connection to the backing store (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backing store (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(
        self, queue: str, payload: Dict[str, Any], delay: float = 0.0
    ) -> int:
        """Enqueue ``payload`` and return its message id."""
        raise NotImplementedError

    @abc.abstractmethod
    async def read_messages(
        self, queue: str, n: int, visibility_timeout: float
    ) -> List[QueueMessage]:
        """Lease up to ``n`` visible messages for ``visibility_timeout`` seconds."""
        raise NotImplementedError

    @abc.abstractmethod
    async def ack_message(self, queue: str, msg_id: int) -> bool:
        """Mark a message delivered. Unknown or repeated ids still succeed."""
        raise NotImplementedError

    @abc.abstractmethod
    async def extend_lease(
        self, queue: str, msg_id: int, visibility_timeout: float
    ) -> bool:
        """Keep a leased message invisible for ``visibility_timeout`` more seconds.

        Returns ``False`` when the message is gone (acknowledged or unknown).
        """
        raise NotImplementedError

    async def queue_length(self, queue: str) -> int:
        """Number of unacknowledged messages (leased or not)."""
        raise NotImplementedError


class Notifier(metaclass=abc.ABCMeta):
    """Best-effort wake-up channel layered over the durable queue.

    A missed notification only delays discovery until the next poll.
    """

    @abc.abstractmethod
    async def notify(self, queue: str, message: Optional[str] = None) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def wait(self, queue: str, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds; ``True`` if a notification arrived."""
        raise NotImplementedError

    async def close(self) -> None:
        pass
