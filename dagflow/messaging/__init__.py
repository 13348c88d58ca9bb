"""Durable queue messaging: backends, notifiers and the ``Messaging`` facade."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from ..config import DagflowConfig, load_config
from ..contracts import Envelope
from ..errors import InfrastructureError
from .base import MessageQueue, Notifier, QueueMessage
from .inmemory import InMemoryMessageQueue, InMemoryNotifier

logger = logging.getLogger(__name__)


class Messaging:
    """Publish/consume over a durable queue with best-effort wake-ups.

    Durability lives entirely in the queue: every ``publish`` is persisted
    first and only then announced on the notifier. A lost notification just
    delays discovery until the consumer's next poll.
    """

    def __init__(self, queue: MessageQueue, notifier: Optional[Notifier] = None) -> None:
        self.queue = queue
        self.notifier = notifier

    async def connect(self) -> None:
        try:
            await self.queue.connect()
        except Exception as exc:
            raise InfrastructureError(f"Queue connection failed: {exc}") from exc

    async def close(self) -> None:
        await self.queue.disconnect()
        if self.notifier is not None:
            await self.notifier.close()

    async def publish(
        self, queue: str, payload: Dict[str, Any], delay: float = 0.0
    ) -> int:
        """Persist ``payload`` on ``queue`` and return its message id."""
        try:
            msg_id = await self.queue.publish(queue, payload, delay=delay)
        except Exception as exc:
            raise InfrastructureError(
                f"Failed to publish to {queue!r}: {exc}", details={"queue": queue}
            ) from exc
        if self.notifier is not None and delay <= 0:
            try:
                await self.notifier.notify(queue, str(msg_id))
            except Exception as exc:
                logger.warning(f"Notification for queue {queue} failed: {exc}")
        return msg_id

    async def send_envelope(
        self, queue: str, envelope: Envelope, delay: float = 0.0
    ) -> int:
        return await self.publish(queue, envelope.to_dict(), delay=delay)

    async def read_messages(
        self, queue: str, n: int = 1, visibility_timeout: float = 30.0
    ) -> List[QueueMessage]:
        try:
            return await self.queue.read_messages(queue, n, visibility_timeout)
        except Exception as exc:
            raise InfrastructureError(
                f"Failed to read from {queue!r}: {exc}", details={"queue": queue}
            ) from exc

    async def ack_message(self, queue: str, msg_id: int) -> bool:
        """Acknowledge a message. Acking twice is not an error."""
        try:
            return await self.queue.ack_message(queue, msg_id)
        except Exception as exc:
            raise InfrastructureError(
                f"Failed to ack message {msg_id} on {queue!r}: {exc}",
                details={"queue": queue, "msg_id": msg_id},
            ) from exc

    async def extend_lease(
        self, queue: str, msg_id: int, visibility_timeout: float
    ) -> bool:
        try:
            return await self.queue.extend_lease(queue, msg_id, visibility_timeout)
        except Exception as exc:
            raise InfrastructureError(
                f"Failed to extend lease of message {msg_id} on {queue!r}: {exc}",
                details={"queue": queue, "msg_id": msg_id},
            ) from exc

    async def receive(
        self,
        queue: str,
        n: int = 1,
        wait: float = 1.0,
        visibility_timeout: float = 30.0,
    ) -> List[QueueMessage]:
        """Read up to ``n`` messages, waiting at most ``wait`` seconds for one."""
        messages = await self.read_messages(queue, n, visibility_timeout)
        if messages or wait <= 0:
            return messages
        if self.notifier is not None:
            try:
                await self.notifier.wait(queue, wait)
            except Exception as exc:
                logger.warning(f"Notifier wait on {queue} failed, polling: {exc}")
                await asyncio.sleep(wait)
        else:
            await asyncio.sleep(wait)
        return await self.read_messages(queue, n, visibility_timeout)

    async def queue_length(self, queue: str) -> int:
        return await self.queue.queue_length(queue)


def get_message_queue(
    backend: Optional[str] = None, config: Optional[DagflowConfig] = None
) -> MessageQueue:
    """Factory function to get the configured durable queue."""

    config = config or load_config()
    backend = (backend or config.messaging.queue_backend).lower()

    if backend == "inmemory":
        return InMemoryMessageQueue()
    elif backend == "sql":
        from ..db import QueueDB

        url = config.messaging.queue_url or config.database_url
        if not url:
            raise InfrastructureError("SQL queue backend requires a database URL")
        return QueueDB(url)
    else:
        raise ValueError(f"Unsupported queue backend: {backend}")


def get_notifier(
    backend: Optional[str] = None, config: Optional[DagflowConfig] = None
) -> Optional[Notifier]:
    """Factory function to get the configured notify channel (or ``None``)."""

    config = config or load_config()
    backend = (backend or config.messaging.notifier).lower()
    prefix = config.notifications.queue_prefix

    if backend == "none":
        return None
    elif backend == "inmemory":
        return InMemoryNotifier()
    elif backend == "redis":
        from .redis import RedisNotifier

        redis_conf = config.messaging.redis
        return RedisNotifier(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            channel_prefix=prefix,
        )
    elif backend == "postgres":
        from .postgres import PostgresNotifier

        dsn = config.messaging.queue_url or config.database_url
        if not dsn:
            raise InfrastructureError("Postgres notifier requires a database URL")
        return PostgresNotifier(dsn.replace("+asyncpg", ""), channel_prefix=prefix)
    else:
        raise ValueError(f"Unsupported notifier backend: {backend}")


def get_messaging(config: Optional[DagflowConfig] = None) -> Messaging:
    config = config or load_config()
    return Messaging(get_message_queue(config=config), get_notifier(config=config))


__all__ = [
    "Messaging",
    "MessageQueue",
    "Notifier",
    "QueueMessage",
    "InMemoryMessageQueue",
    "InMemoryNotifier",
    "get_message_queue",
    "get_notifier",
    "get_messaging",
]
