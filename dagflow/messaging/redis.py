"""Redis pub/sub notify channel for cross-process wake-ups."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis

from .base import Notifier

logger = logging.getLogger(__name__)


class RedisNotifier(Notifier):
    """Publish queue wake-ups on Redis channels named ``dagflow:<queue>``."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        channel_prefix: str = "dagflow",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.channel_prefix = channel_prefix
        self._redis: Optional[Any] = None
        self._pubsubs: Dict[str, Any] = {}

    def _channel(self, queue: str) -> str:
        return f"{self.channel_prefix}:{queue}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def notify(self, queue: str, message: Optional[str] = None) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.publish(self._channel(queue), message or "")

    async def wait(self, queue: str, timeout: float) -> bool:
        if not self._redis:
            await self.connect()
        pubsub = self._pubsubs.get(queue)
        if pubsub is None:
            pubsub = self._redis.pubsub()
            await pubsub.subscribe(self._channel(queue))
            self._pubsubs[queue] = pubsub
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=remaining
            )
            if message is not None:
                return True

    async def close(self) -> None:
        for pubsub in self._pubsubs.values():
            try:
                await pubsub.aclose()
            except Exception as exc:  # pragma: no cover - best effort cleanup
                logger.debug(f"Ignoring pubsub close failure: {exc}")
        self._pubsubs.clear()
        if self._redis:
            await self._redis.aclose()
            self._redis = None
