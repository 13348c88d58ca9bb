"""PostgreSQL LISTEN/NOTIFY channel."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

import asyncpg

from .base import Notifier

logger = logging.getLogger(__name__)


class PostgresNotifier(Notifier):
    """Wake waiters through ``pg_notify`` on channels named ``dagflow_<queue>``.

    Channel names are sanitised to valid identifiers.
    """

    def __init__(self, dsn: str, channel_prefix: str = "dagflow") -> None:
        self._dsn = dsn
        self.channel_prefix = channel_prefix
        self._conn: Optional[asyncpg.Connection] = None
        self._events: Dict[str, asyncio.Event] = {}

    def _channel(self, queue: str) -> str:
        cleaned = "".join(ch if ch.isalnum() else "_" for ch in queue)
        return f"{self.channel_prefix}_{cleaned}"[:63]

    async def _connect(self) -> asyncpg.Connection:
        if self._conn is None or self._conn.is_closed():
            self._conn = await asyncpg.connect(self._dsn)
        return self._conn

    async def notify(self, queue: str, message: Optional[str] = None) -> None:
        conn = await self._connect()
        await conn.execute("SELECT pg_notify($1, $2)", self._channel(queue), message or "")

    async def wait(self, queue: str, timeout: float) -> bool:
        conn = await self._connect()
        event = self._events.get(queue)
        if event is None:
            event = self._events[queue] = asyncio.Event()

            def _on_notify(_conn, _pid, _channel, _payload) -> None:
                event.set()

            await conn.add_listener(self._channel(queue), _on_notify)
        try:
            await asyncio.wait_for(event.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            event.clear()

    async def close(self) -> None:
        if self._conn is not None and not self._conn.is_closed():
            await self._conn.close()
        self._conn = None
        self._events.clear()
