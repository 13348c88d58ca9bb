from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel

from ..messaging.base import MessageQueue, QueueMessage
from .models import QueuedMessage


class QueueDB(MessageQueue):
    """Durable queue stored in a SQL table.

    Reads lease rows by pushing ``visible_at`` forward; concurrent readers on
    PostgreSQL skip rows locked by another reader.
    """

    def __init__(self, database_url: str) -> None:
        connect_args = (
            {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        )
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )
        self._initialised = False
        self._init_lock = asyncio.Lock()

    async def init_db(self) -> None:
        async with self._init_lock:
            if self._initialised:
                return
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            self._initialised = True

    async def connect(self) -> None:
        if not self._initialised:
            await self.init_db()

    async def disconnect(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if not self._initialised:
            await self.init_db()
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def publish(
        self, queue: str, payload: Dict[str, Any], delay: float = 0.0
    ) -> int:
        now = datetime.utcnow()
        row = QueuedMessage(
            queue=queue,
            payload=payload,
            enqueued_at=now,
            visible_at=now + timedelta(seconds=delay),
        )
        async with self.session() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
        return row.id

    async def read_messages(
        self, queue: str, n: int, visibility_timeout: float
    ) -> List[QueueMessage]:
        now = datetime.utcnow()
        stmt = (
            select(QueuedMessage)
            .where(
                QueuedMessage.queue == queue,
                QueuedMessage.acked_at.is_(None),
                QueuedMessage.visible_at <= now,
            )
            .order_by(QueuedMessage.id)
            .limit(n)
            .with_for_update(skip_locked=True)
        )
        leased: List[QueueMessage] = []
        async with self.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            for row in rows:
                row.visible_at = now + timedelta(seconds=visibility_timeout)
                row.read_count += 1
                leased.append(
                    QueueMessage(
                        msg_id=row.id,
                        queue=row.queue,
                        payload=row.payload,
                        enqueued_at=row.enqueued_at,
                        read_count=row.read_count,
                    )
                )
            await session.commit()
        return leased

    async def ack_message(self, queue: str, msg_id: int) -> bool:
        async with self.session() as session:
            row = await session.get(QueuedMessage, msg_id)
            if row is None or row.queue != queue or row.acked_at is not None:
                return True
            row.acked_at = datetime.utcnow()
            await session.commit()
        return True

    async def extend_lease(
        self, queue: str, msg_id: int, visibility_timeout: float
    ) -> bool:
        async with self.session() as session:
            row = await session.get(QueuedMessage, msg_id)
            if row is None or row.queue != queue or row.acked_at is not None:
                return False
            row.visible_at = datetime.utcnow() + timedelta(seconds=visibility_timeout)
            await session.commit()
        return True

    async def queue_length(self, queue: str) -> int:
        stmt = select(func.count()).select_from(QueuedMessage).where(
            QueuedMessage.queue == queue, QueuedMessage.acked_at.is_(None)
        )
        async with self.session() as session:
            return (await session.execute(stmt)).scalar_one()
