from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON


class QueuedMessage(SQLModel, table=True):
    """A message stored in a durable SQL queue."""

    __tablename__ = "queue_messages"

    id: Optional[int] = Field(default=None, primary_key=True)
    queue: str = Field(index=True)
    payload: dict = Field(sa_column=Column(JSON))
    enqueued_at: datetime = Field(default_factory=datetime.utcnow)
    visible_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    read_count: int = 0
    acked_at: Optional[datetime] = None
