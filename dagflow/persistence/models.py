"""Data models for persisted run state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from ..errors import ErrorInfo

RunStatus = Literal["pending", "in_progress", "completed", "failed", "timeout"]
StepStatus = Literal["pending", "ready", "running", "completed", "failed", "retrying"]

TERMINAL_RUN_STATUSES = frozenset({"completed", "failed", "timeout"})
TERMINAL_STEP_STATUSES = frozenset({"completed", "failed"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunRecord(BaseModel):
    """One execution of a workflow against a specific input."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow: str
    input: Dict[str, Any] = Field(default_factory=dict)
    status: RunStatus = "pending"
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    result: Optional[Any] = None
    error: Optional[ErrorInfo] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StepRecord(BaseModel):
    """State of one step within a run."""

    run_id: str
    slug: str
    description: str = ""
    status: StepStatus = "pending"
    attempt_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[Any] = None
    error: Optional[ErrorInfo] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000


class StepDependency(BaseModel):
    """Directed edge: ``step_slug`` depends on ``depends_on_step``."""

    run_id: str
    step_slug: str
    depends_on_step: str
