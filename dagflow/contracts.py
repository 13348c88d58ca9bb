"""Message contracts exchanged over dagflow queues."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from .errors import ErrorInfo


class QueueNames:
    """Named durable queues, one per channel."""

    TASK_REQUESTS = "task_requests"
    TASK_RESULTS = "task_results"
    APPROVAL_REQUESTS = "approval_requests"
    APPROVAL_DECISIONS = "approval_decisions"
    RULE_UPDATES = "rule_updates"

    @staticmethod
    def task_requests(workflow_name: str) -> str:
        return f"{QueueNames.TASK_REQUESTS}:{workflow_name}"

    @staticmethod
    def task_results(run_id: str) -> str:
        return f"{QueueNames.TASK_RESULTS}:{run_id}"

    @staticmethod
    def events(prefix: str, event_type: str) -> str:
        return f"{prefix}:{event_type}"


class Envelope(BaseModel):
    """Structured map carried by every queue message.

    ``correlation_id`` ties a reply to its request; ``reply_to`` names the
    queue a consumer should answer on.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    reply_to: Optional[str] = None
    kind: str = "event"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Dict[str, Any] = Field(default_factory=dict)
    spec_version: str = "1.0"

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Envelope":
        return cls.model_validate(data)


class TaskRequest(BaseModel):
    """Ask a worker to execute one attempt of one task of a step."""

    run_id: str
    workflow: str
    step: str
    task_index: int = 0
    attempt: int = 1
    timeout_ms: int
    input: Dict[str, Any] = Field(default_factory=dict)

    def correlation_id(self) -> str:
        return f"{self.run_id}:{self.step}:{self.task_index}:{self.attempt}"


class TaskResult(BaseModel):
    """Outcome of one task attempt, sent back on the request's ``reply_to``."""

    run_id: str
    step: str
    task_index: int = 0
    attempt: int = 1
    status: Literal["completed", "failed"]
    output: Any = None
    error: Optional[ErrorInfo] = None
    retryable: bool = True
    duration_ms: Optional[float] = None
    worker_id: Optional[str] = None


__all__ = ["QueueNames", "Envelope", "TaskRequest", "TaskResult"]
