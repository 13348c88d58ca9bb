"""Best-effort orchestration event broadcasts."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import DagflowConfig
from .contracts import QueueNames
from .messaging.inmemory import InMemoryMessageQueue

logger = logging.getLogger(__name__)

_QUEUE_SUFFIX = {
    "decomposition": "decomposition",
    "task": "tasks",
    "workflow": "workflows",
    "performance": "performance",
}


class EventPublisher:
    """Publish decomposition, task, workflow and performance events.

    Events go to ``<prefix>:decomposition``, ``<prefix>:tasks``,
    ``<prefix>:workflows`` and ``<prefix>:performance``. Nothing is sent when
    notifications are disabled, and a failed publish is only logged. Unless
    ``notifications.enabled`` is set explicitly, events are not published over
    an in-memory queue, where they would pile up unread.
    """

    def __init__(self, messaging: Optional[Any], config: DagflowConfig) -> None:
        self.messaging = messaging
        self.config = config

    def enabled(self, event_type: str) -> bool:
        if self.messaging is None:
            return False
        settings = self.config.notifications
        switched_on = settings.enabled
        if switched_on is None:
            queue = getattr(self.messaging, "queue", None)
            switched_on = not isinstance(queue, InMemoryMessageQueue)
        return (
            self.config.feature_enabled("notifications")
            and switched_on
            and event_type in settings.event_types
        )

    def queue_for(self, event_type: str) -> str:
        return QueueNames.events(
            self.config.notifications.queue_prefix, _QUEUE_SUFFIX[event_type]
        )

    async def _publish(self, event_type: str, body: Dict[str, Any]) -> Optional[int]:
        if not self.enabled(event_type):
            return None
        body["event_type"] = event_type
        body["timestamp"] = datetime.now(timezone.utc).isoformat()
        queue = self.queue_for(event_type)
        try:
            return await self.messaging.publish(queue, body)
        except Exception as exc:
            logger.warning(f"Failed to publish {event_type} event to {queue}: {exc}")
            return None

    async def decomposition(
        self, goal_id: str, event: str, data: Optional[Dict[str, Any]] = None
    ) -> Optional[int]:
        return await self._publish(
            "decomposition", {"goal_id": goal_id, "event": event, "data": data or {}}
        )

    async def task(
        self, task_id: str, event: str, data: Optional[Dict[str, Any]] = None
    ) -> Optional[int]:
        return await self._publish(
            "task", {"task_id": task_id, "event": event, "data": data or {}}
        )

    async def workflow(
        self, workflow_id: str, event: str, data: Optional[Dict[str, Any]] = None
    ) -> Optional[int]:
        return await self._publish(
            "workflow", {"workflow_id": workflow_id, "event": event, "data": data or {}}
        )

    async def performance(
        self, workflow_id: str, metrics: Dict[str, Any]
    ) -> Optional[int]:
        return await self._publish(
            "performance", {"workflow_id": workflow_id, "metrics": metrics}
        )


__all__ = ["EventPublisher"]
