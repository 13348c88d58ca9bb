"""Task worker: executes step handlers for requests read from the durable queue."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from typing import Any, Dict, Iterable, Optional, Set

from pydantic import ValidationError as PydanticValidationError
from pydantic_core import to_jsonable_python

from .config import DagflowConfig
from .contracts import Envelope, QueueNames, TaskRequest, TaskResult
from .definition import WorkflowDefinition
from .errors import (
    InfrastructureError,
    PermanentTaskFailure,
    TaskTimeout,
    ValidationError,
    describe_exception,
    is_retryable,
)
from .messaging import Messaging
from .messaging.base import QueueMessage

logger = logging.getLogger(__name__)


def normalize_output(output: Any) -> Any:
    """Convert a handler result into plain JSON data (sets and tuples become lists)."""
    try:
        return to_jsonable_python(output)
    except Exception as exc:
        raise ValidationError(
            f"Handler output is not serialisable: {exc}",
            details={"type": type(output).__name__},
        ) from exc


async def call_handler(handler: Any, payload: Dict[str, Any]) -> Any:
    """Run a sync or async handler; sync handlers run in a worker thread."""
    if inspect.iscoroutinefunction(handler):
        result = await handler(payload)
    else:
        result = await asyncio.to_thread(handler, payload)
    if inspect.isawaitable(result):
        result = await result
    return result


class TaskWorker:
    """Consumes ``task_requests:<workflow>`` queues and answers on ``reply_to``.

    A request stays leased while its handler runs. The result is published
    before the request is acknowledged, so a crash in between causes a
    redelivery rather than a lost result.
    """

    def __init__(
        self,
        messaging: Messaging,
        workflows: Iterable[WorkflowDefinition],
        config: DagflowConfig,
        *,
        concurrency: Optional[int] = None,
        worker_id: Optional[str] = None,
    ) -> None:
        self._messaging = messaging
        self._workflows: Dict[str, WorkflowDefinition] = {wf.name: wf for wf in workflows}
        self._config = config
        self._concurrency = concurrency or config.get_run_setting("max_parallel")
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._semaphore = asyncio.Semaphore(self._concurrency)
        self._tasks: Set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self.processed = 0

    @property
    def queues(self) -> list[str]:
        return [QueueNames.task_requests(name) for name in self._workflows]

    def stop(self, cancel_running: bool = False) -> None:
        """Stop polling; optionally cancel handlers that are still running.

        Cancelled requests are not acknowledged and will be redelivered once
        their lease expires.
        """
        self._stopping.set()
        if cancel_running:
            for task in self._tasks:
                task.cancel()

    def _visibility_timeout(self, timeout_ms: Optional[int] = None) -> float:
        """Lease in seconds covering a handler that runs up to ``timeout_ms``."""
        execution = self._config.execution
        longest = max(execution.task_timeout, timeout_ms or 0)
        return max(execution.visibility_timeout, longest * 2) / 1000

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start consuming requests until ``stop`` is called.

        Args:
            lifespan: Maximum time in seconds to keep running. If None, runs
                until stopped.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        poll = self._config.execution.poll_interval / 1000
        logger.info(f"Worker {self.worker_id} consuming {self.queues}")
        try:
            while not self._stopping.is_set():
                if deadline is not None and loop.time() >= deadline:
                    break
                received = False
                for queue in self.queues:
                    free = self._concurrency - len(self._tasks)
                    if free <= 0:
                        break
                    wait = poll if len(self.queues) == 1 else 0
                    messages = await self._messaging.receive(
                        queue,
                        n=free,
                        wait=wait,
                        visibility_timeout=self._visibility_timeout(),
                    )
                    for message in messages:
                        received = True
                        self._spawn(queue, message)
                if not received:
                    if len(self._tasks) >= self._concurrency:
                        await asyncio.wait(
                            self._tasks, timeout=poll, return_when=asyncio.FIRST_COMPLETED
                        )
                    elif len(self.queues) != 1:
                        await asyncio.sleep(poll)
        finally:
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.info(f"Worker {self.worker_id} stopped after {self.processed} task(s)")

    def _spawn(self, queue: str, message: QueueMessage) -> None:
        task = asyncio.create_task(self._process(queue, message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, queue: str, message: QueueMessage) -> None:
        async with self._semaphore:
            try:
                envelope = Envelope.from_dict(message.payload)
                request = TaskRequest.model_validate(envelope.payload)
            except PydanticValidationError as exc:
                logger.error(f"Dropping malformed message {message.msg_id} on {queue}: {exc}")
                await self._messaging.ack_message(queue, message.msg_id)
                return

            lease = self._visibility_timeout(request.timeout_ms)
            if lease > self._visibility_timeout():
                try:
                    await self._messaging.extend_lease(queue, message.msg_id, lease)
                except InfrastructureError as exc:
                    logger.warning(f"Could not extend lease of {envelope.correlation_id}: {exc}")

            result = await self.handle(request)
            try:
                if envelope.reply_to:
                    reply = Envelope(
                        correlation_id=envelope.correlation_id,
                        kind="task_result",
                        payload=result.model_dump(mode="json"),
                    )
                    await self._messaging.send_envelope(envelope.reply_to, reply)
                else:
                    logger.warning(f"Request {envelope.correlation_id} has no reply_to")
                await self._messaging.ack_message(queue, message.msg_id)
            except InfrastructureError as exc:
                # left unacknowledged; redelivered after the lease expires
                logger.error(f"Could not complete request {envelope.correlation_id}: {exc}")
                return
            self.processed += 1

    async def handle(self, request: TaskRequest) -> TaskResult:
        """Execute one task attempt and describe its outcome."""
        started = time.monotonic()
        common = dict(
            run_id=request.run_id,
            step=request.step,
            task_index=request.task_index,
            attempt=request.attempt,
            worker_id=self.worker_id,
        )
        workflow = self._workflows.get(request.workflow)
        step = None
        if workflow is not None:
            step = next((s for s in workflow.steps if s.id == request.step), None)
        if step is None or step.handler is None:
            error = PermanentTaskFailure(
                f"No handler registered for {request.workflow}.{request.step}",
                details={"workflow": request.workflow, "step": request.step},
            )
            return TaskResult(status="failed", error=error.to_info(), retryable=False, **common)

        logger.debug(
            f"Running {request.workflow}.{request.step}[{request.task_index}] "
            f"attempt {request.attempt}"
        )
        try:
            output = await asyncio.wait_for(
                call_handler(step.handler, request.input), request.timeout_ms / 1000
            )
            output = normalize_output(output)
        except asyncio.TimeoutError:
            error = TaskTimeout(
                f"Step {request.step} timed out after {request.timeout_ms}ms",
                details={"timeout_ms": request.timeout_ms},
            )
            return TaskResult(
                status="failed",
                error=error.to_info(),
                retryable=True,
                duration_ms=(time.monotonic() - started) * 1000,
                **common,
            )
        except Exception as exc:
            logger.warning(f"Step {request.step} attempt {request.attempt} failed: {exc}")
            return TaskResult(
                status="failed",
                error=describe_exception(exc),
                retryable=is_retryable(exc),
                duration_ms=(time.monotonic() - started) * 1000,
                **common,
            )

        return TaskResult(
            status="completed",
            output=output,
            duration_ms=(time.monotonic() - started) * 1000,
            **common,
        )


__all__ = ["TaskWorker", "call_handler", "normalize_output"]
