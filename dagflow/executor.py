"""Run executor: schedules ready steps over the durable queue.

The executor owns every step and run state transition. It persists the run,
its steps and their dependency edges, then dispatches task requests for ready
steps and consumes their results from a per-run reply queue. Readiness is
always answered by the repository's dependency edges and step statuses.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Container, Deque, Dict, List, Mapping, Optional, Set, Tuple

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .config import DagflowConfig
from .contracts import Envelope, QueueNames, TaskRequest, TaskResult
from .definition import StepDefinition, WorkflowDefinition
from .errors import (
    DagflowError,
    DuplicateRunError,
    ErrorInfo,
    InfrastructureError,
    PermanentTaskFailure,
    TaskTimeout,
    WorkflowTimeout,
)
from .events import EventPublisher
from .messaging import Messaging
from .persistence.models import RunRecord, StepRecord, TERMINAL_STEP_STATUSES, utcnow
from .persistence.repository import WorkflowRepository
from .utils.retry import compute_backoff, total_attempts
from .worker import TaskWorker

logger = logging.getLogger(__name__)

UPSTREAM_FAILED = "upstream dependency failed"


class RunResult(BaseModel):
    """Terminal outcome of one run."""

    run_id: str
    workflow: str
    status: str
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[ErrorInfo] = None
    step_statuses: Dict[str, str] = Field(default_factory=dict)
    stats: Dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"


def map_key(item: Any, taken: Container[str] = ()) -> str:
    """Key under which a fanned-out item's result is aggregated.

    Strings are used as-is, other items as sorted JSON. A key already in
    ``taken`` gets a ``#2``, ``#3`` ... suffix so every item keeps its own entry.
    """
    base = item if isinstance(item, str) else json.dumps(item, sort_keys=True)
    key = base
    n = 2
    while key in taken:
        key = f"{base}#{n}"
        n += 1
    return key


@dataclass
class _StepState:
    step: StepDefinition
    timeout_ms: int
    max_attempts: int
    retry_delay: int
    is_root: bool
    attempt: int = 0
    inputs: List[Dict[str, Any]] = field(default_factory=list)
    items: Optional[List[Any]] = None
    results: Dict[int, Any] = field(default_factory=dict)
    undispatched: Deque[int] = field(default_factory=deque)
    outstanding: Set[int] = field(default_factory=set)


class _RunContext:
    """Mutable bookkeeping for one run."""

    def __init__(
        self,
        run: RunRecord,
        definition: WorkflowDefinition,
        states: Dict[str, _StepState],
        max_parallel: int,
        root_limit: Optional[int],
        deadline: float,
    ) -> None:
        self.run = run
        self.definition = definition
        self.states = states
        self.max_parallel = max_parallel
        self.root_limit = root_limit
        self.deadline = deadline
        self.ready: Deque[str] = deque()
        self.active: Set[str] = set()
        self.in_flight: Dict[Tuple[str, int], float] = {}
        self.retries: Dict[str, float] = {}
        self.statuses: Dict[str, str] = {slug: "pending" for slug in states}
        self.outputs: Dict[str, Any] = {}
        self.first_error: Optional[ErrorInfo] = None
        self.tasks_dispatched = 0
        self.attempts = 0
        self.timed_out = False
        # Rows written by this call; nothing else may be touched on failure.
        self.run_created = False
        self.steps_created = False

    @property
    def reply_queue(self) -> str:
        return QueueNames.task_results(self.run.id)

    @property
    def request_queue(self) -> str:
        return QueueNames.task_requests(self.definition.name)

    def load(self) -> int:
        """Tasks in flight plus tasks of started steps still waiting for a slot."""
        return len(self.in_flight) + sum(
            len(self.states[slug].undispatched) for slug in self.active
        )

    def active_roots(self) -> int:
        return sum(1 for slug in self.active if self.states[slug].is_root)

    def idle(self) -> bool:
        return not (self.ready or self.active or self.in_flight or self.retries)


class Executor:
    """Execute workflow definitions with bounded parallelism, retries and timeouts."""

    def __init__(
        self,
        repository: WorkflowRepository,
        messaging: Messaging,
        config: DagflowConfig,
        *,
        events: Optional[EventPublisher] = None,
        embedded_workers: Optional[bool] = None,
    ) -> None:
        self.repository = repository
        self.messaging = messaging
        self.config = config
        self.events = events or EventPublisher(None, config)
        self.embedded_workers = (
            config.execution.embedded_workers
            if embedded_workers is None
            else embedded_workers
        )

    # ------------------------------------------------------------------
    # Public API
    async def execute(
        self,
        definition: WorkflowDefinition,
        input: Any = None,
        *,
        run_id: Optional[str] = None,
        timeout: Optional[int] = None,
        max_parallel: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_delay: Optional[int] = None,
        task_timeout: Optional[int] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> RunResult:
        """Run ``definition`` to a terminal state.

        Malformed definitions raise ``ValidationError``/``DependencyError``
        and a ``run_id`` that is already stored raises ``DuplicateRunError``,
        both before anything is persisted. Every later failure, infrastructure
        failures included, is reported through the returned ``RunResult``.
        """
        definition.validate_graph()
        execution = self.config.get_execution_config()
        run_input = _coerce_input(input)
        workflow_timeout = self.config.get_run_setting("timeout", timeout=timeout)
        parallel = self.config.get_run_setting(
            "max_parallel", max_parallel=_first_set(max_parallel, definition.max_parallel)
        )
        default_retries = self.config.get_run_setting(
            "retry_attempts",
            retry_attempts=_first_set(retry_attempts, definition.retry_attempts),
        )

        states = {
            step.id: _StepState(
                step=step,
                timeout_ms=task_timeout or step.timeout or execution["task_timeout"],
                max_attempts=total_attempts(
                    _first_set(step.retry_attempts, default_retries)
                ),
                retry_delay=_first_set(retry_delay, step.retry_delay, execution["retry_delay"]),
                is_root=not step.depends_on,
            )
            for step in definition.steps
        }
        run = RunRecord(
            id=run_id or str(uuid.uuid4()),
            workflow=definition.name,
            input=run_input,
            metadata={**definition.metadata, **(metadata or {})},
        )
        ctx = _RunContext(
            run=run,
            definition=definition,
            states=states,
            max_parallel=max(1, parallel),
            root_limit=definition.parallel_threshold,
            deadline=time.monotonic() + workflow_timeout / 1000,
        )
        started = time.monotonic()

        worker: Optional[TaskWorker] = None
        worker_task: Optional[asyncio.Task] = None
        try:
            await self._persist(ctx)
            if self.embedded_workers:
                worker = TaskWorker(
                    self.messaging, [definition], self.config, concurrency=ctx.max_parallel
                )
                worker_task = asyncio.create_task(worker.start())
            await self.events.workflow(
                run.id, "started", {"workflow": definition.name, "steps": len(states)}
            )
            await self._schedule(ctx)
        except DuplicateRunError:
            raise
        except Exception as exc:
            info = _infrastructure_info(exc)
            logger.error(f"Run {run.id} aborted: {info.message}")
            await self._abort(ctx, info)
        finally:
            if worker is not None:
                worker.stop(cancel_running=True)
            if worker_task is not None:
                await asyncio.gather(worker_task, return_exceptions=True)

        return await self._finalize(ctx, (time.monotonic() - started) * 1000)

    # ------------------------------------------------------------------
    # Persistence
    async def _persist(self, ctx: _RunContext) -> None:
        repo = self.repository
        run = ctx.run
        await repo.create_run(run)
        ctx.run_created = True
        await repo.create_steps(
            run.id,
            [
                StepRecord(
                    run_id=run.id,
                    slug=state.step.id,
                    description=state.step.description or state.step.id,
                )
                for state in ctx.states.values()
            ],
        )
        ctx.steps_created = True
        for state in ctx.states.values():
            for dep in state.step.depends_on:
                await repo.record_dependency(run.id, state.step.id, dep)
        await repo.update_run(run.id, status="in_progress")
        logger.info(f"Run {run.id} of {run.workflow} started with {len(ctx.states)} steps")

    async def _set_step(self, ctx: _RunContext, slug: str, status: str, **fields: Any) -> None:
        ctx.statuses[slug] = status
        await self.repository.update_step(ctx.run.id, slug, status=status, **fields)

    # ------------------------------------------------------------------
    # Scheduling loop
    async def _schedule(self, ctx: _RunContext) -> None:
        for slug in ctx.states:
            if not await self.repository.find_dependencies(ctx.run.id, slug):
                await self._mark_ready(ctx, slug)

        poll = self.config.execution.poll_interval / 1000
        while True:
            now = time.monotonic()
            if now >= ctx.deadline:
                await self._expire(ctx)
                return

            for slug, due in list(ctx.retries.items()):
                if due <= now:
                    del ctx.retries[slug]
                    ctx.ready.append(slug)

            await self._start_ready(ctx)
            await self._dispatch(ctx)

            if ctx.idle():
                return

            wakeups = [ctx.deadline, *ctx.in_flight.values(), *ctx.retries.values()]
            wait = max(0.0, min(poll, min(wakeups) - time.monotonic()))
            if ctx.in_flight:
                messages = await self.messaging.receive(
                    ctx.reply_queue,
                    n=max(len(ctx.in_flight), 1),
                    wait=wait,
                    visibility_timeout=self.config.execution.visibility_timeout / 1000,
                )
                for message in messages:
                    await self.messaging.ack_message(ctx.reply_queue, message.msg_id)
                    await self._on_message(ctx, message.payload)
            elif wait > 0:
                await asyncio.sleep(wait)

            await self._check_deadlines(ctx)

    async def _mark_ready(self, ctx: _RunContext, slug: str) -> None:
        await self._set_step(ctx, slug, "ready")
        ctx.ready.append(slug)

    async def _start_ready(self, ctx: _RunContext) -> None:
        deferred: Deque[str] = deque()
        while ctx.ready and ctx.load() < ctx.max_parallel:
            slug = ctx.ready.popleft()
            state = ctx.states[slug]
            if (
                state.is_root
                and ctx.root_limit is not None
                and ctx.active_roots() >= ctx.root_limit
            ):
                deferred.append(slug)
                continue
            await self._start_attempt(ctx, slug)
        deferred.extend(ctx.ready)
        ctx.ready = deferred

    async def _start_attempt(self, ctx: _RunContext, slug: str) -> None:
        state = ctx.states[slug]
        state.attempt += 1
        ctx.attempts += 1
        state.results = {}
        base = dict(ctx.run.input)
        for dep in state.step.depends_on:
            base[dep] = ctx.outputs.get(dep)

        fan_out = next(
            (dep for dep in state.step.depends_on if isinstance(ctx.outputs.get(dep), list)),
            None,
        )
        if fan_out is None:
            state.items = None
            state.inputs = [base]
        else:
            state.items = list(ctx.outputs[fan_out])
            state.inputs = [{**base, fan_out: item} for item in state.items]

        fields: Dict[str, Any] = {"attempt_count": state.attempt}
        if state.attempt == 1:
            fields["started_at"] = utcnow()
        await self._set_step(ctx, slug, "running", **fields)

        if not state.inputs:
            logger.debug(f"Step {slug} fanned out over an empty collection")
            await self._complete_step(ctx, slug, {})
            return
        ctx.active.add(slug)
        state.undispatched = deque(range(len(state.inputs)))
        state.outstanding = set(state.undispatched)

    async def _dispatch(self, ctx: _RunContext) -> None:
        for slug in list(ctx.active):
            state = ctx.states[slug]
            while state.undispatched and len(ctx.in_flight) < ctx.max_parallel:
                index = state.undispatched.popleft()
                request = TaskRequest(
                    run_id=ctx.run.id,
                    workflow=ctx.definition.name,
                    step=slug,
                    task_index=index,
                    attempt=state.attempt,
                    timeout_ms=state.timeout_ms,
                    input=state.inputs[index],
                )
                envelope = Envelope(
                    correlation_id=request.correlation_id(),
                    reply_to=ctx.reply_queue,
                    kind="task_request",
                    payload=request.model_dump(mode="json"),
                )
                await self.messaging.send_envelope(ctx.request_queue, envelope)
                grace = 2 * self.config.execution.poll_interval
                ctx.in_flight[(slug, index)] = (
                    time.monotonic() + (state.timeout_ms + grace) / 1000
                )
                ctx.tasks_dispatched += 1

    # ------------------------------------------------------------------
    # Results
    async def _on_message(self, ctx: _RunContext, payload: Dict[str, Any]) -> None:
        try:
            result = TaskResult.model_validate(Envelope.from_dict(payload).payload)
        except PydanticValidationError as exc:
            logger.error(f"Dropping malformed result on {ctx.reply_queue}: {exc}")
            return

        state = ctx.states.get(result.step)
        if (
            state is None
            or result.run_id != ctx.run.id
            or result.attempt != state.attempt
            or result.task_index not in state.outstanding
            or ctx.statuses[result.step] in TERMINAL_STEP_STATUSES
        ):
            logger.debug(
                f"Ignoring stale result for {result.step}[{result.task_index}] "
                f"attempt {result.attempt}"
            )
            return

        ctx.in_flight.pop((result.step, result.task_index), None)
        if result.status == "completed":
            state.outstanding.discard(result.task_index)
            state.results[result.task_index] = result.output
            if not state.outstanding:
                await self._complete_step(ctx, result.step, self._aggregate(state))
        else:
            error = result.error or ErrorInfo(code="TASK_ERROR", message="Task failed")
            await self._fail_attempt(ctx, result.step, error, result.retryable)

    @staticmethod
    def _aggregate(state: _StepState) -> Any:
        if state.items is None:
            return state.results.get(0)
        output: Dict[str, Any] = {}
        for i, item in enumerate(state.items):
            key = map_key(item, output)
            output[key] = state.results[i]
        return output

    async def _complete_step(self, ctx: _RunContext, slug: str, output: Any) -> None:
        state = ctx.states[slug]
        ctx.active.discard(slug)
        ctx.outputs[slug] = output
        await self._set_step(
            ctx, slug, "completed", result=output, error=None, completed_at=utcnow()
        )
        logger.info(f"Step {slug} completed (attempt {state.attempt})")
        await self.events.task(
            slug, "completed", {"run_id": ctx.run.id, "attempt": state.attempt}
        )

        dependents = await self.repository.find_dependents(ctx.run.id, slug)
        if not dependents:
            return
        statuses = {s.slug: s.status for s in await self.repository.get_steps(ctx.run.id)}
        for dependent in sorted(dependents):
            if statuses.get(dependent) != "pending":
                continue
            deps = await self.repository.find_dependencies(ctx.run.id, dependent)
            if all(statuses.get(dep) == "completed" for dep in deps):
                await self._mark_ready(ctx, dependent)

    async def _fail_attempt(
        self, ctx: _RunContext, slug: str, error: ErrorInfo, retryable: bool
    ) -> None:
        state = ctx.states[slug]
        ctx.active.discard(slug)
        for index in state.outstanding:
            ctx.in_flight.pop((slug, index), None)
        state.outstanding = set()
        state.undispatched = deque()

        if retryable and state.attempt < state.max_attempts:
            delay = compute_backoff(state.attempt, state.retry_delay)
            logger.warning(
                f"Step {slug} attempt {state.attempt}/{state.max_attempts} failed "
                f"({error.code}: {error.message}); retrying in {delay:.0f}ms"
            )
            await self._set_step(ctx, slug, "retrying", error=error)
            ctx.retries[slug] = time.monotonic() + delay / 1000
            return

        failure = PermanentTaskFailure(
            f"Step {slug} failed after {state.attempt} attempt(s): {error.message}",
            details={"step": slug, "attempts": state.attempt, "cause": error.model_dump()},
        ).to_info()
        logger.error(failure.message)
        await self._fail_step(ctx, slug, failure)
        await self._fail_dependents(ctx, slug)

    async def _fail_step(self, ctx: _RunContext, slug: str, error: ErrorInfo) -> None:
        if ctx.first_error is None:
            ctx.first_error = error
        await self._set_step(ctx, slug, "failed", error=error, completed_at=utcnow())
        await self.events.task(slug, "failed", {"run_id": ctx.run.id, "error": error.message})

    async def _fail_dependents(self, ctx: _RunContext, slug: str) -> None:
        pending = deque([slug])
        seen: Set[str] = set()
        while pending:
            current = pending.popleft()
            for dependent in sorted(await self.repository.find_dependents(ctx.run.id, current)):
                if dependent in seen:
                    continue
                seen.add(dependent)
                pending.append(dependent)
                if ctx.statuses[dependent] in TERMINAL_STEP_STATUSES:
                    continue
                if dependent in ctx.ready:
                    ctx.ready.remove(dependent)
                error = PermanentTaskFailure(
                    UPSTREAM_FAILED, details={"step": dependent, "upstream": slug}
                ).to_info()
                await self._set_step(ctx, dependent, "failed", error=error, completed_at=utcnow())

    async def _check_deadlines(self, ctx: _RunContext) -> None:
        now = time.monotonic()
        expired = [key for key, due in ctx.in_flight.items() if due <= now]
        for slug, index in expired:
            if (slug, index) not in ctx.in_flight:
                continue
            state = ctx.states[slug]
            error = TaskTimeout(
                f"No result for step {slug} within {state.timeout_ms}ms",
                details={"timeout_ms": state.timeout_ms, "task_index": index},
            ).to_info()
            await self._fail_attempt(ctx, slug, error, retryable=True)

    async def _expire(self, ctx: _RunContext) -> None:
        """Stop dispatching and fail every unfinished step."""
        ctx.timed_out = True
        error = WorkflowTimeout(
            f"Workflow {ctx.definition.name} exceeded its deadline",
            details={"run_id": ctx.run.id},
        ).to_info()
        logger.error(error.message)
        for slug, status in list(ctx.statuses.items()):
            if status not in TERMINAL_STEP_STATUSES:
                await self._set_step(ctx, slug, "failed", error=error, completed_at=utcnow())
        ctx.ready.clear()
        ctx.active.clear()
        ctx.in_flight.clear()
        ctx.retries.clear()
        ctx.first_error = error

    async def _abort(self, ctx: _RunContext, info: ErrorInfo) -> None:
        ctx.first_error = info
        for slug, status in list(ctx.statuses.items()):
            if status not in TERMINAL_STEP_STATUSES:
                ctx.statuses[slug] = "failed"
                if not ctx.steps_created:
                    continue
                try:
                    await self.repository.update_step(
                        ctx.run.id, slug, status="failed", error=info, completed_at=utcnow()
                    )
                except Exception as exc:
                    logger.warning(f"Could not record failure of step {slug}: {exc}")
        ctx.ready.clear()
        ctx.active.clear()
        ctx.in_flight.clear()
        ctx.retries.clear()

    # ------------------------------------------------------------------
    async def _finalize(self, ctx: _RunContext, duration_ms: float) -> RunResult:
        statuses = dict(ctx.statuses)
        if ctx.timed_out:
            status = "timeout"
        elif statuses and all(s == "completed" for s in statuses.values()):
            status = "completed"
        else:
            status = "failed"
        error = None if status == "completed" else ctx.first_error

        completed = sum(1 for s in statuses.values() if s == "completed")
        failed = sum(1 for s in statuses.values() if s == "failed")
        stats = {
            "duration_ms": round(duration_ms, 3),
            "steps_total": len(statuses),
            "steps_completed": completed,
            "steps_failed": failed,
            "attempts": ctx.attempts,
            "tasks_dispatched": ctx.tasks_dispatched,
            "max_parallel": ctx.max_parallel,
        }
        if ctx.run_created:
            try:
                await self.repository.update_run(
                    ctx.run.id,
                    status=status,
                    completed_at=utcnow(),
                    result=ctx.outputs if status == "completed" else None,
                    error=error,
                )
            except Exception as exc:
                logger.error(f"Could not record final state of run {ctx.run.id}: {exc}")
                if error is None:
                    status = "failed"
                    error = _infrastructure_info(exc)

        logger.info(
            f"Run {ctx.run.id} finished: {status} "
            f"({completed}/{len(statuses)} steps in {duration_ms:.0f}ms)"
        )
        await self.events.workflow(ctx.run.id, status, {"workflow": ctx.definition.name})
        await self.events.performance(ctx.run.id, stats)
        return RunResult(
            run_id=ctx.run.id,
            workflow=ctx.definition.name,
            status=status,
            output=dict(ctx.outputs),
            error=error,
            step_statuses=statuses,
            stats=stats,
        )


def _coerce_input(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return dict(value)
    return {"input": value}


def _first_set(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _infrastructure_info(exc: BaseException) -> ErrorInfo:
    if isinstance(exc, InfrastructureError):
        return exc.to_info()
    message = exc.message if isinstance(exc, DagflowError) else str(exc) or type(exc).__name__
    return InfrastructureError(
        message, details={"exception": type(exc).__name__}
    ).to_info()


__all__ = ["Executor", "RunResult", "map_key", "UPSTREAM_FAILED"]
