"""End-to-end composition: decompose a goal, persist its graph and execute it."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional

from .config import DagflowConfig, load_config
from .decomposers import DecomposerLike, TemplateDecomposer, goal_text, split_goals
from .errors import ErrorInfo, WorkflowBatchError, describe_exception, error_from_info
from .events import EventPublisher
from .executor import Executor, RunResult
from .graph import TaskGraph
from .messaging import Messaging, get_messaging
from .optimizer import collect_performance_data, learn_from_execution, optimize_workflow
from .orchestrator import create_workflow, decompose_goal, workflow_slug
from .persistence import WorkflowRepository, get_repository

logger = logging.getLogger(__name__)

Handlers = Mapping[str, Callable[..., Any]]

_DECOMPOSE_OPTIONS = ("max_depth", "parallel_threshold", "decomposer_type")
_EXECUTE_OPTIONS = ("max_parallel", "retry_attempts", "retry_delay", "task_timeout")


class Composer:
    """Chain decomposition, graph persistence and execution into one call.

    Composer calls are not retried themselves; retries happen per step inside
    the executor.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        messaging: Messaging,
        config: DagflowConfig,
        *,
        events: Optional[EventPublisher] = None,
    ) -> None:
        self.repository = repository
        self.messaging = messaging
        self.config = config
        self.events = events or EventPublisher(messaging, config)
        self.executor = Executor(repository, messaging, config, events=self.events)

    async def close(self) -> None:
        await self.messaging.close()
        await self.repository.close()

    # ------------------------------------------------------------------
    async def execute_goal(
        self,
        goal: Any,
        step_handlers: Handlers,
        decomposer: Optional[DecomposerLike] = None,
        *,
        input: Optional[Mapping[str, Any]] = None,
        workflow_timeout: Optional[int] = None,
        optimize: bool = False,
        default_handler: Optional[Callable[..., Any]] = None,
        index: int = 0,
        **opts: Any,
    ) -> RunResult:
        """Decompose and run ``goal``; execution failures stay in the result.

        Decomposition and validation errors are raised.
        """
        decompose_opts = {k: opts.pop(k) for k in _DECOMPOSE_OPTIONS if k in opts}
        graph = await decompose_goal(
            goal, decomposer, config=self.config, events=self.events, **decompose_opts
        )
        run_input = {"goal": goal_text(goal) or goal}
        run_input.update(input or {})
        return await self._run_graph(
            graph,
            step_handlers,
            input=run_input,
            workflow_timeout=workflow_timeout,
            optimize=optimize,
            default_handler=default_handler,
            index=index,
            **opts,
        )

    async def compose_from_goal(
        self,
        goal: Any,
        step_handlers: Handlers,
        decomposer: Optional[DecomposerLike] = None,
        **opts: Any,
    ) -> Dict[str, Any]:
        """Return the step outputs keyed by step id, or raise the run's error."""
        result = await self.execute_goal(goal, step_handlers, decomposer, **opts)
        return _unwrap(result)

    async def compose_from_task_graph(
        self,
        task_graph: TaskGraph,
        step_handlers: Handlers,
        *,
        input: Optional[Mapping[str, Any]] = None,
        workflow_timeout: Optional[int] = None,
        optimize: bool = False,
        default_handler: Optional[Callable[..., Any]] = None,
        **opts: Any,
    ) -> Dict[str, Any]:
        """Execute an already decomposed graph."""
        run_input = {"goal": task_graph.goal} if task_graph.goal else {}
        run_input.update(input or {})
        result = await self._run_graph(
            task_graph,
            step_handlers,
            input=run_input,
            workflow_timeout=workflow_timeout,
            optimize=optimize,
            default_handler=default_handler,
            **opts,
        )
        return _unwrap(result)

    async def compose_multiple_workflows(
        self,
        goal: Any,
        step_handlers: Handlers,
        decomposer: Optional[DecomposerLike] = None,
        **opts: Any,
    ) -> List[Dict[str, Any]]:
        """Split ``goal`` into sub-goals and run one workflow per sub-goal.

        The batch fails as a whole: if any sub-workflow does not complete, or
        raises while being decomposed, a ``WorkflowBatchError`` is raised even
        though others succeeded. Every sub-workflow has finished by then.
        """
        decomposer = decomposer or TemplateDecomposer()
        sub_goals = split_goals(goal)
        logger.info(f"Composing {len(sub_goals)} workflows")
        outcomes = await asyncio.gather(
            *[
                self.execute_goal(sub_goal, step_handlers, decomposer, index=i, **dict(opts))
                for i, sub_goal in enumerate(sub_goals)
            ],
            return_exceptions=True,
        )
        raised = [o for o in outcomes if isinstance(o, BaseException)]
        failed = [o for o in outcomes if isinstance(o, RunResult) and not o.succeeded]
        if raised or failed:
            errors = [
                (r.error or ErrorInfo(code="TASK_FAILED", message=r.status)).model_dump()
                for r in failed
            ]
            errors.extend(describe_exception(exc).model_dump() for exc in raised)
            batch_error = WorkflowBatchError(
                f"{len(failed) + len(raised)} of {len(outcomes)} workflows failed",
                details={"runs": [r.run_id for r in failed], "errors": errors},
            )
            if raised:
                raise batch_error from raised[0]
            raise batch_error
        return [o.output for o in outcomes]

    # ------------------------------------------------------------------
    async def _run_graph(
        self,
        graph: TaskGraph,
        step_handlers: Handlers,
        *,
        input: Dict[str, Any],
        workflow_timeout: Optional[int],
        optimize: bool,
        default_handler: Optional[Callable[..., Any]],
        index: int = 0,
        **opts: Any,
    ) -> RunResult:
        family = workflow_slug(graph.goal)
        definition = create_workflow(
            graph,
            step_handlers,
            workflow_name=f"{family}_{index}_{uuid.uuid4().hex[:8]}",
            max_parallel=opts.get("max_parallel"),
            retry_attempts=opts.get("retry_attempts"),
            default_handler=default_handler,
        )
        definition.metadata["family"] = family
        if optimize:
            performance = await collect_performance_data(self.repository, family)
            definition = optimize_workflow(definition, performance, config=self.config)

        result = await self.executor.execute(
            definition,
            input,
            timeout=workflow_timeout,
            **{k: opts[k] for k in _EXECUTE_OPTIONS if k in opts},
        )
        try:
            await learn_from_execution(self.repository, result.run_id, self.config)
        except Exception as exc:
            logger.warning(f"Learning from run {result.run_id} failed: {exc}")
        return result


def _unwrap(result: RunResult) -> Dict[str, Any]:
    if result.succeeded:
        return result.output
    error = result.error or ErrorInfo(code="TASK_FAILED", message=f"Run {result.status}")
    raise error_from_info(error)


def build_composer(
    config: Optional[DagflowConfig] = None,
    *,
    repository: Optional[WorkflowRepository] = None,
    messaging: Optional[Messaging] = None,
) -> Composer:
    """Create a composer wired to the configured repository and queue."""
    config = config or load_config()
    return Composer(
        repository or get_repository(config=config),
        messaging or get_messaging(config),
        config,
    )


async def compose_from_goal(
    goal: Any,
    step_handlers: Handlers,
    decomposer: Optional[DecomposerLike] = None,
    *,
    config: Optional[DagflowConfig] = None,
    **opts: Any,
) -> Dict[str, Any]:
    """One-shot helper around ``Composer.compose_from_goal``."""
    composer = build_composer(config)
    try:
        return await composer.compose_from_goal(goal, step_handlers, decomposer, **opts)
    finally:
        await composer.close()


__all__ = ["Composer", "build_composer", "compose_from_goal"]
