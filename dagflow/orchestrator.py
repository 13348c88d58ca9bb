"""Goal decomposition into validated task graphs, and task graphs into workflows."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
from typing import Any, Callable, Mapping, Optional

from .config import DagflowConfig
from .decomposers import (
    DecomposerLike,
    TemplateDecomposer,
    decomposer_config_type,
    goal_text,
    run_decomposer,
)
from .definition import StepDefinition, WorkflowDefinition
from .errors import DagflowError, DecompositionError, ValidationError
from .events import EventPublisher
from .graph import TaskGraph, build_task_graph

logger = logging.getLogger(__name__)


def generate_goal_id(goal: Any) -> str:
    text = goal_text(goal)
    if text is None:
        text = repr(goal)
    return "goal_" + hashlib.md5(text.encode()).hexdigest()[:8]


def workflow_slug(goal: Any, max_length: int = 40) -> str:
    """Lower-case identifier derived from the goal text."""
    text = goal_text(goal) or ""
    slug = re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")
    return slug[:max_length].rstrip("_") or "workflow"


def generate_workflow_name(goal: Any) -> str:
    return f"dagflow_{workflow_slug(goal)}_{int(time.time() * 1000)}"


async def decompose_goal(
    goal: Any,
    decomposer: Optional[DecomposerLike] = None,
    *,
    config: DagflowConfig,
    events: Optional[EventPublisher] = None,
    **opts: Any,
) -> TaskGraph:
    """Decompose ``goal`` and validate the result into a ``TaskGraph``.

    Limits come from the decomposer-type section of the configuration
    (``max_depth``, ``timeout``, ``parallel_threshold``); any of them can be
    overridden through ``opts``. Raises ``DecompositionError`` when the
    decomposer fails or times out, and the graph validation errors when the
    tasks do not form an acceptable DAG.
    """
    decomposer = decomposer or TemplateDecomposer()
    decomposer_type = opts.get("decomposer_type") or decomposer_config_type(decomposer, goal)
    if decomposer_type in config.decomposers:
        limits = config.get_decomposer_config(decomposer_type)
    else:
        limits = {
            "max_depth": config.max_depth,
            "timeout": config.timeout,
            "parallel_threshold": config.max_parallel,
        }
    for key in ("max_depth", "timeout", "parallel_threshold"):
        if opts.get(key) is not None:
            limits[key] = opts[key]

    goal_id = generate_goal_id(goal)
    logger.info(f"Decomposing goal {goal_id} with {decomposer_type} limits {limits}")
    if events is not None:
        await events.decomposition(
            goal_id, "started", {"goal": goal_text(goal), "max_depth": limits["max_depth"]}
        )

    try:
        tasks = await asyncio.wait_for(
            run_decomposer(decomposer, goal), limits["timeout"] / 1000
        )
        graph = build_task_graph(
            tasks,
            limits["max_depth"],
            parallel_threshold=limits["parallel_threshold"],
            decomposer_type=decomposer_type,
            goal=goal_text(goal),
        )
    except asyncio.TimeoutError:
        error: DagflowError = DecompositionError(
            f"Decomposition timed out after {limits['timeout']}ms",
            details={"goal_id": goal_id},
        )
        await _report_failure(events, goal_id, error)
        raise error from None
    except DagflowError as exc:
        await _report_failure(events, goal_id, exc)
        raise
    except Exception as exc:
        error = DecompositionError(
            f"Decomposer failed: {exc}", details={"exception": type(exc).__name__}
        )
        await _report_failure(events, goal_id, error)
        raise error from exc

    logger.info(f"Decomposition of {goal_id} produced {len(graph.tasks)} tasks (depth {graph.depth})")
    if events is not None:
        await events.decomposition(
            goal_id,
            "completed",
            {"task_count": len(graph.tasks), "max_depth": limits["max_depth"]},
        )
    return graph


async def _report_failure(
    events: Optional[EventPublisher], goal_id: str, error: DagflowError
) -> None:
    logger.error(f"Decomposition of {goal_id} failed: {error}")
    if events is not None:
        await events.decomposition(goal_id, "failed", {"error": str(error)})


def create_workflow(
    task_graph: TaskGraph,
    step_handlers: Mapping[str, Callable[..., Any]],
    *,
    workflow_name: Optional[str] = None,
    max_parallel: Optional[int] = None,
    retry_attempts: Optional[int] = None,
    default_handler: Optional[Callable[..., Any]] = None,
) -> WorkflowDefinition:
    """Bind every task of ``task_graph`` to its handler.

    A task with neither a handler in ``step_handlers`` nor a
    ``default_handler`` is a ``ValidationError``.
    """
    missing = sorted(
        task_id for task_id in task_graph.tasks if task_id not in step_handlers
    )
    if missing and default_handler is None:
        raise ValidationError(
            f"No handler for task(s): {missing}", details={"missing": missing}
        )

    name = workflow_name or workflow_slug(task_graph.goal)
    steps = [
        StepDefinition(
            id=task.id,
            handler=step_handlers.get(task.id, default_handler),
            depends_on=list(task.depends_on),
            description=task.description or task.id,
            timeout=task.timeout,
            retry_delay=task.retry_delay,
            retry_attempts=retry_attempts,
            depth=task_graph.depths.get(task.id),
            metadata=dict(task.metadata),
        )
        for task in task_graph.tasks.values()
    ]
    logger.info(f"Created workflow {name} with {len(steps)} steps")
    return WorkflowDefinition(
        name=name,
        steps=steps,
        max_parallel=max_parallel,
        parallel_threshold=task_graph.parallel_threshold,
        retry_attempts=retry_attempts,
        metadata={
            "goal": task_graph.goal,
            "decomposer_type": task_graph.decomposer_type,
            "depth": task_graph.depth,
        },
    )


__all__ = [
    "decompose_goal",
    "create_workflow",
    "generate_goal_id",
    "generate_workflow_name",
    "workflow_slug",
]
