"""Workflow tuning from recorded execution history."""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from .config import DagflowConfig, OptimizationLevel
from .definition import StepDefinition, WorkflowDefinition
from .errors import ValidationError
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)


class FailurePattern(BaseModel):
    task_id: str
    error: str
    occurrences: int


class PerformanceData(BaseModel):
    """Historical performance of a workflow's steps.

    ``avg_execution_times`` is in milliseconds and ``success_rates`` in
    percent, both keyed by step id.
    """

    avg_execution_times: Dict[str, float] = Field(default_factory=dict)
    success_rates: Dict[str, float] = Field(default_factory=dict)
    failure_patterns: List[FailurePattern] = Field(default_factory=list)
    run_count: int = 0


def retry_attempts_for_success_rate(
    success_rate: float, config: Optional[DagflowConfig] = None
) -> int:
    """Map a success rate in percent to a retry count.

    With the default thresholds: below 50 gives 5, below 80 gives 3, below 95
    gives 2 and anything else 1.
    """
    config = config or DagflowConfig()
    buckets = sorted(config.optimization.retry_thresholds.values(), key=lambda b: b[1])
    for _low, high, retries in buckets:
        if success_rate < high:
            return retries
    return buckets[-1][2]


def execution_bracket(avg_ms: float, config: Optional[DagflowConfig] = None) -> str:
    """Classify an average execution time as ``fast``, ``medium`` or ``slow``."""
    config = config or DagflowConfig()
    brackets = sorted(
        config.optimization.execution_time_brackets.items(), key=lambda kv: kv[1]
    )
    for name, limit in brackets:
        if avg_ms < limit:
            return name
    return brackets[-1][0]


def timeout_multiplier(
    level: OptimizationLevel, config: Optional[DagflowConfig] = None
) -> float:
    config = config or DagflowConfig()
    try:
        return getattr(config.optimization, f"timeout_multiplier_{level}")
    except AttributeError:
        raise ValidationError(f"Unknown optimization level: {level!r}") from None


async def collect_performance_data(
    repository: WorkflowRepository,
    workflow: Optional[str] = None,
    limit: Optional[int] = None,
) -> PerformanceData:
    """Aggregate step statistics over finished runs.

    A run matches ``workflow`` when either its name or its ``family``
    metadata equals it; ``None`` matches every run.
    """
    runs = [
        run
        for run in await repository.list_runs(limit=limit)
        if run.status in ("completed", "failed", "timeout")
        and (
            workflow is None
            or run.workflow == workflow
            or run.metadata.get("family") == workflow
        )
    ]
    durations: Dict[str, List[float]] = defaultdict(list)
    outcomes: Dict[str, List[bool]] = defaultdict(list)
    failures: Counter[tuple[str, str]] = Counter()
    for run in runs:
        for step in await repository.get_steps(run.id):
            if step.status == "completed":
                outcomes[step.slug].append(True)
                if step.duration_ms is not None:
                    durations[step.slug].append(step.duration_ms)
            elif step.status == "failed":
                outcomes[step.slug].append(False)
                message = step.error.message if step.error else "unknown"
                failures[(step.slug, message)] += 1

    return PerformanceData(
        avg_execution_times={
            slug: sum(values) / len(values) for slug, values in durations.items()
        },
        success_rates={
            slug: round(100.0 * sum(values) / len(values), 2)
            for slug, values in outcomes.items()
        },
        failure_patterns=[
            FailurePattern(task_id=slug, error=error, occurrences=count)
            for (slug, error), count in failures.most_common(10)
        ],
        run_count=len(runs),
    )


def analyze_structure(
    definition: WorkflowDefinition, config: Optional[DagflowConfig] = None
) -> Dict[str, Any]:
    """Entry points, bottlenecks and groups of steps sharing dependencies."""
    config = config or DagflowConfig()
    threshold = config.optimization.bottleneck_dependency_threshold
    groups: Dict[tuple[str, ...], List[str]] = defaultdict(list)
    for step in definition.steps:
        groups[tuple(sorted(step.depends_on))].append(step.id)
    return {
        "entry_points": definition.root_steps(),
        "total_steps": len(definition.steps),
        "bottlenecks": [s.id for s in definition.steps if len(s.depends_on) > threshold],
        "parallel_groups": [
            {"dependencies": list(deps), "parallel_steps": ids}
            for deps, ids in groups.items()
            if len(ids) > 1
        ],
    }


def optimize_workflow(
    definition: WorkflowDefinition,
    performance: Optional[PerformanceData] = None,
    *,
    config: Optional[DagflowConfig] = None,
    level: Optional[OptimizationLevel] = None,
    max_parallel: Optional[int] = None,
    preserve_structure: Optional[bool] = None,
) -> WorkflowDefinition:
    """Return a tuned copy of ``definition``.

    Every step's timeout is scaled by the level's multiplier and, where
    history exists, its retry count follows the success-rate bucket. Step
    ids and dependencies are never changed; without ``preserve_structure``
    steps are additionally reordered so those with fewer dependencies come
    first.
    """
    config = config or DagflowConfig()
    settings = config.get_optimization_config()
    if not (config.feature_enabled("optimization") and settings["enabled"]):
        logger.info(f"Optimization disabled; {definition.name} left unchanged")
        return definition

    performance = performance or PerformanceData()
    level = level or settings["level"]
    multiplier = timeout_multiplier(level, config)
    max_parallel = max_parallel or definition.max_parallel or settings["max_parallel"]
    if preserve_structure is None:
        preserve_structure = settings["preserve_structure"]
    task_timeout = config.execution.task_timeout
    structure = analyze_structure(definition, config)
    parallel_members = {
        step_id for group in structure["parallel_groups"] for step_id in group["parallel_steps"]
    }

    steps: List[StepDefinition] = []
    for step in definition.steps:
        metadata = dict(step.metadata)
        avg_time = performance.avg_execution_times.get(step.id)
        success_rate = performance.success_rates.get(step.id)
        updates: Dict[str, Any] = {
            "timeout": round((step.timeout or task_timeout) * multiplier)
        }
        if success_rate is not None:
            updates["retry_attempts"] = retry_attempts_for_success_rate(success_rate, config)
        if avg_time is not None:
            metadata["bracket"] = execution_bracket(avg_time, config)
        if level in ("advanced", "aggressive"):
            metadata["parallel_group"] = step.id in parallel_members
        if level == "aggressive":
            metadata.update(_aggressive_hints(step, performance, config))
        metadata["optimized"] = True
        updates["metadata"] = metadata
        steps.append(step.model_copy(update=updates))

    if not preserve_structure:
        steps.sort(key=lambda s: len(s.depends_on))
    for index, step in enumerate(steps):
        step.metadata["parallel_batch"] = index // max_parallel

    logger.info(
        f"Optimized {definition.name} at level {level} (timeout x{multiplier}, "
        f"{performance.run_count} historical runs)"
    )
    return definition.model_copy(
        update={
            "steps": steps,
            "max_parallel": max_parallel,
            "metadata": {
                **definition.metadata,
                "optimization_level": level,
                "structure_preserved": preserve_structure,
                "max_parallel_enforced": max_parallel,
            },
        }
    )


def _aggressive_hints(
    step: StepDefinition, performance: PerformanceData, config: DagflowConfig
) -> Dict[str, Any]:
    settings = config.optimization
    resources = settings.resource_defaults
    success_rate = performance.success_rates.get(step.id, 100.0)
    unreliable = success_rate < resources.cpu_threshold_unreliable
    failures = [p for p in performance.failure_patterns if p.task_id == step.id]
    hints: Dict[str, Any] = {
        "predicted_resources": {
            "memory_mb": resources.memory_mb_high if unreliable else resources.memory_mb_low,
            "cpu_priority": "high" if unreliable else "normal",
            "predicted_duration": performance.avg_execution_times.get(step.id),
        },
        "adaptive_timeout_multiplier": (
            settings.timeout_multiplier_aggressive
            if len(failures) > settings.failure_pattern_threshold
            else settings.timeout_multiplier_advanced
        ),
    }
    if failures:
        hints["predicted_failure_modes"] = [p.error for p in failures]
    return hints


def get_recommendations(
    definition: WorkflowDefinition,
    performance: Optional[PerformanceData] = None,
    config: Optional[DagflowConfig] = None,
) -> List[Dict[str, Any]]:
    """Suggest parallelisation, bottleneck, retry and timeout changes."""
    config = config or DagflowConfig()
    performance = performance or PerformanceData()
    structure = analyze_structure(definition, config)
    recommendations: List[Dict[str, Any]] = []

    for group in structure["parallel_groups"]:
        size = len(group["parallel_steps"])
        recommendations.append(
            {
                "type": "parallelization",
                "tasks": group["parallel_steps"],
                "suggestion": f"These {size} tasks can run in parallel",
                "priority": "high",
                "estimated_improvement": f"{size - 1}x speedup",
            }
        )

    for step_id in structure["bottlenecks"]:
        recommendations.append(
            {
                "type": "bottleneck",
                "task": step_id,
                "suggestion": "Consider splitting this task or optimizing dependencies",
                "priority": "medium",
            }
        )

    for step_id, rate in sorted(performance.success_rates.items()):
        if rate < 90.0:
            recommendations.append(
                {
                    "type": "retry",
                    "task": step_id,
                    "current_success_rate": rate,
                    "suggestion": f"Add retry logic (success rate: {rate}%)",
                    "priority": "high" if rate < 70.0 else "medium",
                }
            )

    timeouts = {s.id: s.timeout or config.execution.task_timeout for s in definition.steps}
    for step_id, avg_time in sorted(performance.avg_execution_times.items()):
        current = timeouts.get(step_id)
        if current is not None and avg_time * 1.5 > current:
            recommended = round(avg_time * 2)
            recommendations.append(
                {
                    "type": "timeout",
                    "task": step_id,
                    "current_timeout": current,
                    "recommended_timeout": recommended,
                    "suggestion": f"Increase timeout from {current}ms to {recommended}ms",
                    "priority": "low",
                }
            )

    logger.info(f"Generated {len(recommendations)} recommendations for {definition.name}")
    return recommendations


async def learn_from_execution(
    repository: WorkflowRepository,
    run_id: str,
    config: Optional[DagflowConfig] = None,
) -> Optional[Dict[str, Any]]:
    """Extract success, failure and retry patterns from a finished run.

    The patterns are stored under the run's ``learning`` metadata. Returns
    ``None`` when learning is switched off.
    """
    config = config or DagflowConfig()
    if not (config.feature_enabled("learning") and config.optimization.learning_enabled):
        return None

    run = await repository.get_run(run_id)
    if run is None:
        raise ValidationError(f"Unknown run: {run_id}", details={"run_id": run_id})
    steps = await repository.get_steps(run_id)

    successful = [
        {"task_id": s.slug, "duration_ms": s.duration_ms}
        for s in steps
        if s.status == "completed"
    ]
    failed = [
        {
            "task_id": s.slug,
            "error_message": s.error.message if s.error else None,
            "retry_count": max(s.attempt_count - 1, 0),
        }
        for s in steps
        if s.status == "failed"
    ]
    retried = [s for s in steps if s.attempt_count > 1]
    retry_success_rate = (
        round(100.0 * sum(1 for s in retried if s.status == "completed") / len(retried), 2)
        if retried
        else 100.0
    )
    total_duration = None
    if run.completed_at is not None:
        total_duration = (run.completed_at - run.created_at).total_seconds() * 1000
    finished = len(successful) + len(failed)

    patterns = {
        "run_id": run_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "successful_steps": successful,
        "failed_steps": failed,
        "performance_metrics": {
            "total_duration": total_duration,
            "retry_success_rate": retry_success_rate,
        },
        "success_rate": round(len(successful) / finished, 4) if finished else 0.0,
    }
    await repository.update_run(run_id, metadata={**run.metadata, "learning": patterns})
    logger.info(f"Stored learning patterns for run {run_id}")
    return patterns


__all__ = [
    "PerformanceData",
    "FailurePattern",
    "retry_attempts_for_success_rate",
    "execution_bracket",
    "timeout_multiplier",
    "collect_performance_data",
    "analyze_structure",
    "optimize_workflow",
    "get_recommendations",
    "learn_from_execution",
]
