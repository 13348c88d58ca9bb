"""Run status queries and metrics."""

from __future__ import annotations

from typing import Any, Dict, Optional

from .errors import ErrorInfo, ValidationError
from .persistence.models import TERMINAL_RUN_STATUSES
from .persistence.repository import WorkflowRepository


async def get_run_status(repository: WorkflowRepository, run_id: str) -> Dict[str, Any]:
    """Return ``{"status", "info"}`` for a run.

    ``info`` holds the accumulated result of a completed run, the error
    descriptor of a failed or timed-out run, and a progress snapshot of a run
    that is still executing.
    """
    run = await repository.get_run(run_id)
    if run is None:
        raise ValidationError(f"Unknown run: {run_id}", details={"run_id": run_id})

    if run.status == "completed":
        info: Any = run.result or {}
    elif run.status in TERMINAL_RUN_STATUSES:
        error = run.error or ErrorInfo(code="TASK_FAILED", message=f"Run {run.status}")
        info = error.model_dump()
    else:
        steps = await repository.get_steps(run_id)
        counts: Dict[str, int] = {}
        for step in steps:
            counts[step.status] = counts.get(step.status, 0) + 1
        info = {
            "steps": {step.slug: step.status for step in steps},
            "counts": counts,
            "completed": {
                step.slug: step.result for step in steps if step.status == "completed"
            },
        }
    return {"status": run.status, "info": info}


async def run_metrics(
    repository: WorkflowRepository, run_id: str
) -> Dict[str, Optional[float]]:
    """Execution time, success/error rate and throughput of a run."""
    run = await repository.get_run(run_id)
    if run is None:
        raise ValidationError(f"Unknown run: {run_id}", details={"run_id": run_id})
    steps = await repository.get_steps(run_id)

    execution_time_ms: Optional[float] = None
    if run.completed_at is not None:
        execution_time_ms = (run.completed_at - run.created_at).total_seconds() * 1000

    total = len(steps)
    completed = sum(1 for s in steps if s.status == "completed")
    failed = sum(1 for s in steps if s.status == "failed")
    success_rate = completed / total if total else 0.0
    error_rate = failed / total if total else 0.0
    throughput = None
    if execution_time_ms:
        throughput = completed / (execution_time_ms / 1000)

    return {
        "execution_time_ms": execution_time_ms,
        "success_rate": success_rate,
        "error_rate": error_rate,
        "throughput": throughput,
        "steps_total": total,
        "steps_completed": completed,
        "steps_failed": failed,
    }


__all__ = ["get_run_status", "run_metrics"]
