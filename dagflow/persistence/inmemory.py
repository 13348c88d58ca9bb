"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..errors import DuplicateRunError
from .models import RunRecord, StepDependency, StepRecord
from .repository import (
    RUN_FIELDS,
    STEP_FIELDS,
    WorkflowRepository,
    check_fields,
    make_dependency,
)


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store run state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, RunRecord] = {}
        self._steps: Dict[str, Dict[str, StepRecord]] = {}
        self._edges: List[StepDependency] = []

    async def create_run(self, run: RunRecord) -> RunRecord:
        if run.id in self._runs:
            raise DuplicateRunError(f"Run {run.id} already exists", details={"run_id": run.id})
        self._runs[run.id] = run.model_copy(deep=True)
        self._steps.setdefault(run.id, {})
        return run

    async def get_run(self, run_id: str) -> RunRecord | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, limit: Optional[int] = None) -> list[RunRecord]:
        runs = sorted(self._runs.values(), key=lambda r: r.created_at, reverse=True)
        if limit is not None:
            runs = runs[:limit]
        return [r.model_copy(deep=True) for r in runs]

    async def update_run(self, run_id: str, **fields: Any) -> None:
        check_fields(fields, RUN_FIELDS)
        run = self._runs.get(run_id)
        if run:
            self._runs[run_id] = run.model_copy(update=fields)

    async def create_steps(self, run_id: str, steps: list[StepRecord]) -> None:
        bucket = self._steps.setdefault(run_id, {})
        for step in steps:
            bucket[step.slug] = step.model_copy(deep=True)

    async def update_step(self, run_id: str, slug: str, **fields: Any) -> None:
        check_fields(fields, STEP_FIELDS)
        bucket = self._steps.get(run_id, {})
        step = bucket.get(slug)
        if step:
            bucket[slug] = step.model_copy(update=fields)

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        return [s.model_copy(deep=True) for s in self._steps.get(run_id, {}).values()]

    async def record_dependency(
        self, run_id: str, step_slug: str, depends_on_step: str
    ) -> StepDependency:
        edge = make_dependency(run_id, step_slug, depends_on_step)
        self._edges.append(edge)
        return edge

    async def find_dependencies(self, run_id: str, step_slug: str) -> set[str]:
        return {
            e.depends_on_step
            for e in self._edges
            if e.run_id == run_id and e.step_slug == step_slug
        }

    async def find_dependents(self, run_id: str, step_slug: str) -> set[str]:
        return {
            e.step_slug
            for e in self._edges
            if e.run_id == run_id and e.depends_on_step == step_slug
        }

    async def list_dependencies(self, run_id: str) -> list[StepDependency]:
        return [e for e in self._edges if e.run_id == run_id]

    async def close(self) -> None:
        pass
