"""Repository abstraction for run state persistence."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from ..errors import ValidationError
from .models import RunRecord, StepDependency, StepRecord

RUN_FIELDS = ("workflow", "input", "status", "completed_at", "result", "error", "metadata")
STEP_FIELDS = (
    "description",
    "status",
    "attempt_count",
    "started_at",
    "completed_at",
    "result",
    "error",
)


def make_dependency(
    run_id: Optional[str], step_slug: Optional[str], depends_on_step: Optional[str]
) -> StepDependency:
    """Validate the three edge fields and build the edge record.

    Self-referential edges pass; acyclicity is checked when the graph is built.
    """
    missing = [
        name
        for name, value in (
            ("run_id", run_id),
            ("step_slug", step_slug),
            ("depends_on_step", depends_on_step),
        )
        if not value
    ]
    if missing:
        raise ValidationError(
            f"Dependency is missing required field(s): {missing}",
            details={"missing": missing},
        )
    return StepDependency(
        run_id=run_id, step_slug=step_slug, depends_on_step=depends_on_step
    )


def check_fields(fields: dict[str, Any], allowed: tuple[str, ...]) -> None:
    unknown = sorted(set(fields) - set(allowed))
    if unknown:
        raise ValidationError(f"Unknown field(s): {unknown}")


class WorkflowRepository(Protocol):
    """Protocol for run state persistence backends."""

    async def create_run(self, run: RunRecord) -> RunRecord:
        """Persist a new run."""

    async def get_run(self, run_id: str) -> RunRecord | None:
        """Retrieve a run by id."""

    async def list_runs(self, limit: Optional[int] = None) -> list[RunRecord]:
        """Return persisted runs, newest first."""

    async def update_run(self, run_id: str, **fields: Any) -> None:
        """Update run columns."""

    async def create_steps(self, run_id: str, steps: list[StepRecord]) -> None:
        """Insert the steps of a run."""

    async def update_step(self, run_id: str, slug: str, **fields: Any) -> None:
        """Update step columns."""

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        """Return all steps of a run."""

    async def record_dependency(
        self, run_id: str, step_slug: str, depends_on_step: str
    ) -> StepDependency:
        """Insert a dependency edge. Edges are never updated or deleted."""

    async def find_dependencies(self, run_id: str, step_slug: str) -> set[str]:
        """Slugs ``step_slug`` depends on."""

    async def find_dependents(self, run_id: str, step_slug: str) -> set[str]:
        """Slugs depending on ``step_slug``."""

    async def list_dependencies(self, run_id: str) -> list[StepDependency]:
        """All edges of a run in insertion order."""

    async def close(self) -> None:
        """Release backend resources."""
