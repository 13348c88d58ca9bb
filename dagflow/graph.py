"""Task graph model: validation, cycle detection and depth computation."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field

from .errors import CycleError, DependencyError, ValidationError

logger = logging.getLogger(__name__)


class TaskSpec(BaseModel):
    """One task produced by a decomposer."""

    id: str
    description: str = ""
    depends_on: List[str] = Field(default_factory=list)
    timeout: Optional[int] = None
    retry_delay: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TaskGraph(BaseModel):
    """Validated, depth-annotated view over a list of tasks."""

    tasks: Dict[str, TaskSpec]
    depths: Dict[str, int]
    root_tasks: List[str]
    max_depth: int
    parallel_threshold: Optional[int] = None
    decomposer_type: Optional[str] = None
    goal: Any = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def depth(self) -> int:
        """Length of the longest dependency chain (roots are depth 0)."""
        return max(self.depths.values(), default=0)

    def dependents(self, task_id: str) -> List[str]:
        return [t.id for t in self.tasks.values() if task_id in t.depends_on]

    def edges(self) -> List[tuple[str, str]]:
        """Return ``(step, depends_on)`` pairs in declaration order."""
        return [(t.id, dep) for t in self.tasks.values() for dep in t.depends_on]


def topological_levels(dependencies: Mapping[str, Iterable[str]]) -> List[List[str]]:
    """Group nodes into levels using Kahn's algorithm.

    ``dependencies`` maps each node to the nodes it depends on. Nodes within a
    level have no mutual dependencies. Raises ``DependencyError`` for a
    reference to an unknown node and ``CycleError`` when no ordering exists.
    """
    predecessors: Dict[str, set[str]] = {}
    successors: Dict[str, set[str]] = {node: set() for node in dependencies}
    for node, deps in dependencies.items():
        deps = set(deps)
        unknown = sorted(d for d in deps if d not in successors)
        if unknown:
            raise DependencyError(
                f"Step {node!r} depends on unknown step(s): {unknown}",
                details={"step": node, "unknown": unknown},
            )
        if node in deps:
            raise CycleError(
                f"Step {node!r} depends on itself", details={"cycle": [node, node]}
            )
        predecessors[node] = deps
        for dep in deps:
            successors[dep].add(node)

    in_degree = {node: len(deps) for node, deps in predecessors.items()}
    queue: deque[str] = deque(node for node in dependencies if in_degree[node] == 0)
    levels: List[List[str]] = []
    visited = 0
    while queue:
        level: List[str] = []
        for _ in range(len(queue)):
            node = queue.popleft()
            level.append(node)
            visited += 1
            for succ in sorted(successors[node]):
                in_degree[succ] -= 1
                if in_degree[succ] == 0:
                    queue.append(succ)
        levels.append(level)

    if visited != len(predecessors):
        stuck = sorted(node for node, deg in in_degree.items() if deg > 0)
        raise CycleError(
            f"Graph contains a cycle (visited {visited}/{len(predecessors)} steps)",
            details={"cycle": stuck},
        )
    return levels


def compute_depths(dependencies: Mapping[str, Iterable[str]]) -> Dict[str, int]:
    depths: Dict[str, int] = {}
    for level in topological_levels(dependencies):
        for node in level:
            deps = list(dependencies[node])
            depths[node] = 1 + max(depths[d] for d in deps) if deps else 0
    return depths


def _coerce_tasks(tasks: Sequence[Any]) -> List[TaskSpec]:
    coerced: List[TaskSpec] = []
    for task in tasks:
        if isinstance(task, TaskSpec):
            coerced.append(task)
        elif isinstance(task, Mapping):
            coerced.append(TaskSpec.model_validate(task))
        else:
            raise ValidationError(f"Invalid task descriptor: {task!r}")
    return coerced


def build_task_graph(
    tasks: Sequence[Any],
    max_depth: int,
    *,
    parallel_threshold: Optional[int] = None,
    decomposer_type: Optional[str] = None,
    goal: Any = None,
) -> TaskGraph:
    """Validate ``tasks`` and build a ``TaskGraph``.

    Duplicate ids are a ``ValidationError``; unknown dependencies a
    ``DependencyError``; self references and cycles a ``CycleError``. A graph
    deeper than ``max_depth`` is rejected with a ``ValidationError``.
    """
    specs = _coerce_tasks(tasks)
    if not specs:
        raise ValidationError("Decomposition produced no tasks")

    seen: set[str] = set()
    for spec in specs:
        if not spec.id:
            raise ValidationError("Task id must not be empty")
        if spec.id in seen:
            raise ValidationError(f"Duplicate task id: {spec.id!r}", details={"task": spec.id})
        seen.add(spec.id)

    dependencies = {spec.id: spec.depends_on for spec in specs}
    depths = compute_depths(dependencies)
    deepest = max(depths.values(), default=0)
    if deepest > max_depth:
        raise ValidationError(
            f"Task graph depth {deepest} exceeds max_depth {max_depth}",
            details={"depth": deepest, "max_depth": max_depth},
        )

    roots = [spec.id for spec in specs if not spec.depends_on]
    if parallel_threshold is not None and len(roots) > parallel_threshold:
        logger.info(
            f"{len(roots)} root tasks exceed parallel_threshold={parallel_threshold}; "
            "root dispatch will be throttled"
        )

    return TaskGraph(
        tasks={spec.id: spec for spec in specs},
        depths=depths,
        root_tasks=roots,
        max_depth=max_depth,
        parallel_threshold=parallel_threshold,
        decomposer_type=decomposer_type,
        goal=goal,
    )


__all__ = [
    "TaskSpec",
    "TaskGraph",
    "topological_levels",
    "compute_depths",
    "build_task_graph",
]
