"""Workflow definitions: named steps bound to handlers with declared dependencies."""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError
from .graph import topological_levels

StepHandler = Callable[[Dict[str, Any]], Any]


class StepDefinition(BaseModel):
    """A DAG node and the handler that executes it."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    handler: Optional[Callable[..., Any]] = None
    depends_on: List[str] = Field(default_factory=list)
    description: str = ""
    timeout: Optional[int] = None
    retry_attempts: Optional[int] = None
    retry_delay: Optional[int] = None
    depth: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WorkflowDefinition(BaseModel):
    """Ordered, dependency-annotated list of steps.

    Steps can be added with ``add_step`` or the ``step`` decorator::

        wf = WorkflowDefinition(name="etl")

        @wf.step()
        def fetch(input):
            return [1, 2, 3]

        @wf.step(depends_on=["fetch"])
        async def double(input):
            return input["fetch"] * 2
    """

    name: str
    steps: List[StepDefinition] = Field(default_factory=list)
    max_parallel: Optional[int] = None
    parallel_threshold: Optional[int] = None
    retry_attempts: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_steps(
        cls, name: str, steps: Iterable[Any], **kwargs: Any
    ) -> "WorkflowDefinition":
        """Build from ``(id, handler[, depends_on])`` tuples, dicts or definitions."""
        definition = cls(name=name, **kwargs)
        for entry in steps:
            if isinstance(entry, StepDefinition):
                definition.steps.append(entry)
            elif isinstance(entry, dict):
                definition.steps.append(StepDefinition.model_validate(entry))
            else:
                step_id, handler, *rest = entry
                depends_on = rest[0] if rest else []
                definition.add_step(step_id, handler, depends_on=depends_on)
        return definition

    def add_step(
        self,
        step_id: str,
        handler: Optional[StepHandler],
        depends_on: Sequence[str] = (),
        **options: Any,
    ) -> StepDefinition:
        if any(s.id == step_id for s in self.steps):
            raise ValidationError(f"Duplicate step id: {step_id!r}", details={"step": step_id})
        step = StepDefinition(
            id=step_id, handler=handler, depends_on=list(depends_on), **options
        )
        self.steps.append(step)
        return step

    def step(
        self,
        step_id: Optional[str] = None,
        *,
        depends_on: Sequence[str] = (),
        **options: Any,
    ) -> Callable[[StepHandler], StepHandler]:
        """Decorator registering a function as a step."""

        def decorator(func: StepHandler) -> StepHandler:
            self.add_step(step_id or func.__name__, func, depends_on=depends_on, **options)
            return func

        return decorator

    def get_step(self, step_id: str) -> StepDefinition:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise ValidationError(f"Unknown step: {step_id!r}", details={"step": step_id})

    @property
    def step_ids(self) -> List[str]:
        return [s.id for s in self.steps]

    def dependencies(self) -> Dict[str, List[str]]:
        return {s.id: list(s.depends_on) for s in self.steps}

    def root_steps(self) -> List[str]:
        return [s.id for s in self.steps if not s.depends_on]

    def validate_graph(self) -> List[List[str]]:
        """Check ids, handlers and acyclicity; return the topological levels."""
        if not self.steps:
            raise ValidationError(f"Workflow {self.name!r} has no steps")
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValidationError(f"Duplicate step id: {step.id!r}", details={"step": step.id})
            seen.add(step.id)
            if step.handler is None or not callable(step.handler):
                raise ValidationError(
                    f"Step {step.id!r} has no handler", details={"step": step.id}
                )
        return topological_levels(self.dependencies())


__all__ = ["StepDefinition", "WorkflowDefinition", "StepHandler"]
