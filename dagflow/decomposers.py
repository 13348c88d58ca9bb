"""Goal decomposers.

A decomposer turns a goal into an ordered list of task descriptors
``{"id", "description", "depends_on"}``. The built-in ``TemplateDecomposer``
classifies goal text by keyword and expands a fixed template; any object with
a ``decompose(goal)`` method (sync or async) or a plain callable can be used
instead.
"""

from __future__ import annotations

import inspect
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field
from pydantic_ai import Agent

from .errors import DecompositionError
from .graph import TaskSpec

logger = logging.getLogger(__name__)

TaskDescriptor = Dict[str, Any]

GENERIC = "generic"

# Checked in order; the first match wins.
CATEGORY_PATTERNS: List[tuple[str, re.Pattern[str]]] = [
    (
        "ml_pipeline",
        re.compile(r"\b(ml|machine learning|model|models|training|neural)\b"),
    ),
    (
        "data_pipeline",
        re.compile(r"\b(data|etl|elt|pipeline|ingest\w*|warehouse)\b"),
    ),
    ("microservices", re.compile(r"\b(micro-?services?|service mesh)\b")),
    ("authentication", re.compile(r"\b(auth\w*|login|sign[- ]?up|signup)\b")),
    ("deployment", re.compile(r"\b(deploy\w*|release|rollout)\b")),
]

# Decomposer config section applied to each category.
CATEGORY_CONFIG_TYPES = {
    "authentication": "simple",
    "deployment": "microservices",
    "microservices": "microservices",
    "data_pipeline": "data_pipeline",
    "ml_pipeline": "ml_pipeline",
    GENERIC: "simple",
}


def _chain(*steps: tuple[str, str]) -> List[TaskDescriptor]:
    tasks: List[TaskDescriptor] = []
    previous: Optional[str] = None
    for task_id, description in steps:
        tasks.append(
            {
                "id": task_id,
                "description": description,
                "depends_on": [previous] if previous else [],
            }
        )
        previous = task_id
    return tasks


def _task(task_id: str, description: str, *depends_on: str) -> TaskDescriptor:
    return {"id": task_id, "description": description, "depends_on": list(depends_on)}


TEMPLATES: Dict[str, List[TaskDescriptor]] = {
    "authentication": _chain(
        ("validate_input", "Validate user input"),
        ("hash_password", "Hash the user's password"),
        ("create_user", "Create the user record"),
        ("send_welcome", "Send a welcome message"),
    ),
    "deployment": _chain(
        ("check_prerequisites", "Check deployment prerequisites"),
        ("build_artifacts", "Build release artifacts"),
        ("run_tests", "Run the test suite against the artifacts"),
        ("deploy_services", "Deploy services to the target environment"),
        ("verify_deployment", "Verify the deployment is healthy"),
    ),
    "microservices": [
        _task("setup_infrastructure", "Provision shared infrastructure"),
        _task("design_service_contracts", "Design service APIs and contracts"),
        _task(
            "setup_service_registry",
            "Set up service discovery and registry",
            "setup_infrastructure",
        ),
        _task(
            "implement_user_service",
            "Implement the user service",
            "setup_service_registry",
            "design_service_contracts",
        ),
        _task(
            "implement_order_service",
            "Implement the order service",
            "setup_service_registry",
            "design_service_contracts",
        ),
        _task(
            "implement_api_gateway",
            "Implement the API gateway",
            "setup_service_registry",
            "design_service_contracts",
        ),
        _task(
            "configure_service_mesh",
            "Configure service-to-service networking",
            "setup_service_registry",
        ),
        _task(
            "deploy_services",
            "Deploy all services",
            "implement_user_service",
            "implement_order_service",
            "implement_api_gateway",
            "configure_service_mesh",
        ),
        _task("verify_service_health", "Verify service health checks", "deploy_services"),
    ],
    "data_pipeline": [
        _task("identify_sources", "Identify data sources"),
        _task("define_schema", "Define the target schema"),
        _task("extract_source_data", "Extract data from sources", "identify_sources"),
        _task(
            "validate_extracted_data",
            "Validate extracted data against the schema",
            "extract_source_data",
            "define_schema",
        ),
        _task("transform_records", "Transform records", "validate_extracted_data"),
        _task("enrich_records", "Enrich records with reference data", "validate_extracted_data"),
        _task(
            "load_warehouse",
            "Load records into the warehouse",
            "transform_records",
            "enrich_records",
        ),
        _task("build_quality_checks", "Build data quality checks", "define_schema"),
        _task("schedule_pipeline", "Schedule recurring pipeline runs", "build_quality_checks"),
    ],
    "ml_pipeline": [
        _task("collect_training_data", "Collect training data"),
        _task("define_model_objective", "Define the model objective and metrics"),
        _task("clean_training_data", "Clean training data", "collect_training_data"),
        _task("engineer_features", "Engineer features", "clean_training_data"),
        _task(
            "select_model_architecture",
            "Select a model architecture",
            "define_model_objective",
        ),
        _task(
            "train_model",
            "Train the model",
            "engineer_features",
            "select_model_architecture",
        ),
        _task("evaluate_model", "Evaluate the trained model", "train_model"),
        _task("tune_hyperparameters", "Tune hyperparameters", "train_model"),
        _task(
            "deploy_model",
            "Deploy the model for serving",
            "evaluate_model",
            "tune_hyperparameters",
        ),
    ],
    GENERIC: _chain(
        ("analyze_goal", "Analyze the goal"),
        ("plan_execution", "Plan the execution"),
        ("execute_plan", "Execute the plan"),
        ("verify_completion", "Verify the goal was achieved"),
    ),
}


def goal_text(goal: Any) -> Optional[str]:
    """Return the text of ``goal``, or ``None`` when it has none.

    Mappings and objects contribute their ``description`` or ``goal`` field.
    """
    if isinstance(goal, str):
        return goal
    if isinstance(goal, Mapping):
        value = goal.get("description") or goal.get("goal")
    else:
        value = getattr(goal, "description", None) or getattr(goal, "goal", None)
    return value if isinstance(value, str) else None


def classify_goal(goal: Any) -> str:
    text = goal_text(goal)
    if not text:
        return GENERIC
    lowered = text.lower()
    for category, pattern in CATEGORY_PATTERNS:
        if pattern.search(lowered):
            return category
    return GENERIC


def template_tasks(category: str) -> List[TaskDescriptor]:
    """Return a fresh copy of the template for ``category``."""
    try:
        template = TEMPLATES[category]
    except KeyError:
        raise DecompositionError(f"Unknown template category: {category!r}") from None
    return [
        {"id": t["id"], "description": t["description"], "depends_on": list(t["depends_on"])}
        for t in template
    ]


def split_goals(goal: Any) -> List[Any]:
    """Split a compound goal on ``;`` or newlines into independent sub-goals."""
    if isinstance(goal, (list, tuple)):
        return list(goal)
    text = goal_text(goal)
    if text is None:
        return [goal]
    parts = [part.strip() for part in re.split(r"[;\n]", text)]
    return [part for part in parts if part] or [text]


class TemplateDecomposer:
    """Rule-based decomposer expanding keyword-matched templates.

    When ``category`` is set only that category is recognised; other goals
    fall back to the generic template.
    """

    def __init__(self, category: Optional[str] = None) -> None:
        if category is not None and category not in TEMPLATES:
            raise DecompositionError(f"Unknown template category: {category!r}")
        self.category = category

    def categorize(self, goal: Any) -> str:
        detected = classify_goal(goal)
        if self.category is not None and detected != self.category:
            return GENERIC
        return detected

    def config_type(self, goal: Any) -> str:
        """Decomposer configuration section used for ``goal``."""
        return CATEGORY_CONFIG_TYPES[self.categorize(goal)]

    def decompose(self, goal: Any) -> List[TaskDescriptor]:
        category = self.categorize(goal)
        logger.debug(f"Goal classified as {category}")
        return template_tasks(category)

    def decompose_many(self, goal: Any) -> List[List[TaskDescriptor]]:
        return [self.decompose(sub_goal) for sub_goal in split_goals(goal)]


class DecomposedTasks(BaseModel):
    """Structured output expected from an agent-assisted decomposer."""

    tasks: List[TaskSpec] = Field(default_factory=list)


DEFAULT_AGENT_INSTRUCTIONS = (
    "Break the user's goal into a small set of concrete tasks. Give every task "
    "a short snake_case id, a one-line description and the ids of the tasks it "
    "depends on. The dependencies must form a directed acyclic graph."
)


class AgentDecomposer:
    """Decompose goals with a pydantic-ai agent returning ``DecomposedTasks``."""

    def __init__(self, agent: Any, config_type: str = "simple") -> None:
        self.agent = agent
        self._config_type = config_type

    @classmethod
    def from_model(
        cls,
        model: str,
        instructions: str = DEFAULT_AGENT_INSTRUCTIONS,
        config_type: str = "simple",
    ) -> "AgentDecomposer":
        agent = Agent(model, output_type=DecomposedTasks, instructions=instructions)
        return cls(agent, config_type=config_type)

    def config_type(self, goal: Any) -> str:
        return self._config_type

    async def decompose(self, goal: Any) -> List[TaskDescriptor]:
        prompt = goal_text(goal) or repr(goal)
        result = await self.agent.run(prompt)
        output = getattr(result, "output", result)
        if isinstance(output, DecomposedTasks):
            tasks = output.tasks
        elif isinstance(output, Mapping) and "tasks" in output:
            tasks = DecomposedTasks.model_validate(output).tasks
        else:
            raise DecompositionError(
                f"Agent returned an unexpected result: {type(output).__name__}"
            )
        logger.info(f"Agent decomposed goal into {len(tasks)} tasks")
        return [task.model_dump(include={"id", "description", "depends_on"}) for task in tasks]


DecomposerLike = Union[
    TemplateDecomposer,
    AgentDecomposer,
    Callable[[Any], Union[List[Any], Awaitable[List[Any]]]],
    Any,
]


async def run_decomposer(decomposer: DecomposerLike, goal: Any) -> List[Any]:
    """Invoke ``decomposer`` on ``goal`` and await the result if needed."""
    if hasattr(decomposer, "decompose"):
        result = decomposer.decompose(goal)
    elif callable(decomposer):
        result = decomposer(goal)
    else:
        raise DecompositionError(f"Not a decomposer: {decomposer!r}")
    if inspect.isawaitable(result):
        result = await result
    if not isinstance(result, list):
        raise DecompositionError(
            f"Decomposer returned {type(result).__name__}, expected a list of tasks"
        )
    return result


def decomposer_config_type(decomposer: DecomposerLike, goal: Any) -> str:
    resolver = getattr(decomposer, "config_type", None)
    if callable(resolver):
        return resolver(goal)
    if isinstance(resolver, str):
        return resolver
    return "simple"


def get_decomposer(name: Optional[str] = None) -> TemplateDecomposer:
    """Return a template decomposer, optionally restricted to one category."""
    if name in (None, "", "auto", "template"):
        return TemplateDecomposer()
    return TemplateDecomposer(category=name)


__all__ = [
    "TEMPLATES",
    "CATEGORY_CONFIG_TYPES",
    "TemplateDecomposer",
    "AgentDecomposer",
    "DecomposedTasks",
    "classify_goal",
    "goal_text",
    "split_goals",
    "template_tasks",
    "run_decomposer",
    "decomposer_config_type",
    "get_decomposer",
]
