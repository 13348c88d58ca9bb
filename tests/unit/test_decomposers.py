"""Tests for goal decomposition."""

import asyncio
from types import SimpleNamespace

import pytest

from dagflow.config import DagflowConfig
from dagflow.decomposers import (
    AgentDecomposer,
    DecomposedTasks,
    TemplateDecomposer,
    classify_goal,
    get_decomposer,
    split_goals,
)
from dagflow.errors import CycleError, DecompositionError, ValidationError
from dagflow.graph import TaskSpec
from dagflow.orchestrator import (
    create_workflow,
    decompose_goal,
    generate_goal_id,
    generate_workflow_name,
)


@pytest.mark.parametrize(
    "goal,category",
    [
        ("Build user authentication", "authentication"),
        ("Implement login and signup", "authentication"),
        ("Deploy the billing application", "deployment"),
        ("Build a microservices architecture", "microservices"),
        ("Create a data pipeline for ETL", "data_pipeline"),
        ("Train a machine learning model", "ml_pipeline"),
        ("Build a sandwich", "generic"),
        ("", "generic"),
    ],
)
def test_classify_goal(goal, category):
    assert classify_goal(goal) == category


def test_authentication_template_is_a_chain():
    tasks = TemplateDecomposer().decompose("Build user authentication")
    assert [t["id"] for t in tasks] == [
        "validate_input",
        "hash_password",
        "create_user",
        "send_welcome",
    ]
    assert tasks[0]["depends_on"] == []
    assert tasks[3]["depends_on"] == ["create_user"]


def test_microservices_template_shape():
    tasks = TemplateDecomposer().decompose("Build a microservices architecture")
    assert len(tasks) == 9
    ids = [t["id"] for t in tasks]
    assert "setup_infrastructure" in ids
    assert "deploy_services" in ids
    roots = [t["id"] for t in tasks if not t["depends_on"]]
    assert len(roots) == 2


def test_templates_are_copied():
    first = TemplateDecomposer().decompose("Build user authentication")
    first[0]["depends_on"].append("tampered")
    second = TemplateDecomposer().decompose("Build user authentication")
    assert second[0]["depends_on"] == []


def test_restricted_decomposer_falls_back_to_generic():
    decomposer = TemplateDecomposer(category="microservices")
    tasks = decomposer.decompose("Build a sandwich")
    assert [t["id"] for t in tasks][0] == "analyze_goal"
    assert decomposer.categorize("Build user authentication") == "generic"
    assert decomposer.categorize("Build microservices") == "microservices"
    assert get_decomposer("microservices").category == "microservices"
    assert get_decomposer("auto").category is None
    with pytest.raises(DecompositionError):
        TemplateDecomposer(category="poetry")


def test_non_string_goal_uses_generic_template():
    tasks = TemplateDecomposer().decompose({"action": "do something"})
    assert [t["id"] for t in tasks] == [
        "analyze_goal",
        "plan_execution",
        "execute_plan",
        "verify_completion",
    ]
    # mapping goals with a description are classified by it
    assert classify_goal({"description": "deploy to prod"}) == "deployment"


def test_split_goals_and_decompose_many():
    assert split_goals("Build authentication; Deploy the app\nTrain a model") == [
        "Build authentication",
        "Deploy the app",
        "Train a model",
    ]
    assert split_goals("single goal") == ["single goal"]
    assert split_goals(["a", "b"]) == ["a", "b"]
    batches = TemplateDecomposer().decompose_many("Build authentication; Deploy the app")
    assert [batch[0]["id"] for batch in batches] == ["validate_input", "check_prerequisites"]


def test_goal_ids_and_names():
    assert generate_goal_id("Build authentication") == generate_goal_id(
        "Build authentication"
    )
    assert generate_goal_id("a").startswith("goal_")
    assert len(generate_goal_id("a")) == len("goal_") + 8
    assert generate_workflow_name("Build Authentication!").startswith(
        "dagflow_build_authentication_"
    )


@pytest.mark.asyncio
async def test_decompose_goal_builds_graph():
    graph = await decompose_goal("Build user authentication", config=DagflowConfig())
    assert graph.decomposer_type == "simple"
    assert graph.max_depth == 3
    assert graph.depth == 3
    assert graph.root_tasks == ["validate_input"]
    assert graph.goal == "Build user authentication"


@pytest.mark.asyncio
async def test_decompose_goal_rejects_graph_deeper_than_limit():
    with pytest.raises(ValidationError) as exc:
        await decompose_goal("Build user authentication", config=DagflowConfig(), max_depth=2)
    assert exc.value.details["depth"] == 3


@pytest.mark.asyncio
async def test_decompose_goal_with_callable_decomposers():
    def cyclic(goal):
        return [{"id": "a", "depends_on": ["b"]}, {"id": "b", "depends_on": ["a"]}]

    with pytest.raises(CycleError):
        await decompose_goal("anything", cyclic, config=DagflowConfig())

    async def broken(goal):
        raise RuntimeError("model unavailable")

    with pytest.raises(DecompositionError) as exc:
        await decompose_goal("anything", broken, config=DagflowConfig())
    assert "model unavailable" in exc.value.message

    async def slow(goal):
        await asyncio.sleep(1)
        return []

    with pytest.raises(DecompositionError) as exc:
        await decompose_goal("anything", slow, config=DagflowConfig(), timeout=50)
    assert "timed out" in exc.value.message

    with pytest.raises(DecompositionError):
        await decompose_goal("anything", lambda goal: "not a list", config=DagflowConfig())


@pytest.mark.asyncio
async def test_agent_decomposer_with_stub_agent():
    class StubAgent:
        def __init__(self, output):
            self.output = output
            self.prompts = []

        async def run(self, prompt):
            self.prompts.append(prompt)
            return SimpleNamespace(output=self.output)

    agent = StubAgent(
        DecomposedTasks(
            tasks=[
                TaskSpec(id="research", description="Research options"),
                TaskSpec(id="write", description="Write report", depends_on=["research"]),
            ]
        )
    )
    decomposer = AgentDecomposer(agent)
    graph = await decompose_goal("Write a market report", decomposer, config=DagflowConfig())
    assert agent.prompts == ["Write a market report"]
    assert graph.depths == {"research": 0, "write": 1}

    mapping_agent = StubAgent({"tasks": [{"id": "only"}]})
    tasks = await AgentDecomposer(mapping_agent).decompose("x")
    assert tasks == [{"id": "only", "description": "", "depends_on": []}]

    with pytest.raises(DecompositionError):
        await AgentDecomposer(StubAgent("free text")).decompose("x")


@pytest.mark.asyncio
async def test_create_workflow_binds_handlers():
    graph = await decompose_goal("Build user authentication", config=DagflowConfig())
    handlers = {task_id: (lambda data: task_id) for task_id in graph.tasks}
    definition = create_workflow(graph, handlers, workflow_name="auth", retry_attempts=1)
    assert definition.name == "auth"
    assert definition.step_ids == list(graph.tasks)
    assert definition.get_step("send_welcome").depends_on == ["create_user"]
    assert definition.get_step("send_welcome").depth == 3
    assert definition.retry_attempts == 1

    with pytest.raises(ValidationError) as exc:
        create_workflow(graph, {"validate_input": lambda d: d})
    assert "hash_password" in exc.value.details["missing"]

    fallback = create_workflow(graph, {}, default_handler=lambda d: None)
    assert all(step.handler is not None for step in fallback.steps)
