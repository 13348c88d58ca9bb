"""Goal-to-result composition over the in-memory and SQL queues."""

import asyncio

import pytest

from dagflow.composer import Composer, build_composer
from dagflow.config import DagflowConfig
from dagflow.decomposers import TEMPLATES, TemplateDecomposer
from dagflow.errors import (
    DecompositionError,
    PermanentTaskFailure,
    ValidationError,
    WorkflowBatchError,
)
from dagflow.messaging import InMemoryMessageQueue, InMemoryNotifier, Messaging
from dagflow.orchestrator import decompose_goal
from dagflow.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository
from dagflow.runs import get_run_status


def _config(**overrides):
    return DagflowConfig().with_overrides(
        execution={"poll_interval": 20, "retry_delay": 10, "task_timeout": 2_000},
        **overrides,
    )


def _composer(config=None, repo=None):
    return Composer(
        repo or InMemoryWorkflowRepository(),
        Messaging(InMemoryMessageQueue(), InMemoryNotifier()),
        config or _config(),
    )


def _echo_handlers(category):
    def make(task_id):
        def handler(data):
            return {"task": task_id, "goal": data.get("goal")}

        return handler

    return {task["id"]: make(task["id"]) for task in TEMPLATES[category]}


@pytest.mark.asyncio
async def test_compose_from_goal_runs_every_task():
    composer = _composer()
    output = await composer.compose_from_goal(
        "Build user authentication", _echo_handlers("authentication")
    )
    assert list(output) == ["validate_input", "hash_password", "create_user", "send_welcome"]
    assert output["send_welcome"] == {
        "task": "send_welcome",
        "goal": "Build user authentication",
    }

    runs = await composer.repository.list_runs()
    assert len(runs) == 1
    run = runs[0]
    assert run.workflow.startswith("build_user_authentication_0_")
    assert run.metadata["family"] == "build_user_authentication"
    assert run.metadata["learning"]["success_rate"] == 1.0
    await composer.close()


@pytest.mark.asyncio
async def test_execute_goal_reports_failure_in_result():
    handlers = _echo_handlers("authentication")

    def reject(data):
        raise PermanentTaskFailure("password too weak")

    handlers["hash_password"] = reject
    composer = _composer()
    result = await composer.execute_goal(
        "Build user authentication", handlers, input={"user": "ann"}
    )
    assert result.status == "failed"
    assert result.step_statuses["validate_input"] == "completed"
    assert result.step_statuses["send_welcome"] == "failed"

    run = await composer.repository.get_run(result.run_id)
    assert run.input == {"goal": "Build user authentication", "user": "ann"}

    with pytest.raises(PermanentTaskFailure) as exc:
        await composer.compose_from_goal("Build user authentication", handlers)
    assert "password too weak" in exc.value.message


@pytest.mark.asyncio
async def test_missing_handlers_and_decomposition_errors_are_raised():
    composer = _composer()
    with pytest.raises(ValidationError):
        await composer.compose_from_goal("Build user authentication", {})
    with pytest.raises(ValidationError):
        await composer.compose_from_goal(
            "Build user authentication", _echo_handlers("authentication"), max_depth=1
        )
    assert await composer.repository.list_runs() == []


@pytest.mark.asyncio
async def test_default_handler_and_non_string_goal():
    composer = _composer()
    output = await composer.compose_from_goal(
        {"action": "tidy up"}, {}, default_handler=lambda data: "done"
    )
    assert output == {
        "analyze_goal": "done",
        "plan_execution": "done",
        "execute_plan": "done",
        "verify_completion": "done",
    }


@pytest.mark.asyncio
async def test_compose_from_task_graph_with_optimization():
    config = _config()
    composer = _composer(config)
    graph = await decompose_goal("Deploy the billing service", config=config)
    handlers = _echo_handlers("deployment")

    first = await composer.compose_from_task_graph(graph, handlers)
    second = await composer.compose_from_task_graph(graph, handlers, optimize=True)
    assert first.keys() == second.keys()

    runs = await composer.repository.list_runs()
    optimized = [r for r in runs if r.metadata.get("optimization_level")]
    assert len(optimized) == 1
    assert optimized[0].metadata["family"] == "deploy_the_billing_service"


@pytest.mark.asyncio
async def test_compose_multiple_workflows():
    handlers = {**_echo_handlers("authentication"), **_echo_handlers("deployment")}
    composer = _composer()
    outputs = await composer.compose_multiple_workflows(
        "Build user authentication; Deploy the application", handlers
    )
    assert len(outputs) == 2
    assert "send_welcome" in outputs[0]
    assert "verify_deployment" in outputs[1]


@pytest.mark.asyncio
async def test_batch_fails_if_any_workflow_fails():
    handlers = {**_echo_handlers("authentication"), **_echo_handlers("deployment")}

    def broken(data):
        raise PermanentTaskFailure("tests are red")

    handlers["run_tests"] = broken
    composer = _composer()
    with pytest.raises(WorkflowBatchError) as exc:
        await composer.compose_multiple_workflows(
            "Build user authentication\nDeploy the application",
            handlers,
            TemplateDecomposer(),
        )
    assert exc.value.code == "BATCH_FAILED"
    assert len(exc.value.details["runs"]) == 1
    assert "tests are red" in exc.value.details["errors"][0]["message"]

    statuses = sorted(r.status for r in await composer.repository.list_runs())
    assert statuses == ["completed", "failed"]


@pytest.mark.asyncio
async def test_batch_waits_for_siblings_when_a_goal_cannot_be_decomposed():
    finished = []

    def decomposer(goal):
        if goal == "bad":
            raise DecompositionError("cannot plan bad")
        return [{"id": "work", "description": "Do the work", "depends_on": []}]

    async def work(data):
        await asyncio.sleep(0.2)
        finished.append(data["goal"])
        return data["goal"]

    composer = _composer()
    with pytest.raises(WorkflowBatchError) as exc:
        await composer.compose_multiple_workflows("good; bad", {"work": work}, decomposer)

    assert finished == ["good"]
    assert exc.value.details["runs"] == []
    assert exc.value.details["errors"][0]["code"] == "DECOMPOSITION_ERROR"
    assert isinstance(exc.value.__cause__, DecompositionError)
    runs = await composer.repository.list_runs()
    assert [r.status for r in runs] == ["completed"]


@pytest.mark.asyncio
async def test_sql_queue_backend_end_to_end(tmp_path):
    config = _config(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}",
        messaging={"queue_backend": "sql", "notifier": "none"},
    )
    repo = SQLiteWorkflowRepository(tmp_path / "runs.db")
    composer = build_composer(config, repository=repo)
    await composer.messaging.connect()

    result = await composer.execute_goal(
        "Build user authentication", _echo_handlers("authentication")
    )
    assert result.status == "completed"
    status = await get_run_status(repo, result.run_id)
    assert status["status"] == "completed"
    assert status["info"]["create_user"]["task"] == "create_user"
    await composer.close()
