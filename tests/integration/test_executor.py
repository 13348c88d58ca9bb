"""End-to-end executor runs over the in-memory queue with embedded workers."""

import asyncio

import pytest

from dagflow.config import DagflowConfig
from dagflow.definition import WorkflowDefinition
from dagflow.errors import CycleError, DuplicateRunError, PermanentTaskFailure
from dagflow.executor import UPSTREAM_FAILED, Executor
from dagflow.messaging import InMemoryMessageQueue, InMemoryNotifier, Messaging
from dagflow.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository
from dagflow.runs import get_run_status, run_metrics


def _config(**execution):
    settings = {"poll_interval": 20, "retry_delay": 10, "task_timeout": 2_000}
    settings.update(execution)
    return DagflowConfig().with_overrides(execution=settings)


def _executor(repo=None, config=None):
    repo = repo or InMemoryWorkflowRepository()
    messaging = Messaging(InMemoryMessageQueue(), InMemoryNotifier())
    return Executor(repo, messaging, config or _config()), repo


@pytest.mark.asyncio
async def test_diamond_runs_in_causal_order():
    log = []
    wf = WorkflowDefinition(name="diamond")

    def recorder(name, value):
        async def handler(data):
            log.append(("start", name))
            await asyncio.sleep(0.01)
            log.append(("end", name))
            return value

        return handler

    wf.add_step("a", recorder("a", 1))
    wf.add_step("b", recorder("b", 2), depends_on=["a"])
    wf.add_step("c", recorder("c", 3), depends_on=["a"])

    async def d(data):
        log.append(("start", "d"))
        return data["b"] + data["c"] + data["seed"]

    wf.add_step("d", d, depends_on=["b", "c"])

    executor, repo = _executor()
    result = await executor.execute(wf, {"seed": 10})

    assert result.status == "completed"
    assert result.output == {"a": 1, "b": 2, "c": 3, "d": 15}
    assert result.step_statuses == {s: "completed" for s in "abcd"}
    position = {entry: i for i, entry in enumerate(log)}
    assert position[("end", "a")] < position[("start", "b")]
    assert position[("end", "a")] < position[("start", "c")]
    assert position[("end", "b")] < position[("start", "d")]
    assert position[("end", "c")] < position[("start", "d")]

    edges = await repo.list_dependencies(result.run_id)
    assert {(e.step_slug, e.depends_on_step) for e in edges} == {
        ("b", "a"),
        ("c", "a"),
        ("d", "b"),
        ("d", "c"),
    }
    run = await repo.get_run(result.run_id)
    assert run.status == "completed"
    assert run.result == result.output
    assert run.input == {"seed": 10}

    status = await get_run_status(repo, result.run_id)
    assert status == {"status": "completed", "info": result.output}
    metrics = await run_metrics(repo, result.run_id)
    assert metrics["success_rate"] == 1.0
    assert metrics["error_rate"] == 0.0
    assert metrics["steps_completed"] == 4
    assert metrics["execution_time_ms"] > 0


@pytest.mark.asyncio
async def test_permanent_failure_propagates_to_dependents_only():
    calls = []

    def ok(name):
        def handler(data):
            calls.append(name)
            return name

        return handler

    def broken(data):
        calls.append("b")
        raise PermanentTaskFailure("schema mismatch")

    wf = WorkflowDefinition.from_steps(
        "chain",
        [
            ("a", ok("a")),
            ("b", broken, ["a"]),
            ("c", ok("c"), ["b"]),
            ("d", ok("d"), ["c"]),
            ("x", ok("x")),
        ],
    )
    executor, repo = _executor()
    result = await executor.execute(wf, retry_attempts=3)

    assert result.status == "failed"
    assert result.step_statuses == {
        "a": "completed",
        "b": "failed",
        "c": "failed",
        "d": "failed",
        "x": "completed",
    }
    assert "c" not in calls and "d" not in calls
    # permanent failures are not retried
    assert calls.count("b") == 1
    assert result.error.code == "TASK_FAILED"
    assert "schema mismatch" in result.error.message

    steps = {s.slug: s for s in await repo.get_steps(result.run_id)}
    assert steps["c"].error.message == UPSTREAM_FAILED
    assert steps["d"].error.message == UPSTREAM_FAILED
    assert steps["b"].attempt_count == 1
    assert steps["c"].attempt_count == 0

    status = await get_run_status(repo, result.run_id)
    assert status["status"] == "failed"
    assert status["info"]["code"] == "TASK_FAILED"
    metrics = await run_metrics(repo, result.run_id)
    assert metrics["error_rate"] == 0.6


@pytest.mark.asyncio
async def test_map_step_fans_out_over_list_output():
    seen = []
    wf = WorkflowDefinition(name="fanout")

    @wf.step()
    def fetch(data):
        return [1, 2, 3]

    @wf.step(depends_on=["fetch"])
    async def double(data):
        seen.append(data["fetch"])
        return data["fetch"] * 2

    @wf.step(depends_on=["double"])
    def total(data):
        return sum(data["double"].values())

    executor, repo = _executor()
    result = await executor.execute(wf)

    assert result.status == "completed"
    assert sorted(seen) == [1, 2, 3]
    assert result.output["double"] == {"1": 2, "2": 4, "3": 6}
    assert result.output["total"] == 12
    assert result.stats["tasks_dispatched"] == 5


@pytest.mark.asyncio
async def test_map_step_over_empty_list_and_string_items():
    wf = WorkflowDefinition(name="empty_fanout")
    wf.add_step("names", lambda data: data["names"])
    wf.add_step("greet", lambda data: f"hi {data['names']}", depends_on=["names"])

    executor, _ = _executor()
    result = await executor.execute(wf, {"names": ["ann", "bo"]})
    assert result.output["greet"] == {"ann": "hi ann", "bo": "hi bo"}

    empty = await executor.execute(wf, {"names": []})
    assert empty.status == "completed"
    assert empty.output["greet"] == {}


@pytest.mark.asyncio
async def test_map_step_keeps_one_entry_per_item():
    wf = WorkflowDefinition(name="dupes")
    wf.add_step("items", lambda data: ["x", "x", "y", 1, "1"])
    wf.add_step("echo", lambda data: data["items"], depends_on=["items"])

    executor, _ = _executor()
    result = await executor.execute(wf)

    assert result.status == "completed"
    assert result.stats["tasks_dispatched"] == 6
    assert result.output["echo"] == {"x": "x", "x#2": "x", "y": "y", "1": 1, "1#2": "1"}


@pytest.mark.asyncio
async def test_transient_failures_are_retried():
    attempts = {"count": 0}

    def flaky(data):
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise ConnectionError("temporarily unavailable")
        return "ok"

    wf = WorkflowDefinition.from_steps("retry", [("flaky", flaky)])
    executor, repo = _executor()
    result = await executor.execute(wf, retry_attempts=3)

    assert result.status == "completed"
    assert result.output == {"flaky": "ok"}
    steps = await repo.get_steps(result.run_id)
    assert steps[0].attempt_count == 3
    assert steps[0].error is None
    assert result.stats["attempts"] == 3


@pytest.mark.asyncio
async def test_retries_exhausted():
    calls = []

    def always_fails(data):
        calls.append(1)
        raise RuntimeError("still broken")

    wf = WorkflowDefinition.from_steps("exhaust", [("step", always_fails)])
    executor, repo = _executor()
    result = await executor.execute(wf, retry_attempts=2)

    assert result.status == "failed"
    assert len(calls) == 3
    assert result.error.details["attempts"] == 3
    assert result.error.details["cause"]["code"] == "TASK_ERROR"


@pytest.mark.asyncio
async def test_task_timeout_counts_as_failed_attempt():
    async def hang(data):
        await asyncio.sleep(10)

    wf = WorkflowDefinition.from_steps("hang", [("hang", hang)])
    executor, repo = _executor()
    result = await executor.execute(wf, retry_attempts=1, task_timeout=50)

    assert result.status == "failed"
    assert result.error.details["cause"]["code"] == "TASK_TIMEOUT"
    steps = await repo.get_steps(result.run_id)
    assert steps[0].attempt_count == 2


@pytest.mark.asyncio
async def test_workflow_timeout_fails_remaining_steps():
    async def slow(data):
        await asyncio.sleep(10)

    wf = WorkflowDefinition.from_steps(
        "deadline", [("slow", slow), ("after", lambda d: None, ["slow"])]
    )
    executor, repo = _executor()
    loop = asyncio.get_running_loop()
    started = loop.time()
    result = await executor.execute(wf, timeout=200, task_timeout=5_000)

    assert loop.time() - started < 3
    assert result.status == "timeout"
    assert result.error.code == "WORKFLOW_TIMEOUT"
    assert result.step_statuses == {"slow": "failed", "after": "failed"}
    run = await repo.get_run(result.run_id)
    assert run.status == "timeout"
    status = await get_run_status(repo, result.run_id)
    assert status["info"]["code"] == "WORKFLOW_TIMEOUT"


@pytest.mark.asyncio
async def test_max_parallel_bounds_concurrency():
    state = {"current": 0, "peak": 0}

    async def work(data):
        state["current"] += 1
        state["peak"] = max(state["peak"], state["current"])
        await asyncio.sleep(0.03)
        state["current"] -= 1
        return True

    wf = WorkflowDefinition.from_steps("wide", [(f"s{i}", work) for i in range(6)])
    executor, _ = _executor()
    result = await executor.execute(wf, max_parallel=2)

    assert result.status == "completed"
    assert state["peak"] <= 2
    assert result.stats["max_parallel"] == 2


@pytest.mark.asyncio
async def test_parallel_threshold_throttles_roots():
    state = {"current": 0, "peak": 0}

    async def work(data):
        state["current"] += 1
        state["peak"] = max(state["peak"], state["current"])
        await asyncio.sleep(0.02)
        state["current"] -= 1

    wf = WorkflowDefinition.from_steps(
        "roots", [(f"r{i}", work) for i in range(3)], parallel_threshold=1
    )
    executor, _ = _executor()
    result = await executor.execute(wf, max_parallel=5)
    assert result.status == "completed"
    assert state["peak"] == 1


@pytest.mark.asyncio
async def test_invalid_definition_raises_before_persisting():
    wf = WorkflowDefinition.from_steps(
        "loop", [("a", lambda d: 1, ["b"]), ("b", lambda d: 2, ["a"])]
    )
    executor, repo = _executor()
    with pytest.raises(CycleError):
        await executor.execute(wf)
    assert await repo.list_runs() == []


class _FailingRepository(InMemoryWorkflowRepository):
    async def update_step(self, run_id, slug, **fields):
        if fields.get("status") == "running":
            raise ConnectionError("database went away")
        await super().update_step(run_id, slug, **fields)


@pytest.mark.asyncio
async def test_infrastructure_failure_is_reported_in_result():
    wf = WorkflowDefinition.from_steps("infra", [("a", lambda d: 1), ("b", lambda d: 2, ["a"])])
    executor, repo = _executor(repo=_FailingRepository())
    result = await executor.execute(wf)

    assert result.status == "failed"
    assert result.error.code == "INFRASTRUCTURE_ERROR"
    assert "database went away" in result.error.message
    run = await repo.get_run(result.run_id)
    assert run.status == "failed"


@pytest.mark.asyncio
async def test_sqlite_backed_run(tmp_path):
    repo = SQLiteWorkflowRepository(tmp_path / "runs.db")
    wf = WorkflowDefinition.from_steps(
        "persisted", [("load", lambda d: {"rows": 2}), ("save", lambda d: d["load"]["rows"], ["load"])]
    )
    executor, _ = _executor(repo=repo)
    result = await executor.execute(wf, "raw input")

    assert result.output == {"load": {"rows": 2}, "save": 2}
    run = await repo.get_run(result.run_id)
    assert run.input == {"input": "raw input"}
    steps = await repo.get_steps(result.run_id)
    assert [s.status for s in steps] == ["completed", "completed"]
    assert all(s.duration_ms is not None for s in steps)
    await repo.close()


@pytest.mark.asyncio
async def test_top_level_timeout_bounds_the_run():
    async def slow(data):
        await asyncio.sleep(10)

    wf = WorkflowDefinition.from_steps("bounded", [("slow", slow)])
    executor, _ = _executor(config=_config().with_overrides(timeout=200))
    loop = asyncio.get_running_loop()
    started = loop.time()
    result = await executor.execute(wf)

    assert loop.time() - started < 3
    assert result.status == "timeout"
    assert result.error.code == "WORKFLOW_TIMEOUT"


@pytest.mark.asyncio
async def test_top_level_max_parallel_and_retries_apply():
    state = {"current": 0, "peak": 0, "calls": 0}

    async def work(data):
        state["current"] += 1
        state["peak"] = max(state["peak"], state["current"])
        await asyncio.sleep(0.02)
        state["current"] -= 1

    def flaky(data):
        state["calls"] += 1
        raise RuntimeError("flaky")

    wide = WorkflowDefinition.from_steps("wide_cfg", [(f"s{i}", work) for i in range(5)])
    config = _config().with_overrides(max_parallel=2, retry_attempts=1)
    executor, _ = _executor(config=config)

    result = await executor.execute(wide)
    assert result.status == "completed"
    assert result.stats["max_parallel"] == 2
    assert state["peak"] <= 2

    failing = await executor.execute(WorkflowDefinition.from_steps("flaky", [("f", flaky)]))
    assert failing.status == "failed"
    assert state["calls"] == 2


@pytest.mark.asyncio
async def test_reusing_a_run_id_leaves_the_stored_run_alone():
    wf = WorkflowDefinition.from_steps("once", [("only", lambda data: 1)])
    executor, repo = _executor()

    first = await executor.execute(wf, run_id="r1")
    assert first.status == "completed"

    with pytest.raises(DuplicateRunError):
        await executor.execute(wf, run_id="r1")

    run = await repo.get_run("r1")
    assert run.status == "completed"
    assert run.error is None
    steps = await repo.get_steps("r1")
    assert [s.status for s in steps] == ["completed"]


@pytest.mark.asyncio
async def test_failed_run_creation_writes_nothing(monkeypatch):
    wf = WorkflowDefinition.from_steps("nostore", [("only", lambda data: 1)])
    executor, repo = _executor()
    updates = []

    async def broken_create(run):
        raise ConnectionError("store unreachable")

    async def record_update(*args, **kwargs):
        updates.append((args, kwargs))

    monkeypatch.setattr(repo, "create_run", broken_create)
    monkeypatch.setattr(repo, "update_run", record_update)
    monkeypatch.setattr(repo, "update_step", record_update)

    result = await executor.execute(wf)

    assert result.status == "failed"
    assert result.error.code == "INFRASTRUCTURE_ERROR"
    assert updates == []
