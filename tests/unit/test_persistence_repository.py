"""Tests for the SQLite and in-memory run repositories."""

from datetime import timedelta

import pytest

from dagflow.errors import DuplicateRunError, ErrorInfo, ValidationError
from dagflow.persistence import (
    InMemoryWorkflowRepository,
    RunRecord,
    SQLiteWorkflowRepository,
    StepRecord,
    get_repository,
)
from dagflow.persistence.models import utcnow


@pytest.fixture(params=["sqlite", "inmemory"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteWorkflowRepository(tmp_path / "runs.db")
    return InMemoryWorkflowRepository()


@pytest.mark.asyncio
async def test_run_lifecycle(repo):
    run = RunRecord(workflow="etl", input={"goal": "load"}, metadata={"family": "etl"})
    await repo.create_run(run)

    stored = await repo.get_run(run.id)
    assert stored.workflow == "etl"
    assert stored.status == "pending"
    assert stored.input == {"goal": "load"}

    finished = utcnow()
    await repo.update_run(
        run.id,
        status="failed",
        completed_at=finished,
        result={"fetch": [1, 2]},
        error=ErrorInfo(code="TASK_FAILED", message="boom"),
    )
    stored = await repo.get_run(run.id)
    assert stored.status == "failed"
    assert stored.completed_at == finished
    assert stored.result == {"fetch": [1, 2]}
    assert stored.error.code == "TASK_FAILED"
    assert stored.metadata == {"family": "etl"}

    assert await repo.get_run("missing") is None
    with pytest.raises(ValidationError):
        await repo.update_run(run.id, colour="red")
    await repo.close()


@pytest.mark.asyncio
async def test_duplicate_run_id_is_rejected(repo):
    run = await repo.create_run(RunRecord(id="r1", workflow="etl"))
    await repo.update_run(run.id, status="completed")

    with pytest.raises(DuplicateRunError):
        await repo.create_run(RunRecord(id="r1", workflow="other"))

    stored = await repo.get_run("r1")
    assert stored.workflow == "etl"
    assert stored.status == "completed"
    await repo.close()


@pytest.mark.asyncio
async def test_list_runs_newest_first(repo):
    base = utcnow()
    for i in range(3):
        await repo.create_run(
            RunRecord(id=f"run-{i}", workflow="wf", created_at=base + timedelta(seconds=i))
        )
    runs = await repo.list_runs()
    assert [r.id for r in runs] == ["run-2", "run-1", "run-0"]
    assert [r.id for r in await repo.list_runs(limit=1)] == ["run-2"]


@pytest.mark.asyncio
async def test_steps_keep_insertion_order_and_updates(repo):
    run = await repo.create_run(RunRecord(workflow="wf"))
    await repo.create_steps(
        run.id,
        [
            StepRecord(run_id=run.id, slug="b", description="second"),
            StepRecord(run_id=run.id, slug="a", description="first"),
        ],
    )
    started = utcnow()
    await repo.update_step(run.id, "a", status="running", attempt_count=1, started_at=started)
    await repo.update_step(
        run.id,
        "a",
        status="completed",
        completed_at=started + timedelta(milliseconds=250),
        result={"rows": 3},
    )

    steps = await repo.get_steps(run.id)
    assert [s.slug for s in steps] == ["b", "a"]
    assert steps[0].status == "pending"
    a = steps[1]
    assert a.status == "completed"
    assert a.attempt_count == 1
    assert a.result == {"rows": 3}
    assert a.duration_ms == pytest.approx(250.0)

    with pytest.raises(ValidationError):
        await repo.update_step(run.id, "a", slug="renamed")


@pytest.mark.asyncio
async def test_dependency_edges(repo):
    run = await repo.create_run(RunRecord(workflow="diamond"))
    slugs = ["a", "b", "c", "d"]
    await repo.create_steps(run.id, [StepRecord(run_id=run.id, slug=s) for s in slugs])
    for step, dep in [("b", "a"), ("c", "a"), ("d", "b"), ("d", "c")]:
        edge = await repo.record_dependency(run.id, step, dep)
        assert edge.step_slug == step

    assert await repo.find_dependencies(run.id, "d") == {"b", "c"}
    assert await repo.find_dependencies(run.id, "a") == set()
    assert await repo.find_dependents(run.id, "a") == {"b", "c"}
    assert await repo.find_dependents(run.id, "d") == set()
    edges = await repo.list_dependencies(run.id)
    assert [(e.step_slug, e.depends_on_step) for e in edges] == [
        ("b", "a"),
        ("c", "a"),
        ("d", "b"),
        ("d", "c"),
    ]

    roots = [s for s in slugs if not await repo.find_dependencies(run.id, s)]
    assert roots == ["a"]

    # edges of another run are invisible
    other = await repo.create_run(RunRecord(workflow="diamond"))
    assert await repo.find_dependents(other.id, "a") == set()


@pytest.mark.asyncio
async def test_record_dependency_validation(repo):
    run = await repo.create_run(RunRecord(workflow="wf"))
    with pytest.raises(ValidationError) as exc:
        await repo.record_dependency(run.id, "b", "")
    assert exc.value.details["missing"] == ["depends_on_step"]
    with pytest.raises(ValidationError):
        await repo.record_dependency(None, "b", "a")

    # self references are stored; cycles are rejected when graphs are built
    edge = await repo.record_dependency(run.id, "a", "a")
    assert edge.depends_on_step == "a"
    assert await repo.find_dependencies(run.id, "a") == {"a"}


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("DAGFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("DAGFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    assert isinstance(get_repository(), InMemoryWorkflowRepository)

    db_path = tmp_path / "runs.db"
    monkeypatch.setenv("DAGFLOW_DATABASE_URL", f"sqlite://{db_path}")
    assert isinstance(get_repository(), SQLiteWorkflowRepository)

    with pytest.raises(ValueError):
        get_repository("mysql://nope")
