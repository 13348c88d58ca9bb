import asyncio
from datetime import timedelta

import pytest
from typer.testing import CliRunner

from dagflow.cli import app
from dagflow.errors import ErrorInfo
from dagflow.persistence import RunRecord, SQLiteWorkflowRepository, StepRecord
from dagflow.persistence.models import utcnow

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    db_path = tmp_path / "runs.db"
    monkeypatch.setenv("DAGFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("DAGFLOW_DATABASE_URL", f"sqlite://{db_path}")
    monkeypatch.delenv("DAGFLOW_QUEUE_BACKEND", raising=False)
    return db_path


def _seed(db_path):
    async def _create():
        repo = SQLiteWorkflowRepository(db_path)
        started = utcnow()
        run = RunRecord(
            id="run-1",
            workflow="etl",
            status="failed",
            error=ErrorInfo(code="TASK_FAILED", message="Step load failed"),
        )
        await repo.create_run(run)
        await repo.update_run(run.id, completed_at=started + timedelta(seconds=1))
        await repo.create_steps(
            run.id,
            [
                StepRecord(
                    run_id=run.id,
                    slug="extract",
                    status="completed",
                    attempt_count=1,
                    started_at=started,
                    completed_at=started + timedelta(milliseconds=300),
                ),
                StepRecord(run_id=run.id, slug="load", status="failed", attempt_count=3),
            ],
        )
        await repo.close()

    asyncio.run(_create())


def test_run_list_empty(cli_env):
    result = runner.invoke(app, ["run", "list"])
    assert result.exit_code == 0
    assert "No runs found" in result.stdout


def test_run_list_and_show(cli_env):
    _seed(cli_env)

    result = runner.invoke(app, ["run", "list"])
    assert result.exit_code == 0
    assert "run-1\tetl\tfailed" in result.stdout

    result = runner.invoke(app, ["run", "show", "run-1"])
    assert result.exit_code == 0
    assert "Run run-1 (etl): failed" in result.stdout
    assert "Error: [TASK_FAILED] Step load failed" in result.stdout
    assert '"success_rate": 0.5' in result.stdout
    assert "- extract: completed (attempts: 1)" in result.stdout
    assert "- load: failed (attempts: 3)" in result.stdout


def test_run_show_missing(cli_env):
    result = runner.invoke(app, ["run", "show", "nope"])
    assert result.exit_code == 1
    assert "Run not found" in result.stdout


def test_decompose_prints_graph(cli_env):
    result = runner.invoke(app, ["decompose", "Build user authentication"])
    assert result.exit_code == 0
    lines = result.stdout.strip().splitlines()
    assert lines[0] == "4 tasks, depth 3 (simple)"
    assert lines[1] == "validate_input (depth 0)"
    assert lines[2] == "hash_password (depth 1) <- validate_input"

    result = runner.invoke(app, ["decompose", "Build a sandwich", "--decomposer", "poetry"])
    assert result.exit_code == 1


def test_config_validate(tmp_path, monkeypatch):
    monkeypatch.delenv("DAGFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    good = tmp_path / "good.yaml"
    good.write_text("max_depth: 6\nmax_parallel: 4\n")
    result = runner.invoke(app, ["config", "validate", "--path", str(good)])
    assert result.exit_code == 0
    assert "Configuration is valid" in result.stdout

    bad = tmp_path / "bad.yaml"
    bad.write_text("max_depth: 0\n")
    result = runner.invoke(app, ["config", "validate", "--path", str(bad)])
    assert result.exit_code == 1
    assert "Invalid configuration: max_depth must be between 1 and 19" in result.stdout

    broken = tmp_path / "broken.yaml"
    broken.write_text("execution: {task_timeout: [unclosed\n")
    result = runner.invoke(app, ["config", "validate", "--path", str(broken)])
    assert result.exit_code == 1
    assert "Invalid configuration" in result.stdout

    wrong_type = tmp_path / "wrong.yaml"
    wrong_type.write_text("messaging:\n  queue_backend: carrier-pigeon\n")
    result = runner.invoke(app, ["config", "validate", "--path", str(wrong_type)])
    assert result.exit_code == 1


def test_worker_command_serves_workflow_module(cli_env, tmp_path, monkeypatch):
    (tmp_path / "demo_flows.py").write_text(
        "from dagflow import WorkflowDefinition\n"
        "etl = WorkflowDefinition(name='etl')\n"
        "etl.add_step('extract', lambda data: [1, 2])\n"
    )
    monkeypatch.syspath_prepend(str(tmp_path))

    result = runner.invoke(app, ["worker", "demo_flows:etl", "--lifespan", "0.1"])
    assert result.exit_code == 0
    assert "for: etl" in result.stdout

    result = runner.invoke(app, ["worker", "demo_flows"])
    assert result.exit_code != 0
