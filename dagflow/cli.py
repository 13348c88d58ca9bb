"""Command line interface for dagflow workers, runs and configuration."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
import yaml

from dagflow.config import load_config, validate_config
from dagflow.decomposers import get_decomposer
from dagflow.definition import WorkflowDefinition
from dagflow.errors import DagflowError
from dagflow.messaging import get_messaging
from dagflow.orchestrator import decompose_goal
from dagflow.persistence import get_repository
from dagflow.runs import run_metrics
from dagflow.worker import TaskWorker

app = typer.Typer(help="CLI for dagflow workflows")

# Command groups
run_app = typer.Typer(help="Commands for inspecting runs")
config_app = typer.Typer(help="Commands for managing configuration")

app.add_typer(run_app, name="run")
app.add_typer(config_app, name="config")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
) -> None:
    """dagflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_workflows(reference: str) -> List[WorkflowDefinition]:
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise typer.BadParameter("Expected MODULE:ATTRIBUTE", param_hint="WORKFLOW_REF")
    module = importlib.import_module(module_name)
    target = getattr(module, attribute)
    workflows = target if isinstance(target, (list, tuple)) else [target]
    for workflow in workflows:
        if not isinstance(workflow, WorkflowDefinition):
            raise typer.BadParameter(
                f"{reference} is not a WorkflowDefinition", param_hint="WORKFLOW_REF"
            )
    return list(workflows)


@app.command("worker")
def worker(
    workflow_ref: str,
    lifespan: Optional[float] = None,
    concurrency: Optional[int] = None,
) -> None:
    """
    Run a worker process for workflow definitions.

    The worker consumes task requests for every named workflow from the
    configured durable queue and answers on each request's reply queue.

    Args:
        workflow_ref: ``module:attribute`` naming a WorkflowDefinition or a list of them
        lifespan: Worker timeout in seconds (default: run indefinitely)
        concurrency: Maximum tasks executed at once (default: the configured max_parallel)

    Example:
        dagflow worker myapp.flows:etl --lifespan 300
    """
    config = load_config()
    workflows = _load_workflows(workflow_ref)
    messaging = get_messaging(config)
    task_worker = TaskWorker(messaging, workflows, config, concurrency=concurrency)
    typer.echo(f"Starting worker {task_worker.worker_id} for: {', '.join(w.name for w in workflows)}")

    async def _run() -> None:
        await messaging.connect()
        try:
            await task_worker.start(lifespan=lifespan)
        finally:
            await messaging.close()

    asyncio.run(_run())


@app.command("decompose")
def decompose(
    goal: str,
    decomposer: Optional[str] = typer.Option(
        None, "--decomposer", help="Restrict to one template category"
    ),
) -> None:
    """
    Decompose a goal into a task graph and print it.

    Example:
        dagflow decompose "Build user authentication system"
        # Output: validate_input (depth 0)
        #         hash_password (depth 1) <- validate_input
    """
    config = load_config()
    try:
        template = get_decomposer(decomposer)
        graph = asyncio.run(decompose_goal(goal, template, config=config))
    except DagflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"{len(graph.tasks)} tasks, depth {graph.depth} ({graph.decomposer_type})")
    for task in graph.tasks.values():
        line = f"{task.id} (depth {graph.depths[task.id]})"
        if task.depends_on:
            line += f" <- {', '.join(task.depends_on)}"
        typer.echo(line)


@run_app.command("list")
def run_list(limit: Optional[int] = None) -> None:
    """
    List runs with their current status.

    Returns:
        Tab-separated run ids, workflow names and statuses, or "No runs found"
    """
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(limit=limit))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.workflow}\t{run.status}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show detailed information for a specific run.

    Displays run status, error, metrics and per-step state with timestamps.
    """
    repo = get_repository()

    async def _load():
        run = await repo.get_run(run_id)
        if run is None:
            return None, [], {}
        return run, await repo.get_steps(run_id), await run_metrics(repo, run_id)

    run, steps, metrics = asyncio.run(_load())
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id} ({run.workflow}): {run.status}")
    if run.error:
        typer.echo(f"Error: [{run.error.code}] {run.error.message}")
    typer.echo(f"Metrics: {json.dumps(metrics)}")
    for step in steps:
        typer.echo(
            f"- {step.slug}: {step.status} (attempts: {step.attempt_count})"
            + (
                f" ({step.started_at} -> {step.completed_at})"
                if step.started_at or step.completed_at
                else ""
            )
        )


@config_app.command("validate")
def config_validate(path: Optional[Path] = None) -> None:
    """Validate a configuration file (default: DAGFLOW_CONFIG or dagflow.yaml)."""
    try:
        config = load_config(str(path) if path else None)
    except (ValueError, yaml.YAMLError) as exc:
        typer.secho(f"Invalid configuration: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    error = validate_config(config)
    if error is not None:
        typer.secho(f"Invalid configuration: {error.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo("Configuration is valid")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
