"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from typing import Any, Optional

import asyncpg

from ..errors import DuplicateRunError, ErrorInfo
from .models import RunRecord, StepDependency, StepRecord
from .repository import (
    RUN_FIELDS,
    STEP_FIELDS,
    WorkflowRepository,
    check_fields,
    make_dependency,
)

_JSON_COLUMNS = {"input", "result", "metadata", "error"}


def _encode(column: str, value: Any) -> Any:
    if column not in _JSON_COLUMNS or value is None:
        return value
    if isinstance(value, ErrorInfo):
        return value.model_dump_json()
    return json.dumps(value)


def _decode(record: asyncpg.Record) -> dict[str, Any]:
    data = dict(record)
    for column in _JSON_COLUMNS & data.keys():
        if data[column] is not None:
            data[column] = json.loads(data[column])
    return data


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist run state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._pool: Optional[asyncpg.Pool] = None

    async def _acquire_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self._dsn)
            async with self._pool.acquire() as conn:
                await self._ensure_schema(conn)
        return self._pool

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                workflow TEXT NOT NULL,
                input JSONB,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                result JSONB,
                error JSONB,
                metadata JSONB
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS steps (
                run_id TEXT NOT NULL,
                slug TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                result JSONB,
                error JSONB,
                position SERIAL,
                PRIMARY KEY (run_id, slug)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_dependencies (
                id BIGSERIAL,
                run_id TEXT NOT NULL,
                step_slug TEXT NOT NULL,
                depends_on_step TEXT NOT NULL
            )
            """
        )

    async def _execute(self, query: str, *params: Any) -> None:
        pool = await self._acquire_pool()
        async with pool.acquire() as conn:
            await conn.execute(query, *params)

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        pool = await self._acquire_pool()
        async with pool.acquire() as conn:
            return await conn.fetch(query, *params)

    # ------------------------------------------------------------------
    async def create_run(self, run: RunRecord) -> RunRecord:
        columns = ("id", "created_at") + RUN_FIELDS
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        try:
            await self._execute(
                f"INSERT INTO runs ({', '.join(columns)}) VALUES ({placeholders})",
                *[_encode(c, getattr(run, c)) for c in columns],
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateRunError(
                f"Run {run.id} already exists", details={"run_id": run.id}
            ) from exc
        return run

    async def get_run(self, run_id: str) -> RunRecord | None:
        rows = await self._fetch("SELECT * FROM runs WHERE id = $1", run_id)
        if not rows:
            return None
        return RunRecord.model_validate(_decode(rows[0]))

    async def list_runs(self, limit: Optional[int] = None) -> list[RunRecord]:
        if limit is None:
            rows = await self._fetch("SELECT * FROM runs ORDER BY created_at DESC")
        else:
            rows = await self._fetch(
                "SELECT * FROM runs ORDER BY created_at DESC LIMIT $1", limit
            )
        return [RunRecord.model_validate(_decode(r)) for r in rows]

    async def update_run(self, run_id: str, **fields: Any) -> None:
        check_fields(fields, RUN_FIELDS)
        if not fields:
            return
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(fields, start=1))
        values = [_encode(c, v) for c, v in fields.items()]
        await self._execute(
            f"UPDATE runs SET {assignments} WHERE id = ${len(values) + 1}",
            *values,
            run_id,
        )

    async def create_steps(self, run_id: str, steps: list[StepRecord]) -> None:
        columns = ("run_id", "slug") + STEP_FIELDS
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        pool = await self._acquire_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                f"INSERT INTO steps ({', '.join(columns)}) VALUES ({placeholders})",
                [tuple(_encode(c, getattr(s, c)) for c in columns) for s in steps],
            )

    async def update_step(self, run_id: str, slug: str, **fields: Any) -> None:
        check_fields(fields, STEP_FIELDS)
        if not fields:
            return
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(fields, start=1))
        values = [_encode(c, v) for c, v in fields.items()]
        n = len(values)
        await self._execute(
            f"UPDATE steps SET {assignments} WHERE run_id = ${n + 1} AND slug = ${n + 2}",
            *values,
            run_id,
            slug,
        )

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        rows = await self._fetch(
            "SELECT run_id, slug, description, status, attempt_count, started_at, "
            "completed_at, result, error FROM steps WHERE run_id = $1 ORDER BY position",
            run_id,
        )
        return [StepRecord.model_validate(_decode(r)) for r in rows]

    # ------------------------------------------------------------------
    async def record_dependency(
        self, run_id: str, step_slug: str, depends_on_step: str
    ) -> StepDependency:
        edge = make_dependency(run_id, step_slug, depends_on_step)
        await self._execute(
            "INSERT INTO step_dependencies (run_id, step_slug, depends_on_step) VALUES ($1, $2, $3)",
            edge.run_id,
            edge.step_slug,
            edge.depends_on_step,
        )
        return edge

    async def find_dependencies(self, run_id: str, step_slug: str) -> set[str]:
        rows = await self._fetch(
            "SELECT depends_on_step FROM step_dependencies WHERE run_id = $1 AND step_slug = $2",
            run_id,
            step_slug,
        )
        return {r["depends_on_step"] for r in rows}

    async def find_dependents(self, run_id: str, step_slug: str) -> set[str]:
        rows = await self._fetch(
            "SELECT step_slug FROM step_dependencies WHERE run_id = $1 AND depends_on_step = $2",
            run_id,
            step_slug,
        )
        return {r["step_slug"] for r in rows}

    async def list_dependencies(self, run_id: str) -> list[StepDependency]:
        rows = await self._fetch(
            "SELECT run_id, step_slug, depends_on_step FROM step_dependencies "
            "WHERE run_id = $1 ORDER BY id",
            run_id,
        )
        return [StepDependency(**dict(r)) for r in rows]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
