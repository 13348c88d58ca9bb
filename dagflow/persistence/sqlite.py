"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..errors import DuplicateRunError, ErrorInfo
from .models import RunRecord, StepDependency, StepRecord
from .repository import (
    RUN_FIELDS,
    STEP_FIELDS,
    WorkflowRepository,
    check_fields,
    make_dependency,
)

_JSON_COLUMNS = {"input", "result", "metadata"}
_TIME_COLUMNS = {"created_at", "started_at", "completed_at"}


def _encode(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column == "error":
        return value.model_dump_json() if isinstance(value, ErrorInfo) else json.dumps(value)
    if column in _JSON_COLUMNS:
        return json.dumps(value)
    if column in _TIME_COLUMNS:
        return value.isoformat()
    return value


def _decode_row(row: sqlite3.Row) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for column in row.keys():
        value = row[column]
        if value is not None:
            if column == "error":
                value = ErrorInfo.model_validate_json(value)
            elif column in _JSON_COLUMNS:
                value = json.loads(value)
            elif column in _TIME_COLUMNS:
                value = datetime.fromisoformat(value)
        data[column] = value
    return data


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist run state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                workflow TEXT NOT NULL,
                input TEXT,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                completed_at TEXT,
                result TEXT,
                error TEXT,
                metadata TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS steps (
                run_id TEXT NOT NULL,
                slug TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                started_at TEXT,
                completed_at TEXT,
                result TEXT,
                error TEXT,
                PRIMARY KEY (run_id, slug)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_dependencies (
                run_id TEXT NOT NULL,
                step_slug TEXT NOT NULL,
                depends_on_step TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_step_dependencies_run "
            "ON step_dependencies (run_id, step_slug)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _executemany(self, query: str, rows: list[tuple[Any, ...]]) -> None:
        cur = self._conn.cursor()
        cur.executemany(query, rows)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    async def _run(self, func, *args: Any) -> Any:
        async with self._lock:
            return await asyncio.to_thread(func, *args)

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: RunRecord) -> RunRecord:
        columns = ("id", "created_at") + RUN_FIELDS
        values = [_encode(c, getattr(run, c)) for c in columns]
        try:
            await self._run(
                self._execute,
                f"INSERT INTO runs ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))})",
                *values,
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateRunError(
                f"Run {run.id} already exists", details={"run_id": run.id}
            ) from exc
        return run

    async def get_run(self, run_id: str) -> RunRecord | None:
        row = await self._run(self._fetchone, "SELECT * FROM runs WHERE id = ?", run_id)
        if not row:
            return None
        return RunRecord.model_validate(_decode_row(row))

    async def list_runs(self, limit: Optional[int] = None) -> list[RunRecord]:
        query = "SELECT * FROM runs ORDER BY created_at DESC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        rows = await self._run(self._fetchall, query, *params)
        return [RunRecord.model_validate(_decode_row(r)) for r in rows]

    async def update_run(self, run_id: str, **fields: Any) -> None:
        check_fields(fields, RUN_FIELDS)
        if not fields:
            return
        assignments = ", ".join(f"{c} = ?" for c in fields)
        values = [_encode(c, v) for c, v in fields.items()]
        await self._run(
            self._execute, f"UPDATE runs SET {assignments} WHERE id = ?", *values, run_id
        )

    # ------------------------------------------------------------------
    # Steps
    async def create_steps(self, run_id: str, steps: list[StepRecord]) -> None:
        columns = ("run_id", "slug") + STEP_FIELDS
        rows = [
            tuple(_encode(c, getattr(step, c)) for c in columns) for step in steps
        ]
        await self._run(
            self._executemany,
            f"INSERT INTO steps ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))})",
            rows,
        )

    async def update_step(self, run_id: str, slug: str, **fields: Any) -> None:
        check_fields(fields, STEP_FIELDS)
        if not fields:
            return
        assignments = ", ".join(f"{c} = ?" for c in fields)
        values = [_encode(c, v) for c, v in fields.items()]
        await self._run(
            self._execute,
            f"UPDATE steps SET {assignments} WHERE run_id = ? AND slug = ?",
            *values,
            run_id,
            slug,
        )

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        rows = await self._run(
            self._fetchall, "SELECT * FROM steps WHERE run_id = ? ORDER BY rowid", run_id
        )
        return [StepRecord.model_validate(_decode_row(r)) for r in rows]

    # ------------------------------------------------------------------
    # Dependencies
    async def record_dependency(
        self, run_id: str, step_slug: str, depends_on_step: str
    ) -> StepDependency:
        edge = make_dependency(run_id, step_slug, depends_on_step)
        await self._run(
            self._execute,
            "INSERT INTO step_dependencies (run_id, step_slug, depends_on_step) VALUES (?, ?, ?)",
            edge.run_id,
            edge.step_slug,
            edge.depends_on_step,
        )
        return edge

    async def find_dependencies(self, run_id: str, step_slug: str) -> set[str]:
        rows = await self._run(
            self._fetchall,
            "SELECT depends_on_step FROM step_dependencies WHERE run_id = ? AND step_slug = ?",
            run_id,
            step_slug,
        )
        return {r["depends_on_step"] for r in rows}

    async def find_dependents(self, run_id: str, step_slug: str) -> set[str]:
        rows = await self._run(
            self._fetchall,
            "SELECT step_slug FROM step_dependencies WHERE run_id = ? AND depends_on_step = ?",
            run_id,
            step_slug,
        )
        return {r["step_slug"] for r in rows}

    async def list_dependencies(self, run_id: str) -> list[StepDependency]:
        rows = await self._run(
            self._fetchall,
            "SELECT run_id, step_slug, depends_on_step FROM step_dependencies "
            "WHERE run_id = ? ORDER BY rowid",
            run_id,
        )
        return [StepDependency(**dict(r)) for r in rows]

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)
