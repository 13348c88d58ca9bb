"""Persistence layer for dagflow runs, steps and dependency edges."""

from __future__ import annotations

import os
from typing import Optional

from ..config import DagflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import RunRecord, StepDependency, StepRecord
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[DagflowConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``DAGFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    if database_url is None:
        config = config or load_config()
        database_url = (
            os.getenv("DAGFLOW_DATABASE_URL")
            or os.getenv("DATABASE_URL")
            or config.database_url
        )

    if not database_url:
        return InMemoryWorkflowRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1) or ":memory:"
        return SQLiteWorkflowRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresWorkflowRepository

        return PostgresWorkflowRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "RunRecord",
    "StepRecord",
    "StepDependency",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
]
