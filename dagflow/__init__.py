"""dagflow: Database-backed DAG workflow orchestration."""

from .composer import Composer, build_composer, compose_from_goal
from .config import DagflowConfig, load_config, validate_config
from .decomposers import AgentDecomposer, TemplateDecomposer
from .definition import StepDefinition, WorkflowDefinition
from .errors import (
    DagflowError,
    DependencyError,
    InfrastructureError,
    PermanentTaskFailure,
    TransientTaskError,
    ValidationError,
    WorkflowTimeout,
)
from .executor import Executor, RunResult
from .graph import TaskGraph, build_task_graph
from .messaging import Messaging, get_messaging
from .orchestrator import create_workflow, decompose_goal
from .persistence import get_repository
from .runs import get_run_status, run_metrics
from .worker import TaskWorker

__version__ = "0.1.0"
__all__ = [
    "AgentDecomposer",
    "Composer",
    "DagflowConfig",
    "DagflowError",
    "DependencyError",
    "Executor",
    "InfrastructureError",
    "Messaging",
    "PermanentTaskFailure",
    "RunResult",
    "StepDefinition",
    "TaskGraph",
    "TaskWorker",
    "TemplateDecomposer",
    "TransientTaskError",
    "ValidationError",
    "WorkflowDefinition",
    "WorkflowTimeout",
    "build_composer",
    "build_task_graph",
    "compose_from_goal",
    "create_workflow",
    "decompose_goal",
    "get_messaging",
    "get_repository",
    "get_run_status",
    "load_config",
    "run_metrics",
    "validate_config",
]
