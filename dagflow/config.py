"""Configuration tree for dagflow.

The configuration is an immutable pydantic model built once at start-up and
handed to every component that needs it. Durations are milliseconds.
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigurationError

OptimizationLevel = Literal["basic", "advanced", "aggressive"]

# Top-level keys that ``get`` lets a caller override per call.
OVERRIDABLE_KEYS = ("max_depth", "timeout", "max_parallel", "retry_attempts")
REQUIRED_FIELDS = OVERRIDABLE_KEYS
# Keys that ``execution`` may set for runs instead of the top level.
RUN_SETTINGS = ("timeout", "max_parallel", "retry_attempts")
FEATURES = ("monitoring", "optimization", "notifications", "learning", "real_time")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class DecomposerSettings(_Frozen):
    """Limits applied to one decomposer type."""

    max_depth: int = 3
    timeout: int = 30_000
    parallel_threshold: int = 2


def _default_decomposers() -> Dict[str, DecomposerSettings]:
    return {
        "simple": DecomposerSettings(max_depth=3, timeout=30_000, parallel_threshold=2),
        "microservices": DecomposerSettings(
            max_depth=4, timeout=60_000, parallel_threshold=3
        ),
        "data_pipeline": DecomposerSettings(
            max_depth=4, timeout=45_000, parallel_threshold=2
        ),
        "ml_pipeline": DecomposerSettings(
            max_depth=5, timeout=120_000, parallel_threshold=2
        ),
    }


class ExecutionSettings(_Frozen):
    # Unset values inherit the top-level key of the same name.
    timeout: Optional[int] = None
    max_parallel: Optional[int] = None
    retry_attempts: Optional[int] = None
    retry_delay: int = 1_000
    task_timeout: int = 30_000
    monitor: bool = True
    poll_interval: int = 200
    embedded_workers: bool = True
    # Lease granted to a worker that reads a task request.
    visibility_timeout: int = 60_000


def _default_retry_thresholds() -> Dict[str, Tuple[float, float, int]]:
    return {
        "very_unreliable": (0.0, 50.0, 5),
        "somewhat_unreliable": (50.0, 80.0, 3),
        "mostly_reliable": (80.0, 95.0, 2),
        "very_reliable": (95.0, 100.0, 1),
    }


def _default_brackets() -> Dict[str, int]:
    return {"fast": 1_000, "medium": 10_000, "slow": 999_999_999}


class ResourceDefaults(_Frozen):
    memory_mb_low: int = 1024
    memory_mb_high: int = 2048
    cpu_threshold_unreliable: float = 80.0


class OptimizationSettings(_Frozen):
    enabled: bool = True
    level: OptimizationLevel = "basic"
    preserve_structure: bool = True
    max_parallel: int = 10
    timeout_threshold: int = 60_000
    learning_enabled: bool = True
    pattern_confidence_threshold: float = 0.7
    timeout_multiplier_basic: float = 1.2
    timeout_multiplier_advanced: float = 1.5
    timeout_multiplier_aggressive: float = 3.0
    retry_thresholds: Dict[str, Tuple[float, float, int]] = Field(
        default_factory=_default_retry_thresholds
    )
    execution_time_brackets: Dict[str, int] = Field(default_factory=_default_brackets)
    batch_size: int = 3
    parallel_tracks: int = 5
    resource_defaults: ResourceDefaults = ResourceDefaults()
    failure_pattern_threshold: int = 2
    bottleneck_dependency_threshold: int = 2


class NotificationSettings(_Frozen):
    # Unset: on, except over the in-memory queue where nothing consumes events.
    enabled: Optional[bool] = None
    real_time: bool = True
    event_types: List[str] = Field(
        default_factory=lambda: ["decomposition", "task", "workflow", "performance"]
    )
    queue_prefix: str = "dagflow"
    timeout: int = 5_000


class FeatureFlags(_Frozen):
    monitoring: bool = True
    optimization: bool = True
    notifications: bool = True
    learning: bool = True
    real_time: bool = True


class Threshold(_Frozen):
    warning: float
    critical: float


def _default_thresholds() -> Dict[str, Threshold]:
    return {
        "execution_time": Threshold(warning=60_000, critical=300_000),
        "success_rate": Threshold(warning=0.8, critical=0.5),
        "error_rate": Threshold(warning=0.2, critical=0.5),
        "memory_usage": Threshold(warning=100_000_000, critical=500_000_000),
    }


class RedisConfig(_Frozen):
    """Connection settings for the Redis notify channel."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class MessagingSettings(_Frozen):
    queue_backend: Literal["inmemory", "sql"] = "inmemory"
    notifier: Literal["inmemory", "redis", "postgres", "none"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    # Falls back to ``database_url`` when unset.
    queue_url: Optional[str] = None


class DagflowConfig(_Frozen):
    """Root configuration model."""

    max_depth: int = 5
    timeout: int = 300_000
    max_parallel: int = 10
    retry_attempts: int = 3
    decomposers: Dict[str, DecomposerSettings] = Field(
        default_factory=_default_decomposers
    )
    execution: ExecutionSettings = ExecutionSettings()
    optimization: OptimizationSettings = OptimizationSettings()
    notifications: NotificationSettings = NotificationSettings()
    features: FeatureFlags = FeatureFlags()
    performance_thresholds: Dict[str, Threshold] = Field(
        default_factory=_default_thresholds
    )
    messaging: MessagingSettings = MessagingSettings()
    database_url: Optional[str] = None

    # ------------------------------------------------------------------
    # Lookup helpers
    def get(self, key: Union[str, Sequence[str]], **opts: Any) -> Any:
        """Resolve ``key`` from the configuration tree.

        ``key`` may be a top-level name, a dotted path (``"execution.task_timeout"``)
        or a sequence of path segments. Only the top-level keys in
        ``OVERRIDABLE_KEYS`` honour a same-named override in ``opts``.
        """
        path = _split_key(key)
        value: Any = self.model_dump()
        for segment in path:
            if not isinstance(value, Mapping):
                value = None
                break
            value = value.get(segment)
        if len(path) == 1 and path[0] in OVERRIDABLE_KEYS and path[0] in opts:
            return opts[path[0]]
        return value

    def _merged(self, key: Union[str, Sequence[str]], opts: Mapping[str, Any]) -> Dict[str, Any]:
        base = self.get(key)
        if base is None:
            raise ConfigurationError(f"Unknown configuration section: {key!r}")
        merged = dict(base)
        merged.update(opts)
        return merged

    def get_decomposer_config(self, decomposer_type: str, **opts: Any) -> Dict[str, Any]:
        return self._merged(["decomposers", decomposer_type], opts)

    def get_execution_config(self, **opts: Any) -> Dict[str, Any]:
        merged = self._merged("execution", opts)
        for key in RUN_SETTINGS:
            if merged.get(key) is None:
                merged[key] = self.get(key)
        return merged

    def get_run_setting(self, key: str, **opts: Any) -> Any:
        """Resolve ``timeout``, ``max_parallel`` or ``retry_attempts`` for one run.

        A non-None override in ``opts`` wins, then an explicit
        ``execution.<key>``, then the top-level key.
        """
        if key not in RUN_SETTINGS:
            raise ConfigurationError(f"Not a run setting: {key!r}")
        if opts.get(key) is not None:
            return opts[key]
        value = getattr(self.execution, key)
        return value if value is not None else self.get(key)

    def get_optimization_config(self, **opts: Any) -> Dict[str, Any]:
        return self._merged("optimization", opts)

    def get_notification_config(self, **opts: Any) -> Dict[str, Any]:
        return self._merged("notifications", opts)

    def get_performance_threshold(self, metric_type: str, **opts: Any) -> Dict[str, Any]:
        return self._merged(["performance_thresholds", metric_type], opts)

    def feature_enabled(self, feature: str, **opts: Any) -> bool:
        """Return whether ``feature`` is switched on. Unknown names are off."""
        if feature not in FEATURES:
            return False
        if feature in opts:
            return bool(opts[feature])
        return bool(getattr(self.features, feature))

    def with_overrides(self, **changes: Any) -> "DagflowConfig":
        """Return a copy with top-level fields replaced and re-validated."""
        data = self.model_dump()
        data.update(changes)
        return DagflowConfig.model_validate(data)


def _split_key(key: Union[str, Sequence[str]]) -> List[str]:
    if isinstance(key, str):
        return key.split(".")
    return [str(k) for k in key]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_config(config: Union[DagflowConfig, Mapping[str, Any]]) -> Optional[ConfigurationError]:
    """Check a configuration for completeness and consistency.

    Returns ``None`` when the configuration is valid, otherwise a
    ``ConfigurationError`` describing the first violation. Nothing is raised;
    the caller decides whether to abort.
    """
    data = config.model_dump() if isinstance(config, BaseModel) else dict(config)

    missing = [field for field in REQUIRED_FIELDS if field not in data]
    if missing:
        return ConfigurationError(
            f"Missing required fields: {missing}", details={"missing": missing}
        )

    checks = [
        ("max_depth", _is_int, "max_depth must be an integer"),
        ("max_depth", lambda v: 0 < v < 20, "max_depth must be between 1 and 19"),
        ("timeout", _is_int, "timeout must be an integer"),
        ("timeout", lambda v: v > 0, "timeout must be positive"),
        ("max_parallel", _is_int, "max_parallel must be an integer"),
        ("max_parallel", lambda v: 0 < v < 100, "max_parallel must be between 1 and 99"),
        ("retry_attempts", _is_int, "retry_attempts must be an integer"),
        (
            "retry_attempts",
            lambda v: 0 <= v < 10,
            "retry_attempts must be between 0 and 9",
        ),
    ]
    for field, check, message in checks:
        if not check(data[field]):
            return ConfigurationError(message, details={"field": field, "value": data[field]})

    execution = data.get("execution") or {}
    for field, check, message in checks:
        value = execution.get(field)
        if field in RUN_SETTINGS and value is not None and not check(value):
            return ConfigurationError(
                f"execution.{message}", details={"field": f"execution.{field}", "value": value}
            )

    optimization = data.get("optimization") or {}
    features = data.get("features") or {}
    if optimization.get("enabled") and not features.get("optimization"):
        return ConfigurationError(
            "Optimization is enabled but feature flag is disabled",
            details={"field": "optimization.enabled"},
        )
    return None


def load_config(path: Optional[str] = None) -> DagflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to the DAGFLOW_CONFIG env
            variable or 'dagflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("DAGFLOW_CONFIG", "dagflow.yaml")
    data: Dict[str, Any] = {}
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

    env_db_url = os.getenv("DAGFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        data["database_url"] = env_db_url
    env_queue = os.getenv("DAGFLOW_QUEUE_BACKEND")
    if env_queue:
        data.setdefault("messaging", {})["queue_backend"] = env_queue
    return DagflowConfig.model_validate(data)


__all__ = [
    "DagflowConfig",
    "DecomposerSettings",
    "ExecutionSettings",
    "OptimizationSettings",
    "NotificationSettings",
    "FeatureFlags",
    "Threshold",
    "RedisConfig",
    "MessagingSettings",
    "OptimizationLevel",
    "load_config",
    "validate_config",
]
