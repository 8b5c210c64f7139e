"""Kernel configuration: engine, store and tuner settings."""

import os
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


class FailurePolicy(str, Enum):
    """What a timed-out or crashed rule contributes to the decision."""
    FAIL_OPEN = "fail_open"                 # Treat as allow (availability first)
    FAIL_CLOSED = "fail_closed"             # Treat as block (safety first)


class EngineConfig(BaseModel):
    """Configuration for the Execution Engine."""

    max_workers: int = Field(ge=1, default=8)
    default_timeout_ms: float = Field(gt=0, default=3000.0)
    timeout_policy: FailurePolicy = FailurePolicy.FAIL_OPEN
    error_policy: FailurePolicy = FailurePolicy.FAIL_OPEN
    feedback_cache_size: int = Field(ge=1, default=1000)


class StoreConfig(BaseModel):
    """Configuration for the Learning Store and its async recorder."""

    db_path: str = ":memory:"
    retention_days: int = Field(ge=1, default=30)
    recorder_queue_size: int = Field(ge=1, default=10000)


class TunerConfig(BaseModel):
    """Configuration for the Adaptive Parameter Tuner."""

    max_change_rate: float = Field(gt=0, le=1, default=0.2)
    cooldown_seconds: float = Field(ge=0, default=3600.0)
    rollback_threshold: float = Field(gt=0, le=1, default=0.15)

    min_executions_for_optimization: int = 50
    timeout_sample_size: int = 100
    timeout_floor_ms: float = 1000.0
    timeout_noise_threshold_ms: float = 50.0

    min_pattern_samples: int = 20
    pattern_precision_threshold: float = 0.7
    pattern_recall_threshold: float = 0.7
    pattern_error_rate_threshold: float = 0.2

    metrics_sample_size: int = 100
    strictness_delta: float = 0.10
    strictness_ceiling: float = 0.95

    ab_min_samples: int = 50
    ab_success_margin: float = 0.05
    ab_latency_gain: float = 0.10

    monitoring_window_seconds: float = 3600.0
    monitor_min_samples: int = 10
    early_accept_min_checks: int = 3
    early_accept_success_gain: float = 0.10
    early_accept_latency_gain: float = 0.20

    tuning_schedule: str = "*/15 * * * *"   # Cron expression
    purge_schedule: str = "0 3 * * *"


class KernelConfig(BaseModel):
    engine: EngineConfig = Field(default_factory=EngineConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    tuner: TunerConfig = Field(default_factory=TunerConfig)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "KernelConfig":
        """Build a config from ``HOOK_KERNEL_*`` environment variables."""
        env = os.environ if environ is None else environ
        sections: Dict[str, dict] = {"engine": {}, "store": {}, "tuner": {}}
        for var, (section, field, cast) in _ENV_VARS.items():
            raw = env.get(var)
            if raw is not None and raw != "":
                sections[section][field] = cast(raw)
        return cls(
            engine=EngineConfig(**sections["engine"]),
            store=StoreConfig(**sections["store"]),
            tuner=TunerConfig(**sections["tuner"]),
        )


_ENV_VARS: Dict[str, tuple] = {
    "HOOK_KERNEL_MAX_WORKERS": ("engine", "max_workers", int),
    "HOOK_KERNEL_DEFAULT_TIMEOUT_MS": ("engine", "default_timeout_ms", float),
    "HOOK_KERNEL_TIMEOUT_POLICY": ("engine", "timeout_policy", FailurePolicy),
    "HOOK_KERNEL_ERROR_POLICY": ("engine", "error_policy", FailurePolicy),
    "HOOK_KERNEL_DB_PATH": ("store", "db_path", str),
    "HOOK_KERNEL_RETENTION_DAYS": ("store", "retention_days", int),
    "HOOK_KERNEL_MAX_PARAMETER_CHANGE_RATE": ("tuner", "max_change_rate", float),
    "HOOK_KERNEL_OPTIMIZATION_COOLDOWN": ("tuner", "cooldown_seconds", float),
    "HOOK_KERNEL_ROLLBACK_THRESHOLD": ("tuner", "rollback_threshold", float),
    "HOOK_KERNEL_MIN_EXECUTIONS_FOR_OPTIMIZATION": ("tuner", "min_executions_for_optimization", int),
    "HOOK_KERNEL_MONITORING_WINDOW": ("tuner", "monitoring_window_seconds", float),
    "HOOK_KERNEL_TUNING_SCHEDULE": ("tuner", "tuning_schedule", str),
    "HOOK_KERNEL_PURGE_SCHEDULE": ("tuner", "purge_schedule", str),
}
