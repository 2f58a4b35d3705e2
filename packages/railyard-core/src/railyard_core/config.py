"""Controller configuration.

Configuration is read from environment variables once at startup and passed
to reconcilers as an immutable ControllerConfig.

Environment Variables:
    SHARD_NAME: Shard this controller is responsible for ("" = default shard)
    ROLLOUTS_INTEGRATION_ENABLED: Enable analysis-run verification (default: true)
    ROLLOUTS_CONTROLLER_INSTANCE_ID: Instance id label for created analysis runs
    MAX_CONCURRENT_STAGE_RECONCILES: Worker count for regular Stages (default: 4)
    MAX_CONCURRENT_CONTROL_FLOW_RECONCILES: Worker count for control-flow Stages (default: 4)
    RAILYARD_REQUEUE_INTERVAL_SECONDS: Fallback poll interval (default: 300)
    RAILYARD_LOG_LEVEL: Log level (default: INFO)
    RAILYARD_LOG_JSON: Emit JSON logs (default: true)

Example:
    >>> config = ControllerConfig.from_env({"SHARD_NAME": "east"})
    >>> config.name
    'stage-controller-east'
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from datetime import timedelta

from pydantic import BaseModel, ConfigDict, Field, field_validator

_TRUE_VALUES = ("true", "1", "yes", "on")


class BackoffConfig(BaseModel):
    """Exponential backoff for retrying a Stage after an error.

    Delay for the n-th consecutive failure is
    ``min(base * factor**n, cap)`` plus up to ``jitter`` of random extra.

    Attributes:
        base_delay_seconds: Delay after the first failure.
        factor: Multiplier applied per consecutive failure.
        steps: Consecutive failures after which the delay stops growing.
        cap_seconds: Maximum delay.
        jitter: Fraction of random extra delay (0.1 = up to +10%).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_delay_seconds: float = Field(default=1.0, gt=0, description="Initial delay")
    factor: float = Field(default=2.0, ge=1.0, description="Growth factor")
    steps: int = Field(default=10, ge=1, description="Growth steps")
    cap_seconds: float = Field(default=120.0, gt=0, description="Maximum delay")
    jitter: float = Field(default=0.1, ge=0, le=1, description="Jitter fraction")


class RetryConfig(BaseModel):
    """Bounded retry around a single call (e.g. waiting for a fresh read).

    Attributes:
        max_attempts: Total attempts including the first.
        initial_delay_ms: Delay before the second attempt.
        backoff_multiplier: Delay multiplier per attempt.
        max_delay_ms: Delay cap.
        jitter: Whether to add +/-10% jitter.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=5, ge=1, le=20, description="Total attempts")
    initial_delay_ms: int = Field(default=10, ge=0, description="Initial delay (ms)")
    backoff_multiplier: float = Field(default=1.0, ge=1.0, description="Delay multiplier")
    max_delay_ms: int = Field(default=1000, ge=0, description="Maximum delay (ms)")
    jitter: bool = Field(default=True, description="Add jitter")


class ControllerConfig(BaseModel):
    """Configuration of the Stage controllers.

    Attributes:
        shard_name: Shard handled by this controller.
        rollouts_integration_enabled: Whether analysis-run verification is enabled.
        rollouts_controller_instance_id: Instance id label for created analysis runs.
        max_concurrent_reconciles: Worker count for regular Stages.
        max_concurrent_control_flow_reconciles: Worker count for control-flow Stages.
        requeue_interval_seconds: Fallback poll interval after a clean pass.
        log_level: structlog level.
        log_json: Emit JSON logs instead of console output.
        backoff: Per-Stage error backoff.
        analysis_run_retry: Retry for reading a just-created analysis run.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    shard_name: str = Field(default="", description="Controller shard")
    rollouts_integration_enabled: bool = Field(
        default=True,
        description="Enable analysis-run verification",
    )
    rollouts_controller_instance_id: str = Field(
        default="",
        description="Analysis-run controller instance id",
    )
    max_concurrent_reconciles: int = Field(default=4, ge=1, description="Regular workers")
    max_concurrent_control_flow_reconciles: int = Field(
        default=4,
        ge=1,
        description="Control-flow workers",
    )
    requeue_interval_seconds: float = Field(default=300.0, gt=0, description="Fallback poll")
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=True, description="JSON log output")
    backoff: BackoffConfig = Field(default_factory=BackoffConfig, description="Error backoff")
    analysis_run_retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Analysis-run read retry",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the log level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            msg = f"Invalid log level: {v}"
            raise ValueError(msg)
        return level

    @property
    def name(self) -> str:
        """Return the controller name, suffixed with the shard if set."""
        if self.shard_name:
            return f"stage-controller-{self.shard_name}"
        return "stage-controller"

    @property
    def requeue_interval(self) -> timedelta:
        """Return the fallback poll interval."""
        return timedelta(seconds=self.requeue_interval_seconds)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ControllerConfig:
        """Build a configuration from environment variables.

        Args:
            environ: Mapping to read from. Defaults to os.environ.

        Returns:
            Validated ControllerConfig.

        Raises:
            pydantic.ValidationError: If a value is out of range.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {
            "shard_name": env.get("SHARD_NAME", "").strip(),
            "rollouts_integration_enabled": _env_bool(env, "ROLLOUTS_INTEGRATION_ENABLED", True),
            "rollouts_controller_instance_id": env.get("ROLLOUTS_CONTROLLER_INSTANCE_ID", ""),
            "log_level": env.get("RAILYARD_LOG_LEVEL", "INFO"),
            "log_json": _env_bool(env, "RAILYARD_LOG_JSON", True),
        }
        for field, var in (
            ("max_concurrent_reconciles", "MAX_CONCURRENT_STAGE_RECONCILES"),
            ("max_concurrent_control_flow_reconciles", "MAX_CONCURRENT_CONTROL_FLOW_RECONCILES"),
            ("requeue_interval_seconds", "RAILYARD_REQUEUE_INTERVAL_SECONDS"),
        ):
            raw = env.get(var, "").strip()
            if raw:
                values[field] = raw
        return cls.model_validate(values)


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key, "").strip().lower()
    if not raw:
        return default
    return raw in _TRUE_VALUES


__all__ = ["BackoffConfig", "ControllerConfig", "RetryConfig"]
