"""Unit tests for controller configuration."""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from railyard_core.config import BackoffConfig, ControllerConfig, RetryConfig


class TestControllerConfig:
    """Tests for ControllerConfig."""

    @pytest.mark.requirement("RY-015")
    def test_defaults(self) -> None:
        """Defaults match a single unsharded controller."""
        config = ControllerConfig()

        assert config.name == "stage-controller"
        assert config.rollouts_integration_enabled is True
        assert config.max_concurrent_reconciles == 4
        assert config.max_concurrent_control_flow_reconciles == 4
        assert config.requeue_interval == timedelta(minutes=5)
        assert config.log_level == "INFO"

    @pytest.mark.requirement("RY-015")
    def test_from_env(self) -> None:
        """Environment variables override the defaults."""
        config = ControllerConfig.from_env(
            {
                "SHARD_NAME": " east ",
                "ROLLOUTS_INTEGRATION_ENABLED": "false",
                "ROLLOUTS_CONTROLLER_INSTANCE_ID": "argo-east",
                "MAX_CONCURRENT_STAGE_RECONCILES": "8",
                "MAX_CONCURRENT_CONTROL_FLOW_RECONCILES": "2",
                "RAILYARD_REQUEUE_INTERVAL_SECONDS": "60",
                "RAILYARD_LOG_LEVEL": "debug",
                "RAILYARD_LOG_JSON": "0",
            }
        )

        assert config.shard_name == "east"
        assert config.name == "stage-controller-east"
        assert config.rollouts_integration_enabled is False
        assert config.rollouts_controller_instance_id == "argo-east"
        assert config.max_concurrent_reconciles == 8
        assert config.max_concurrent_control_flow_reconciles == 2
        assert config.requeue_interval == timedelta(seconds=60)
        assert config.log_level == "DEBUG"
        assert config.log_json is False

    @pytest.mark.requirement("RY-015")
    def test_from_env_empty_values_use_defaults(self) -> None:
        """Blank variables are treated as unset."""
        config = ControllerConfig.from_env(
            {"MAX_CONCURRENT_STAGE_RECONCILES": " ", "ROLLOUTS_INTEGRATION_ENABLED": ""}
        )

        assert config == ControllerConfig()

    @pytest.mark.requirement("RY-015")
    @pytest.mark.parametrize(
        "environ",
        [
            {"MAX_CONCURRENT_STAGE_RECONCILES": "0"},
            {"MAX_CONCURRENT_CONTROL_FLOW_RECONCILES": "many"},
            {"RAILYARD_REQUEUE_INTERVAL_SECONDS": "-1"},
            {"RAILYARD_LOG_LEVEL": "chatty"},
        ],
    )
    def test_from_env_invalid(self, environ: dict[str, str]) -> None:
        """Out-of-range values are rejected."""
        with pytest.raises(ValidationError):
            ControllerConfig.from_env(environ)

    @pytest.mark.requirement("RY-015")
    def test_frozen(self) -> None:
        """Configuration cannot change after startup."""
        config = ControllerConfig()

        with pytest.raises(ValidationError):
            config.shard_name = "west"  # type: ignore[misc]

    @pytest.mark.requirement("RY-015")
    def test_unknown_fields_rejected(self) -> None:
        """Typos in configuration are errors."""
        with pytest.raises(ValidationError):
            ControllerConfig(max_concurrent_reconcile=2)  # type: ignore[call-arg]


class TestNestedConfig:
    """Tests for BackoffConfig and RetryConfig validation."""

    @pytest.mark.requirement("RY-015")
    def test_backoff_bounds(self) -> None:
        """Backoff parameters are range-checked."""
        with pytest.raises(ValidationError):
            BackoffConfig(factor=0.5)
        with pytest.raises(ValidationError):
            BackoffConfig(jitter=2)

    @pytest.mark.requirement("RY-015")
    def test_retry_bounds(self) -> None:
        """Retry attempts are bounded."""
        with pytest.raises(ValidationError):
            RetryConfig(max_attempts=0)
        with pytest.raises(ValidationError):
            RetryConfig(max_attempts=21)
