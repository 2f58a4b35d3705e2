"""Entry point of the railyard Stage controller.

Configuration is read from the environment (see ControllerConfig.from_env);
command-line options override the log settings and select the cluster.

Example:
    $ railyard-controller run --kubeconfig ~/.kube/config --log-level DEBUG
    $ SHARD_NAME=east railyard-controller run
"""

from __future__ import annotations

import signal
import sys
from importlib.metadata import version as get_version
from typing import TYPE_CHECKING

import click
import structlog
from pydantic import ValidationError

from railyard_core.config import ControllerConfig
from railyard_core.errors import RailyardError
from railyard_core.events import StructlogEventRecorder
from railyard_core.health import StepHealthChecker
from railyard_core.manager import ControllerManager
from railyard_core.store.kubernetes import (
    KubernetesAnalysisRunClient,
    KubernetesResourceStore,
    KubernetesWatchSource,
    load_custom_objects_api,
)
from railyard_core.telemetry import ReconcileMetrics, configure_logging

if TYPE_CHECKING:
    from types import FrameType

logger = structlog.get_logger(__name__)


def _get_version() -> str:
    try:
        return get_version("railyard-core")
    except Exception:
        return "unknown"


@click.group(
    name="railyard-controller",
    help="railyard - Stage controller for the railyard promotion orchestrator.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(version=_get_version(), prog_name="railyard-controller")
def cli() -> None:
    """Root command group."""


@cli.command(name="run", help="Run the regular and control-flow Stage controllers.")
@click.option(
    "--kubeconfig",
    type=click.Path(dir_okay=False),
    default=None,
    help="Kubeconfig path.",
)
@click.option("--context", "kube_context", default=None, help="Kubeconfig context.")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Override RAILYARD_LOG_LEVEL.",
)
@click.option("--console-logs", is_flag=True, default=False, help="Human-readable log output.")
def run_command(
    kubeconfig: str | None,
    kube_context: str | None,
    log_level: str | None,
    console_logs: bool,
) -> None:
    """Start both controllers and block until SIGINT or SIGTERM."""
    try:
        config = ControllerConfig.from_env()
    except ValidationError as e:
        raise click.ClickException(f"invalid configuration: {e}") from e

    configure_logging(
        log_level=log_level or config.log_level,
        json_output=config.log_json and not console_logs,
    )

    try:
        api = load_custom_objects_api(kubeconfig, kube_context)
    except RailyardError as e:
        raise click.ClickException(str(e)) from e

    manager = ControllerManager(
        config,
        KubernetesResourceStore(api),
        KubernetesAnalysisRunClient(api),
        StepHealthChecker(),
        StructlogEventRecorder(),
        metrics=ReconcileMetrics(),
    )
    source = KubernetesWatchSource(
        api,
        manager.handle,
        rollouts_enabled=config.rollouts_integration_enabled,
    )

    def _shutdown(signum: int, _frame: FrameType | None) -> None:
        logger.info("shutdown_requested", signal=signum)
        source.stop()
        manager.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    manager.start()
    source.start()
    manager.wait()


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the railyard controller CLI."""
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    except RailyardError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(e.exit_code)


if __name__ == "__main__":
    main()
