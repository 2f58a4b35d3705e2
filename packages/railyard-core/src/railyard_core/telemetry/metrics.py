"""OpenTelemetry metrics for Stage reconciliation.

Metrics Emitted:
    Counters:
        - railyard_stage_reconciles_total: Reconcile passes by Stage kind and outcome
        - railyard_stage_reconcile_errors_total: Failed passes by Stage kind and phase
        - railyard_promotions_created_total: Promotions created by auto-promotion
        - railyard_verifications_started_total: Verification attempts started

    Histograms:
        - railyard_stage_reconcile_duration_seconds: Reconcile pass duration

Example:
    >>> metrics = ReconcileMetrics()
    >>> with metrics.reconcile_timer("regular"):
    ...     result = reconciler.reconcile(stage)
    >>> metrics.record_reconcile("regular", success=result.error is None)
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import TYPE_CHECKING

from opentelemetry import metrics

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.metrics import Counter, Histogram


class ReconcileMetrics:
    """OpenTelemetry metrics collector for Stage reconcilers.

    Instruments are created lazily on first use. Thread-safe via the
    OpenTelemetry SDK.

    Label Conventions:
        - kind: regular, control_flow
        - status: success, failure
        - action: the failed phase (e.g. "sync Promotions")
    """

    RECONCILES_TOTAL = "railyard_stage_reconciles_total"
    RECONCILE_ERRORS_TOTAL = "railyard_stage_reconcile_errors_total"
    RECONCILE_DURATION_SECONDS = "railyard_stage_reconcile_duration_seconds"
    PROMOTIONS_CREATED_TOTAL = "railyard_promotions_created_total"
    VERIFICATIONS_STARTED_TOTAL = "railyard_verifications_started_total"

    def __init__(
        self,
        meter_name: str = "railyard.stage",
        meter_version: str = "1.0.0",
    ) -> None:
        """Initialize the collector.

        Args:
            meter_name: Name for the OpenTelemetry meter.
            meter_version: Version for the meter.
        """
        self._meter = metrics.get_meter(meter_name, meter_version)
        self._reconciles_counter: Counter | None = None
        self._errors_counter: Counter | None = None
        self._duration_histogram: Histogram | None = None
        self._promotions_counter: Counter | None = None
        self._verifications_counter: Counter | None = None

    @property
    def reconciles_counter(self) -> Counter:
        """Get or create the reconciles counter."""
        if self._reconciles_counter is None:
            self._reconciles_counter = self._meter.create_counter(
                self.RECONCILES_TOTAL,
                unit="1",
                description="Total number of Stage reconcile passes by kind and status",
            )
        return self._reconciles_counter

    @property
    def errors_counter(self) -> Counter:
        """Get or create the reconcile errors counter."""
        if self._errors_counter is None:
            self._errors_counter = self._meter.create_counter(
                self.RECONCILE_ERRORS_TOTAL,
                unit="1",
                description="Total number of failed Stage reconcile passes by phase",
            )
        return self._errors_counter

    @property
    def duration_histogram(self) -> Histogram:
        """Get or create the reconcile duration histogram."""
        if self._duration_histogram is None:
            self._duration_histogram = self._meter.create_histogram(
                self.RECONCILE_DURATION_SECONDS,
                unit="s",
                description="Duration of Stage reconcile passes in seconds",
            )
        return self._duration_histogram

    @property
    def promotions_counter(self) -> Counter:
        """Get or create the created-Promotions counter."""
        if self._promotions_counter is None:
            self._promotions_counter = self._meter.create_counter(
                self.PROMOTIONS_CREATED_TOTAL,
                unit="1",
                description="Total number of Promotions created by auto-promotion",
            )
        return self._promotions_counter

    @property
    def verifications_counter(self) -> Counter:
        """Get or create the started-verifications counter."""
        if self._verifications_counter is None:
            self._verifications_counter = self._meter.create_counter(
                self.VERIFICATIONS_STARTED_TOTAL,
                unit="1",
                description="Total number of verification attempts started",
            )
        return self._verifications_counter

    def record_reconcile(self, kind: str, *, success: bool) -> None:
        """Record one reconcile pass."""
        status = "success" if success else "failure"
        self.reconciles_counter.add(1, {"kind": kind, "status": status})

    def record_error(self, kind: str, action: str) -> None:
        """Record a failed reconcile phase."""
        self.errors_counter.add(1, {"kind": kind, "action": action})

    def record_duration(self, kind: str, seconds: float) -> None:
        """Record the duration of a reconcile pass."""
        self.duration_histogram.record(seconds, {"kind": kind})

    def record_promotion_created(self, namespace: str) -> None:
        """Record a Promotion created by auto-promotion."""
        self.promotions_counter.add(1, {"namespace": namespace})

    def record_verification_started(self, namespace: str, phase: str) -> None:
        """Record a verification attempt and the phase it started in."""
        self.verifications_counter.add(1, {"namespace": namespace, "phase": phase})

    @contextmanager
    def reconcile_timer(self, kind: str) -> Generator[None, None, None]:
        """Time the enclosed block and record it as a reconcile duration."""
        start = time.monotonic()
        try:
            yield
        finally:
            self.record_duration(kind, time.monotonic() - start)


__all__ = ["ReconcileMetrics"]
