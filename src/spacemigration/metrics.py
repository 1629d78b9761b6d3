"""
OpenTelemetry metrics for migration workers.

The metrics gracefully degrade when OpenTelemetry is not installed - all
operations become no-ops without raising errors.

Example:
    >>> metrics = WorkerMetrics("host-a", "1")
    >>> metrics.record_resolution("resolved")
    >>> metrics.record_upload(verified=False)
    >>> metrics.record_space_finished("failed", duration_seconds=42.0)

Metrics Exposed:
    - migration.claims.resolutions (Counter): Claim lookups by outcome
    - migration.uploads.checked (Counter): Uploads reconciled, by result
    - migration.spaces.finished (Counter): Spaces completed, failed or abandoned
    - migration.space.duration (Histogram): Seconds spent processing a space
    - migration.attribution.conflicts (Counter): Conflicting provider attributions
    - migration.records.reclaimed (Counter): Stale records reclaimed

All metrics carry the 'instance_id' and 'worker_id' attributes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Optional OpenTelemetry import - single source of truth
try:
    from opentelemetry import metrics

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    OTEL_METRICS_AVAILABLE = False
    metrics = None  # type: ignore[assignment]


# Module-level meter instance
_meter: Any = None


def _get_meter() -> Any:
    """Get or create the meter for the spacemigration namespace."""
    global _meter
    if _meter is None and OTEL_METRICS_AVAILABLE and metrics is not None:
        _meter = metrics.get_meter("spacemigration", version="1.0.0")
    return _meter


def reset_meter() -> None:
    """
    Reset the global meter instance.

    Useful for testing to ensure fresh meter state between tests.
    """
    global _meter
    _meter = None


class NoOpCounter:
    """Counter stand-in used when OpenTelemetry is not available."""

    def add(
        self,
        amount: int | float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


class NoOpHistogram:
    """Histogram stand-in used when OpenTelemetry is not available."""

    def record(
        self,
        value: float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


@dataclass(frozen=True)
class WorkerMetricSnapshot:
    """
    Values recorded by one WorkerMetrics instance.

    Useful for testing and for a worker's end-of-run log line.
    """

    resolutions: dict[str, int] = field(default_factory=dict)
    uploads_verified: int = 0
    uploads_pending: int = 0
    spaces: dict[str, int] = field(default_factory=dict)
    attribution_conflicts: int = 0
    records_reclaimed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "resolutions": dict(self.resolutions),
            "uploads_verified": self.uploads_verified,
            "uploads_pending": self.uploads_pending,
            "spaces": dict(self.spaces),
            "attribution_conflicts": self.attribution_conflicts,
            "records_reclaimed": self.records_reclaimed,
        }


@dataclass
class WorkerMetrics:
    """
    Container for migration worker metric instruments.

    Attributes:
        instance_id: Worker instance identifier for metric labels
        worker_id: Worker identifier for metric labels
        enable_metrics: Whether metrics are enabled (default True)
    """

    instance_id: str
    worker_id: str
    enable_metrics: bool = True

    _meter: Any = field(default=None, init=False, repr=False)
    _resolutions_counter: Any = field(default=None, init=False, repr=False)
    _uploads_counter: Any = field(default=None, init=False, repr=False)
    _spaces_counter: Any = field(default=None, init=False, repr=False)
    _space_duration_histogram: Any = field(default=None, init=False, repr=False)
    _conflicts_counter: Any = field(default=None, init=False, repr=False)
    _reclaimed_counter: Any = field(default=None, init=False, repr=False)

    # Internal counters for snapshot
    _resolutions: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _uploads_verified: int = field(default=0, init=False, repr=False)
    _uploads_pending: int = field(default=0, init=False, repr=False)
    _spaces: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _conflicts: int = field(default=0, init=False, repr=False)
    _reclaimed: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.enable_metrics and OTEL_METRICS_AVAILABLE:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        self._meter = _get_meter()

        if self._meter is None:
            self._setup_noop()
            return

        self._resolutions_counter = self._meter.create_counter(
            name="migration.claims.resolutions",
            unit="lookups",
            description="Claim lookups against the indexing service, by outcome",
        )
        self._uploads_counter = self._meter.create_counter(
            name="migration.uploads.checked",
            unit="uploads",
            description="Uploads reconciled against the claims service, by result",
        )
        self._spaces_counter = self._meter.create_counter(
            name="migration.spaces.finished",
            unit="spaces",
            description="Spaces that left the worker, by outcome",
        )
        self._space_duration_histogram = self._meter.create_histogram(
            name="migration.space.duration",
            unit="s",
            description="Time spent processing one space in seconds",
        )
        self._conflicts_counter = self._meter.create_counter(
            name="migration.attribution.conflicts",
            unit="digests",
            description="Digests whose location claims name two spaces or providers",
        )
        self._reclaimed_counter = self._meter.create_counter(
            name="migration.records.reclaimed",
            unit="records",
            description="Stale in-progress records returned to pending",
        )

    def _setup_noop(self) -> None:
        self._resolutions_counter = NoOpCounter()
        self._uploads_counter = NoOpCounter()
        self._spaces_counter = NoOpCounter()
        self._space_duration_histogram = NoOpHistogram()
        self._conflicts_counter = NoOpCounter()
        self._reclaimed_counter = NoOpCounter()

    def _base_attributes(self) -> dict[str, str]:
        return {
            "instance_id": self.instance_id,
            "worker_id": self.worker_id,
        }

    def record_resolution(self, outcome: str) -> None:
        """
        Record one claim lookup.

        Args:
            outcome: One of "resolved", "not_found", "degraded", "unavailable"
        """
        self._resolutions[outcome] = self._resolutions.get(outcome, 0) + 1
        self._resolutions_counter.add(1, {**self._base_attributes(), "outcome": outcome})

    def record_upload(self, verified: bool) -> None:
        if verified:
            self._uploads_verified += 1
        else:
            self._uploads_pending += 1
        result = "verified" if verified else "pending_republish"
        self._uploads_counter.add(1, {**self._base_attributes(), "result": result})

    def record_space_finished(self, outcome: str, duration_seconds: float | None = None) -> None:
        """
        Record a space leaving the worker.

        Args:
            outcome: "completed", "failed" or "abandoned"
            duration_seconds: Wall time spent on the space, if measured
        """
        self._spaces[outcome] = self._spaces.get(outcome, 0) + 1
        attributes = {**self._base_attributes(), "outcome": outcome}
        self._spaces_counter.add(1, attributes)
        if duration_seconds is not None:
            self._space_duration_histogram.record(duration_seconds, attributes)

    def record_attribution_conflicts(self, count: int) -> None:
        if count <= 0:
            return
        self._conflicts += count
        self._conflicts_counter.add(count, self._base_attributes())

    def record_reclaimed(self, count: int = 1) -> None:
        self._reclaimed += count
        self._reclaimed_counter.add(count, self._base_attributes())

    def get_snapshot(self) -> WorkerMetricSnapshot:
        return WorkerMetricSnapshot(
            resolutions=dict(self._resolutions),
            uploads_verified=self._uploads_verified,
            uploads_pending=self._uploads_pending,
            spaces=dict(self._spaces),
            attribution_conflicts=self._conflicts,
            records_reclaimed=self._reclaimed,
        )


__all__ = [
    "OTEL_METRICS_AVAILABLE",
    "NoOpCounter",
    "NoOpHistogram",
    "WorkerMetricSnapshot",
    "WorkerMetrics",
    "reset_meter",
]
