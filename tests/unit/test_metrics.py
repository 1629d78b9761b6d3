"""
Tests for WorkerMetrics.

The snapshot is checked with metrics disabled; the OpenTelemetry
instruments are checked against an InMemoryMetricReader.
"""

from typing import Any

from spacemigration.metrics import NoOpCounter, NoOpHistogram, WorkerMetrics


def _metric_value(metrics_data: Any, metric_name: str) -> int:
    """Sum of all data points of a counter, 0 if it was never recorded."""
    if not metrics_data or not metrics_data.resource_metrics:
        return 0

    for resource_metric in metrics_data.resource_metrics:
        for scope_metric in resource_metric.scope_metrics:
            for metric in scope_metric.metrics:
                if metric.name == metric_name:
                    return sum(dp.value for dp in metric.data.data_points)
    return 0


def _metric_attributes(metrics_data: Any, metric_name: str) -> list[dict[str, Any]]:
    if not metrics_data or not metrics_data.resource_metrics:
        return []

    for resource_metric in metrics_data.resource_metrics:
        for scope_metric in resource_metric.scope_metrics:
            for metric in scope_metric.metrics:
                if metric.name == metric_name:
                    return [dict(dp.attributes) for dp in metric.data.data_points]
    return []


class TestSnapshot:
    def test_disabled_metrics_use_noops(self) -> None:
        metrics = WorkerMetrics("host-a", "1", enable_metrics=False)

        assert isinstance(metrics._uploads_counter, NoOpCounter)
        assert isinstance(metrics._space_duration_histogram, NoOpHistogram)

    def test_snapshot_counts_everything(self) -> None:
        metrics = WorkerMetrics("host-a", "1", enable_metrics=False)

        metrics.record_resolution("resolved")
        metrics.record_resolution("degraded")
        metrics.record_resolution("resolved")
        metrics.record_upload(verified=True)
        metrics.record_upload(verified=False)
        metrics.record_space_finished("failed", duration_seconds=1.5)
        metrics.record_attribution_conflicts(2)
        metrics.record_attribution_conflicts(0)
        metrics.record_reclaimed()

        assert metrics.get_snapshot().to_dict() == {
            "resolutions": {"resolved": 2, "degraded": 1},
            "uploads_verified": 1,
            "uploads_pending": 1,
            "spaces": {"failed": 1},
            "attribution_conflicts": 2,
            "records_reclaimed": 1,
        }


class TestOpenTelemetry:
    def test_counters_exported(self, metric_reader: Any) -> None:
        metrics = WorkerMetrics("host-a", "1")

        metrics.record_upload(verified=True)
        metrics.record_upload(verified=True)
        metrics.record_space_finished("completed", duration_seconds=3.0)
        metrics.record_reclaimed(2)

        data = metric_reader.get_metrics_data()
        assert _metric_value(data, "migration.uploads.checked") == 2
        assert _metric_value(data, "migration.spaces.finished") == 1
        assert _metric_value(data, "migration.records.reclaimed") == 2

    def test_labels_carry_worker_identity(self, metric_reader: Any) -> None:
        metrics = WorkerMetrics("host-a", "1")

        metrics.record_resolution("unavailable")

        [attributes] = _metric_attributes(
            metric_reader.get_metrics_data(), "migration.claims.resolutions"
        )
        assert attributes == {"instance_id": "host-a", "worker_id": "1", "outcome": "unavailable"}

    def test_global_meter_still_snapshots(self, reset_migration_meter: None) -> None:
        metrics = WorkerMetrics("host-a", "1")

        metrics.record_upload(verified=False)

        assert metrics.get_snapshot().uploads_pending == 1
