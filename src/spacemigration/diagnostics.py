"""
Aggregation and diagnostics over the progress ledger.

Everything here is read-only. A StatsAccumulator is created per collection,
fed records from a ledger scan and reduced to an immutable FleetStats.
Nothing is cached between collections, so every call reflects the ledger
as it is now.

Usage:
    >>> stats = await collect_fleet_stats(ledger)
    >>> print(f"{stats.completion_percent:.1f}% of spaces migrated")
    >>> for conflict in stats.attribution_conflicts:
    ...     print(conflict)
    >>>
    >>> async for stats in watch(ledger, settings=MigrationSettings.from_env()):
    ...     print(stats.to_dict())
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from spacemigration.config import MigrationSettings
from spacemigration.exceptions import ProviderAttributionConflictError
from spacemigration.ledger.interface import DEFAULT_PAGE_SIZE, ProgressLedger, to_utc
from spacemigration.models import (
    DEFAULT_STALE_AFTER,
    Page,
    SpaceMigrationRecord,
    SpaceStatus,
    utc_now,
)

logger = logging.getLogger(__name__)


def _percent(part: int, whole: int) -> float:
    if whole == 0:
        return 0.0
    return (part / whole) * 100


@dataclass
class OwnerStats:
    """Counts for the records last owned by one instance or worker."""

    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    total_uploads: int = 0
    uploads_completed: int = 0

    @property
    def completion_percent(self) -> float:
        return _percent(self.completed, self.total)

    @property
    def upload_completion_percent(self) -> float:
        return _percent(self.uploads_completed, self.total_uploads)

    def add(self, record: SpaceMigrationRecord) -> None:
        self.total += 1
        self.total_uploads += record.total_uploads
        self.uploads_completed += record.completed_uploads
        if record.status == SpaceStatus.PENDING:
            self.pending += 1
        elif record.status == SpaceStatus.IN_PROGRESS:
            self.in_progress += 1
        elif record.status == SpaceStatus.COMPLETED:
            self.completed += 1
        elif record.status == SpaceStatus.FAILED:
            self.failed += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "in_progress": self.in_progress,
            "completed": self.completed,
            "failed": self.failed,
            "total_uploads": self.total_uploads,
            "uploads_completed": self.uploads_completed,
            "completion_percent": self.completion_percent,
            "upload_completion_percent": self.upload_completion_percent,
        }


@dataclass(frozen=True)
class FleetStats:
    """
    Migration state of a set of spaces at one point in time.

    Attributes:
        total: Records seen.
        pending, in_progress, completed, failed: Records per status.
        total_uploads: Sum of ``total_uploads`` over all records.
        completed_uploads: Sum of ``completed_uploads`` over all records.
        by_instance: Per-instance counts, keyed by instance id.
        by_worker: Per-worker counts, keyed by ``"instance/worker"``.
        stuck: In-progress records with no update for ``stuck_threshold``.
        failed_records: Failed records; ``error`` holds the failure text.
        attribution_conflicts: One error value per flagged (customer, space).
        stuck_threshold: Threshold used for ``stuck``.
        collected_at: Reference time of the collection.
    """

    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    total_uploads: int = 0
    completed_uploads: int = 0
    by_instance: dict[str, OwnerStats] = field(default_factory=dict)
    by_worker: dict[str, OwnerStats] = field(default_factory=dict)
    stuck: tuple[SpaceMigrationRecord, ...] = ()
    failed_records: tuple[SpaceMigrationRecord, ...] = ()
    attribution_conflicts: tuple[ProviderAttributionConflictError, ...] = ()
    stuck_threshold: timedelta = DEFAULT_STALE_AFTER
    collected_at: datetime = field(default_factory=utc_now)

    @property
    def completion_percent(self) -> float:
        return _percent(self.completed, self.total)

    @property
    def upload_completion_percent(self) -> float:
        return _percent(self.completed_uploads, self.total_uploads)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "in_progress": self.in_progress,
            "completed": self.completed,
            "failed": self.failed,
            "total_uploads": self.total_uploads,
            "completed_uploads": self.completed_uploads,
            "completion_percent": self.completion_percent,
            "upload_completion_percent": self.upload_completion_percent,
            "by_instance": {k: v.to_dict() for k, v in sorted(self.by_instance.items())},
            "by_worker": {k: v.to_dict() for k, v in sorted(self.by_worker.items())},
            "stuck": [
                {
                    "customer": r.customer,
                    "space": r.space,
                    "instance_id": r.instance_id,
                    "worker_id": r.worker_id,
                    "updated_at": r.updated_at.isoformat(),
                    "age_seconds": r.age(self.collected_at).total_seconds(),
                }
                for r in self.stuck
            ],
            "failed_records": [
                {"customer": r.customer, "space": r.space, "error": r.error}
                for r in self.failed_records
            ],
            "attribution_conflicts": [
                {"customer": e.customer, "space": e.space, "digests": list(e.digests)}
                for e in self.attribution_conflicts
            ],
            "stuck_threshold_seconds": self.stuck_threshold.total_seconds(),
            "collected_at": self.collected_at.isoformat(),
        }


class StatsAccumulator:
    """
    Reduces ledger records into a FleetStats.

    Create one per collection; ``finish()`` may be called more than once.

    Example:
        >>> acc = StatsAccumulator()
        >>> for record in records:
        ...     acc.add(record)
        >>> stats = acc.finish()
    """

    def __init__(
        self,
        stuck_threshold: timedelta = DEFAULT_STALE_AFTER,
        now: datetime | None = None,
    ) -> None:
        self._threshold = stuck_threshold
        self._now = to_utc(now) if now is not None else utc_now()
        self._counts = {status: 0 for status in SpaceStatus}
        self._total_uploads = 0
        self._completed_uploads = 0
        self._by_instance: dict[str, OwnerStats] = {}
        self._by_worker: dict[str, OwnerStats] = {}
        self._stuck: list[SpaceMigrationRecord] = []
        self._failed: list[SpaceMigrationRecord] = []
        self._conflicts: list[ProviderAttributionConflictError] = []

    def add(self, record: SpaceMigrationRecord) -> None:
        self._counts[record.status] += 1
        self._total_uploads += record.total_uploads
        self._completed_uploads += record.completed_uploads

        if record.instance_id is not None:
            self._by_instance.setdefault(record.instance_id, OwnerStats()).add(record)
            if record.worker_id is not None:
                key = f"{record.instance_id}/{record.worker_id}"
                self._by_worker.setdefault(key, OwnerStats()).add(record)

        if record.is_stale(self._threshold, self._now):
            self._stuck.append(record)
        if record.status == SpaceStatus.FAILED:
            self._failed.append(record)
        if record.attribution_conflicts:
            self._conflicts.append(
                ProviderAttributionConflictError(
                    record.customer, record.space, tuple(record.attribution_conflicts)
                )
            )

    def finish(self) -> FleetStats:
        return FleetStats(
            total=sum(self._counts.values()),
            pending=self._counts[SpaceStatus.PENDING],
            in_progress=self._counts[SpaceStatus.IN_PROGRESS],
            completed=self._counts[SpaceStatus.COMPLETED],
            failed=self._counts[SpaceStatus.FAILED],
            total_uploads=self._total_uploads,
            completed_uploads=self._completed_uploads,
            by_instance=dict(self._by_instance),
            by_worker=dict(self._by_worker),
            stuck=tuple(self._stuck),
            failed_records=tuple(self._failed),
            attribution_conflicts=tuple(self._conflicts),
            stuck_threshold=self._threshold,
            collected_at=self._now,
        )


async def iter_records(
    scan: Callable[[str | None], Awaitable[Page[SpaceMigrationRecord]]],
) -> AsyncIterator[SpaceMigrationRecord]:
    """Follow page tokens until the scan is exhausted."""
    token: str | None = None
    while True:
        page = await scan(token)
        for record in page.items:
            yield record
        if not page.has_more:
            return
        token = page.next_token


async def _collect(
    scan: Callable[[str | None], Awaitable[Page[SpaceMigrationRecord]]],
    stuck_threshold: timedelta,
    now: datetime | None,
) -> FleetStats:
    acc = StatsAccumulator(stuck_threshold, now)
    async for record in iter_records(scan):
        acc.add(record)
    return acc.finish()


async def collect_fleet_stats(
    ledger: ProgressLedger,
    *,
    stuck_threshold: timedelta = DEFAULT_STALE_AFTER,
    now: datetime | None = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> FleetStats:
    """Stats over every record in the ledger."""
    stats = await _collect(
        lambda token: ledger.scan_all(token, limit=page_size), stuck_threshold, now
    )
    logger.debug(
        "Collected fleet stats: %d record(s), %d stuck, %d failed",
        stats.total,
        len(stats.stuck),
        stats.failed,
    )
    return stats


async def collect_customer_stats(
    ledger: ProgressLedger,
    customer: str,
    *,
    stuck_threshold: timedelta = DEFAULT_STALE_AFTER,
    now: datetime | None = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> FleetStats:
    """Stats over one customer's spaces."""
    return await _collect(
        lambda token: ledger.scan_by_customer(customer, page_token=token, limit=page_size),
        stuck_threshold,
        now,
    )


async def collect_instance_stats(
    ledger: ProgressLedger,
    instance_id: str,
    *,
    stuck_threshold: timedelta = DEFAULT_STALE_AFTER,
    now: datetime | None = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> FleetStats:
    """Stats over the records last owned by one instance."""
    return await _collect(
        lambda token: ledger.scan_by_instance(instance_id, page_token=token, limit=page_size),
        stuck_threshold,
        now,
    )


async def list_failed(
    ledger: ProgressLedger,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> list[SpaceMigrationRecord]:
    return [
        record
        async for record in iter_records(
            lambda token: ledger.scan_failed(page_token=token, limit=page_size)
        )
    ]


async def list_stuck(
    ledger: ProgressLedger,
    threshold: timedelta = DEFAULT_STALE_AFTER,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> list[SpaceMigrationRecord]:
    return [
        record
        async for record in iter_records(
            lambda token: ledger.scan_stuck(threshold, page_token=token, limit=page_size)
        )
    ]


async def watch(
    ledger: ProgressLedger,
    interval: float | None = None,
    iterations: int | None = None,
    *,
    settings: MigrationSettings | None = None,
    stuck_threshold: timedelta | None = None,
    page_size: int | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncIterator[FleetStats]:
    """
    Yield fresh fleet stats every ``interval`` seconds.

    Arguments left as None fall back to ``settings``: ``watch_interval``,
    ``stale_after`` and ``page_size``.

    Args:
        ledger: Ledger to read
        interval: Seconds between collections
        iterations: Number of collections, None to run until the consumer stops
        settings: Source of defaults, MigrationSettings() if not given
        stuck_threshold: Threshold for stuck records
        page_size: Scan page size
        sleep: Awaitable sleep, injectable for tests
    """
    settings = settings or MigrationSettings()
    if interval is None:
        interval = settings.watch_interval
    if stuck_threshold is None:
        stuck_threshold = settings.stale_after
    if page_size is None:
        page_size = settings.page_size

    if interval <= 0:
        raise ValueError(f"interval must be positive, got {interval}")
    if iterations is not None and iterations < 1:
        raise ValueError(f"iterations must be positive, got {iterations}")

    count = 0
    while True:
        yield await collect_fleet_stats(
            ledger, stuck_threshold=stuck_threshold, page_size=page_size
        )
        count += 1
        if iterations is not None and count >= iterations:
            return
        await sleep(interval)


__all__ = [
    "OwnerStats",
    "FleetStats",
    "StatsAccumulator",
    "iter_records",
    "collect_fleet_stats",
    "collect_customer_stats",
    "collect_instance_stats",
    "list_failed",
    "list_stuck",
    "watch",
]
