"""
Migration worker: drives claimed spaces through reconciliation.

For every claimed space the worker walks the space's uploads from the
resume cursor, reconciles each upload root, optionally republishes missing
shards and verifies once more, and finally writes the outcome to the
ledger:

    - every upload verified: ``complete``
    - any upload unverified: ``fail`` with a JSON summary of failure reasons
    - indexing service unavailable: ``fail`` with the error text verbatim
    - ownership lost (conflict or not owner): abandon the space quietly
    - any other error: ``fail`` with ``"<ExceptionType>: <message>"``

The resume cursor only moves over a prefix of verified uploads. A failed
space that is claimed again resumes at its first unverified upload instead
of skipping it.

Progress is written by exactly one ProgressHeartbeat per space, which also
refreshes ``updated_at`` from a background task so slow reconciliation does
not look stale to other workers.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections import Counter
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from spacemigration.config import MigrationSettings
from spacemigration.coordinator import WorkCoordinator
from spacemigration.exceptions import (
    ClaimConflictError,
    IndexingServiceUnavailableError,
    LedgerStateError,
    NotOwnerError,
    RecordNotFoundError,
)
from spacemigration.ledger.interface import ProgressLedger
from spacemigration.metrics import WorkerMetrics
from spacemigration.models import SpaceMigrationRecord
from spacemigration.observability import Tracer, create_tracer
from spacemigration.observability.attributes import (
    ATTR_COMPLETED_UPLOADS,
    ATTR_CUSTOMER,
    ATTR_INSTANCE_ID,
    ATTR_SPACE,
    ATTR_STATUS,
    ATTR_TOTAL_UPLOADS,
    ATTR_WORKER_ID,
)
from spacemigration.reconciliation import ReconciliationResult, RetryBudget, ShardReconciler

logger = logging.getLogger(__name__)


@runtime_checkable
class UploadCatalog(Protocol):
    """Source of the upload roots stored in a space."""

    def list_uploads(self, space: str, *, after: str | None = None) -> AsyncIterator[str]:
        """Yield upload roots in a stable order, starting after ``after``."""
        ...

    async def count_uploads(self, space: str) -> int: ...


@runtime_checkable
class Republisher(Protocol):
    """Re-issues location claims for shards that failed verification."""

    async def republish(self, space: str, root: str, missing: Sequence[str]) -> None: ...


class SpaceOutcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


@dataclass
class SpaceRunResult:
    """What happened to one space during a worker pass."""

    customer: str
    space: str
    outcome: SpaceOutcome
    uploads_checked: int = 0
    uploads_verified: int = 0
    failure_reasons: dict[str, int] = field(default_factory=dict)
    error: str | None = None
    attribution_conflicts: tuple[str, ...] = ()
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "customer": self.customer,
            "space": self.space,
            "outcome": self.outcome.value,
            "uploads_checked": self.uploads_checked,
            "uploads_verified": self.uploads_verified,
            "failure_reasons": dict(self.failure_reasons),
            "error": self.error,
            "attribution_conflicts": list(self.attribution_conflicts),
            "duration_seconds": self.duration_seconds,
        }


class ProgressHeartbeat:
    """
    The single progress writer for one claimed record.

    Counters are flushed every ``every_uploads`` uploads and from a
    background task every ``interval`` seconds. A background flush that
    loses ownership is re-raised from the next ``advance`` or ``flush``.

    Example:
        >>> async with ProgressHeartbeat(ledger, record, "host-a", "1") as heartbeat:
        ...     await heartbeat.advance(root, verified=True)
    """

    def __init__(
        self,
        ledger: ProgressLedger,
        record: SpaceMigrationRecord,
        instance_id: str,
        worker_id: str,
        *,
        total_uploads: int | None = None,
        interval: float = 60.0,
        every_uploads: int = 10,
    ) -> None:
        self._ledger = ledger
        self._customer = record.customer
        self._space = record.space
        self._instance_id = instance_id
        self._worker_id = worker_id
        self._interval = interval
        self._every_uploads = every_uploads

        self.completed = record.completed_uploads
        self.cursor = record.last_processed_upload
        self.total = max(record.total_uploads, total_uploads or 0, self.completed)
        self._conflicts: set[str] = set(record.attribution_conflicts)
        self._stored_conflicts = len(self._conflicts)
        self._prefix_verified = True
        self._unflushed = 0
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._failure: Exception | None = None
        self._record = record

    @property
    def record(self) -> SpaceMigrationRecord:
        """Last record written (or the claimed record before any flush)."""
        return self._record

    @property
    def attribution_conflicts(self) -> tuple[str, ...]:
        return tuple(sorted(self._conflicts))

    async def __aenter__(self) -> ProgressHeartbeat:
        self._task = asyncio.create_task(self._beat())
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def advance(
        self,
        root: str,
        *,
        verified: bool,
        conflicts: Iterable[str] = (),
    ) -> None:
        self._check()
        self._conflicts.update(conflicts)
        if verified and self._prefix_verified:
            self.completed += 1
            self.cursor = root
            self.total = max(self.total, self.completed)
        else:
            self._prefix_verified = False
        self._unflushed += 1
        if self._unflushed >= self._every_uploads:
            await self.flush()

    async def flush(self) -> SpaceMigrationRecord:
        """
        Write counters, cursor and conflicts; refreshes ``updated_at``.

        Raises:
            NotOwnerError: If another worker took the record over.
        """
        self._check()
        async with self._lock:
            conflicts = self.attribution_conflicts
            self._record = await self._ledger.record_progress(
                self._customer,
                self._space,
                self._instance_id,
                self._worker_id,
                self.completed,
                self.cursor,
                total_uploads=self.total,
                attribution_conflicts=conflicts if len(conflicts) != self._stored_conflicts else None,
            )
            self._stored_conflicts = len(conflicts)
            self._unflushed = 0
            return self._record

    def _check(self) -> None:
        if self._failure is not None:
            raise self._failure

    async def _beat(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval)
                await self.flush()
        except Exception as e:
            # Re-raised by the next advance() or flush().
            logger.warning(
                "Heartbeat for %s/%s stopped: %s", self._customer, self._space, e
            )
            self._failure = e


class SpaceMigrationWorker:
    """
    Processes spaces claimed through a WorkCoordinator.

    Args:
        instance_id: This worker's instance
        worker_id: This worker's id within the instance
        coordinator: Hands out claimed records
        ledger: Progress ledger the coordinator claims from
        reconciler: Verifies upload roots
        catalog: Lists the uploads of a space
        republisher: Optional; missing shards are republished and re-verified
        settings: Batch size, heartbeat and idle tunables
        metrics: Optional worker metrics
        clock: Monotonic clock for durations
        sleep: Awaitable sleep used when idle
        tracer: Optional tracer for tracing
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        instance_id: str,
        worker_id: str,
        coordinator: WorkCoordinator,
        ledger: ProgressLedger,
        reconciler: ShardReconciler,
        catalog: UploadCatalog,
        *,
        republisher: Republisher | None = None,
        settings: MigrationSettings | None = None,
        metrics: WorkerMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self.instance_id = instance_id
        self.worker_id = worker_id
        self._coordinator = coordinator
        self._ledger = ledger
        self._reconciler = reconciler
        self._catalog = catalog
        self._republisher = republisher
        self._settings = settings or MigrationSettings(
            instance_id=instance_id, worker_id=worker_id
        )
        self._metrics = metrics
        self._clock = clock
        self._sleep = sleep

    async def run(self, stop_event: asyncio.Event | None = None) -> int:
        """
        Process batches until ``stop_event`` is set.

        Returns:
            Number of spaces processed.
        """
        stop = stop_event or asyncio.Event()
        processed = 0
        logger.info(
            "Worker %s/%s started with %s",
            self.instance_id,
            self.worker_id,
            self._settings.to_dict(),
        )
        while not stop.is_set():
            results = await self.run_once()
            processed += len(results)
            if results:
                continue
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self._settings.idle_sleep)
        logger.info(
            "Worker %s/%s stopped after %d space(s)",
            self.instance_id,
            self.worker_id,
            processed,
        )
        return processed

    async def run_once(self) -> list[SpaceRunResult]:
        """Acquire one batch and process every space in it."""
        records = await self._coordinator.acquire_work(
            self.instance_id, self.worker_id, self._settings.batch_size
        )
        return [await self.process_space(record) for record in records]

    async def process_space(self, record: SpaceMigrationRecord) -> SpaceRunResult:
        """Reconcile every upload of a claimed space and write its outcome."""
        started = self._clock()
        result = SpaceRunResult(
            customer=record.customer,
            space=record.space,
            outcome=SpaceOutcome.ABANDONED,
        )
        with self._tracer.span(
            "spacemigration.worker.process_space",
            {
                ATTR_CUSTOMER: record.customer,
                ATTR_SPACE: record.space,
                ATTR_INSTANCE_ID: self.instance_id,
                ATTR_WORKER_ID: self.worker_id,
            },
        ) as span:
            logger.info(
                "Processing %s/%s from %s (%d/%d uploads done)",
                record.customer,
                record.space,
                record.last_processed_upload or "start",
                record.completed_uploads,
                record.total_uploads,
            )
            try:
                await self._reconcile_space(record, result)
            except (ClaimConflictError, NotOwnerError, RecordNotFoundError) as e:
                logger.warning(
                    "Abandoning %s/%s, ownership lost: %s", record.customer, record.space, e
                )
                result.outcome = SpaceOutcome.ABANDONED
            except IndexingServiceUnavailableError as e:
                await self._fail(record, result, str(e))
            except Exception as e:
                logger.exception("Unexpected error processing %s/%s", record.customer, record.space)
                await self._fail(record, result, f"{type(e).__name__}: {e}")

            result.duration_seconds = self._clock() - started
            if span is not None:
                span.set_attribute(ATTR_STATUS, result.outcome.value)
                span.set_attribute(ATTR_COMPLETED_UPLOADS, result.uploads_verified)
                span.set_attribute(ATTR_TOTAL_UPLOADS, result.uploads_checked)
            if self._metrics is not None:
                self._metrics.record_space_finished(
                    result.outcome.value, duration_seconds=result.duration_seconds
                )
            return result

    async def _reconcile_space(
        self,
        record: SpaceMigrationRecord,
        result: SpaceRunResult,
    ) -> None:
        budget = self._reconciler.new_budget()
        reasons: Counter[str] = Counter()
        total = await self._catalog.count_uploads(record.space)
        heartbeat = ProgressHeartbeat(
            self._ledger,
            record,
            self.instance_id,
            self.worker_id,
            total_uploads=total,
            interval=self._settings.heartbeat_interval,
            every_uploads=self._settings.heartbeat_every_uploads,
        )
        async with heartbeat:
            async for root in self._catalog.list_uploads(
                record.space, after=record.last_processed_upload
            ):
                verification = await self._verify(record.space, root, budget)
                result.uploads_checked += 1
                if verification.is_verified:
                    result.uploads_verified += 1
                else:
                    reasons[verification.reason or "unknown"] += 1
                conflicts = [c.digest for c in verification.attribution_conflicts]
                if conflicts and self._metrics is not None:
                    self._metrics.record_attribution_conflicts(len(conflicts))
                await heartbeat.advance(
                    root, verified=verification.is_verified, conflicts=conflicts
                )
            await heartbeat.flush()

        result.attribution_conflicts = heartbeat.attribution_conflicts
        result.failure_reasons = dict(reasons)
        if reasons:
            await self._fail(record, result, json.dumps(dict(reasons), sort_keys=True))
            return

        await self._ledger.complete(
            record.customer, record.space, self.instance_id, self.worker_id
        )
        result.outcome = SpaceOutcome.COMPLETED
        logger.info(
            "Completed %s/%s: %d upload(s) verified",
            record.customer,
            record.space,
            result.uploads_verified,
        )

    async def _verify(
        self,
        space: str,
        root: str,
        budget: RetryBudget,
    ) -> ReconciliationResult:
        verification = await self._reconciler.reconcile(space, root, budget=budget)
        if (
            not verification.is_verified
            and self._republisher is not None
            and verification.missing_shards
        ):
            logger.info(
                "Republishing %d shard(s) of %s in space %s",
                len(verification.missing_shards),
                root,
                space,
            )
            await self._republisher.republish(space, root, verification.missing_shards)
            verification = await self._reconciler.reconcile(space, root, budget=budget)
        if self._metrics is not None:
            self._metrics.record_upload(verification.is_verified)
        return verification

    async def _fail(
        self,
        record: SpaceMigrationRecord,
        result: SpaceRunResult,
        error: str,
    ) -> None:
        try:
            await self._ledger.fail(
                record.customer, record.space, error, self.instance_id, self.worker_id
            )
        except (LedgerStateError, RecordNotFoundError) as e:
            logger.warning(
                "Abandoning %s/%s, could not record failure: %s",
                record.customer,
                record.space,
                e,
            )
            result.outcome = SpaceOutcome.ABANDONED
            return
        result.outcome = SpaceOutcome.FAILED
        result.error = error
        logger.error("Failed %s/%s: %s", record.customer, record.space, error)


__all__ = [
    "UploadCatalog",
    "Republisher",
    "SpaceOutcome",
    "SpaceRunResult",
    "ProgressHeartbeat",
    "SpaceMigrationWorker",
]
