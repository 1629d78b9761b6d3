"""
WorkCoordinator - hands out spaces to migration workers.

Workers never talk to each other. Every acquisition is a conditional write
on the progress ledger, so two workers that pick the same record race on
``claim`` and exactly one of them wins. The loser sees ClaimConflictError,
which is expected and skipped.

Acquisition order:
    1. Stale in-progress records (no heartbeat for ``stale_after``) are
       reclaimed to pending and then claimed.
    2. Pending records.
    3. Failed records, only when ``retry_failed`` is enabled.

Each scanned page is shuffled so workers scanning the same page collide
less often.

Usage:
    >>> coordinator = WorkCoordinator(ledger, settings)
    >>> records = await coordinator.acquire_work("host-a", "1", batch_size=5)
    >>> for record in records:
    ...     ...
    >>> await coordinator.release(record, "host-a", "1")
"""

from __future__ import annotations

import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable

from spacemigration.config import MigrationSettings
from spacemigration.exceptions import ClaimConflictError, NotOwnerError, RecordNotFoundError
from spacemigration.ledger.interface import ProgressLedger
from spacemigration.metrics import WorkerMetrics
from spacemigration.models import Page, SpaceMigrationRecord, SpaceStatus
from spacemigration.observability import Tracer, create_tracer
from spacemigration.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_INSTANCE_ID,
    ATTR_WORKER_ID,
)

logger = logging.getLogger(__name__)


class WorkCoordinator:
    """
    Claims batches of spaces for one worker.

    Args:
        ledger: Progress ledger shared by the fleet
        settings: Stale threshold, page size and failed-retry policy
        metrics: Optional metrics; reclaimed records are counted
        rng: Random source for page shuffling, injectable for tests
        tracer: Optional tracer for tracing
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        ledger: ProgressLedger,
        settings: MigrationSettings | None = None,
        *,
        metrics: WorkerMetrics | None = None,
        rng: random.Random | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._ledger = ledger
        self._settings = settings or MigrationSettings()
        self._metrics = metrics
        self._rng = rng or random.Random()

    async def acquire_work(
        self,
        instance_id: str,
        worker_id: str,
        batch_size: int | None = None,
    ) -> list[SpaceMigrationRecord]:
        """
        Claim up to ``batch_size`` records for ``(instance_id, worker_id)``.

        Returns:
            The claimed records, each in progress and owned by the caller.
            Empty when there is no work.
        """
        limit = batch_size if batch_size is not None else self._settings.batch_size
        if limit < 1:
            raise ValueError(f"batch_size must be positive, got {limit}")

        with self._tracer.span(
            "spacemigration.coordinator.acquire_work",
            {ATTR_INSTANCE_ID: instance_id, ATTR_WORKER_ID: worker_id, ATTR_BATCH_SIZE: limit},
        ):
            claimed: list[SpaceMigrationRecord] = []

            async for record in self._candidates(
                lambda token: self._ledger.scan_stuck(
                    self._settings.stale_after,
                    page_token=token,
                    limit=self._settings.page_size,
                )
            ):
                if len(claimed) >= limit:
                    break
                if not await self._reclaim(record):
                    continue
                if (won := await self._try_claim(record, instance_id, worker_id)) is not None:
                    claimed.append(won)

            statuses = [SpaceStatus.PENDING]
            if self._settings.retry_failed:
                statuses.append(SpaceStatus.FAILED)
            for status in statuses:
                if len(claimed) >= limit:
                    break
                async for record in self._candidates(
                    lambda token, status=status: self._ledger.scan_by_status(
                        status, page_token=token, limit=self._settings.page_size
                    )
                ):
                    if len(claimed) >= limit:
                        break
                    if (won := await self._try_claim(record, instance_id, worker_id)) is not None:
                        claimed.append(won)

            if claimed:
                logger.info(
                    "Worker %s/%s acquired %d space(s)",
                    instance_id,
                    worker_id,
                    len(claimed),
                )
            else:
                logger.debug("No work available for %s/%s", instance_id, worker_id)
            return claimed

    async def release(
        self,
        record: SpaceMigrationRecord,
        instance_id: str,
        worker_id: str,
    ) -> SpaceMigrationRecord | None:
        """
        Return an owned record to pending.

        Returns:
            The released record, or None when the caller no longer owned it.
        """
        try:
            released = await self._ledger.release(
                record.customer, record.space, instance_id, worker_id
            )
        except (NotOwnerError, RecordNotFoundError) as e:
            logger.warning("Could not release %s/%s: %s", record.customer, record.space, e)
            return None
        logger.info("Released %s/%s back to pending", record.customer, record.space)
        return released

    async def reclaim_stale(self) -> int:
        """
        Return every stale in-progress record to pending without claiming it.

        Returns:
            Number of records reclaimed by this call.
        """
        with self._tracer.span("spacemigration.coordinator.reclaim_stale"):
            count = 0
            async for record in self._candidates(
                lambda token: self._ledger.scan_stuck(
                    self._settings.stale_after,
                    page_token=token,
                    limit=self._settings.page_size,
                )
            ):
                if await self._reclaim(record):
                    count += 1
            if count:
                logger.info("Reclaimed %d stale record(s)", count)
            return count

    async def _candidates(
        self,
        scan: Callable[[str | None], Awaitable[Page[SpaceMigrationRecord]]],
    ) -> AsyncIterator[SpaceMigrationRecord]:
        token: str | None = None
        while True:
            page = await scan(token)
            items = list(page.items)
            self._rng.shuffle(items)
            for record in items:
                yield record
            if not page.has_more:
                return
            token = page.next_token

    async def _reclaim(self, record: SpaceMigrationRecord) -> bool:
        try:
            await self._ledger.reclaim_stale(
                record.customer, record.space, self._settings.stale_after
            )
        except (ClaimConflictError, RecordNotFoundError):
            # Heartbeat arrived or another worker reclaimed first.
            return False
        logger.warning(
            "Reclaimed stale record %s/%s from %s/%s (last update %s)",
            record.customer,
            record.space,
            record.instance_id,
            record.worker_id,
            record.updated_at.isoformat(),
        )
        if self._metrics is not None:
            self._metrics.record_reclaimed()
        return True

    async def _try_claim(
        self,
        record: SpaceMigrationRecord,
        instance_id: str,
        worker_id: str,
    ) -> SpaceMigrationRecord | None:
        try:
            return await self._ledger.claim(record.customer, record.space, instance_id, worker_id)
        except (ClaimConflictError, RecordNotFoundError) as e:
            logger.debug("Skipping %s/%s: %s", record.customer, record.space, e)
            return None


__all__ = ["WorkCoordinator"]
