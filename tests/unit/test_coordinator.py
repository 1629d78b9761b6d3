"""
Unit tests for WorkCoordinator.

Tests cover:
- Claiming pending records up to the batch size
- Stale in-progress records reclaimed before pending ones
- Failed records only when retry_failed is enabled
- Concurrent coordinators never sharing a record
- release() and reclaim_stale()
"""

from __future__ import annotations

import asyncio
import dataclasses
import random
from datetime import timedelta

import pytest

from spacemigration.config import MigrationSettings
from spacemigration.coordinator import WorkCoordinator
from spacemigration.ledger import InMemoryProgressLedger
from spacemigration.metrics import WorkerMetrics
from spacemigration.models import SpaceStatus
from spacemigration.observability import MockTracer
from tests.conftest import CUSTOMER, OTHER_CUSTOMER, SPACE
from tests.fixtures import FakeClock


async def seed(ledger: InMemoryProgressLedger, count: int, customer: str = CUSTOMER) -> list[str]:
    spaces = [f"did:key:space{i}" for i in range(count)]
    for space in spaces:
        await ledger.create(customer, space, total_uploads=1)
    return spaces


class TestAcquireWork:
    async def test_no_work(self, coordinator: WorkCoordinator) -> None:
        assert await coordinator.acquire_work("host-a", "1") == []

    async def test_claims_pending_records(
        self, ledger: InMemoryProgressLedger, coordinator: WorkCoordinator
    ) -> None:
        spaces = await seed(ledger, 3)

        claimed = await coordinator.acquire_work("host-a", "1")

        assert sorted(r.space for r in claimed) == spaces
        assert all(r.is_owned_by("host-a", "1") for r in claimed)
        stored = await ledger.get(CUSTOMER, spaces[0])
        assert stored is not None
        assert stored.status == SpaceStatus.IN_PROGRESS

    async def test_batch_size_limits_claims(
        self, ledger: InMemoryProgressLedger, coordinator: WorkCoordinator
    ) -> None:
        await seed(ledger, 5)

        claimed = await coordinator.acquire_work("host-a", "1", batch_size=2)

        assert len(claimed) == 2
        page = await ledger.scan_by_status(SpaceStatus.PENDING)
        assert len(page.items) == 3

    async def test_batch_size_must_be_positive(self, coordinator: WorkCoordinator) -> None:
        with pytest.raises(ValueError, match="batch_size"):
            await coordinator.acquire_work("host-a", "1", batch_size=0)

    async def test_pages_through_all_pending(
        self, ledger: InMemoryProgressLedger, settings: MigrationSettings
    ) -> None:
        """Candidates come from every page, not just the first."""
        await seed(ledger, 5)
        await seed(ledger, 2, customer=OTHER_CUSTOMER)
        coordinator = WorkCoordinator(
            ledger,
            dataclasses.replace(settings, page_size=2),
            rng=random.Random(1),
            enable_tracing=False,
        )

        claimed = await coordinator.acquire_work("host-a", "1", batch_size=10)

        assert len(claimed) == 7

    async def test_stale_records_come_first(
        self, ledger: InMemoryProgressLedger, clock: FakeClock, settings: MigrationSettings
    ) -> None:
        """A record abandoned by a dead worker is taken over before pending work."""
        await ledger.create(CUSTOMER, SPACE, total_uploads=1)
        await ledger.claim(CUSTOMER, SPACE, "host-dead", "1")
        clock.advance(timedelta(hours=2))
        await seed(ledger, 3)
        metrics = WorkerMetrics("host-a", "1", enable_metrics=False)
        coordinator = WorkCoordinator(
            ledger, settings, metrics=metrics, rng=random.Random(3), enable_tracing=False
        )

        claimed = await coordinator.acquire_work("host-a", "1", batch_size=1)

        assert [r.space for r in claimed] == [SPACE]
        assert claimed[0].owner == ("host-a", "1")
        assert metrics.get_snapshot().records_reclaimed == 1

    async def test_fresh_in_progress_not_taken(
        self, ledger: InMemoryProgressLedger, coordinator: WorkCoordinator, clock: FakeClock
    ) -> None:
        await ledger.create(CUSTOMER, SPACE, total_uploads=1)
        await ledger.claim(CUSTOMER, SPACE, "host-b", "1")
        clock.advance(timedelta(minutes=30))

        assert await coordinator.acquire_work("host-a", "1") == []

        stored = await ledger.get(CUSTOMER, SPACE)
        assert stored is not None
        assert stored.owner == ("host-b", "1")

    async def test_failed_records_skipped_by_default(
        self, ledger: InMemoryProgressLedger, coordinator: WorkCoordinator
    ) -> None:
        await ledger.create(CUSTOMER, SPACE, total_uploads=1)
        await ledger.claim(CUSTOMER, SPACE, "host-b", "1")
        await ledger.fail(CUSTOMER, SPACE, "boom", "host-b", "1")

        assert await coordinator.acquire_work("host-a", "1") == []

    async def test_failed_records_claimed_with_retry_failed(
        self, ledger: InMemoryProgressLedger, settings: MigrationSettings
    ) -> None:
        await ledger.create(CUSTOMER, SPACE, total_uploads=1)
        await ledger.claim(CUSTOMER, SPACE, "host-b", "1")
        await ledger.fail(CUSTOMER, SPACE, "boom", "host-b", "1")
        coordinator = WorkCoordinator(
            ledger, dataclasses.replace(settings, retry_failed=True), enable_tracing=False
        )

        claimed = await coordinator.acquire_work("host-a", "1")

        assert [r.space for r in claimed] == [SPACE]
        assert claimed[0].error is None

    async def test_pending_preferred_over_failed(
        self, ledger: InMemoryProgressLedger, settings: MigrationSettings
    ) -> None:
        await ledger.create(CUSTOMER, "did:key:failed", total_uploads=1)
        await ledger.claim(CUSTOMER, "did:key:failed", "host-b", "1")
        await ledger.fail(CUSTOMER, "did:key:failed", "boom", "host-b", "1")
        await ledger.create(CUSTOMER, "did:key:pending", total_uploads=1)
        coordinator = WorkCoordinator(
            ledger, dataclasses.replace(settings, retry_failed=True), enable_tracing=False
        )

        claimed = await coordinator.acquire_work("host-a", "1", batch_size=1)

        assert [r.space for r in claimed] == ["did:key:pending"]

    async def test_concurrent_coordinators_never_share(
        self, ledger: InMemoryProgressLedger, settings: MigrationSettings
    ) -> None:
        """Two workers racing over the same pages end up with disjoint batches."""
        spaces = await seed(ledger, 6)
        first = WorkCoordinator(ledger, settings, rng=random.Random(1), enable_tracing=False)
        second = WorkCoordinator(ledger, settings, rng=random.Random(2), enable_tracing=False)

        a, b = await asyncio.gather(
            first.acquire_work("host-a", "1"),
            second.acquire_work("host-b", "1"),
        )

        a_spaces = {r.space for r in a}
        b_spaces = {r.space for r in b}
        assert not a_spaces & b_spaces
        assert a_spaces | b_spaces == set(spaces)

    async def test_acquire_is_traced(
        self,
        ledger: InMemoryProgressLedger,
        settings: MigrationSettings,
        mock_tracer: MockTracer,
    ) -> None:
        coordinator = WorkCoordinator(ledger, settings, tracer=mock_tracer)

        await coordinator.acquire_work("host-a", "1")

        assert mock_tracer.span_names == ["spacemigration.coordinator.acquire_work"]


class TestRelease:
    async def test_release_returns_to_pending(
        self, ledger: InMemoryProgressLedger, coordinator: WorkCoordinator
    ) -> None:
        await ledger.create(CUSTOMER, SPACE, total_uploads=1)
        [record] = await coordinator.acquire_work("host-a", "1")

        released = await coordinator.release(record, "host-a", "1")

        assert released is not None
        assert released.status == SpaceStatus.PENDING

    async def test_release_by_non_owner_returns_none(
        self, ledger: InMemoryProgressLedger, coordinator: WorkCoordinator
    ) -> None:
        await ledger.create(CUSTOMER, SPACE, total_uploads=1)
        [record] = await coordinator.acquire_work("host-a", "1")

        assert await coordinator.release(record, "host-b", "1") is None
        stored = await ledger.get(CUSTOMER, SPACE)
        assert stored is not None
        assert stored.owner == ("host-a", "1")


class TestReclaimStale:
    async def test_reclaims_only_stale_records(
        self, ledger: InMemoryProgressLedger, coordinator: WorkCoordinator, clock: FakeClock
    ) -> None:
        await ledger.create(CUSTOMER, "did:key:old", total_uploads=1)
        await ledger.claim(CUSTOMER, "did:key:old", "host-b", "1")
        clock.advance(timedelta(hours=2))
        await ledger.create(CUSTOMER, "did:key:new", total_uploads=1)
        await ledger.claim(CUSTOMER, "did:key:new", "host-b", "2")

        assert await coordinator.reclaim_stale() == 1

        old = await ledger.get(CUSTOMER, "did:key:old")
        new = await ledger.get(CUSTOMER, "did:key:new")
        assert old is not None and old.status == SpaceStatus.PENDING
        assert new is not None and new.status == SpaceStatus.IN_PROGRESS

    async def test_nothing_to_reclaim(self, coordinator: WorkCoordinator) -> None:
        assert await coordinator.reclaim_stale() == 0
