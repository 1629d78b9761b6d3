"""
Unit tests for aggregation and diagnostics.

A small fleet is seeded with one record per status:

    pending      CUSTOMER        0/3
    in-progress  CUSTOMER        1/2   host-a/1, stale
    completed    CUSTOMER        4/4   host-a/2, one attribution conflict
    failed       OTHER_CUSTOMER  0/1   host-b/1
"""

from __future__ import annotations

from datetime import timedelta

import pytest
import pytest_asyncio

from spacemigration.config import MigrationSettings
from spacemigration.diagnostics import (
    FleetStats,
    StatsAccumulator,
    collect_customer_stats,
    collect_fleet_stats,
    collect_instance_stats,
    list_failed,
    list_stuck,
    watch,
)
from spacemigration.ledger import InMemoryProgressLedger
from spacemigration.models import SpaceMigrationRecord, SpaceStatus
from tests.conftest import CUSTOMER, OTHER_CUSTOMER
from tests.fixtures import FakeClock

HOUR = timedelta(hours=1)


@pytest_asyncio.fixture
async def fleet(ledger: InMemoryProgressLedger, clock: FakeClock) -> InMemoryProgressLedger:
    await ledger.create(CUSTOMER, "did:key:pending", total_uploads=3)

    await ledger.create(CUSTOMER, "did:key:running", total_uploads=2)
    await ledger.claim(CUSTOMER, "did:key:running", "host-a", "1")
    await ledger.record_progress(CUSTOMER, "did:key:running", "host-a", "1", 1, "r1")

    await ledger.create(CUSTOMER, "did:key:done", total_uploads=4)
    await ledger.claim(CUSTOMER, "did:key:done", "host-a", "2")
    await ledger.record_progress(
        CUSTOMER, "did:key:done", "host-a", "2", 4, "r4", attribution_conflicts=("d1",)
    )
    await ledger.complete(CUSTOMER, "did:key:done", "host-a", "2")

    await ledger.create(OTHER_CUSTOMER, "did:key:broken", total_uploads=1)
    await ledger.claim(OTHER_CUSTOMER, "did:key:broken", "host-b", "1")
    await ledger.fail(OTHER_CUSTOMER, "did:key:broken", "boom", "host-b", "1")

    clock.advance(2 * HOUR)
    return ledger


class TestCollectFleetStats:
    async def test_counts_by_status(self, fleet: InMemoryProgressLedger, clock: FakeClock) -> None:
        stats = await collect_fleet_stats(fleet, stuck_threshold=HOUR, now=clock.now)

        assert (stats.total, stats.pending, stats.in_progress, stats.completed, stats.failed) == (
            4,
            1,
            1,
            1,
            1,
        )
        assert stats.total_uploads == 10
        assert stats.completed_uploads == 5
        assert stats.completion_percent == 25.0
        assert stats.upload_completion_percent == 50.0

    async def test_breakdown_by_owner(self, fleet: InMemoryProgressLedger, clock: FakeClock) -> None:
        stats = await collect_fleet_stats(fleet, stuck_threshold=HOUR, now=clock.now)

        assert set(stats.by_instance) == {"host-a", "host-b"}
        host_a = stats.by_instance["host-a"]
        assert (host_a.total, host_a.pending, host_a.in_progress, host_a.completed) == (2, 0, 1, 1)
        assert (host_a.uploads_completed, host_a.total_uploads) == (5, 6)
        assert host_a.completion_percent == 50.0
        assert host_a.upload_completion_percent == pytest.approx(500 / 6)
        host_b = stats.by_instance["host-b"]
        assert (host_b.failed, host_b.total_uploads, host_b.upload_completion_percent) == (1, 1, 0.0)
        assert set(stats.by_worker) == {"host-a/1", "host-a/2", "host-b/1"}
        assert stats.by_worker["host-b/1"].failed == 1
        assert stats.by_worker["host-a/2"].upload_completion_percent == 100.0

    async def test_stuck_failed_and_conflicts(
        self, fleet: InMemoryProgressLedger, clock: FakeClock
    ) -> None:
        stats = await collect_fleet_stats(fleet, stuck_threshold=HOUR, now=clock.now)

        assert [r.space for r in stats.stuck] == ["did:key:running"]
        assert [(r.space, r.error) for r in stats.failed_records] == [("did:key:broken", "boom")]
        [conflict] = stats.attribution_conflicts
        assert (conflict.customer, conflict.space, conflict.digests) == (
            CUSTOMER,
            "did:key:done",
            ("d1",),
        )

    async def test_higher_threshold_hides_stuck(
        self, fleet: InMemoryProgressLedger, clock: FakeClock
    ) -> None:
        stats = await collect_fleet_stats(fleet, stuck_threshold=3 * HOUR, now=clock.now)

        assert stats.stuck == ()

    async def test_small_pages_see_every_record(
        self, fleet: InMemoryProgressLedger, clock: FakeClock
    ) -> None:
        stats = await collect_fleet_stats(fleet, now=clock.now, page_size=1)

        assert stats.total == 4

    async def test_empty_ledger(self, ledger: InMemoryProgressLedger) -> None:
        stats = await collect_fleet_stats(ledger)

        assert stats.total == 0
        assert stats.completion_percent == 0.0
        assert stats.upload_completion_percent == 0.0

    async def test_to_dict(self, fleet: InMemoryProgressLedger, clock: FakeClock) -> None:
        data = (await collect_fleet_stats(fleet, stuck_threshold=HOUR, now=clock.now)).to_dict()

        assert data["stuck"][0]["age_seconds"] == 7200.0
        assert data["attribution_conflicts"] == [
            {"customer": CUSTOMER, "space": "did:key:done", "digests": ["d1"]}
        ]
        assert list(data["by_instance"]) == ["host-a", "host-b"]
        assert data["by_instance"]["host-b"]["total_uploads"] == 1
        assert data["by_instance"]["host-a"]["completion_percent"] == 50.0
        assert data["stuck_threshold_seconds"] == 3600.0


class TestScopedStats:
    async def test_customer_stats(self, fleet: InMemoryProgressLedger, clock: FakeClock) -> None:
        stats = await collect_customer_stats(fleet, CUSTOMER, now=clock.now)

        assert stats.total == 3
        assert stats.failed == 0

    async def test_instance_stats(self, fleet: InMemoryProgressLedger, clock: FakeClock) -> None:
        stats = await collect_instance_stats(fleet, "host-b", now=clock.now)

        assert stats.total == 1
        assert stats.failed == 1

    async def test_list_failed(self, fleet: InMemoryProgressLedger) -> None:
        failed = await list_failed(fleet)

        assert [r.space for r in failed] == ["did:key:broken"]

    async def test_list_stuck(self, fleet: InMemoryProgressLedger) -> None:
        stuck = await list_stuck(fleet, HOUR)

        assert [r.space for r in stuck] == ["did:key:running"]


class TestStatsAccumulator:
    def test_finish_is_repeatable(self) -> None:
        acc = StatsAccumulator()
        acc.add(SpaceMigrationRecord(customer=CUSTOMER, space="s1", total_uploads=2))

        assert acc.finish() == acc.finish()

    def test_unowned_record_not_in_breakdown(self) -> None:
        acc = StatsAccumulator()
        acc.add(SpaceMigrationRecord(customer=CUSTOMER, space="s1", status=SpaceStatus.PENDING))

        stats = acc.finish()

        assert stats.by_instance == {}
        assert stats.by_worker == {}

    def test_released_record_counts_as_pending_for_last_owner(self) -> None:
        acc = StatsAccumulator()
        acc.add(
            SpaceMigrationRecord(
                customer=CUSTOMER,
                space="s1",
                status=SpaceStatus.PENDING,
                total_uploads=4,
                completed_uploads=1,
                instance_id="host-c",
                worker_id="3",
            )
        )

        owner = acc.finish().by_instance["host-c"]

        assert (owner.total, owner.pending) == (1, 1)
        assert owner.upload_completion_percent == 25.0


class TestWatch:
    async def test_each_iteration_reads_fresh_state(self, ledger: InMemoryProgressLedger) -> None:
        sleeps: list[float] = []

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)
            await ledger.create(CUSTOMER, f"did:key:new{len(sleeps)}", total_uploads=1)

        snapshots: list[FleetStats] = [
            stats async for stats in watch(ledger, interval=5.0, iterations=3, sleep=fake_sleep)
        ]

        assert [s.total for s in snapshots] == [0, 1, 2]
        assert sleeps == [5.0, 5.0]

    @pytest.mark.parametrize(("interval", "iterations"), [(0.0, None), (-1.0, 1), (1.0, 0)])
    async def test_invalid_arguments(
        self, ledger: InMemoryProgressLedger, interval: float, iterations: int | None
    ) -> None:
        with pytest.raises(ValueError):
            async for _ in watch(ledger, interval=interval, iterations=iterations):
                pass

    async def test_defaults_come_from_settings(self, ledger: InMemoryProgressLedger) -> None:
        for n in range(3):
            await ledger.create(CUSTOMER, f"did:key:s{n}", total_uploads=1)
        settings = MigrationSettings(
            watch_interval=12.0, stale_after=timedelta(minutes=30), page_size=1
        )
        sleeps: list[float] = []

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        snapshots = [
            stats
            async for stats in watch(ledger, iterations=2, settings=settings, sleep=fake_sleep)
        ]

        assert sleeps == [12.0]
        assert [s.total for s in snapshots] == [3, 3]
        assert snapshots[0].stuck_threshold == timedelta(minutes=30)

    async def test_explicit_interval_overrides_settings(
        self, ledger: InMemoryProgressLedger
    ) -> None:
        sleeps: list[float] = []

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        async for _ in watch(
            ledger,
            interval=2.0,
            iterations=2,
            settings=MigrationSettings(watch_interval=12.0),
            sleep=fake_sleep,
        ):
            pass

        assert sleeps == [2.0]
