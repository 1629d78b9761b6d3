"""
Shared pytest fixtures for the spacemigration tests.

This module provides:
- Clock and ledger fixtures (clock, ledger)
- SQLite fixtures (sqlite_connection, sqlite_ledger)
- Collaborator fakes (claims_client, shard_store, catalog)
- Component fixtures (settings, resolver, reconciler, coordinator)
- OpenTelemetry fixtures (mock_tracer, metric_reader, reset_migration_meter)
"""

from __future__ import annotations

import random
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import pytest
import pytest_asyncio

from spacemigration.claims import ClaimResolver
from spacemigration.config import MigrationSettings
from spacemigration.coordinator import WorkCoordinator
from spacemigration.exceptions import RetryConfig
from spacemigration.ledger import InMemoryProgressLedger
from spacemigration.observability import MockTracer
from spacemigration.reconciliation import ShardReconciler
from tests.fixtures import FakeCatalog, FakeClaimsClient, FakeClock, FakeShardStore

if TYPE_CHECKING:
    import aiosqlite

# ============================================================================
# SQLite Availability Check
# ============================================================================

AIOSQLITE_AVAILABLE = False
try:
    import aiosqlite

    AIOSQLITE_AVAILABLE = True
except ImportError:
    aiosqlite = None  # type: ignore[assignment]


# ============================================================================
# OpenTelemetry Metrics Availability Check
# ============================================================================

OTEL_METRICS_AVAILABLE = False
try:
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import InMemoryMetricReader

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    MeterProvider = None  # type: ignore[assignment, misc]
    InMemoryMetricReader = None  # type: ignore[assignment, misc]


skip_if_no_aiosqlite = pytest.mark.skipif(not AIOSQLITE_AVAILABLE, reason="aiosqlite not installed")

CUSTOMER = "did:mailto:example.com:alice"
OTHER_CUSTOMER = "did:mailto:example.com:bob"
SPACE = "did:key:z6MkSpaceOne"
OTHER_SPACE = "did:key:z6MkSpaceTwo"


# ============================================================================
# Ledger Fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Mutable clock starting at 2024-06-01T12:00:00Z."""
    return FakeClock()


@pytest.fixture
def ledger(clock: FakeClock) -> InMemoryProgressLedger:
    """In-memory ledger driven by the ``clock`` fixture."""
    return InMemoryProgressLedger(clock=clock, enable_tracing=False)


@pytest_asyncio.fixture
async def sqlite_connection() -> AsyncGenerator[Any, None]:
    """
    Provide a raw aiosqlite connection to an in-memory database.

    Yields:
        aiosqlite.Connection: Raw database connection
    """
    if not AIOSQLITE_AVAILABLE:
        pytest.skip("aiosqlite not installed")

    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row

    yield conn

    await conn.close()


@pytest_asyncio.fixture
async def sqlite_ledger(
    sqlite_connection: aiosqlite.Connection,
    clock: FakeClock,
) -> AsyncGenerator[Any, None]:
    """SQLiteProgressLedger with its schema initialized."""
    from spacemigration.ledger import SQLiteProgressLedger

    ledger = SQLiteProgressLedger(sqlite_connection, clock=clock, enable_tracing=False)
    await ledger.initialize()
    yield ledger


# ============================================================================
# Collaborator Fakes
# ============================================================================


@pytest.fixture
def claims_client() -> FakeClaimsClient:
    return FakeClaimsClient()


@pytest.fixture
def shard_store() -> FakeShardStore:
    return FakeShardStore()


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


# ============================================================================
# Components
# ============================================================================


@pytest.fixture
def settings() -> MigrationSettings:
    """Settings with instant retries so budget tests do not sleep."""
    return MigrationSettings(
        instance_id="host-a",
        worker_id="1",
        stale_after=timedelta(hours=1),
        batch_size=10,
        resolver_retry=RetryConfig(base_delay_ms=0.0, jitter_factor=0.0),
        resolver_retry_budget=2,
    )


@pytest.fixture
def resolver(claims_client: FakeClaimsClient) -> ClaimResolver:
    return ClaimResolver(claims_client, enable_tracing=False)


@pytest.fixture
def sleeps() -> list[float]:
    """Delays passed to the injected sleep."""
    return []


@pytest.fixture
def reconciler(
    resolver: ClaimResolver,
    shard_store: FakeShardStore,
    settings: MigrationSettings,
    sleeps: list[float],
) -> ShardReconciler:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return ShardReconciler(
        resolver, shard_store, settings, sleep=fake_sleep, enable_tracing=False
    )


@pytest.fixture
def coordinator(
    ledger: InMemoryProgressLedger,
    settings: MigrationSettings,
) -> WorkCoordinator:
    return WorkCoordinator(ledger, settings, rng=random.Random(7), enable_tracing=False)


# ============================================================================
# Observability
# ============================================================================


@pytest.fixture
def mock_tracer() -> MockTracer:
    return MockTracer()


@pytest.fixture
def metric_reader(monkeypatch: pytest.MonkeyPatch) -> Any:
    """
    Provide an InMemoryMetricReader for testing metrics.

    The global meter provider can only be set once per process, so the
    module-level meter is pointed at a private provider instead.

    Yields:
        InMemoryMetricReader: Reader for inspecting collected metrics.
    """
    if not OTEL_METRICS_AVAILABLE:
        pytest.skip("opentelemetry-sdk not installed")

    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    monkeypatch.setattr("spacemigration.metrics._meter", provider.get_meter("spacemigration"))

    yield reader

    provider.shutdown()


@pytest.fixture
def reset_migration_meter():
    """Reset the cached module-level meter before and after a test."""
    from spacemigration.metrics import reset_meter

    reset_meter()
    yield
    reset_meter()
