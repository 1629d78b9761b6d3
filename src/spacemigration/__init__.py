"""
spacemigration - per-space content-metadata migration orchestration.

This library provides:
- Progress ledger with in-memory, SQLite and PostgreSQL backends
- Work coordinator handing out spaces through conditional ledger writes
- Claim resolver adapter classifying claims-service failures
- Shard reconciliation deciding whether an upload is fully migrated
- Worker loop with progress heartbeats
- Read-only fleet diagnostics
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("space-migration")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from spacemigration.claims import ClaimResolver, ClaimsClient, ResolutionCounters
from spacemigration.config import MigrationSettings
from spacemigration.coordinator import WorkCoordinator
from spacemigration.diagnostics import (
    FleetStats,
    OwnerStats,
    StatsAccumulator,
    collect_customer_stats,
    collect_fleet_stats,
    collect_instance_stats,
    list_failed,
    list_stuck,
    watch,
)
from spacemigration.exceptions import (
    ClaimConflictError,
    ClaimsServiceError,
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    IndexingServiceUnavailableError,
    InvalidProgressError,
    InvalidStatusTransitionError,
    LedgerStateError,
    MigrationError,
    NotOwnerError,
    ProviderAttributionConflictError,
    RecordAlreadyExistsError,
    RecordNotFoundError,
    ResolutionDegradedError,
    ResolutionError,
    ResolutionErrorKind,
    RetryConfig,
    VerificationIncompleteError,
)
from spacemigration.ledger import (
    InMemoryProgressLedger,
    PostgreSQLProgressLedger,
    ProgressLedger,
    SQLiteProgressLedger,
)
from spacemigration.metrics import WorkerMetrics
from spacemigration.models import (
    DEFAULT_STALE_AFTER,
    LEGACY_PROVIDER,
    NEW_PROVIDER,
    AttributionConflict,
    Claim,
    ClaimSet,
    ClaimsQueryResult,
    ClaimType,
    Page,
    ShardReference,
    ShardSlice,
    SpaceMigrationRecord,
    SpaceStatus,
)
from spacemigration.reconciliation import (
    ReconciliationResult,
    RetryBudget,
    ShardCheck,
    ShardReconciler,
    ShardRecordStore,
    VerificationOutcome,
)
from spacemigration.worker import (
    ProgressHeartbeat,
    Republisher,
    SpaceMigrationWorker,
    SpaceOutcome,
    SpaceRunResult,
    UploadCatalog,
)

__all__ = [
    "__version__",
    # Models
    "DEFAULT_STALE_AFTER",
    "LEGACY_PROVIDER",
    "NEW_PROVIDER",
    "SpaceStatus",
    "SpaceMigrationRecord",
    "Page",
    "ClaimType",
    "Claim",
    "ShardSlice",
    "ClaimsQueryResult",
    "ShardReference",
    "ClaimSet",
    "AttributionConflict",
    # Exceptions
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "MigrationError",
    "RecordNotFoundError",
    "RecordAlreadyExistsError",
    "LedgerStateError",
    "ClaimConflictError",
    "NotOwnerError",
    "InvalidStatusTransitionError",
    "InvalidProgressError",
    "ResolutionErrorKind",
    "ClaimsServiceError",
    "ResolutionError",
    "IndexingServiceUnavailableError",
    "ResolutionDegradedError",
    "VerificationIncompleteError",
    "ProviderAttributionConflictError",
    # Configuration
    "MigrationSettings",
    # Ledger
    "ProgressLedger",
    "InMemoryProgressLedger",
    "SQLiteProgressLedger",
    "PostgreSQLProgressLedger",
    # Components
    "WorkCoordinator",
    "ClaimsClient",
    "ClaimResolver",
    "ResolutionCounters",
    "ShardRecordStore",
    "VerificationOutcome",
    "ShardCheck",
    "ReconciliationResult",
    "RetryBudget",
    "ShardReconciler",
    "UploadCatalog",
    "Republisher",
    "SpaceOutcome",
    "SpaceRunResult",
    "ProgressHeartbeat",
    "SpaceMigrationWorker",
    "WorkerMetrics",
    # Diagnostics
    "OwnerStats",
    "FleetStats",
    "StatsAccumulator",
    "collect_fleet_stats",
    "collect_customer_stats",
    "collect_instance_stats",
    "list_failed",
    "list_stuck",
    "watch",
]
