"""
Standard span attribute names used across spacemigration.

Using shared constants keeps attribute keys consistent between the ledger
backends, the claim resolver and the reconciler so that traces can be
filtered by space or worker regardless of which component emitted them.
"""

# =============================================================================
# Ledger Key Attributes
# =============================================================================

ATTR_CUSTOMER = "spacemigration.customer"
"""Customer DID that owns the space."""

ATTR_SPACE = "spacemigration.space"
"""Space DID being migrated."""

ATTR_STATUS = "spacemigration.status"
"""Migration status of a record (e.g., 'pending', 'in-progress')."""

# =============================================================================
# Ownership Attributes
# =============================================================================

ATTR_INSTANCE_ID = "spacemigration.instance.id"
"""Identifier of the worker instance (host or container)."""

ATTR_WORKER_ID = "spacemigration.worker.id"
"""Identifier of the worker inside its instance."""

# =============================================================================
# Progress Attributes
# =============================================================================

ATTR_COMPLETED_UPLOADS = "spacemigration.uploads.completed"
"""Number of uploads processed so far (integer)."""

ATTR_TOTAL_UPLOADS = "spacemigration.uploads.total"
"""Total number of uploads in the space (integer)."""

ATTR_BATCH_SIZE = "spacemigration.batch.size"
"""Requested batch size for work acquisition (integer)."""

ATTR_QUERY_LIMIT = "spacemigration.query.limit"
"""Page size for a ledger scan (integer)."""

# =============================================================================
# Claims and Verification Attributes
# =============================================================================

ATTR_CONTENT_DIGEST = "spacemigration.content.digest"
"""Content identifier being resolved or verified."""

ATTR_SHARD_COUNT = "spacemigration.shard.count"
"""Number of shards referenced by a content index (integer)."""

ATTR_MISSING_COUNT = "spacemigration.shard.missing"
"""Number of shards missing a valid location claim (integer)."""

ATTR_RETRY_COUNT = "spacemigration.retry.count"
"""Number of retry attempts for an operation (integer)."""

# =============================================================================
# Database Attributes (OpenTelemetry Semantic Conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'postgresql', 'sqlite')."""


__all__ = [
    "ATTR_CUSTOMER",
    "ATTR_SPACE",
    "ATTR_STATUS",
    "ATTR_INSTANCE_ID",
    "ATTR_WORKER_ID",
    "ATTR_COMPLETED_UPLOADS",
    "ATTR_TOTAL_UPLOADS",
    "ATTR_BATCH_SIZE",
    "ATTR_QUERY_LIMIT",
    "ATTR_CONTENT_DIGEST",
    "ATTR_SHARD_COUNT",
    "ATTR_MISSING_COUNT",
    "ATTR_RETRY_COUNT",
    "ATTR_DB_SYSTEM",
]
