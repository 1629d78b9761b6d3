"""
Progress ledger protocol and helpers shared by the backends.

The ledger is the only synchronization point between workers. Every write
is a conditional update keyed on the current status and, for owner-scoped
writes, on the stored ``instance_id``/``worker_id``. When the condition does
not hold the write is not applied, the backend re-reads the record and the
``ensure_*`` helpers below raise the precise error.
"""

from __future__ import annotations

import base64
import binascii
import json
from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable

from spacemigration.exceptions import (
    ClaimConflictError,
    InvalidProgressError,
    InvalidStatusTransitionError,
    NotOwnerError,
    RecordNotFoundError,
)
from spacemigration.models import (
    DEFAULT_STALE_AFTER,
    Page,
    SpaceMigrationRecord,
    SpaceStatus,
)

DEFAULT_PAGE_SIZE = 100
MAX_ERROR_LENGTH = 4000


@runtime_checkable
class ProgressLedger(Protocol):
    """
    Protocol for progress ledger implementations.

    Implementations:
    - InMemoryProgressLedger: single-process tests and development
    - SQLiteProgressLedger: embedded single-host deployments
    - PostgreSQLProgressLedger: shared fleet deployments
    """

    async def create(
        self,
        customer: str,
        space: str,
        total_uploads: int,
    ) -> SpaceMigrationRecord:
        """
        Insert a pending record.

        Raises:
            RecordAlreadyExistsError: If the key exists.
        """
        ...

    async def get(self, customer: str, space: str) -> SpaceMigrationRecord | None: ...

    async def claim(
        self,
        customer: str,
        space: str,
        instance_id: str,
        worker_id: str,
        *,
        stale_after: timedelta | None = None,
    ) -> SpaceMigrationRecord:
        """
        Take ownership of a pending or failed record.

        With ``stale_after`` an in-progress record whose last heartbeat is at
        least that old is taken over as well.

        Raises:
            RecordNotFoundError: If the record does not exist.
            ClaimConflictError: If the record is owned by a live worker or completed.
        """
        ...

    async def record_progress(
        self,
        customer: str,
        space: str,
        instance_id: str,
        worker_id: str,
        completed_uploads: int,
        last_processed_upload: str | None = None,
        *,
        total_uploads: int | None = None,
        attribution_conflicts: tuple[str, ...] | None = None,
    ) -> SpaceMigrationRecord:
        """
        Update counters and heartbeat ``updated_at``.

        Raises:
            NotOwnerError: If the caller no longer owns the record.
            InvalidProgressError: If the counters would regress or overrun.
        """
        ...

    async def complete(
        self,
        customer: str,
        space: str,
        instance_id: str | None = None,
        worker_id: str | None = None,
    ) -> SpaceMigrationRecord: ...

    async def fail(
        self,
        customer: str,
        space: str,
        error: str,
        instance_id: str | None = None,
        worker_id: str | None = None,
    ) -> SpaceMigrationRecord: ...

    async def release(
        self,
        customer: str,
        space: str,
        instance_id: str,
        worker_id: str,
    ) -> SpaceMigrationRecord: ...

    async def reclaim_stale(
        self,
        customer: str,
        space: str,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ) -> SpaceMigrationRecord: ...

    async def retry(self, customer: str, space: str) -> SpaceMigrationRecord: ...

    async def scan_by_customer(
        self,
        customer: str,
        *,
        page_token: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]: ...

    async def scan_by_instance(
        self,
        instance_id: str,
        *,
        page_token: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]: ...

    async def scan_by_status(
        self,
        status: SpaceStatus,
        *,
        page_token: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]: ...

    async def scan_failed(
        self,
        *,
        page_token: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]: ...

    async def scan_stuck(
        self,
        threshold: timedelta = DEFAULT_STALE_AFTER,
        *,
        page_token: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]:
        """Records in progress whose ``updated_at`` is at least ``threshold`` old."""
        ...

    async def scan_all(
        self,
        page_token: str | None = None,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]: ...


# =============================================================================
# Page tokens
# =============================================================================


def encode_page_token(key: tuple[str, str]) -> str:
    """Encode the (customer, space) key of the last returned record."""
    raw = json.dumps(list(key), separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_page_token(token: str | None) -> tuple[str, str] | None:
    """
    Decode a token produced by ``encode_page_token``.

    Raises:
        ValueError: If the token is not one this module produced.
    """
    if token is None:
        return None
    try:
        value = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
    except (binascii.Error, UnicodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid page token: {token!r}") from e
    if (
        not isinstance(value, list)
        or len(value) != 2
        or not all(isinstance(v, str) for v in value)
    ):
        raise ValueError(f"Invalid page token: {token!r}")
    return (value[0], value[1])


def build_page(
    records: list[SpaceMigrationRecord],
    limit: int,
) -> Page[SpaceMigrationRecord]:
    """
    Build a page from up to ``limit + 1`` key-ordered records.

    The extra record only signals that another page exists.
    """
    if len(records) > limit:
        items = records[:limit]
        return Page(items=items, next_token=encode_page_token(items[-1].key))
    return Page(items=records, next_token=None)


def check_limit(limit: int) -> None:
    if limit < 1:
        raise ValueError(f"limit must be positive, got {limit}")


# =============================================================================
# Timestamps
# =============================================================================


def to_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def advance(previous: datetime, now: datetime) -> datetime:
    """Next ``updated_at``: never earlier than the stored one."""
    return max(to_utc(previous), to_utc(now))


def truncate_error(error: str) -> str:
    if len(error) <= MAX_ERROR_LENGTH:
        return error
    return error[: MAX_ERROR_LENGTH - 3] + "..."


# =============================================================================
# Condition checks
# =============================================================================


def ensure_exists(
    current: SpaceMigrationRecord | None,
    customer: str,
    space: str,
) -> SpaceMigrationRecord:
    if current is None:
        raise RecordNotFoundError(customer, space)
    return current


def ensure_claimable(
    current: SpaceMigrationRecord | None,
    customer: str,
    space: str,
    now: datetime,
    stale_after: timedelta | None = None,
) -> SpaceMigrationRecord:
    """Raise unless a claim may be applied to ``current``."""
    record = ensure_exists(current, customer, space)
    if record.status.is_claimable:
        return record
    if stale_after is not None and record.is_stale(stale_after, now):
        return record
    raise ClaimConflictError(customer, space, record.status, record.owner)


def ensure_owner(
    current: SpaceMigrationRecord | None,
    customer: str,
    space: str,
    instance_id: str,
    worker_id: str,
) -> SpaceMigrationRecord:
    """Raise NotOwnerError unless the caller holds the in-progress claim."""
    record = ensure_exists(current, customer, space)
    if not record.is_owned_by(instance_id, worker_id):
        raise NotOwnerError(
            customer,
            space,
            instance_id,
            worker_id,
            current_status=record.status,
            owner=record.owner,
        )
    return record


def validate_progress_args(
    customer: str,
    space: str,
    completed_uploads: int,
    total_uploads: int | None,
) -> None:
    """Checks that need no stored state."""
    if completed_uploads < 0:
        raise InvalidProgressError(
            customer, space, f"completed_uploads must be >= 0, got {completed_uploads}"
        )
    if total_uploads is not None and total_uploads < completed_uploads:
        raise InvalidProgressError(
            customer,
            space,
            f"completed_uploads ({completed_uploads}) exceeds total_uploads ({total_uploads})",
        )


def ensure_progress(
    record: SpaceMigrationRecord,
    completed_uploads: int,
    total_uploads: int | None,
) -> int:
    """
    Raise InvalidProgressError unless the counters may be applied.

    Returns:
        The total to store.
    """
    total = record.total_uploads if total_uploads is None else total_uploads
    if completed_uploads < record.completed_uploads:
        raise InvalidProgressError(
            record.customer,
            record.space,
            f"completed_uploads would decrease from {record.completed_uploads} "
            f"to {completed_uploads}",
        )
    if completed_uploads > total:
        raise InvalidProgressError(
            record.customer,
            record.space,
            f"completed_uploads ({completed_uploads}) exceeds total_uploads ({total})",
        )
    return total


def ensure_transition(record: SpaceMigrationRecord, target: SpaceStatus) -> None:
    if not record.status.can_transition_to(target):
        raise InvalidStatusTransitionError(record.customer, record.space, record.status, target)


def ensure_terminal_write(
    current: SpaceMigrationRecord | None,
    customer: str,
    space: str,
    target: SpaceStatus,
    instance_id: str | None,
    worker_id: str | None,
) -> SpaceMigrationRecord | None:
    """
    Check a complete/fail request.

    Returns:
        The stored record when it already has ``target`` status (the write is
        an idempotent no-op), otherwise None after the checks pass.
    """
    record = ensure_exists(current, customer, space)
    if record.status == target:
        return record
    ensure_transition(record, target)
    if record.status == SpaceStatus.IN_PROGRESS and instance_id is not None:
        ensure_owner(record, customer, space, instance_id, worker_id or "")
    return None


def ensure_stale(
    current: SpaceMigrationRecord | None,
    customer: str,
    space: str,
    now: datetime,
    stale_after: timedelta,
) -> SpaceMigrationRecord:
    record = ensure_exists(current, customer, space)
    if not record.is_stale(stale_after, now):
        raise ClaimConflictError(customer, space, record.status, record.owner)
    return record


def ensure_retryable(
    current: SpaceMigrationRecord | None,
    customer: str,
    space: str,
) -> SpaceMigrationRecord:
    """Only failed records may be put back to pending by an operator retry."""
    record = ensure_exists(current, customer, space)
    if record.status != SpaceStatus.FAILED:
        raise InvalidStatusTransitionError(customer, space, record.status, SpaceStatus.PENDING)
    return record


def check_owner_args(instance_id: str | None, worker_id: str | None) -> None:
    if (instance_id is None) != (worker_id is None):
        raise ValueError("instance_id and worker_id must be given together")


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "MAX_ERROR_LENGTH",
    "ProgressLedger",
    "encode_page_token",
    "decode_page_token",
    "build_page",
    "check_limit",
    "to_utc",
    "advance",
    "truncate_error",
    "ensure_exists",
    "ensure_claimable",
    "ensure_owner",
    "validate_progress_args",
    "ensure_progress",
    "ensure_transition",
    "ensure_terminal_write",
    "ensure_stale",
    "ensure_retryable",
    "check_owner_args",
]
