"""
In-memory implementation of the progress ledger.

Provides a fast ledger for tests and local development. All records are
kept in a dictionary keyed by (customer, space) and lost when the process
exits. Conditional writes are made atomic with an asyncio.Lock, so racing
coroutines in one event loop see the same semantics as racing workers
against a database backend.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from spacemigration.exceptions import RecordAlreadyExistsError
from spacemigration.ledger.interface import (
    DEFAULT_PAGE_SIZE,
    advance,
    build_page,
    check_limit,
    check_owner_args,
    decode_page_token,
    ensure_claimable,
    ensure_exists,
    ensure_owner,
    ensure_progress,
    ensure_retryable,
    ensure_stale,
    ensure_terminal_write,
    to_utc,
    truncate_error,
    validate_progress_args,
)
from spacemigration.models import (
    DEFAULT_STALE_AFTER,
    Page,
    SpaceMigrationRecord,
    SpaceStatus,
    utc_now,
)
from spacemigration.observability import Tracer, create_tracer
from spacemigration.observability.attributes import (
    ATTR_COMPLETED_UPLOADS,
    ATTR_CUSTOMER,
    ATTR_INSTANCE_ID,
    ATTR_QUERY_LIMIT,
    ATTR_SPACE,
    ATTR_STATUS,
    ATTR_WORKER_ID,
)

logger = logging.getLogger(__name__)


class InMemoryProgressLedger:
    """
    In-memory ProgressLedger for testing.

    Example:
        >>> ledger = InMemoryProgressLedger()
        >>> await ledger.create("did:mailto:alice", "did:key:space1", total_uploads=3)
        >>> record = await ledger.claim("did:mailto:alice", "did:key:space1", "host-a", "1")

    Note:
        Use ``clear()`` for test teardown.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the in-memory ledger.

        Args:
            clock: Source of the current time, injectable for staleness tests
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._clock = clock
        self._records: dict[tuple[str, str], SpaceMigrationRecord] = {}
        self._lock = asyncio.Lock()

    def _now(self) -> datetime:
        return to_utc(self._clock())

    def _store(self, record: SpaceMigrationRecord, **changes: object) -> SpaceMigrationRecord:
        updated = dataclasses.replace(
            record,
            updated_at=advance(record.updated_at, self._now()),
            **changes,  # type: ignore[arg-type]
        )
        self._records[updated.key] = updated
        return updated

    async def create(
        self,
        customer: str,
        space: str,
        total_uploads: int,
    ) -> SpaceMigrationRecord:
        if total_uploads < 0:
            raise ValueError(f"total_uploads must be >= 0, got {total_uploads}")
        with self._tracer.span(
            "spacemigration.ledger.create",
            {ATTR_CUSTOMER: customer, ATTR_SPACE: space},
        ):
            async with self._lock:
                if (customer, space) in self._records:
                    raise RecordAlreadyExistsError(customer, space)
                now = self._now()
                record = SpaceMigrationRecord(
                    customer=customer,
                    space=space,
                    total_uploads=total_uploads,
                    created_at=now,
                    updated_at=now,
                )
                self._records[record.key] = record
                return record

    async def get(self, customer: str, space: str) -> SpaceMigrationRecord | None:
        with self._tracer.span(
            "spacemigration.ledger.get",
            {ATTR_CUSTOMER: customer, ATTR_SPACE: space},
        ):
            return self._records.get((customer, space))

    async def claim(
        self,
        customer: str,
        space: str,
        instance_id: str,
        worker_id: str,
        *,
        stale_after: timedelta | None = None,
    ) -> SpaceMigrationRecord:
        with self._tracer.span(
            "spacemigration.ledger.claim",
            {
                ATTR_CUSTOMER: customer,
                ATTR_SPACE: space,
                ATTR_INSTANCE_ID: instance_id,
                ATTR_WORKER_ID: worker_id,
            },
        ):
            async with self._lock:
                record = ensure_claimable(
                    self._records.get((customer, space)),
                    customer,
                    space,
                    self._now(),
                    stale_after,
                )
                return self._store(
                    record,
                    status=SpaceStatus.IN_PROGRESS,
                    instance_id=instance_id,
                    worker_id=worker_id,
                    error=None,
                )

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
        validate_progress_args(customer, space, completed_uploads, total_uploads)
        with self._tracer.span(
            "spacemigration.ledger.record_progress",
            {
                ATTR_CUSTOMER: customer,
                ATTR_SPACE: space,
                ATTR_COMPLETED_UPLOADS: completed_uploads,
            },
        ):
            async with self._lock:
                record = ensure_owner(
                    self._records.get((customer, space)),
                    customer,
                    space,
                    instance_id,
                    worker_id,
                )
                total = ensure_progress(record, completed_uploads, total_uploads)
                changes: dict[str, object] = {
                    "completed_uploads": completed_uploads,
                    "total_uploads": total,
                }
                if last_processed_upload is not None:
                    changes["last_processed_upload"] = last_processed_upload
                if attribution_conflicts is not None:
                    changes["attribution_conflicts"] = tuple(sorted(set(attribution_conflicts)))
                return self._store(record, **changes)

    async def complete(
        self,
        customer: str,
        space: str,
        instance_id: str | None = None,
        worker_id: str | None = None,
    ) -> SpaceMigrationRecord:
        check_owner_args(instance_id, worker_id)
        with self._tracer.span(
            "spacemigration.ledger.complete",
            {ATTR_CUSTOMER: customer, ATTR_SPACE: space},
        ):
            async with self._lock:
                record = ensure_exists(self._records.get((customer, space)), customer, space)
                done = ensure_terminal_write(
                    record, customer, space, SpaceStatus.COMPLETED, instance_id, worker_id
                )
                if done is not None:
                    return done
                return self._store(record, status=SpaceStatus.COMPLETED, error=None)

    async def fail(
        self,
        customer: str,
        space: str,
        error: str,
        instance_id: str | None = None,
        worker_id: str | None = None,
    ) -> SpaceMigrationRecord:
        check_owner_args(instance_id, worker_id)
        with self._tracer.span(
            "spacemigration.ledger.fail",
            {ATTR_CUSTOMER: customer, ATTR_SPACE: space},
        ):
            async with self._lock:
                record = ensure_exists(self._records.get((customer, space)), customer, space)
                done = ensure_terminal_write(
                    record, customer, space, SpaceStatus.FAILED, instance_id, worker_id
                )
                if done is not None:
                    return done
                return self._store(
                    record, status=SpaceStatus.FAILED, error=truncate_error(error)
                )

    async def release(
        self,
        customer: str,
        space: str,
        instance_id: str,
        worker_id: str,
    ) -> SpaceMigrationRecord:
        with self._tracer.span(
            "spacemigration.ledger.release",
            {ATTR_CUSTOMER: customer, ATTR_SPACE: space, ATTR_INSTANCE_ID: instance_id},
        ):
            async with self._lock:
                record = ensure_owner(
                    self._records.get((customer, space)),
                    customer,
                    space,
                    instance_id,
                    worker_id,
                )
                return self._store(record, status=SpaceStatus.PENDING)

    async def reclaim_stale(
        self,
        customer: str,
        space: str,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ) -> SpaceMigrationRecord:
        with self._tracer.span(
            "spacemigration.ledger.reclaim_stale",
            {ATTR_CUSTOMER: customer, ATTR_SPACE: space},
        ):
            async with self._lock:
                record = ensure_stale(
                    self._records.get((customer, space)),
                    customer,
                    space,
                    self._now(),
                    stale_after,
                )
                return self._store(record, status=SpaceStatus.PENDING)

    async def retry(self, customer: str, space: str) -> SpaceMigrationRecord:
        with self._tracer.span(
            "spacemigration.ledger.retry",
            {ATTR_CUSTOMER: customer, ATTR_SPACE: space},
        ):
            async with self._lock:
                record = ensure_retryable(self._records.get((customer, space)), customer, space)
                return self._store(record, status=SpaceStatus.PENDING, error=None)

    # -------------------------------------------------------------------------
    # Scans
    # -------------------------------------------------------------------------

    def _scan(
        self,
        predicate: Callable[[SpaceMigrationRecord], bool],
        page_token: str | None,
        limit: int,
    ) -> Page[SpaceMigrationRecord]:
        check_limit(limit)
        after = decode_page_token(page_token)
        selected: list[SpaceMigrationRecord] = []
        for key in sorted(self._records):
            if after is not None and key <= after:
                continue
            record = self._records[key]
            if predicate(record):
                selected.append(record)
                if len(selected) > limit:
                    break
        return build_page(selected, limit)

    async def scan_by_customer(
        self,
        customer: str,
        *,
        page_token: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]:
        with self._tracer.span(
            "spacemigration.ledger.scan_by_customer",
            {ATTR_CUSTOMER: customer, ATTR_QUERY_LIMIT: limit},
        ):
            return self._scan(lambda r: r.customer == customer, page_token, limit)

    async def scan_by_instance(
        self,
        instance_id: str,
        *,
        page_token: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]:
        with self._tracer.span(
            "spacemigration.ledger.scan_by_instance",
            {ATTR_INSTANCE_ID: instance_id, ATTR_QUERY_LIMIT: limit},
        ):
            return self._scan(lambda r: r.instance_id == instance_id, page_token, limit)

    async def scan_by_status(
        self,
        status: SpaceStatus,
        *,
        page_token: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]:
        with self._tracer.span(
            "spacemigration.ledger.scan_by_status",
            {ATTR_STATUS: status.value, ATTR_QUERY_LIMIT: limit},
        ):
            return self._scan(lambda r: r.status == status, page_token, limit)

    async def scan_failed(
        self,
        *,
        page_token: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]:
        return await self.scan_by_status(SpaceStatus.FAILED, page_token=page_token, limit=limit)

    async def scan_stuck(
        self,
        threshold: timedelta = DEFAULT_STALE_AFTER,
        *,
        page_token: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]:
        now = self._now()
        with self._tracer.span(
            "spacemigration.ledger.scan_stuck",
            {ATTR_QUERY_LIMIT: limit},
        ):
            return self._scan(lambda r: r.is_stale(threshold, now), page_token, limit)

    async def scan_all(
        self,
        page_token: str | None = None,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]:
        with self._tracer.span(
            "spacemigration.ledger.scan_all",
            {ATTR_QUERY_LIMIT: limit},
        ):
            return self._scan(lambda r: True, page_token, limit)

    async def clear(self) -> None:
        """Remove all records. Intended for test teardown."""
        async with self._lock:
            self._records.clear()
        logger.debug("Cleared in-memory progress ledger")


__all__ = ["InMemoryProgressLedger"]
