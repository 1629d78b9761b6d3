"""
PostgreSQL implementation of the progress ledger.

Every conditional write is a single ``UPDATE ... WHERE ... RETURNING``
statement, so the compare-and-set happens atomically inside PostgreSQL and
racing workers on different hosts serialize on the row lock. When no row
comes back the record is re-read and the failure diagnosed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, NoReturn

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from spacemigration.exceptions import ClaimConflictError, RecordAlreadyExistsError
from spacemigration.ledger._connection import execute_with_connection
from spacemigration.ledger._rows import COLUMNS, TABLE_NAME, dump_conflicts, row_to_record
from spacemigration.ledger.interface import (
    DEFAULT_PAGE_SIZE,
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
    ATTR_DB_SYSTEM,
    ATTR_INSTANCE_ID,
    ATTR_QUERY_LIMIT,
    ATTR_SPACE,
    ATTR_STATUS,
    ATTR_WORKER_ID,
)

logger = logging.getLogger(__name__)

POSTGRESQL_SCHEMA = (
    f"""
    CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
        customer TEXT NOT NULL,
        space TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        total_uploads INTEGER NOT NULL DEFAULT 0,
        completed_uploads INTEGER NOT NULL DEFAULT 0,
        last_processed_upload TEXT,
        instance_id TEXT,
        worker_id TEXT,
        error TEXT,
        attribution_conflicts JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (customer, space),
        CONSTRAINT chk_{TABLE_NAME}_status
            CHECK (status IN ('pending', 'in-progress', 'completed', 'failed')),
        CONSTRAINT chk_{TABLE_NAME}_uploads
            CHECK (completed_uploads >= 0 AND completed_uploads <= total_uploads)
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS idx_{TABLE_NAME}_status_updated
        ON {TABLE_NAME} (status, updated_at)
    """,
    f"""
    CREATE INDEX IF NOT EXISTS idx_{TABLE_NAME}_instance
        ON {TABLE_NAME} (instance_id)
    """,
)


class PostgreSQLProgressLedger:
    """
    PostgreSQL ProgressLedger.

    The shared backend for a fleet of worker instances.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://localhost/migration")
        >>> ledger = PostgreSQLProgressLedger(engine)
        >>> await ledger.initialize()
        >>> record = await ledger.claim(customer, space, "host-a", "1")
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        clock: Callable[[], datetime] = utc_now,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the ledger.

        Args:
            conn: Database connection or engine
            clock: Source of the current time, injectable for staleness tests
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._conn = conn
        self._clock = clock

    def _now(self) -> datetime:
        return to_utc(self._clock())

    def _attrs(self, customer: str, space: str, **extra: Any) -> dict[str, Any]:
        attrs: dict[str, Any] = {
            ATTR_CUSTOMER: customer,
            ATTR_SPACE: space,
            ATTR_DB_SYSTEM: "postgresql",
        }
        attrs.update(extra)
        return attrs

    async def initialize(self) -> None:
        """Create the progress table and its indexes if they do not exist."""
        async with execute_with_connection(self._conn, transactional=True) as conn:
            for statement in POSTGRESQL_SCHEMA:
                await conn.execute(text(statement))
        logger.debug("Initialized %s schema", TABLE_NAME)

    async def _returning(self, sql: str, params: dict[str, Any]) -> SpaceMigrationRecord | None:
        async with execute_with_connection(self._conn, transactional=True) as conn:
            result = await conn.execute(text(sql), params)
            row = result.fetchone()
        return row_to_record(row) if row is not None else None

    async def _fetch(self, customer: str, space: str) -> SpaceMigrationRecord | None:
        query = text(f"""
            SELECT {COLUMNS}
            FROM {TABLE_NAME}
            WHERE customer = :customer AND space = :space
        """)
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, {"customer": customer, "space": space})
            row = result.fetchone()
        return row_to_record(row) if row is not None else None

    @staticmethod
    def _lost_race(current: SpaceMigrationRecord | None, customer: str, space: str) -> NoReturn:
        # The diagnosis passed, so the row changed between the UPDATE and the re-read.
        record = ensure_exists(current, customer, space)
        raise ClaimConflictError(customer, space, record.status, record.owner)

    async def create(
        self,
        customer: str,
        space: str,
        total_uploads: int,
    ) -> SpaceMigrationRecord:
        if total_uploads < 0:
            raise ValueError(f"total_uploads must be >= 0, got {total_uploads}")
        with self._tracer.span("spacemigration.ledger.create", self._attrs(customer, space)):
            now = self._now()
            record = await self._returning(
                f"""
                INSERT INTO {TABLE_NAME} (
                    customer, space, status, total_uploads, completed_uploads,
                    created_at, updated_at
                ) VALUES (
                    :customer, :space, :status, :total_uploads, 0, :now, :now
                )
                ON CONFLICT (customer, space) DO NOTHING
                RETURNING {COLUMNS}
                """,
                {
                    "customer": customer,
                    "space": space,
                    "status": SpaceStatus.PENDING.value,
                    "total_uploads": total_uploads,
                    "now": now,
                },
            )
            if record is None:
                raise RecordAlreadyExistsError(customer, space)
            return record

    async def get(self, customer: str, space: str) -> SpaceMigrationRecord | None:
        with self._tracer.span("spacemigration.ledger.get", self._attrs(customer, space)):
            return await self._fetch(customer, space)

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
            self._attrs(
                customer, space, **{ATTR_INSTANCE_ID: instance_id, ATTR_WORKER_ID: worker_id}
            ),
        ):
            now = self._now()
            stale_clause = ""
            params: dict[str, Any] = {
                "customer": customer,
                "space": space,
                "instance_id": instance_id,
                "worker_id": worker_id,
                "now": now,
                "in_progress": SpaceStatus.IN_PROGRESS.value,
                "pending": SpaceStatus.PENDING.value,
                "failed": SpaceStatus.FAILED.value,
            }
            if stale_after is not None:
                stale_clause = "OR (status = :in_progress AND updated_at <= :cutoff)"
                params["cutoff"] = now - stale_after
            record = await self._returning(
                f"""
                UPDATE {TABLE_NAME}
                SET status = :in_progress,
                    instance_id = :instance_id,
                    worker_id = :worker_id,
                    error = NULL,
                    updated_at = GREATEST(updated_at, :now)
                WHERE customer = :customer AND space = :space
                  AND (status IN (:pending, :failed) {stale_clause})
                RETURNING {COLUMNS}
                """,
                params,
            )
            if record is None:
                current = await self._fetch(customer, space)
                ensure_claimable(current, customer, space, now, stale_after)
                self._lost_race(current, customer, space)
            return record

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
            self._attrs(customer, space, **{ATTR_COMPLETED_UPLOADS: completed_uploads}),
        ):
            record = await self._returning(
                f"""
                UPDATE {TABLE_NAME}
                SET completed_uploads = :completed,
                    total_uploads = COALESCE(CAST(:total AS INTEGER), total_uploads),
                    last_processed_upload = COALESCE(
                        CAST(:cursor AS TEXT), last_processed_upload
                    ),
                    attribution_conflicts = COALESCE(
                        CAST(:conflicts AS JSONB), attribution_conflicts
                    ),
                    updated_at = GREATEST(updated_at, :now)
                WHERE customer = :customer AND space = :space
                  AND status = :in_progress
                  AND instance_id = :instance_id AND worker_id = :worker_id
                  AND completed_uploads <= :completed
                  AND :completed <= COALESCE(CAST(:total AS INTEGER), total_uploads)
                RETURNING {COLUMNS}
                """,
                {
                    "customer": customer,
                    "space": space,
                    "instance_id": instance_id,
                    "worker_id": worker_id,
                    "completed": completed_uploads,
                    "total": total_uploads,
                    "cursor": last_processed_upload,
                    "conflicts": dump_conflicts(attribution_conflicts),
                    "now": self._now(),
                    "in_progress": SpaceStatus.IN_PROGRESS.value,
                },
            )
            if record is None:
                current = await self._fetch(customer, space)
                owned = ensure_owner(current, customer, space, instance_id, worker_id)
                ensure_progress(owned, completed_uploads, total_uploads)
                self._lost_race(current, customer, space)
            return record

    async def _finish(
        self,
        customer: str,
        space: str,
        target: SpaceStatus,
        error: str | None,
        instance_id: str | None,
        worker_id: str | None,
    ) -> SpaceMigrationRecord:
        check_owner_args(instance_id, worker_id)
        owner_clause = (
            "AND instance_id = :instance_id AND worker_id = :worker_id" if instance_id else ""
        )
        record = await self._returning(
            f"""
            UPDATE {TABLE_NAME}
            SET status = :target, error = :error, updated_at = GREATEST(updated_at, :now)
            WHERE customer = :customer AND space = :space
              AND status = :in_progress {owner_clause}
            RETURNING {COLUMNS}
            """,
            {
                "customer": customer,
                "space": space,
                "target": target.value,
                "error": error,
                "now": self._now(),
                "in_progress": SpaceStatus.IN_PROGRESS.value,
                "instance_id": instance_id,
                "worker_id": worker_id,
            },
        )
        if record is None:
            current = await self._fetch(customer, space)
            done = ensure_terminal_write(current, customer, space, target, instance_id, worker_id)
            if done is not None:
                return done
            self._lost_race(current, customer, space)
        return record

    async def complete(
        self,
        customer: str,
        space: str,
        instance_id: str | None = None,
        worker_id: str | None = None,
    ) -> SpaceMigrationRecord:
        with self._tracer.span("spacemigration.ledger.complete", self._attrs(customer, space)):
            return await self._finish(
                customer, space, SpaceStatus.COMPLETED, None, instance_id, worker_id
            )

    async def fail(
        self,
        customer: str,
        space: str,
        error: str,
        instance_id: str | None = None,
        worker_id: str | None = None,
    ) -> SpaceMigrationRecord:
        with self._tracer.span("spacemigration.ledger.fail", self._attrs(customer, space)):
            return await self._finish(
                customer, space, SpaceStatus.FAILED, truncate_error(error), instance_id, worker_id
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
            self._attrs(customer, space, **{ATTR_INSTANCE_ID: instance_id}),
        ):
            record = await self._returning(
                f"""
                UPDATE {TABLE_NAME}
                SET status = :pending, updated_at = GREATEST(updated_at, :now)
                WHERE customer = :customer AND space = :space
                  AND status = :in_progress
                  AND instance_id = :instance_id AND worker_id = :worker_id
                RETURNING {COLUMNS}
                """,
                {
                    "customer": customer,
                    "space": space,
                    "instance_id": instance_id,
                    "worker_id": worker_id,
                    "now": self._now(),
                    "pending": SpaceStatus.PENDING.value,
                    "in_progress": SpaceStatus.IN_PROGRESS.value,
                },
            )
            if record is None:
                current = await self._fetch(customer, space)
                ensure_owner(current, customer, space, instance_id, worker_id)
                self._lost_race(current, customer, space)
            return record

    async def reclaim_stale(
        self,
        customer: str,
        space: str,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ) -> SpaceMigrationRecord:
        with self._tracer.span("spacemigration.ledger.reclaim_stale", self._attrs(customer, space)):
            now = self._now()
            record = await self._returning(
                f"""
                UPDATE {TABLE_NAME}
                SET status = :pending, updated_at = GREATEST(updated_at, :now)
                WHERE customer = :customer AND space = :space
                  AND status = :in_progress AND updated_at <= :cutoff
                RETURNING {COLUMNS}
                """,
                {
                    "customer": customer,
                    "space": space,
                    "now": now,
                    "cutoff": now - stale_after,
                    "pending": SpaceStatus.PENDING.value,
                    "in_progress": SpaceStatus.IN_PROGRESS.value,
                },
            )
            if record is None:
                current = await self._fetch(customer, space)
                ensure_stale(current, customer, space, now, stale_after)
                self._lost_race(current, customer, space)
            return record

    async def retry(self, customer: str, space: str) -> SpaceMigrationRecord:
        with self._tracer.span("spacemigration.ledger.retry", self._attrs(customer, space)):
            record = await self._returning(
                f"""
                UPDATE {TABLE_NAME}
                SET status = :pending, error = NULL, updated_at = GREATEST(updated_at, :now)
                WHERE customer = :customer AND space = :space AND status = :failed
                RETURNING {COLUMNS}
                """,
                {
                    "customer": customer,
                    "space": space,
                    "now": self._now(),
                    "pending": SpaceStatus.PENDING.value,
                    "failed": SpaceStatus.FAILED.value,
                },
            )
            if record is None:
                current = await self._fetch(customer, space)
                ensure_retryable(current, customer, space)
                self._lost_race(current, customer, space)
            return record

    # -------------------------------------------------------------------------
    # Scans
    # -------------------------------------------------------------------------

    async def _scan(
        self,
        clauses: list[str],
        params: dict[str, Any],
        page_token: str | None,
        limit: int,
    ) -> Page[SpaceMigrationRecord]:
        check_limit(limit)
        after = decode_page_token(page_token)
        clauses = list(clauses)
        params = dict(params)
        if after is not None:
            clauses.append("(customer, space) > (:after_customer, :after_space)")
            params["after_customer"], params["after_space"] = after
        params["limit"] = limit + 1
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = text(f"""
            SELECT {COLUMNS}
            FROM {TABLE_NAME}
            {where}
            ORDER BY customer, space
            LIMIT :limit
        """)
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            rows = result.fetchall()
        return build_page([row_to_record(row) for row in rows], limit)

    async def scan_by_customer(
        self,
        customer: str,
        *,
        page_token: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]:
        with self._tracer.span(
            "spacemigration.ledger.scan_by_customer",
            {ATTR_CUSTOMER: customer, ATTR_QUERY_LIMIT: limit, ATTR_DB_SYSTEM: "postgresql"},
        ):
            return await self._scan(
                ["customer = :customer"], {"customer": customer}, page_token, limit
            )

    async def scan_by_instance(
        self,
        instance_id: str,
        *,
        page_token: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]:
        with self._tracer.span(
            "spacemigration.ledger.scan_by_instance",
            {
                ATTR_INSTANCE_ID: instance_id,
                ATTR_QUERY_LIMIT: limit,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            return await self._scan(
                ["instance_id = :instance_id"], {"instance_id": instance_id}, page_token, limit
            )

    async def scan_by_status(
        self,
        status: SpaceStatus,
        *,
        page_token: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]:
        with self._tracer.span(
            "spacemigration.ledger.scan_by_status",
            {ATTR_STATUS: status.value, ATTR_QUERY_LIMIT: limit, ATTR_DB_SYSTEM: "postgresql"},
        ):
            return await self._scan(
                ["status = :status"], {"status": status.value}, page_token, limit
            )

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
        with self._tracer.span(
            "spacemigration.ledger.scan_stuck",
            {ATTR_QUERY_LIMIT: limit, ATTR_DB_SYSTEM: "postgresql"},
        ):
            return await self._scan(
                ["status = :status", "updated_at <= :cutoff"],
                {"status": SpaceStatus.IN_PROGRESS.value, "cutoff": self._now() - threshold},
                page_token,
                limit,
            )

    async def scan_all(
        self,
        page_token: str | None = None,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]:
        with self._tracer.span(
            "spacemigration.ledger.scan_all",
            {ATTR_QUERY_LIMIT: limit, ATTR_DB_SYSTEM: "postgresql"},
        ):
            return await self._scan([], {}, page_token, limit)


__all__ = ["POSTGRESQL_SCHEMA", "PostgreSQLProgressLedger"]
