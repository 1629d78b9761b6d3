"""
SQLite implementation of the progress ledger.

SQLite-specific adaptations:
- Timestamps stored as TEXT in ISO 8601 format with a fixed UTC offset and
  microsecond precision, so string comparison matches time order
- Attribution conflicts stored as a JSON array in TEXT
- Conditional writes are plain ``UPDATE ... WHERE`` statements; a zero
  rowcount means the condition did not hold and the record is re-read to
  diagnose why
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, NoReturn

from spacemigration.exceptions import ClaimConflictError, RecordAlreadyExistsError
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

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)

SQLITE_SCHEMA = f"""
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
    attribution_conflicts TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (customer, space),
    CHECK (completed_uploads >= 0 AND completed_uploads <= total_uploads)
);

CREATE INDEX IF NOT EXISTS idx_{TABLE_NAME}_status_updated
    ON {TABLE_NAME} (status, updated_at);

CREATE INDEX IF NOT EXISTS idx_{TABLE_NAME}_instance
    ON {TABLE_NAME} (instance_id);
"""


def _ts(value: datetime) -> str:
    return to_utc(value).isoformat(timespec="microseconds")


class SQLiteProgressLedger:
    """
    SQLite ProgressLedger.

    Suitable for a single host running several worker processes against one
    database file. Every write commits immediately.

    Example:
        >>> async with aiosqlite.connect("migration.db") as db:
        ...     ledger = SQLiteProgressLedger(db)
        ...     await ledger.initialize()
        ...     await ledger.create(customer, space, total_uploads=12)
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        clock: Callable[[], datetime] = utc_now,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the ledger.

        Args:
            connection: aiosqlite database connection
            clock: Source of the current time, injectable for staleness tests
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._connection = connection
        self._clock = clock

    def _now(self) -> datetime:
        return to_utc(self._clock())

    def _attrs(self, customer: str, space: str, **extra: Any) -> dict[str, Any]:
        attrs: dict[str, Any] = {
            ATTR_CUSTOMER: customer,
            ATTR_SPACE: space,
            ATTR_DB_SYSTEM: "sqlite",
        }
        attrs.update(extra)
        return attrs

    async def initialize(self) -> None:
        """Create the progress table and its indexes if they do not exist."""
        await self._connection.executescript(SQLITE_SCHEMA)
        await self._connection.commit()
        logger.debug("Initialized %s schema", TABLE_NAME)

    async def _update(self, sql: str, params: tuple[Any, ...]) -> bool:
        cursor = await self._connection.execute(sql, params)
        applied = cursor.rowcount > 0
        await self._connection.commit()
        return applied

    async def _fetch(self, customer: str, space: str) -> SpaceMigrationRecord | None:
        cursor = await self._connection.execute(
            f"SELECT {COLUMNS} FROM {TABLE_NAME} WHERE customer = ? AND space = ?",
            (customer, space),
        )
        row = await cursor.fetchone()
        return row_to_record(row) if row else None

    async def _written(self, customer: str, space: str) -> SpaceMigrationRecord:
        return ensure_exists(await self._fetch(customer, space), customer, space)

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
            now = _ts(self._now())
            try:
                await self._connection.execute(
                    f"""
                    INSERT INTO {TABLE_NAME} (
                        customer, space, status, total_uploads, completed_uploads,
                        attribution_conflicts, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, 0, '[]', ?, ?)
                    """,
                    (customer, space, SpaceStatus.PENDING.value, total_uploads, now, now),
                )
            except sqlite3.IntegrityError:
                await self._connection.rollback()
                raise RecordAlreadyExistsError(customer, space) from None
            await self._connection.commit()
            return await self._written(customer, space)

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
            cutoff = _ts(now - stale_after) if stale_after is not None else None
            applied = await self._update(
                f"""
                UPDATE {TABLE_NAME}
                SET status = ?, instance_id = ?, worker_id = ?, error = NULL,
                    updated_at = MAX(updated_at, ?)
                WHERE customer = ? AND space = ?
                  AND (
                    status IN (?, ?)
                    OR (? IS NOT NULL AND status = ? AND updated_at <= ?)
                  )
                """,
                (
                    SpaceStatus.IN_PROGRESS.value,
                    instance_id,
                    worker_id,
                    _ts(now),
                    customer,
                    space,
                    SpaceStatus.PENDING.value,
                    SpaceStatus.FAILED.value,
                    cutoff,
                    SpaceStatus.IN_PROGRESS.value,
                    cutoff,
                ),
            )
            if not applied:
                current = await self._fetch(customer, space)
                ensure_claimable(current, customer, space, now, stale_after)
                self._lost_race(current, customer, space)
            return await self._written(customer, space)

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
            applied = await self._update(
                f"""
                UPDATE {TABLE_NAME}
                SET completed_uploads = ?,
                    total_uploads = COALESCE(?, total_uploads),
                    last_processed_upload = COALESCE(?, last_processed_upload),
                    attribution_conflicts = COALESCE(?, attribution_conflicts),
                    updated_at = MAX(updated_at, ?)
                WHERE customer = ? AND space = ?
                  AND status = ? AND instance_id = ? AND worker_id = ?
                  AND completed_uploads <= ?
                  AND ? <= COALESCE(?, total_uploads)
                """,
                (
                    completed_uploads,
                    total_uploads,
                    last_processed_upload,
                    dump_conflicts(attribution_conflicts),
                    _ts(self._now()),
                    customer,
                    space,
                    SpaceStatus.IN_PROGRESS.value,
                    instance_id,
                    worker_id,
                    completed_uploads,
                    completed_uploads,
                    total_uploads,
                ),
            )
            if not applied:
                current = await self._fetch(customer, space)
                record = ensure_owner(current, customer, space, instance_id, worker_id)
                ensure_progress(record, completed_uploads, total_uploads)
                self._lost_race(current, customer, space)
            return await self._written(customer, space)

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
        applied = await self._update(
            f"""
            UPDATE {TABLE_NAME}
            SET status = ?, error = ?, updated_at = MAX(updated_at, ?)
            WHERE customer = ? AND space = ? AND status = ?
              AND (? IS NULL OR (instance_id = ? AND worker_id = ?))
            """,
            (
                target.value,
                error,
                _ts(self._now()),
                customer,
                space,
                SpaceStatus.IN_PROGRESS.value,
                instance_id,
                instance_id,
                worker_id,
            ),
        )
        if not applied:
            current = await self._fetch(customer, space)
            done = ensure_terminal_write(current, customer, space, target, instance_id, worker_id)
            if done is not None:
                return done
            self._lost_race(current, customer, space)
        return await self._written(customer, space)

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
            applied = await self._update(
                f"""
                UPDATE {TABLE_NAME}
                SET status = ?, updated_at = MAX(updated_at, ?)
                WHERE customer = ? AND space = ?
                  AND status = ? AND instance_id = ? AND worker_id = ?
                """,
                (
                    SpaceStatus.PENDING.value,
                    _ts(self._now()),
                    customer,
                    space,
                    SpaceStatus.IN_PROGRESS.value,
                    instance_id,
                    worker_id,
                ),
            )
            if not applied:
                current = await self._fetch(customer, space)
                ensure_owner(current, customer, space, instance_id, worker_id)
                self._lost_race(current, customer, space)
            return await self._written(customer, space)

    async def reclaim_stale(
        self,
        customer: str,
        space: str,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ) -> SpaceMigrationRecord:
        with self._tracer.span("spacemigration.ledger.reclaim_stale", self._attrs(customer, space)):
            now = self._now()
            applied = await self._update(
                f"""
                UPDATE {TABLE_NAME}
                SET status = ?, updated_at = MAX(updated_at, ?)
                WHERE customer = ? AND space = ? AND status = ? AND updated_at <= ?
                """,
                (
                    SpaceStatus.PENDING.value,
                    _ts(now),
                    customer,
                    space,
                    SpaceStatus.IN_PROGRESS.value,
                    _ts(now - stale_after),
                ),
            )
            if not applied:
                current = await self._fetch(customer, space)
                ensure_stale(current, customer, space, now, stale_after)
                self._lost_race(current, customer, space)
            return await self._written(customer, space)

    async def retry(self, customer: str, space: str) -> SpaceMigrationRecord:
        with self._tracer.span("spacemigration.ledger.retry", self._attrs(customer, space)):
            applied = await self._update(
                f"""
                UPDATE {TABLE_NAME}
                SET status = ?, error = NULL, updated_at = MAX(updated_at, ?)
                WHERE customer = ? AND space = ? AND status = ?
                """,
                (
                    SpaceStatus.PENDING.value,
                    _ts(self._now()),
                    customer,
                    space,
                    SpaceStatus.FAILED.value,
                ),
            )
            if not applied:
                current = await self._fetch(customer, space)
                ensure_retryable(current, customer, space)
                self._lost_race(current, customer, space)
            return await self._written(customer, space)

    # -------------------------------------------------------------------------
    # Scans
    # -------------------------------------------------------------------------

    async def _scan(
        self,
        clauses: list[str],
        params: list[Any],
        page_token: str | None,
        limit: int,
    ) -> Page[SpaceMigrationRecord]:
        check_limit(limit)
        after = decode_page_token(page_token)
        clauses = list(clauses)
        params = list(params)
        if after is not None:
            clauses.append("(customer > ? OR (customer = ? AND space > ?))")
            params.extend([after[0], after[0], after[1]])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self._connection.execute(
            f"SELECT {COLUMNS} FROM {TABLE_NAME} {where} ORDER BY customer, space LIMIT ?",
            (*params, limit + 1),
        )
        rows = await cursor.fetchall()
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
            {ATTR_CUSTOMER: customer, ATTR_QUERY_LIMIT: limit, ATTR_DB_SYSTEM: "sqlite"},
        ):
            return await self._scan(["customer = ?"], [customer], page_token, limit)

    async def scan_by_instance(
        self,
        instance_id: str,
        *,
        page_token: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]:
        with self._tracer.span(
            "spacemigration.ledger.scan_by_instance",
            {ATTR_INSTANCE_ID: instance_id, ATTR_QUERY_LIMIT: limit, ATTR_DB_SYSTEM: "sqlite"},
        ):
            return await self._scan(["instance_id = ?"], [instance_id], page_token, limit)

    async def scan_by_status(
        self,
        status: SpaceStatus,
        *,
        page_token: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SpaceMigrationRecord]:
        with self._tracer.span(
            "spacemigration.ledger.scan_by_status",
            {ATTR_STATUS: status.value, ATTR_QUERY_LIMIT: limit, ATTR_DB_SYSTEM: "sqlite"},
        ):
            return await self._scan(["status = ?"], [status.value], page_token, limit)

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
            {ATTR_QUERY_LIMIT: limit, ATTR_DB_SYSTEM: "sqlite"},
        ):
            cutoff = _ts(self._now() - threshold)
            return await self._scan(
                ["status = ?", "updated_at <= ?"],
                [SpaceStatus.IN_PROGRESS.value, cutoff],
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
            {ATTR_QUERY_LIMIT: limit, ATTR_DB_SYSTEM: "sqlite"},
        ):
            return await self._scan([], [], page_token, limit)


__all__ = ["SQLITE_SCHEMA", "SQLiteProgressLedger"]
