"""Column layout and row conversion shared by the SQL ledger backends."""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from spacemigration.ledger.interface import to_utc
from spacemigration.models import SpaceMigrationRecord, SpaceStatus

TABLE_NAME = "space_migration_progress"

COLUMNS = (
    "customer, space, status, total_uploads, completed_uploads, "
    "last_processed_upload, instance_id, worker_id, error, "
    "attribution_conflicts, created_at, updated_at"
)


def _timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return to_utc(value)
    return to_utc(datetime.fromisoformat(value))


def _conflicts(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = json.loads(value)
    return tuple(value)


def row_to_record(row: Sequence[Any]) -> SpaceMigrationRecord:
    """
    Convert a row selected with ``COLUMNS`` to a SpaceMigrationRecord.

    Timestamps may arrive as ISO strings (SQLite) or datetimes (PostgreSQL);
    conflicts as a JSON string or an already decoded list.
    """
    return SpaceMigrationRecord(
        customer=row[0],
        space=row[1],
        status=SpaceStatus(row[2]),
        total_uploads=row[3] or 0,
        completed_uploads=row[4] or 0,
        last_processed_upload=row[5],
        instance_id=row[6],
        worker_id=row[7],
        error=row[8],
        attribution_conflicts=_conflicts(row[9]),
        created_at=_timestamp(row[10]),
        updated_at=_timestamp(row[11]),
    )


def dump_conflicts(conflicts: tuple[str, ...] | None) -> str | None:
    if conflicts is None:
        return None
    return json.dumps(sorted(set(conflicts)))
