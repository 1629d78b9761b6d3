"""
Progress ledger: persistent per-space migration state.

Backends:
    - InMemoryProgressLedger: tests and local development
    - SQLiteProgressLedger: single host (requires aiosqlite)
    - PostgreSQLProgressLedger: shared fleet deployments (SQLAlchemy async)
"""

from spacemigration.ledger.in_memory import InMemoryProgressLedger
from spacemigration.ledger.interface import (
    DEFAULT_PAGE_SIZE,
    ProgressLedger,
    decode_page_token,
    encode_page_token,
)
from spacemigration.ledger.postgresql import POSTGRESQL_SCHEMA, PostgreSQLProgressLedger
from spacemigration.ledger.sqlite import SQLITE_SCHEMA, SQLiteProgressLedger

__all__ = [
    "DEFAULT_PAGE_SIZE",
    "ProgressLedger",
    "encode_page_token",
    "decode_page_token",
    "InMemoryProgressLedger",
    "SQLiteProgressLedger",
    "SQLITE_SCHEMA",
    "PostgreSQLProgressLedger",
    "POSTGRESQL_SCHEMA",
]
