"""
Connection handling for the SQLAlchemy-backed ledger.

``execute_with_connection`` accepts either an AsyncEngine or an
AsyncConnection so the PostgreSQL ledger can run standalone (one short
transaction per conditional write) or inside a caller-managed transaction.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection ready for ``execute()`` calls.

    Args:
        conn: Database connection or engine
        transactional: If True, wrap in transaction (begin).
                       If False, use bare connection (connect).
                       Only applies when conn is an AsyncEngine.

    Note:
        When an AsyncConnection is passed the caller owns transaction
        management and ``transactional`` has no effect.
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn
