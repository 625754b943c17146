from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

# Fixed key for the scheduler leader lock (Postgres advisory locks take a bigint)
LEADER_LOCK_KEY = 72617261

async def try_advisory_lock(conn: AsyncConnection, key: int = LEADER_LOCK_KEY) -> bool:
    """
    Attempts to acquire a Postgres session-level advisory lock.
    Returns True if acquired (or already held by this connection).

    The lock lives as long as the connection, so callers keep one connection
    checked out for as long as they want to stay leader.

    Other dialects have no advisory locks; a single process is assumed there
    and it is always the leader.
    """
    if conn.dialect.name != "postgresql":
        return True

    result = await conn.execute(
        text("SELECT pg_try_advisory_lock(:key)"),
        {"key": key}
    )
    acquired = result.scalar() is True
    # End the implicit transaction; session-level locks survive it
    await conn.commit()
    return acquired
