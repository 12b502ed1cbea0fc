from __future__ import annotations

import zlib
from collections.abc import Iterator
from contextlib import contextmanager

from loguru import logger
from sqlalchemy import text
from sqlalchemy.engine import Connection

from stats_timeseries.errors import LockNotAcquired

LOCK_PREFIX = "stats_timeseries"


def lock_name_for(grain: str) -> str:
    return f"{LOCK_PREFIX}_{grain}"


def _advisory_key(lock_name: str) -> int:
    return zlib.crc32(lock_name.encode("utf-8"))


def _mssql_acquire(conn: Connection, lock_name: str, timeout_ms: int) -> bool:
    # sp_getapplock returns >= 0 when granted, < 0 on timeout/deadlock/error.
    res = conn.execute(
        text("""
            DECLARE @res int;
            EXEC @res = sp_getapplock
                @Resource = :resource,
                @LockMode = 'Exclusive',
                @LockOwner = 'Session',
                @LockTimeout = :timeout_ms;
            SELECT @res AS res;
            """),
        {"resource": lock_name, "timeout_ms": int(timeout_ms)},
    ).scalar_one()
    if int(res) < 0:
        logger.info("sp_getapplock refused {} (res={})", lock_name, res)
        return False
    return True


def _mssql_release(conn: Connection, lock_name: str) -> None:
    conn.execute(
        text("EXEC sp_releaseapplock @Resource = :resource, @LockOwner = 'Session';"),
        {"resource": lock_name},
    )


def _pg_acquire(conn: Connection, lock_name: str, timeout_ms: int) -> bool:
    key = _advisory_key(lock_name)
    return bool(conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key}).scalar_one())


def _pg_release(conn: Connection, lock_name: str) -> None:
    conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": _advisory_key(lock_name)})


_LOCKS = {
    "mssql": (_mssql_acquire, _mssql_release),
    "postgresql": (_pg_acquire, _pg_release),
}


@contextmanager
def db_lock(conn: Connection, lock_name: str, timeout_ms: int = 0) -> Iterator[None]:
    """Session-scoped exclusive lock; a no-op on dialects without one."""
    handlers = _LOCKS.get(conn.dialect.name)
    if handlers is None:
        logger.debug("No run lock for dialect {}; running unlocked", conn.dialect.name)
        yield
        return

    acquire, release = handlers
    if not acquire(conn, lock_name, timeout_ms):
        raise LockNotAcquired(lock_name)

    logger.info("Run lock acquired: {}", lock_name)
    try:
        yield
    finally:
        try:
            release(conn, lock_name)
            logger.info("Run lock released: {}", lock_name)
        except Exception as exc:
            logger.warning("Failed to release run lock '{}': {}", lock_name, exc)
