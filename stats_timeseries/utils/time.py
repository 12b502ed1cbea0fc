from __future__ import annotations

from datetime import UTC, datetime

SQLITE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Naive values coming back from the database are UTC by convention."""
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_utc_naive(dt: datetime) -> datetime:
    utc = ensure_utc(dt)
    return utc.replace(tzinfo=None)


def to_db_timestamp(dt: datetime, dialect: str) -> datetime | str:
    # SQLite has no datetime type; match SQLAlchemy's storage format so
    # text comparisons stay ordered.
    if dialect == "sqlite":
        return to_utc_naive(dt).strftime(SQLITE_TIMESTAMP_FORMAT)
    # timestamptz columns would read a naive value in the session time zone.
    if dialect == "postgresql":
        return ensure_utc(dt)
    return to_utc_naive(dt)


def from_db_timestamp(value: datetime | str) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value.strip())
    return ensure_utc(value)


def isoformat_z(dt: datetime) -> str:
    utc = ensure_utc(dt)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"
