"""Seeding helpers for the SQLite fact source used in tests."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from stats_timeseries.utils.time import to_db_timestamp


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


SOURCE_DDL = (
    """
    CREATE TABLE history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        place_id TEXT,
        action TEXT NOT NULL,
        created_at DATETIME NOT NULL
    )
    """,
    """
    CREATE TABLE places (
        id TEXT PRIMARY KEY,
        country TEXT,
        category TEXT
    )
    """,
    """
    CREATE TABLE verifications (
        place_id TEXT NOT NULL,
        level TEXT
    )
    """,
    """
    CREATE TABLE payment_accepts (
        place_id TEXT NOT NULL,
        asset TEXT,
        chain TEXT
    )
    """,
)


def create_source_tables(engine: Engine, skip: Iterable[str] = ()) -> None:
    with engine.begin() as conn:
        for ddl in SOURCE_DDL:
            if any(f"CREATE TABLE {name} " in ddl for name in skip):
                continue
            conn.execute(text(ddl))


def add_history(conn: Connection, place_id: str, action: str, at: datetime) -> None:
    conn.execute(
        text("INSERT INTO history (place_id, action, created_at) VALUES (:p, :a, :t)"),
        {"p": place_id, "a": action, "t": to_db_timestamp(at, "sqlite")},
    )


def add_place(
    conn: Connection,
    place_id: str,
    published_at: datetime,
    *,
    country: str | None = None,
    category: str | None = None,
    levels: Iterable[str | None] = (),
    assets: Iterable[str | None] = (),
    action: str = "approve",
) -> None:
    conn.execute(
        text("INSERT INTO places (id, country, category) VALUES (:id, :country, :category)"),
        {"id": place_id, "country": country, "category": category},
    )
    add_history(conn, place_id, action, published_at)
    for level in levels:
        conn.execute(
            text("INSERT INTO verifications (place_id, level) VALUES (:p, :l)"),
            {"p": place_id, "l": level},
        )
    for asset in assets:
        conn.execute(
            text("INSERT INTO payment_accepts (place_id, asset, chain) VALUES (:p, :a, NULL)"),
            {"p": place_id, "a": asset},
        )


