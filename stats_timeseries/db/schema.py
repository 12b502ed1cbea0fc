from __future__ import annotations

from dataclasses import dataclass

from loguru import logger
from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    Table,
    Unicode,
    UnicodeText,
    inspect,
)
from sqlalchemy.dialects.mssql import DATETIME2, NVARCHAR
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.engine import Connection, Engine

from stats_timeseries.errors import DataSourceUnavailable, SchemaPrerequisiteMissing

ROLLUP_TABLE = "stats_timeseries"

HISTORY_TABLE = "history"
PLACES_TABLE = "places"
VERIFICATIONS_TABLE = "verifications"
PAYMENTS_TABLE = "payment_accepts"

metadata = MetaData()

# datetime2 on SQL Server, timestamptz on PostgreSQL; values are always UTC.
UtcDateTime = (
    DateTime()
    .with_variant(DATETIME2(), "mssql")
    .with_variant(TIMESTAMP(timezone=True), "postgresql")
)

stats_timeseries = Table(
    ROLLUP_TABLE,
    metadata,
    Column("period_start", UtcDateTime, nullable=False),
    Column("period_end", UtcDateTime, nullable=False),
    Column("grain", Unicode(8), nullable=False),
    Column("dim_type", Unicode(32), nullable=False),
    Column("dim_key", Unicode(400), nullable=False),
    Column("total_count", Integer, nullable=False, default=0),
    Column("verified_count", Integer, nullable=False, default=0),
    Column("accepting_any_count", Integer, nullable=False, default=0),
    Column(
        "breakdown_json",
        UnicodeText().with_variant(NVARCHAR(), "mssql").with_variant(JSONB(), "postgresql"),
        nullable=False,
    ),
    Column("generated_at", UtcDateTime, nullable=False),
    PrimaryKeyConstraint(
        "period_start", "grain", "dim_type", "dim_key", name="pk_stats_timeseries"
    ),
)


def create_rollup_table(engine: Engine) -> bool:
    with engine.begin() as conn:
        existed = inspect(conn).has_table(ROLLUP_TABLE)
        if not existed:
            metadata.create_all(conn, tables=[stats_timeseries])
    return not existed


def assert_rollup_table(conn: Connection) -> None:
    if not inspect(conn).has_table(ROLLUP_TABLE):
        raise SchemaPrerequisiteMissing(
            f"{ROLLUP_TABLE} table is missing. Run: python -m stats_timeseries.scripts.init_db"
        )


@dataclass(frozen=True)
class SourceCapabilities:
    """Which optional fact-source tables and columns exist for this run."""

    verification_column: str | None = None
    payment_place_id: bool = False
    payment_asset: bool = False
    payment_chain: bool = False

    @property
    def has_payments(self) -> bool:
        return self.payment_place_id and (self.payment_asset or self.payment_chain)


def _column_names(conn: Connection, table: str) -> set[str]:
    return {str(col["name"]).lower() for col in inspect(conn).get_columns(table)}


def probe_source_capabilities(conn: Connection) -> SourceCapabilities:
    insp = inspect(conn)
    for required in (HISTORY_TABLE, PLACES_TABLE):
        if not insp.has_table(required):
            raise DataSourceUnavailable(f"{required} table is required.")

    verification_column: str | None = None
    if insp.has_table(VERIFICATIONS_TABLE):
        columns = _column_names(conn, VERIFICATIONS_TABLE)
        if "place_id" in columns:
            if "level" in columns:
                verification_column = "level"
            elif "status" in columns:
                verification_column = "status"

    payment_columns: set[str] = set()
    if insp.has_table(PAYMENTS_TABLE):
        payment_columns = _column_names(conn, PAYMENTS_TABLE)

    caps = SourceCapabilities(
        verification_column=verification_column,
        payment_place_id="place_id" in payment_columns,
        payment_asset="asset" in payment_columns,
        payment_chain="chain" in payment_columns,
    )
    if caps.verification_column is None:
        logger.warning("No verification level column found; all facts default to 'unverified'.")
    if not caps.has_payments:
        logger.warning("Payment acceptance data unavailable; accepting_any/assets degrade to empty.")
    return caps
