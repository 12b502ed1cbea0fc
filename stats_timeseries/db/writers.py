from __future__ import annotations

from collections.abc import Iterator, Sequence
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from stats_timeseries.db.schema import ROLLUP_TABLE, assert_rollup_table
from stats_timeseries.errors import UpsertFailure
from stats_timeseries.rollups.rows import RollupRow
from stats_timeseries.utils.time import to_db_timestamp

DEFAULT_BATCH_SIZE = 500


def _chunks(rows: Sequence[dict[str, Any]], size: int) -> Iterator[Sequence[dict[str, Any]]]:
    step = max(int(size), 1)
    for start in range(0, len(rows), step):
        yield rows[start : start + step]


def _merge_sql() -> str:
    return f"""
        MERGE {ROLLUP_TABLE} WITH (HOLDLOCK) AS tgt
        USING (
            SELECT
                :period_start AS period_start,
                :period_end AS period_end,
                :grain AS grain,
                :dim_type AS dim_type,
                :dim_key AS dim_key,
                :total_count AS total_count,
                :verified_count AS verified_count,
                :accepting_any_count AS accepting_any_count,
                :breakdown_json AS breakdown_json,
                :generated_at AS generated_at
        ) AS src
        ON tgt.period_start = src.period_start
           AND tgt.grain = src.grain
           AND tgt.dim_type = src.dim_type
           AND tgt.dim_key = src.dim_key
        WHEN MATCHED THEN
            UPDATE SET
                tgt.period_end = src.period_end,
                tgt.total_count = src.total_count,
                tgt.verified_count = src.verified_count,
                tgt.accepting_any_count = src.accepting_any_count,
                tgt.breakdown_json = src.breakdown_json,
                tgt.generated_at = src.generated_at
        WHEN NOT MATCHED THEN
            INSERT (
                period_start, period_end, grain, dim_type, dim_key,
                total_count, verified_count, accepting_any_count, breakdown_json, generated_at
            )
            VALUES (
                src.period_start, src.period_end, src.grain, src.dim_type, src.dim_key,
                src.total_count, src.verified_count, src.accepting_any_count,
                src.breakdown_json, src.generated_at
            );
        """


def _on_conflict_sql(dialect: str) -> str:
    payload = "CAST(:breakdown_json AS jsonb)" if dialect == "postgresql" else ":breakdown_json"
    return f"""
        INSERT INTO {ROLLUP_TABLE} (
            period_start, period_end, grain, dim_type, dim_key,
            total_count, verified_count, accepting_any_count, breakdown_json, generated_at
        ) VALUES (
            :period_start, :period_end, :grain, :dim_type, :dim_key,
            :total_count, :verified_count, :accepting_any_count, {payload}, :generated_at
        )
        ON CONFLICT (period_start, grain, dim_type, dim_key)
        DO UPDATE SET
            period_end = excluded.period_end,
            total_count = excluded.total_count,
            verified_count = excluded.verified_count,
            accepting_any_count = excluded.accepting_any_count,
            breakdown_json = excluded.breakdown_json,
            generated_at = excluded.generated_at
        """


def upsert_statement(dialect: str):
    if dialect == "mssql":
        return text(_merge_sql())
    return text(_on_conflict_sql(dialect))


def row_params(row: RollupRow, generated_at: datetime, dialect: str) -> dict[str, Any]:
    return {
        "period_start": to_db_timestamp(row.period_start, dialect),
        "period_end": to_db_timestamp(row.period_end, dialect),
        "grain": row.grain,
        "dim_type": row.dim_type,
        "dim_key": row.dim_key,
        "total_count": row.total_count,
        "verified_count": row.verified_count,
        "accepting_any_count": row.accepting_any_count,
        "breakdown_json": row.breakdown.to_json(),
        "generated_at": to_db_timestamp(generated_at, dialect),
    }


def upsert_rows(
    engine: Engine,
    rows: Sequence[RollupRow],
    *,
    generated_at: datetime,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> int:
    """Write every row in one transaction; any failure rolls back the whole run."""
    dialect = engine.dialect.name
    statement = upsert_statement(dialect)
    params = [row_params(row, generated_at, dialect) for row in rows]

    written = 0
    try:
        with engine.begin() as conn:
            assert_rollup_table(conn)
            for chunk in _chunks(params, batch_size):
                conn.execute(statement, list(chunk))
                written += len(chunk)
                logger.debug("Upserted batch of {} rows ({} total)", len(chunk), written)
    except SQLAlchemyError as exc:
        raise UpsertFailure(f"Upsert into {ROLLUP_TABLE} failed: {exc}") from exc

    logger.info("Upserted {} rows into {} ({})", written, ROLLUP_TABLE, dialect)
    return written
