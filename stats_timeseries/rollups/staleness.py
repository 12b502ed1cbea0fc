from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Literal

from sqlalchemy import text
from sqlalchemy.engine import Connection

from stats_timeseries.db.schema import ROLLUP_TABLE
from stats_timeseries.rollups.window import Grain
from stats_timeseries.utils.time import ensure_utc, from_db_timestamp, isoformat_z, utc_now

StalenessStatus = Literal["fresh", "stale"]
StalenessReason = Literal["missing", "period_lag", "generated_at_lag", "fresh"]


@dataclass(frozen=True)
class StalenessThreshold:
    max_period_lag_hours: float
    max_generated_age_hours: float


STALENESS_THRESHOLDS: dict[str, StalenessThreshold] = {
    "1h": StalenessThreshold(max_period_lag_hours=3, max_generated_age_hours=3),
    "1d": StalenessThreshold(max_period_lag_hours=48, max_generated_age_hours=48),
    "1w": StalenessThreshold(max_period_lag_hours=24 * 14, max_generated_age_hours=24 * 14),
}


@dataclass(frozen=True)
class StatsStaleness:
    grain: Grain
    dim_type: str
    dim_key: str
    status: StalenessStatus
    reason: StalenessReason
    now: str
    last_period_start: str | None
    last_generated_at: str | None
    age_hours: float | None
    generated_age_hours: float | None
    threshold: StalenessThreshold

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _hours(seconds: float) -> float:
    return round(seconds / 3600, 2)


def evaluate_staleness(
    grain: Grain,
    dim_type: str,
    dim_key: str,
    *,
    last_period_start: datetime | None,
    last_generated_at: datetime | None,
    now: datetime | None = None,
) -> StatsStaleness:
    current = ensure_utc(now) if now is not None else utc_now()
    threshold = STALENESS_THRESHOLDS[grain]

    if last_period_start is None:
        return StatsStaleness(
            grain=grain,
            dim_type=dim_type,
            dim_key=dim_key,
            status="stale",
            reason="missing",
            now=isoformat_z(current),
            last_period_start=None,
            last_generated_at=None,
            age_hours=None,
            generated_age_hours=None,
            threshold=threshold,
        )

    age_hours = _hours((current - ensure_utc(last_period_start)).total_seconds())
    generated_age_hours = None
    if last_generated_at is not None:
        generated_age_hours = _hours((current - ensure_utc(last_generated_at)).total_seconds())

    reason: StalenessReason = "fresh"
    if age_hours > threshold.max_period_lag_hours:
        reason = "period_lag"
    elif generated_age_hours is not None and generated_age_hours > threshold.max_generated_age_hours:
        reason = "generated_at_lag"

    return StatsStaleness(
        grain=grain,
        dim_type=dim_type,
        dim_key=dim_key,
        status="fresh" if reason == "fresh" else "stale",
        reason=reason,
        now=isoformat_z(current),
        last_period_start=isoformat_z(last_period_start),
        last_generated_at=isoformat_z(last_generated_at) if last_generated_at else None,
        age_hours=age_hours,
        generated_age_hours=generated_age_hours,
        threshold=threshold,
    )


def get_staleness(
    conn: Connection,
    grain: Grain,
    dim_type: str = "all",
    dim_key: str = "all",
    now: datetime | None = None,
) -> StatsStaleness:
    row = (
        conn.execute(
            text(f"""
                SELECT t.period_start AS last_period_start,
                       t.generated_at AS last_generated_at
                FROM {ROLLUP_TABLE} t
                WHERE t.grain = :grain
                  AND t.dim_type = :dim_type
                  AND t.dim_key = :dim_key
                  AND t.period_start = (
                      SELECT MAX(m.period_start)
                      FROM {ROLLUP_TABLE} m
                      WHERE m.grain = :grain
                        AND m.dim_type = :dim_type
                        AND m.dim_key = :dim_key
                  );
                """),
            {"grain": grain, "dim_type": dim_type, "dim_key": dim_key},
        )
        .mappings()
        .first()
    )
    last_period_start = row["last_period_start"] if row else None
    last_generated_at = row["last_generated_at"] if row else None
    return evaluate_staleness(
        grain,
        dim_type,
        dim_key,
        last_period_start=from_db_timestamp(last_period_start) if last_period_start else None,
        last_generated_at=from_db_timestamp(last_generated_at) if last_generated_at else None,
        now=now,
    )
