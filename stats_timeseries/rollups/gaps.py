from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Connection

from stats_timeseries.db.schema import ROLLUP_TABLE
from stats_timeseries.errors import ConfigurationError
from stats_timeseries.rollups.window import (
    Grain,
    TimeWindow,
    add_buckets,
    bucket_start,
    list_buckets,
    parse_utc_date,
)
from stats_timeseries.utils.time import from_db_timestamp, isoformat_z, to_db_timestamp, utc_now

GAP_LOOKBACK: dict[str, int] = {"1h": 48, "1d": 90, "1w": 52}
BACKFILL_LOOKBACK: dict[str, int] = {"1h": 48, "1d": 7, "1w": 8}


@dataclass(frozen=True)
class GapRange:
    start: datetime
    end: datetime
    length: int

    def to_dict(self) -> dict[str, Any]:
        return {"start": isoformat_z(self.start), "end": isoformat_z(self.end), "length": self.length}


@dataclass(frozen=True)
class GapReport:
    grain: Grain
    dim_type: str
    dim_key: str
    window: TimeWindow
    expected_count: int
    actual_count: int
    gaps: list[datetime] = field(default_factory=list)
    ranges: list[GapRange] = field(default_factory=list)

    @property
    def gaps_count(self) -> int:
        return len(self.gaps)

    def summary(self, max_list: int = 10) -> dict[str, Any]:
        return {
            "grain": self.grain,
            "dim_type": self.dim_type,
            "dim_key": self.dim_key,
            "since": isoformat_z(self.window.start),
            "until_exclusive": isoformat_z(self.window.end),
            "expected_count": self.expected_count,
            "actual_count": self.actual_count,
            "gaps_count": self.gaps_count,
            "gap_samples": [isoformat_z(g) for g in self.gaps[:max_list]],
            "gap_ranges": [r.to_dict() for r in self.ranges[:max_list]],
        }


def resolve_range(
    grain: Grain,
    *,
    since: str | None = None,
    until: str | None = None,
    lookback: int | None = None,
    default_lookback: int,
    now: datetime | None = None,
) -> TimeWindow:
    """Range of whole buckets ending with the bucket containing ``until`` (or now)."""
    anchor = parse_utc_date(until) if until else (now or utc_now())
    end = add_buckets(bucket_start(anchor, grain), grain)

    if since:
        start = bucket_start(parse_utc_date(since), grain)
    else:
        count = default_lookback if lookback is None else lookback
        start = add_buckets(end, grain, -count)

    if start >= end:
        raise ConfigurationError("Invalid range: start must be earlier than end.")
    return TimeWindow(start=start, end=end)


def compress_ranges(gaps: Sequence[datetime], grain: Grain) -> list[GapRange]:
    if not gaps:
        return []

    ranges: list[GapRange] = []
    range_start = previous = gaps[0]
    count = 1
    for current in gaps[1:]:
        if add_buckets(previous, grain) == current:
            previous = current
            count += 1
            continue
        ranges.append(GapRange(start=range_start, end=previous, length=count))
        range_start = previous = current
        count = 1

    ranges.append(GapRange(start=range_start, end=previous, length=count))
    return ranges


def find_gaps(
    grain: Grain,
    window: TimeWindow,
    existing: Iterable[datetime],
    *,
    dim_type: str = "all",
    dim_key: str = "all",
) -> GapReport:
    present = set(existing)
    expected = list_buckets(grain, window)
    gaps = [bucket for bucket in expected if bucket not in present]
    return GapReport(
        grain=grain,
        dim_type=dim_type,
        dim_key=dim_key,
        window=window,
        expected_count=len(expected),
        actual_count=len(present),
        gaps=gaps,
        ranges=compress_ranges(gaps, grain),
    )


def load_period_starts(
    conn: Connection, grain: Grain, window: TimeWindow, dim_type: str, dim_key: str
) -> list[datetime]:
    dialect = conn.dialect.name
    rows = conn.execute(
        text(f"""
            SELECT period_start
            FROM {ROLLUP_TABLE}
            WHERE grain = :grain
              AND dim_type = :dim_type
              AND dim_key = :dim_key
              AND period_start >= :start
              AND period_start < :end
            ORDER BY period_start ASC;
            """),
        {
            "grain": grain,
            "dim_type": dim_type,
            "dim_key": dim_key,
            "start": to_db_timestamp(window.start, dialect),
            "end": to_db_timestamp(window.end, dialect),
        },
    ).all()
    return [from_db_timestamp(row[0]) for row in rows]


def check_gaps(
    conn: Connection,
    grain: Grain,
    window: TimeWindow,
    *,
    dim_type: str = "all",
    dim_key: str = "all",
) -> GapReport:
    existing = load_period_starts(conn, grain, window, dim_type, dim_key)
    return find_gaps(grain, window, existing, dim_type=dim_type, dim_key=dim_key)
