"""Stats timeseries generation.

One run turns the qualifying lifecycle history of a closed time window into
rollup rows, in a fixed sequence:

    resolve window -> enumerate buckets -> load facts -> rank dimensions
    -> select composites -> aggregate -> build rows -> upsert

Everything before the upsert is pure computation over one fact read, so a
failure at any point leaves the sink untouched. The upsert runs in a single
transaction.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy.engine import Engine

from stats_timeseries.db.schema import assert_rollup_table, probe_source_capabilities
from stats_timeseries.db.writers import DEFAULT_BATCH_SIZE, upsert_rows
from stats_timeseries.errors import ConfigurationError
from stats_timeseries.rollups.aggregate import aggregate
from stats_timeseries.rollups.facts import Fact, load_facts
from stats_timeseries.rollups.ranking import DEFAULT_TOP_N, select_dimensions
from stats_timeseries.rollups.rows import RollupRow, build_rows
from stats_timeseries.rollups.window import (
    DEFAULT_SINCE_HOURS,
    Grain,
    TimeWindow,
    list_buckets,
    parse_grain,
    resolve_window,
)
from stats_timeseries.utils.time import isoformat_z, utc_now

TimeseriesJob = Literal["hourly", "daily", "weekly"]

JOB_GRAINS: dict[str, Grain] = {"hourly": "1h", "daily": "1d", "weekly": "1w"}


class GenerationOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    grain: Grain
    date: str | None = None
    week_start: str | None = None
    hour_start: str | None = None
    since_hours: int = Field(default=DEFAULT_SINCE_HOURS, gt=0)
    top_n: int = Field(default=DEFAULT_TOP_N, gt=0)

    @field_validator("grain", mode="before")
    @classmethod
    def _normalize_grain(cls, value: Any) -> Grain:
        return parse_grain(value)

    @field_validator("date", "week_start", "hour_start", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @classmethod
    def parse(cls, **values: Any) -> "GenerationOptions":
        try:
            return cls(**values)
        except ConfigurationError:
            raise
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc


@dataclass(frozen=True)
class GenerationResult:
    grain: Grain
    window_start: str
    window_end: str
    facts: int
    upserted: int
    top_n: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def window_for(options: GenerationOptions, now: datetime | None = None) -> TimeWindow:
    return resolve_window(
        options.grain,
        date=options.date,
        week_start=options.week_start,
        hour_start=options.hour_start,
        since_hours=options.since_hours,
        now=now,
    )


def build_rollup_rows(
    facts: Sequence[Fact], grain: Grain, window: TimeWindow, top_n: int
) -> list[RollupRow]:
    buckets = list_buckets(grain, window)
    selection = select_dimensions(facts, grain, top_n)
    logger.debug(
        "Selected keys: {}",
        {dim: len(keys) for dim, keys in {**selection.simple, **selection.composite}.items()},
    )
    aggs = aggregate(facts, buckets, grain, selection)
    return build_rows(aggs, grain)


def run_generation(
    options: GenerationOptions,
    *,
    engine: Engine,
    now: datetime | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> GenerationResult:
    window = window_for(options, now=now)
    logger.info(
        "Generating grain={} window=[{}, {}) top_n={}",
        options.grain,
        isoformat_z(window.start),
        isoformat_z(window.end),
        options.top_n,
    )

    with engine.connect() as conn:
        assert_rollup_table(conn)
        caps = probe_source_capabilities(conn)
        facts = load_facts(conn, window, caps)

    rows = build_rollup_rows(facts, options.grain, window, options.top_n)
    logger.info("Built {} rows from {} facts", len(rows), len(facts))

    upserted = upsert_rows(engine, rows, generated_at=now or utc_now(), batch_size=batch_size)

    result = GenerationResult(
        grain=options.grain,
        window_start=isoformat_z(window.start),
        window_end=isoformat_z(window.end),
        facts=len(facts),
        upserted=upserted,
        top_n=options.top_n,
    )
    logger.info("Generation done: {}", result.to_dict())
    return result


def run_job(
    job: TimeseriesJob,
    *,
    engine: Engine,
    now: datetime | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    **values: Any,
) -> GenerationResult:
    grain = JOB_GRAINS.get(job)
    if grain is None:
        raise ConfigurationError(f"Unknown job: {job!r}. Expected hourly, daily or weekly.")
    options = GenerationOptions.parse(grain=grain, **values)
    return run_generation(options, engine=engine, now=now, batch_size=batch_size)
