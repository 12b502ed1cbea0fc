"""UTC time windows and bucket boundaries for hourly, daily and weekly rollups.

Every window is half-open, ``[start, end)``, and aligned to the grain's
natural boundary: top of the hour, midnight, or Monday midnight (ISO week).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Literal

from stats_timeseries.errors import ConfigurationError
from stats_timeseries.utils.time import ensure_utc

Grain = Literal["1h", "1d", "1w"]

GRAINS: tuple[Grain, ...] = ("1h", "1d", "1w")

GRAIN_ALIASES: dict[str, Grain] = {
    "1h": "1h",
    "hour": "1h",
    "hourly": "1h",
    "1d": "1d",
    "day": "1d",
    "daily": "1d",
    "1w": "1w",
    "week": "1w",
    "weekly": "1w",
}

DEFAULT_SINCE_HOURS = 48


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime


def parse_grain(raw: str) -> Grain:
    grain = GRAIN_ALIASES.get(str(raw or "").strip().lower())
    if grain is None:
        raise ConfigurationError(f"Invalid grain: {raw!r}. Expected one of: 1h, 1d, 1w.")
    return grain


def start_of_hour(dt: datetime) -> datetime:
    return ensure_utc(dt).replace(minute=0, second=0, microsecond=0)


def start_of_day(dt: datetime) -> datetime:
    return ensure_utc(dt).replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(dt: datetime) -> datetime:
    day = start_of_day(dt)
    return day - timedelta(days=day.weekday())


def grain_step(grain: Grain) -> timedelta:
    if grain == "1h":
        return timedelta(hours=1)
    if grain == "1d":
        return timedelta(days=1)
    return timedelta(weeks=1)


def add_buckets(dt: datetime, grain: Grain, count: int = 1) -> datetime:
    return dt + grain_step(grain) * count


def bucket_start(dt: datetime, grain: Grain) -> datetime:
    if grain == "1h":
        return start_of_hour(dt)
    if grain == "1d":
        return start_of_day(dt)
    return start_of_week(dt)


def parse_utc_date(raw: str) -> datetime:
    try:
        parsed = datetime.strptime(str(raw).strip(), "%Y-%m-%d")
    except ValueError as exc:
        raise ConfigurationError(f"Invalid date: {raw}. Expected YYYY-MM-DD.") from exc
    return parsed.replace(tzinfo=UTC)


def parse_utc_hour(raw: str) -> datetime:
    value = str(raw).strip()
    if "T" not in value:
        return parse_utc_date(value)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid hourStart: {raw}. Expected ISO datetime.") from exc
    return start_of_hour(parsed)


def resolve_window(
    grain: Grain,
    *,
    date: str | None = None,
    week_start: str | None = None,
    hour_start: str | None = None,
    since_hours: int = DEFAULT_SINCE_HOURS,
    now: datetime | None = None,
) -> TimeWindow:
    current = ensure_utc(now) if now is not None else datetime.now(tz=UTC)

    if grain == "1h":
        if hour_start:
            start = parse_utc_hour(hour_start)
            return TimeWindow(start=start, end=add_buckets(start, "1h"))
        if since_hours <= 0:
            raise ConfigurationError("since_hours must be a positive number.")
        # The current, still-open hour is included.
        end = add_buckets(start_of_hour(current), "1h")
        return TimeWindow(start=add_buckets(end, "1h", -since_hours), end=end)

    if grain == "1d":
        if date:
            start = parse_utc_date(date)
            return TimeWindow(start=start, end=add_buckets(start, "1d"))
        today = start_of_day(current)
        return TimeWindow(start=add_buckets(today, "1d", -1), end=today)

    if grain == "1w":
        if week_start:
            start = start_of_week(parse_utc_date(week_start))
            return TimeWindow(start=start, end=add_buckets(start, "1w"))
        this_week = start_of_week(current)
        return TimeWindow(start=add_buckets(this_week, "1w", -1), end=this_week)

    raise ConfigurationError(f"Invalid grain: {grain!r}. Expected one of: 1h, 1d, 1w.")


def list_buckets(grain: Grain, window: TimeWindow) -> list[datetime]:
    buckets: list[datetime] = []
    current = window.start
    while current < window.end:
        buckets.append(current)
        current = add_buckets(current, grain)
    return buckets
