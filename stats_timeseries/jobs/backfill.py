from __future__ import annotations

import argparse
from datetime import datetime

from loguru import logger
from sqlalchemy.engine import Engine

from stats_timeseries.config import load_settings
from stats_timeseries.db.engine import get_engine
from stats_timeseries.errors import ConfigurationError, LockNotAcquired, StatsTimeseriesError
from stats_timeseries.jobs.runner import configure_logging, run_locked
from stats_timeseries.rollups.gaps import BACKFILL_LOOKBACK, resolve_range
from stats_timeseries.rollups.generate import GenerationOptions, GenerationResult, run_generation
from stats_timeseries.rollups.window import Grain, TimeWindow, list_buckets, parse_grain
from stats_timeseries.utils.time import isoformat_z


def anchored_options(grain: Grain, bucket: datetime, top_n: int) -> GenerationOptions:
    if grain == "1h":
        return GenerationOptions(grain=grain, hour_start=isoformat_z(bucket), top_n=top_n)
    if grain == "1d":
        return GenerationOptions(grain=grain, date=bucket.strftime("%Y-%m-%d"), top_n=top_n)
    return GenerationOptions(grain=grain, week_start=bucket.strftime("%Y-%m-%d"), top_n=top_n)


def backfill(
    engine: Engine,
    grain: Grain,
    window: TimeWindow,
    *,
    top_n: int,
    batch_size: int = 500,
) -> list[GenerationResult]:
    buckets = list_buckets(grain, window)
    logger.info(
        "[backfill_stats_timeseries] start grain={} start={} end_exclusive={} buckets={}",
        grain,
        isoformat_z(window.start),
        isoformat_z(window.end),
        len(buckets),
    )

    results: list[GenerationResult] = []
    for index, bucket in enumerate(buckets, start=1):
        result = run_generation(
            anchored_options(grain, bucket, top_n), engine=engine, batch_size=batch_size
        )
        results.append(result)
        logger.info(
            "[backfill_stats_timeseries] bucket progress={}/{} bucket_start={} facts={} upserted={}",
            index,
            len(buckets),
            isoformat_z(bucket),
            result.facts,
            result.upserted,
        )

    logger.info(
        "[backfill_stats_timeseries] done grain={} buckets={} facts={} upserted={}",
        grain,
        len(buckets),
        sum(r.facts for r in results),
        sum(r.upserted for r in results),
    )
    return results


def _positive(value: str) -> int:
    parsed = int(value)
    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be a positive number")
    return parsed


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Backfill stats timeseries rollups bucket by bucket.")
    parser.add_argument("--grain", required=True, help="1h | 1d | 1w")
    parser.add_argument("--since", help="First date to backfill (YYYY-MM-DD).")
    parser.add_argument("--until", help="Last date to backfill, inclusive (YYYY-MM-DD).")
    parser.add_argument("--hours", type=_positive, help="Hourly lookback (default: 48).")
    parser.add_argument("--days", type=_positive, help="Daily lookback (default: 7).")
    parser.add_argument("--weeks", type=_positive, help="Weekly lookback (default: 8).")
    parser.add_argument("--top-n", type=_positive, default=None)
    parser.add_argument("--no-lock", action="store_true")
    args = parser.parse_args(argv)
    configure_logging()

    try:
        settings = load_settings()
        configure_logging(settings.log_level)
        grain = parse_grain(args.grain)
        lookback = {"1h": args.hours, "1d": args.days, "1w": args.weeks}[grain]
        window = resolve_range(
            grain,
            since=args.since,
            until=args.until,
            lookback=lookback,
            default_lookback=BACKFILL_LOOKBACK[grain],
        )
    except ConfigurationError as exc:
        logger.error("CONFIG ERROR: {}", exc)
        return 2

    top_n = args.top_n or settings.stats_top_n
    engine = get_engine(settings)

    def run() -> list[GenerationResult]:
        return backfill(
            engine, grain, window, top_n=top_n, batch_size=settings.stats_upsert_batch_size
        )

    try:
        if args.no_lock:
            run()
        else:
            run_locked(engine, grain, run, timeout_ms=settings.stats_lock_timeout_ms)
    except LockNotAcquired:
        logger.info("Another {} run is in progress; skipping backfill.", grain)
        return 0
    except StatsTimeseriesError as exc:
        logger.error("[backfill_stats_timeseries] failed ({}): {}", type(exc).__name__, exc)
        return 1
    except Exception:
        logger.exception("[backfill_stats_timeseries] failed")
        return 1
    finally:
        engine.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
