from __future__ import annotations

import argparse
import sys
from collections.abc import Callable
from datetime import datetime
from typing import TypeVar

from loguru import logger
from sqlalchemy.engine import Engine
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from stats_timeseries.config import Settings, load_settings
from stats_timeseries.db.engine import get_engine
from stats_timeseries.errors import (
    ConfigurationError,
    LockNotAcquired,
    SchemaPrerequisiteMissing,
    StatsTimeseriesError,
)
from stats_timeseries.jobs.locking import db_lock, lock_name_for
from stats_timeseries.rollups.generate import GenerationOptions, GenerationResult, run_generation

RETRY_WAIT_SECONDS = 5

T = TypeVar("T")


def configure_logging(level: str = "INFO") -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning("Attempt {} failed ({}); retrying in {}s", state.attempt_number, exc, RETRY_WAIT_SECONDS)


def with_retries(fn: Callable[[], T], retries: int) -> T:
    retrying = Retrying(
        stop=stop_after_attempt(max(0, retries) + 1),
        wait=wait_fixed(RETRY_WAIT_SECONDS),
        retry=retry_if_not_exception_type(
            (ConfigurationError, SchemaPrerequisiteMissing, LockNotAcquired)
        ),
        before_sleep=_log_retry,
        reraise=True,
    )
    return retrying(fn)


def run_locked(
    engine: Engine, grain: str, fn: Callable[[], T], *, timeout_ms: int = 0
) -> T:
    with engine.connect() as conn:
        conn = conn.execution_options(isolation_level="AUTOCOMMIT")
        with db_lock(conn, lock_name_for(grain), timeout_ms=timeout_ms):
            return fn()


def generate_once(
    options: GenerationOptions,
    *,
    settings: Settings,
    engine: Engine,
    retries: int = 0,
    use_lock: bool = True,
    now: datetime | None = None,
) -> GenerationResult:
    def attempt() -> GenerationResult:
        return run_generation(
            options, engine=engine, now=now, batch_size=settings.stats_upsert_batch_size
        )

    def guarded() -> GenerationResult:
        return with_retries(attempt, retries)

    if not use_lock:
        return guarded()
    return run_locked(engine, options.grain, guarded, timeout_ms=settings.stats_lock_timeout_ms)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate stats timeseries rollups for one window."
    )
    parser.add_argument("--grain", required=True, help="1h | 1d | 1w (or hour/day/week).")
    parser.add_argument("--date", help="Day to generate (YYYY-MM-DD), 1d only.")
    parser.add_argument("--week-start", help="Any date in the week to generate (YYYY-MM-DD), 1w only.")
    parser.add_argument("--hour-start", help="Hour to generate (ISO datetime), 1h only.")
    parser.add_argument("--since-hours", type=int, default=None, help="Hourly lookback (default: STATS_SINCE_HOURS).")
    parser.add_argument("--top-n", type=int, default=None, help="Keys kept per dimension (default: STATS_TOP_N).")
    parser.add_argument("--retries", type=int, default=0, help="Retry a failed run this many times.")
    parser.add_argument("--no-lock", action="store_true", help="Do not take the per-grain run lock.")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    try:
        settings = load_settings()
        configure_logging(settings.log_level)
        options = GenerationOptions.parse(
            grain=args.grain,
            date=args.date,
            week_start=args.week_start,
            hour_start=args.hour_start,
            since_hours=settings.stats_since_hours if args.since_hours is None else args.since_hours,
            top_n=settings.stats_top_n if args.top_n is None else args.top_n,
        )
    except ConfigurationError as exc:
        logger.error("CONFIG ERROR: {}", exc)
        return 2

    engine = get_engine(settings)
    try:
        result = generate_once(
            options,
            settings=settings,
            engine=engine,
            retries=args.retries,
            use_lock=not args.no_lock,
        )
    except LockNotAcquired:
        logger.info("Another {} run is in progress; skipping.", options.grain)
        return 0
    except ConfigurationError as exc:
        logger.error("CONFIG ERROR: {}", exc)
        return 2
    except StatsTimeseriesError as exc:
        logger.error("Generation failed ({}): {}", type(exc).__name__, exc)
        return 1
    except Exception:
        logger.exception("Generation failed")
        return 1
    finally:
        engine.dispose()

    logger.info(
        "[generate_stats_timeseries] done grain={} window_start={} window_end={} facts={} upserted={} top_n={}",
        result.grain,
        result.window_start,
        result.window_end,
        result.facts,
        result.upserted,
        result.top_n,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
