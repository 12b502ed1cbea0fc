from __future__ import annotations

import argparse
import time
from datetime import datetime
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from loguru import logger
from sqlalchemy.engine import Engine

from stats_timeseries.config import Settings, load_settings
from stats_timeseries.db.engine import get_engine
from stats_timeseries.errors import ConfigurationError, LockNotAcquired
from stats_timeseries.jobs.runner import configure_logging, generate_once
from stats_timeseries.rollups.generate import GenerationOptions, GenerationResult
from stats_timeseries.rollups.staleness import StatsStaleness, get_staleness
from stats_timeseries.rollups.window import GRAINS
from stats_timeseries.utils.time import utc_now

LOG_PREFIX = "[cron][stats-timeseries]"
WEEKLY_RUN_WEEKDAY = 0  # Monday, UTC


def _run_grain(
    options: GenerationOptions, settings: Settings, engine: Engine, now: datetime | None
) -> GenerationResult | None:
    try:
        return generate_once(options, settings=settings, engine=engine, now=now)
    except LockNotAcquired:
        logger.info("{} {} run already in progress; skipping.", LOG_PREFIX, options.grain)
        return None


def log_staleness(engine: Engine, now: datetime | None = None) -> list[StatsStaleness]:
    with engine.connect() as conn:
        checks = [get_staleness(conn, grain, now=now) for grain in GRAINS]
    for check in checks:
        logger.info(
            "{} [stats][stale] grain={} dim={}/{} last_period_start={} generated_at={} "
            "ageHours={} generatedAgeHours={} status={} reason={}",
            LOG_PREFIX,
            check.grain,
            check.dim_type,
            check.dim_key,
            check.last_period_start or "none",
            check.last_generated_at or "none",
            "n/a" if check.age_hours is None else check.age_hours,
            "n/a" if check.generated_age_hours is None else check.generated_age_hours,
            check.status.upper(),
            check.reason,
        )
    return checks


def run_cron_cycle(
    settings: Settings, engine: Engine, now: datetime | None = None
) -> dict[str, Any]:
    started_at = now or utc_now()
    logger.info("{} start", LOG_PREFIX)

    summary: dict[str, Any] = {}
    hourly = _run_grain(
        GenerationOptions(grain="1h", since_hours=settings.stats_since_hours, top_n=settings.stats_top_n),
        settings,
        engine,
        started_at,
    )
    summary["hourly"] = hourly.to_dict() if hourly else None

    daily = _run_grain(GenerationOptions(grain="1d", top_n=settings.stats_top_n), settings, engine, started_at)
    summary["daily"] = daily.to_dict() if daily else None

    if started_at.weekday() == WEEKLY_RUN_WEEKDAY:
        weekly = _run_grain(GenerationOptions(grain="1w", top_n=settings.stats_top_n), settings, engine, started_at)
        summary["weekly"] = weekly.to_dict() if weekly else None
    else:
        logger.info("{} weekly skipped (not Monday UTC)", LOG_PREFIX)
        summary["weekly"] = None

    summary["staleness"] = [check.to_dict() for check in log_staleness(engine, started_at)]
    logger.info("{} done", LOG_PREFIX)
    return summary


def _cron_job(settings: Settings, engine: Engine) -> None:
    try:
        run_cron_cycle(settings, engine)
    except Exception:
        logger.exception("{} scheduled cycle failed", LOG_PREFIX)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run stats timeseries generation on a schedule.")
    parser.add_argument("--once", action="store_true", help="Run a single cycle now and exit.")
    parser.add_argument("--hour", type=int, default=0, help="UTC hour to run the daily cycle (default: 0).")
    parser.add_argument("--minute", type=int, default=15, help="Minute of that hour (default: 15).")
    args = parser.parse_args(argv)
    configure_logging()

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        logger.error("CONFIG ERROR: {}", exc)
        return 2
    configure_logging(settings.log_level)
    engine = get_engine(settings)

    if args.once:
        try:
            run_cron_cycle(settings, engine)
        except Exception:
            logger.exception("{} failed", LOG_PREFIX)
            return 1
        finally:
            engine.dispose()
        return 0

    scheduler = BackgroundScheduler(
        timezone="UTC",
        job_defaults={
            "max_instances": settings.scheduler_max_instances,
            "coalesce": settings.scheduler_coalesce,
            "misfire_grace_time": settings.scheduler_misfire_grace_seconds,
        },
    )
    scheduler.add_job(
        _cron_job,
        "cron",
        hour=args.hour,
        minute=args.minute,
        args=(settings, engine),
        id="stats_timeseries_cycle",
    )

    scheduler.start()
    logger.info("Scheduler started: daily at {:02d}:{:02d} UTC", args.hour, args.minute)

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Scheduler stopping...")
        scheduler.shutdown(wait=False)
        engine.dispose()
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
