from __future__ import annotations

import argparse

from loguru import logger
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from tenacity import retry, stop_after_attempt, wait_fixed

from stats_timeseries.config import load_settings
from stats_timeseries.db.engine import get_engine
from stats_timeseries.db.schema import ROLLUP_TABLE, create_rollup_table
from stats_timeseries.errors import ConfigurationError
from stats_timeseries.jobs.runner import configure_logging


@retry(stop=stop_after_attempt(3), wait=wait_fixed(1), reraise=True)
def _ping_with_retry(engine: Engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create the stats timeseries rollup table.")
    parser.add_argument(
        "--check-only",
        action="store_true",
        help="Only verify connectivity; do not create anything.",
    )
    args = parser.parse_args(argv)
    configure_logging()

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        logger.error("CONFIG ERROR: {}", exc)
        return 2

    engine = get_engine(settings)
    try:
        _ping_with_retry(engine)
        logger.info("Database reachable: {}", engine.url.render_as_string(hide_password=True))
        if args.check_only:
            return 0
        if create_rollup_table(engine):
            logger.info("Created table {}", ROLLUP_TABLE)
        else:
            logger.info("Table {} already exists", ROLLUP_TABLE)
        return 0
    except (OperationalError, DBAPIError) as exc:
        logger.error("FAILURE: database error: {}", getattr(exc, "orig", exc))
        return 1
    finally:
        engine.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
