from __future__ import annotations

import argparse

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from stats_timeseries.config import load_settings
from stats_timeseries.db.engine import get_engine
from stats_timeseries.db.schema import assert_rollup_table
from stats_timeseries.errors import ConfigurationError, StatsTimeseriesError
from stats_timeseries.jobs.runner import configure_logging
from stats_timeseries.rollups.gaps import GAP_LOOKBACK, check_gaps, resolve_range
from stats_timeseries.rollups.window import parse_grain


def _non_negative(value: str) -> int:
    parsed = int(value)
    if parsed < 0:
        raise argparse.ArgumentTypeError("must be a non-negative number")
    return parsed


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Report missing buckets in a stats timeseries series.")
    parser.add_argument("--grain", required=True, help="1h | 1d | 1w")
    parser.add_argument("--since", help="First date to check (YYYY-MM-DD).")
    parser.add_argument("--until", help="Last date to check, inclusive (YYYY-MM-DD).")
    parser.add_argument("--hours", type=_non_negative)
    parser.add_argument("--days", type=_non_negative)
    parser.add_argument("--weeks", type=_non_negative)
    parser.add_argument("--dim-type", default="all")
    parser.add_argument("--dim-key", default="all")
    parser.add_argument("--max-list", type=_non_negative, default=10)
    parser.add_argument(
        "--fail-if-gaps-above",
        type=_non_negative,
        default=None,
        help="Exit 2 when more gaps than this are found.",
    )
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
            default_lookback=GAP_LOOKBACK[grain],
        )
    except ConfigurationError as exc:
        logger.error("CONFIG ERROR: {}", exc)
        return 2

    engine = get_engine(settings)
    try:
        with engine.connect() as conn:
            assert_rollup_table(conn)
            report = check_gaps(
                conn, grain, window, dim_type=args.dim_type or "all", dim_key=args.dim_key or "all"
            )
    except (StatsTimeseriesError, SQLAlchemyError) as exc:
        logger.error("[check_stats_timeseries_gaps] failed: {}", exc)
        return 1
    finally:
        engine.dispose()

    logger.info("[check_stats_timeseries_gaps] result {}", report.summary(args.max_list))

    if args.fail_if_gaps_above is not None and report.gaps_count > args.fail_if_gaps_above:
        logger.error(
            "[check_stats_timeseries_gaps] threshold exceeded fail_if_gaps_above={} gaps_count={}",
            args.fail_if_gaps_above,
            report.gaps_count,
        )
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
