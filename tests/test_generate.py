"""End-to-end generation runs against a SQLite source and sink."""

import json
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError

from stats_timeseries.db.schema import create_rollup_table, stats_timeseries
from stats_timeseries.db.writers import upsert_rows
from stats_timeseries.errors import (
    ConfigurationError,
    DataSourceUnavailable,
    SchemaPrerequisiteMissing,
    UpsertFailure,
)
from stats_timeseries.rollups.generate import GenerationOptions, run_generation, run_job
from stats_timeseries.rollups.rows import Breakdown, RollupRow
from tests.helpers import add_place, create_source_tables, utc

NOW = utc(2024, 5, 8, 13, 27, 45)


def seed_example(engine):
    with engine.begin() as conn:
        add_place(conn, "f1", utc(2024, 5, 6, 10, 5), country="US", category="cafe",
                  levels=["owner"], assets=["BTC"])
        add_place(conn, "f2", utc(2024, 5, 6, 10, 50), country="US", category="cafe",
                  levels=["community"], assets=["ETH"])
        add_place(conn, "f3", utc(2024, 5, 6, 11, 20), country="DE", category="retail",
                  levels=["unverified"], assets=["BTC"])


def stored_rows(engine):
    with engine.connect() as conn:
        return conn.execute(
            select(stats_timeseries).order_by(
                stats_timeseries.c.period_start,
                stats_timeseries.c.dim_type,
                stats_timeseries.c.dim_key,
            )
        ).mappings().all()


class TestRunGeneration:
    def test_daily_run_writes_expected_rows(self, source_engine):
        seed_example(source_engine)
        options = GenerationOptions.parse(grain="day", date="2024-05-06", top_n=10)

        result = run_generation(options, engine=source_engine, now=NOW)

        assert result.grain == "1d"
        assert result.window_start == "2024-05-06T00:00:00.000Z"
        assert result.window_end == "2024-05-07T00:00:00.000Z"
        assert result.facts == 3
        # 1 all + 4 verification + 2 + 2 + 2 simple + 2 + 3 + 3 composite
        assert result.upserted == 19

        rows = {(r["dim_type"], r["dim_key"]): r for r in stored_rows(source_engine)}
        assert len(rows) == 19
        everything = rows[("all", "all")]
        assert everything["total_count"] == 3
        assert everything["verified_count"] == 2
        assert everything["accepting_any_count"] == 3
        assert everything["grain"] == "1d"
        assert rows[("country|asset", "US::BTC")]["total_count"] == 1
        assert json.loads(everything["breakdown_json"])["breakdowns"]["country"] == {"US": 2, "DE": 1}

    def test_rerun_is_idempotent(self, source_engine):
        seed_example(source_engine)
        options = GenerationOptions.parse(grain="1h", hour_start="2024-05-06T10:00:00Z")

        run_generation(options, engine=source_engine, now=NOW)
        first = stored_rows(source_engine)
        run_generation(options, engine=source_engine, now=NOW)
        second = stored_rows(source_engine)

        assert [dict(r) for r in first] == [dict(r) for r in second]

    def test_rerun_overwrites_counts(self, source_engine):
        seed_example(source_engine)
        options = GenerationOptions.parse(grain="1d", date="2024-05-06")
        run_generation(options, engine=source_engine, now=NOW)

        with source_engine.begin() as conn:
            add_place(conn, "f4", utc(2024, 5, 6, 18), country="US")
        run_generation(options, engine=source_engine, now=utc(2024, 5, 8, 14))

        rows = {(r["dim_type"], r["dim_key"]): r for r in stored_rows(source_engine)}
        assert rows[("all", "all")]["total_count"] == 4
        assert rows[("country", "US")]["total_count"] == 3
        assert rows[("all", "all")]["generated_at"] == utc(2024, 5, 8, 14).replace(tzinfo=None)

    def test_empty_window_still_writes_baseline_rows(self, source_engine):
        options = GenerationOptions.parse(grain="1w", week_start="2024-04-29")

        result = run_generation(options, engine=source_engine, now=NOW)

        assert result.facts == 0
        assert result.upserted == 5
        assert {r["dim_type"] for r in stored_rows(source_engine)} == {"all", "verification"}

    def test_missing_rollup_table(self, engine):
        create_source_tables(engine)
        options = GenerationOptions.parse(grain="1d", date="2024-05-06")

        with pytest.raises(SchemaPrerequisiteMissing):
            run_generation(options, engine=engine, now=NOW)

    def test_bad_anchor_fails_before_any_io(self):
        engine = MagicMock()
        options = GenerationOptions.parse(grain="1d", date="not-a-date")

        with pytest.raises(ConfigurationError):
            run_generation(options, engine=engine, now=NOW)
        engine.connect.assert_not_called()
        engine.begin.assert_not_called()


class TestOptions:
    @pytest.mark.parametrize(
        "values",
        [
            {"grain": "month"},
            {"grain": "1h", "since_hours": 0},
            {"grain": "1d", "top_n": -1},
            {"grain": "1d", "unexpected": True},
        ],
    )
    def test_invalid_values_are_configuration_errors(self, values):
        with pytest.raises(ConfigurationError):
            GenerationOptions.parse(**values)

    def test_blank_anchor_is_ignored(self):
        options = GenerationOptions.parse(grain="hourly", hour_start="  ")
        assert options.grain == "1h"
        assert options.hour_start is None

    def test_unknown_job(self, source_engine):
        with pytest.raises(ConfigurationError):
            run_job("monthly", engine=source_engine)

    def test_job_maps_to_grain(self, source_engine):
        result = run_job("weekly", engine=source_engine, now=NOW)
        assert result.grain == "1w"
        assert result.window_start == "2024-04-29T00:00:00.000Z"


def test_failed_upsert_rolls_back_whole_run(source_engine):
    breakdown = Breakdown(verification=(), categories=(), assets=(), countries=())
    good = RollupRow(utc(2024, 5, 6), utc(2024, 5, 7), "1d", "all", "all", 1, 0, 0, breakdown)
    bad = RollupRow(utc(2024, 5, 6), utc(2024, 5, 7), "1d", "country", None, 1, 0, 0, breakdown)

    with pytest.raises(UpsertFailure):
        upsert_rows(source_engine, [good, bad], generated_at=NOW, batch_size=1)

    assert stored_rows(source_engine) == []


def test_failed_fact_read_leaves_sink_untouched(engine):
    # history passes the table probe but lacks the action column
    create_source_tables(engine, skip=("history",))
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE history (place_id TEXT, created_at DATETIME)"))
    create_rollup_table(engine)
    options = GenerationOptions.parse(grain="1d", date="2024-05-06")

    with pytest.raises(DataSourceUnavailable) as excinfo:
        run_generation(options, engine=engine, now=NOW)

    assert isinstance(excinfo.value.__cause__, SQLAlchemyError)
    assert stored_rows(engine) == []
