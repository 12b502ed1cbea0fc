"""Tests for aggregation and row building over in-memory facts.

Covers the invariants dashboards rely on:
- every bucket has one ``all`` row and four ``verification`` rows
- verification rows partition the ``all`` total
- simple and composite dimensions stay within their bounds
- output ordering and payloads are deterministic
"""

import json
from collections import defaultdict

import pytest

from stats_timeseries.rollups.facts import VERIFICATION_LEVELS, Fact
from stats_timeseries.rollups.generate import build_rollup_rows
from stats_timeseries.rollups.window import TimeWindow
from tests.helpers import utc

H0 = utc(2024, 5, 6, 10)
H1 = utc(2024, 5, 6, 11)
TWO_HOURS = TimeWindow(H0, utc(2024, 5, 6, 12))


@pytest.fixture
def example_facts() -> list[Fact]:
    return [
        Fact.build("f1", utc(2024, 5, 6, 10, 5), verification="owner", country="US",
                   category="cafe", accepting_any=True, assets=["BTC"]),
        Fact.build("f2", utc(2024, 5, 6, 10, 50), verification="community", country="US",
                   category="cafe", accepting_any=True, assets=["ETH"]),
        Fact.build("f3", utc(2024, 5, 6, 11, 20), verification="unverified", country="DE",
                   category="retail", accepting_any=True, assets=["BTC"]),
    ]


def index_rows(rows):
    return {(row.period_start, row.dim_type, row.dim_key): row for row in rows}


class TestExampleWindow:
    def test_expected_totals(self, example_facts):
        rows = index_rows(build_rollup_rows(example_facts, "1h", TWO_HOURS, top_n=10))

        assert rows[(H0, "all", "all")].total_count == 2
        assert rows[(H0, "all", "all")].verified_count == 2
        assert rows[(H0, "country", "US")].total_count == 2
        assert rows[(H0, "asset", "BTC")].total_count == 1
        assert rows[(H0, "asset", "ETH")].total_count == 1
        assert rows[(H0, "country|category", "US::cafe")].total_count == 2
        assert rows[(H1, "all", "all")].total_count == 1
        assert rows[(H1, "verification", "unverified")].total_count == 1

    def test_selected_keys_are_zero_filled_in_every_bucket(self, example_facts):
        rows = index_rows(build_rollup_rows(example_facts, "1h", TWO_HOURS, top_n=10))

        assert rows[(H1, "country", "US")].total_count == 0
        assert rows[(H0, "country|category", "DE::retail")].total_count == 0
        # 1 all + 4 verification + 2 countries + 2 categories + 2 assets
        # + 2 country|category + 3 country|asset + 3 category|asset
        assert len(rows) == 2 * 19

    def test_breakdown_payload(self, example_facts):
        rows = index_rows(build_rollup_rows(example_facts, "1h", TWO_HOURS, top_n=10))

        assert rows[(H0, "all", "all")].breakdown.to_json() == (
            '{"verification":{"owner":1,"community":1,"directory":0,"unverified":0},'
            '"top_categories":[{"key":"cafe","count":2}],'
            '"top_assets":[{"key":"BTC","count":1},{"key":"ETH","count":1}],'
            '"breakdowns":{"category":{"cafe":2},"asset":{"BTC":1,"ETH":1},"country":{"US":2}}}'
        )

    def test_rows_are_sorted(self, example_facts):
        rows = build_rollup_rows(example_facts, "1h", TWO_HOURS, top_n=10)
        keys = [(r.period_start, r.dim_type, r.dim_key) for r in rows]
        assert keys == sorted(keys)
        assert rows[0].dim_type == "all"
        assert rows[0].period_end == H1

    def test_rebuild_is_identical(self, example_facts):
        first = build_rollup_rows(example_facts, "1h", TWO_HOURS, top_n=10)
        second = build_rollup_rows(list(reversed(example_facts)), "1h", TWO_HOURS, top_n=10)
        assert first == second
        assert [r.breakdown.to_json() for r in first] == [r.breakdown.to_json() for r in second]


def test_empty_window_still_emits_all_and_verification_rows():
    window = TimeWindow(utc(2024, 5, 6), utc(2024, 5, 8))
    rows = build_rollup_rows([], "1d", window, top_n=30)

    assert len(rows) == 2 * 5
    assert {r.dim_type for r in rows} == {"all", "verification"}
    assert all(r.total_count == 0 for r in rows)
    payload = json.loads(rows[0].breakdown.to_json())
    assert payload["verification"] == {level: 0 for level in VERIFICATION_LEVELS}
    assert payload["top_assets"] == []


def test_verification_rows_partition_all_total():
    levels = ["owner", "community", "directory", "unverified", None, "bogus"]
    facts = [
        Fact.build(str(i), utc(2024, 5, 6, i % 24, 30), verification=levels[i % len(levels)],
                   country=f"C{i % 4}")
        for i in range(60)
    ]
    rows = build_rollup_rows(facts, "1h", TimeWindow(utc(2024, 5, 6), utc(2024, 5, 7)), top_n=30)

    all_totals = {r.period_start: r.total_count for r in rows if r.dim_type == "all"}
    by_level = defaultdict(int)
    level_rows = defaultdict(int)
    for r in rows:
        if r.dim_type == "verification":
            by_level[r.period_start] += r.total_count
            level_rows[r.period_start] += 1

    assert len(all_totals) == 24
    assert by_level == all_totals
    assert set(level_rows.values()) == {4}


def test_top_n_and_composite_bounds_hold():
    facts = []
    for i in range(200):
        facts.append(
            Fact.build(
                str(i),
                utc(2024, 5, 6, 10, i % 60),
                country=f"country{i % 12}",
                category=f"category{i % 17}",
                assets=[f"asset{i % 9}", f"asset{(i + 1) % 9}"],
            )
        )
    rows = build_rollup_rows(facts, "1h", TimeWindow(utc(2024, 5, 6, 10), utc(2024, 5, 6, 11)), top_n=4)

    for dim_type in ("country", "category", "asset"):
        assert len({r.dim_key for r in rows if r.dim_type == dim_type}) == 4

    partners = defaultdict(set)
    for r in rows:
        if "|" in r.dim_type:
            parent, partner = r.dim_key.split("::", 1)
            partners[(r.dim_type, parent)].add(partner)
    assert partners
    assert max(len(v) for v in partners.values()) <= 5


def test_breakdown_limit_applies_per_grain():
    facts = [
        Fact.build(str(i), utc(2024, 5, 6, 10, 0), country=f"c{i:02d}")
        for i in range(25)
    ]
    hourly = build_rollup_rows(facts, "1h", TimeWindow(utc(2024, 5, 6, 10), utc(2024, 5, 6, 11)), 30)
    daily = build_rollup_rows(facts, "1d", TimeWindow(utc(2024, 5, 6), utc(2024, 5, 7)), 30)

    hourly_all = next(r for r in hourly if r.dim_type == "all")
    daily_all = next(r for r in daily if r.dim_type == "all")
    assert [k for k, _ in hourly_all.breakdown.countries] == [f"c{i:02d}" for i in range(10)]
    assert len(daily_all.breakdown.countries) == 20


def test_weekly_composites_stop_at_ten_partners():
    week = TimeWindow(utc(2024, 5, 6), utc(2024, 5, 13))
    facts = [
        Fact.build(f"{i}-{j}", utc(2024, 5, 7, 12), country="US", category=f"cat{i:02d}")
        for i in range(12)
        for j in range(12 - i)
    ]
    rows = build_rollup_rows(facts, "1w", week, top_n=30)

    pairs = [r for r in rows if r.dim_type == "country|category"]
    assert [r.dim_key for r in pairs] == [f"US::cat{i:02d}" for i in range(10)]
    assert [r.total_count for r in pairs] == list(range(12, 2, -1))
    assert len([r for r in rows if r.dim_type == "category"]) == 12


def test_separator_keys_never_merge_composite_rows():
    facts = [
        Fact.build("1", utc(2024, 5, 6, 10, 1), country="A::B", category="C"),
        Fact.build("2", utc(2024, 5, 6, 10, 2), country="A", category="B::C"),
    ]
    rows = build_rollup_rows(facts, "1h", TimeWindow(utc(2024, 5, 6, 10), utc(2024, 5, 6, 11)), 30)

    assert not [r for r in rows if "|" in r.dim_type]
    countries = {r.dim_key: r.total_count for r in rows if r.dim_type == "country"}
    assert countries == {"A": 1, "A::B": 1}
