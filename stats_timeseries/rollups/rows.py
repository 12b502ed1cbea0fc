from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from stats_timeseries.rollups.aggregate import Aggregation, AggregationKey
from stats_timeseries.rollups.ranking import top_entries
from stats_timeseries.rollups.window import Grain, add_buckets

BREAKDOWN_LIMIT_BY_GRAIN: dict[str, int] = {"1h": 10, "1d": 20, "1w": 20}

Entries = tuple[tuple[str, int], ...]


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


@dataclass(frozen=True)
class Breakdown:
    """Verification split plus the accumulator's own top nested keys.

    Only serialized at the sink boundary via :meth:`to_json`.
    """

    verification: Entries
    categories: Entries
    assets: Entries
    countries: Entries

    @classmethod
    def from_aggregation(cls, agg: Aggregation, limit: int) -> "Breakdown":
        return cls(
            verification=tuple(agg.verification.items()),
            categories=tuple(top_entries(agg.categories, limit)),
            assets=tuple(top_entries(agg.assets, limit)),
            countries=tuple(top_entries(agg.countries, limit)),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "verification": dict(self.verification),
            "top_categories": [{"key": k, "count": c} for k, c in self.categories],
            "top_assets": [{"key": k, "count": c} for k, c in self.assets],
            "breakdowns": {
                "category": dict(self.categories),
                "asset": dict(self.assets),
                "country": dict(self.countries),
            },
        }

    def to_json(self) -> str:
        return _json_dumps(self.to_payload())


@dataclass(frozen=True)
class RollupRow:
    period_start: datetime
    period_end: datetime
    grain: Grain
    dim_type: str
    dim_key: str
    total_count: int
    verified_count: int
    accepting_any_count: int
    breakdown: Breakdown

    @property
    def natural_key(self) -> tuple[datetime, str, str, str]:
        return (self.period_start, self.grain, self.dim_type, self.dim_key)


def build_rows(aggs: Mapping[AggregationKey, Aggregation], grain: Grain) -> list[RollupRow]:
    limit = BREAKDOWN_LIMIT_BY_GRAIN[grain]
    rows = [
        RollupRow(
            period_start=key.bucket,
            period_end=add_buckets(key.bucket, grain),
            grain=grain,
            dim_type=key.dim_type,
            dim_key=key.dim_key,
            total_count=agg.total,
            verified_count=agg.verified,
            accepting_any_count=agg.accepting_any,
            breakdown=Breakdown.from_aggregation(agg, limit),
        )
        for key, agg in aggs.items()
    ]
    rows.sort(key=lambda row: (row.period_start, row.dim_type, row.dim_key))
    return rows
