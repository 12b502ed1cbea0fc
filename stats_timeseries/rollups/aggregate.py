from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import NamedTuple

from loguru import logger

from stats_timeseries.rollups.facts import VERIFICATION_LEVELS, Fact
from stats_timeseries.rollups.ranking import (
    COMPOSITE_DIMENSIONS,
    SIMPLE_DIMENSIONS,
    DimensionSelection,
    composite_key,
    dimension_values,
)
from stats_timeseries.rollups.window import Grain, bucket_start

ALL_KEY = "all"


class AggregationKey(NamedTuple):
    bucket: datetime
    dim_type: str
    dim_key: str


def _empty_verification() -> dict[str, int]:
    return {level: 0 for level in VERIFICATION_LEVELS}


@dataclass
class Aggregation:
    total: int = 0
    verified: int = 0
    accepting_any: int = 0
    verification: dict[str, int] = field(default_factory=_empty_verification)
    countries: Counter[str] = field(default_factory=Counter)
    categories: Counter[str] = field(default_factory=Counter)
    assets: Counter[str] = field(default_factory=Counter)

    def apply(self, fact: Fact) -> None:
        self.total += 1
        if fact.is_verified:
            self.verified += 1
        if fact.accepting_any:
            self.accepting_any += 1
        self.verification[fact.verification] += 1
        if fact.country:
            self.countries[fact.country] += 1
        if fact.category:
            self.categories[fact.category] += 1
        self.assets.update(fact.assets)


Aggregations = dict[AggregationKey, Aggregation]


def seed_aggregations(buckets: Iterable[datetime], selection: DimensionSelection) -> Aggregations:
    aggs: Aggregations = {}
    for bucket in buckets:
        aggs[AggregationKey(bucket, ALL_KEY, ALL_KEY)] = Aggregation()
        for level in VERIFICATION_LEVELS:
            aggs[AggregationKey(bucket, "verification", level)] = Aggregation()
        for dim_type in SIMPLE_DIMENSIONS:
            for key in selection.simple.get(dim_type, []):
                aggs[AggregationKey(bucket, dim_type, key)] = Aggregation()
        for dim_type, _, _ in COMPOSITE_DIMENSIONS:
            for parent, partner in selection.composite.get(dim_type, []):
                aggs[AggregationKey(bucket, dim_type, composite_key(parent, partner))] = Aggregation()
    return aggs


def _targets(bucket: datetime, fact: Fact, selection: DimensionSelection) -> list[AggregationKey]:
    keys = [
        AggregationKey(bucket, ALL_KEY, ALL_KEY),
        AggregationKey(bucket, "verification", fact.verification),
    ]
    for dim_type in SIMPLE_DIMENSIONS:
        for key in dimension_values(fact, dim_type):
            if selection.has_key(dim_type, key):
                keys.append(AggregationKey(bucket, dim_type, key))
    for dim_type, parent_dim, partner_dim in COMPOSITE_DIMENSIONS:
        for parent in dimension_values(fact, parent_dim):
            for partner in dimension_values(fact, partner_dim):
                if selection.has_pair(dim_type, parent, partner):
                    keys.append(AggregationKey(bucket, dim_type, composite_key(parent, partner)))
    return keys


def aggregate(
    facts: Iterable[Fact],
    buckets: Sequence[datetime],
    grain: Grain,
    selection: DimensionSelection,
) -> Aggregations:
    aggs = seed_aggregations(buckets, selection)
    bucket_set = set(buckets)
    skipped = 0

    for fact in facts:
        bucket = bucket_start(fact.published_at, grain)
        if bucket not in bucket_set:
            skipped += 1
            continue
        for key in _targets(bucket, fact, selection):
            aggs[key].apply(fact)

    if skipped:
        logger.warning("Skipped {} facts outside the resolved window", skipped)
    return aggs
