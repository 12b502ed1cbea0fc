from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from loguru import logger

from stats_timeseries.rollups.facts import Fact
from stats_timeseries.rollups.window import Grain

SIMPLE_DIMENSIONS: tuple[str, ...] = ("country", "category", "asset")

# (dim_type, parent dimension, partner dimension)
COMPOSITE_DIMENSIONS: tuple[tuple[str, str, str], ...] = (
    ("country|category", "country", "category"),
    ("country|asset", "country", "asset"),
    ("category|asset", "category", "asset"),
)

COMPOSITE_SEPARATOR = "::"

COMPOSITE_LIMIT_BY_GRAIN: dict[str, int] = {"1h": 5, "1d": 10, "1w": 10}

DEFAULT_TOP_N = 30


def dimension_values(fact: Fact, dimension: str) -> tuple[str, ...]:
    if dimension == "country":
        return (fact.country,) if fact.country else ()
    if dimension == "category":
        return (fact.category,) if fact.category else ()
    if dimension == "asset":
        return fact.assets
    raise ValueError(f"unknown dimension: {dimension}")


def is_composable(key: str) -> bool:
    """Keys containing the separator would make composite dim_keys ambiguous."""
    return COMPOSITE_SEPARATOR not in key


def composite_key(parent: str, partner: str) -> str:
    return f"{parent}{COMPOSITE_SEPARATOR}{partner}"


def top_entries(counts: Mapping[str, int], limit: int) -> list[tuple[str, int]]:
    """Count descending, then key ascending; empty keys never rank."""
    ranked = sorted(
        ((key, count) for key, count in counts.items() if key),
        key=lambda item: (-item[1], item[0]),
    )
    return ranked[: max(0, limit)]


def top_keys(counts: Mapping[str, int], limit: int) -> list[str]:
    return [key for key, _ in top_entries(counts, limit)]


def count_dimension(facts: Iterable[Fact], dimension: str) -> Counter[str]:
    counts: Counter[str] = Counter()
    for fact in facts:
        counts.update(dimension_values(fact, dimension))
    return counts


@dataclass
class DimensionSelection:
    """Keys allowed into each dimension's rollups for one run."""

    simple: dict[str, list[str]] = field(default_factory=dict)
    composite: dict[str, list[tuple[str, str]]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._simple_sets = {dim: set(keys) for dim, keys in self.simple.items()}
        self._composite_sets = {dim: set(pairs) for dim, pairs in self.composite.items()}

    def has_key(self, dim_type: str, key: str) -> bool:
        return key in self._simple_sets.get(dim_type, ())

    def has_pair(self, dim_type: str, parent: str, partner: str) -> bool:
        return (parent, partner) in self._composite_sets.get(dim_type, ())


def rank_dimensions(facts: Sequence[Fact], top_n: int) -> dict[str, list[str]]:
    return {dim: top_keys(count_dimension(facts, dim), top_n) for dim in SIMPLE_DIMENSIONS}


def select_composites(
    facts: Sequence[Fact], ranked: Mapping[str, list[str]], grain: Grain
) -> dict[str, list[tuple[str, str]]]:
    limit = COMPOSITE_LIMIT_BY_GRAIN[grain]
    selected: dict[str, list[tuple[str, str]]] = {}

    excluded = sorted({key for keys in ranked.values() for key in keys if not is_composable(key)})
    if excluded:
        logger.warning(
            "Keys containing {!r} are left out of composite dimensions: {}", COMPOSITE_SEPARATOR, excluded
        )

    for dim_type, parent_dim, partner_dim in COMPOSITE_DIMENSIONS:
        parents = [key for key in ranked.get(parent_dim, []) if is_composable(key)]
        parent_set = set(parents)
        partners_by_parent: dict[str, Counter[str]] = {}
        for fact in facts:
            for parent in dimension_values(fact, parent_dim):
                if parent not in parent_set:
                    continue
                counter = partners_by_parent.setdefault(parent, Counter())
                counter.update(
                    key for key in dimension_values(fact, partner_dim) if is_composable(key)
                )

        pairs: list[tuple[str, str]] = []
        for parent in parents:
            candidates = partners_by_parent.get(parent)
            if not candidates:
                continue
            pairs.extend((parent, partner) for partner in top_keys(candidates, limit))
        selected[dim_type] = pairs

    return selected


def select_dimensions(facts: Sequence[Fact], grain: Grain, top_n: int) -> DimensionSelection:
    ranked = rank_dimensions(facts, top_n)
    return DimensionSelection(simple=ranked, composite=select_composites(facts, ranked, grain))
