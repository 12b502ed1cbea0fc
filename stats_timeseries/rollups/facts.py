from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from loguru import logger
from sqlalchemy import bindparam, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from stats_timeseries.db.schema import (
    HISTORY_TABLE,
    PAYMENTS_TABLE,
    PLACES_TABLE,
    VERIFICATIONS_TABLE,
    SourceCapabilities,
)
from stats_timeseries.errors import DataSourceUnavailable
from stats_timeseries.rollups.window import TimeWindow
from stats_timeseries.utils.time import from_db_timestamp, to_db_timestamp

Verification = Literal["owner", "community", "directory", "unverified"]

# Most privileged first.
VERIFICATION_LEVELS: tuple[Verification, ...] = ("owner", "community", "directory", "unverified")
VERIFIED_LEVELS: frozenset[str] = frozenset({"owner", "community"})
DEFAULT_VERIFICATION: Verification = "unverified"

QUALIFYING_ACTIONS: tuple[str, ...] = ("approve", "promote")


def normalize_key(value: Any) -> str | None:
    if value is None:
        return None
    key = str(value).strip()
    return key or None


def normalize_verification(value: Any) -> Verification:
    key = normalize_key(value)
    key = key.lower() if key else key
    if key in VERIFICATION_LEVELS:
        return key  # type: ignore[return-value]
    return DEFAULT_VERIFICATION


@dataclass(frozen=True)
class Fact:
    entity_id: str
    published_at: datetime
    verification: Verification = DEFAULT_VERIFICATION
    country: str | None = None
    category: str | None = None
    accepting_any: bool = False
    assets: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def build(
        cls,
        entity_id: Any,
        published_at: datetime | str,
        *,
        verification: Any = None,
        country: Any = None,
        category: Any = None,
        accepting_any: bool = False,
        assets: Iterable[Any] = (),
    ) -> "Fact":
        unique_assets = {key for key in (normalize_key(a) for a in assets) if key}
        return cls(
            entity_id=str(entity_id),
            published_at=from_db_timestamp(published_at),
            verification=normalize_verification(verification),
            country=normalize_key(country),
            category=normalize_key(category),
            accepting_any=bool(accepting_any),
            assets=tuple(sorted(unique_assets)),
        )

    @property
    def is_verified(self) -> bool:
        return self.verification in VERIFIED_LEVELS


def _verification_rank_sql(caps: SourceCapabilities) -> str:
    if caps.verification_column is None:
        return "NULL"
    col = caps.verification_column
    ranks = "\n".join(
        f"                         WHEN '{level}' THEN {rank}"
        for rank, level in enumerate(VERIFICATION_LEVELS)
    )
    return f"""(
                     SELECT MIN(
                       CASE COALESCE(NULLIF(LOWER(TRIM(v.{col})), ''), '{DEFAULT_VERIFICATION}')
{ranks}
                         ELSE {len(VERIFICATION_LEVELS) - 1}
                       END)
                     FROM {VERIFICATIONS_TABLE} v
                     WHERE v.place_id = fp.place_id
                 )"""


def build_facts_query(caps: SourceCapabilities):
    if caps.has_payments:
        asset_col = "pa.asset" if caps.payment_asset else "NULL"
        chain_col = "pa.chain" if caps.payment_chain else "NULL"
        payments_join = f"LEFT JOIN {PAYMENTS_TABLE} pa ON pa.place_id = fp.place_id"
    else:
        asset_col = chain_col = "NULL"
        payments_join = ""

    sql = f"""
        WITH first_published AS (
            SELECT h.place_id, MIN(h.created_at) AS first_published_at
            FROM {HISTORY_TABLE} h
            WHERE h.action IN :actions
              AND h.place_id IS NOT NULL
              AND h.created_at < :window_end
            GROUP BY h.place_id
        )
        SELECT
            fp.place_id AS place_id,
            fp.first_published_at AS first_published_at,
            {_verification_rank_sql(caps)} AS verification_rank,
            NULLIF(TRIM(p.country), '') AS country,
            NULLIF(TRIM(p.category), '') AS category,
            {asset_col} AS asset,
            {chain_col} AS chain
        FROM first_published fp
        LEFT JOIN {PLACES_TABLE} p ON p.id = fp.place_id
        {payments_join}
        WHERE fp.first_published_at >= :window_start
          AND fp.first_published_at < :window_end
        ORDER BY fp.first_published_at, fp.place_id
    """
    return text(sql).bindparams(bindparam("actions", expanding=True))


def _level_from_rank(rank: Any) -> Verification:
    if rank is None:
        return DEFAULT_VERIFICATION
    index = int(rank)
    if 0 <= index < len(VERIFICATION_LEVELS):
        return VERIFICATION_LEVELS[index]
    return DEFAULT_VERIFICATION


def facts_from_rows(rows: Iterable[Any]) -> list[Fact]:
    """Fold one-row-per-acceptance results into one Fact per place."""
    ordered: dict[str, dict[str, Any]] = {}
    for row in rows:
        place_id = str(row["place_id"])
        current = ordered.get(place_id)
        if current is None:
            current = {
                "published_at": row["first_published_at"],
                "verification": _level_from_rank(row["verification_rank"]),
                "country": row["country"],
                "category": row["category"],
                "accepting_any": False,
                "assets": [],
            }
            ordered[place_id] = current

        asset = normalize_key(row["asset"])
        chain = normalize_key(row["chain"])
        if asset or chain:
            current["accepting_any"] = True
        raw_asset = row["asset"] if row["asset"] is not None else row["chain"]
        current["assets"].append(raw_asset)

    return [
        Fact.build(
            place_id,
            values["published_at"],
            verification=values["verification"],
            country=values["country"],
            category=values["category"],
            accepting_any=values["accepting_any"],
            assets=values["assets"],
        )
        for place_id, values in ordered.items()
    ]


def load_facts(
    conn: Connection,
    window: TimeWindow,
    caps: SourceCapabilities,
    actions: tuple[str, ...] = QUALIFYING_ACTIONS,
) -> list[Fact]:
    dialect = conn.dialect.name
    params = {
        "actions": list(actions),
        "window_start": to_db_timestamp(window.start, dialect),
        "window_end": to_db_timestamp(window.end, dialect),
    }
    try:
        result = conn.execute(build_facts_query(caps), params).mappings().all()
    except SQLAlchemyError as exc:
        raise DataSourceUnavailable(f"Fact query failed: {exc}") from exc

    facts = facts_from_rows(result)
    logger.info("Loaded {} facts from {} source rows", len(facts), len(result))
    return facts
