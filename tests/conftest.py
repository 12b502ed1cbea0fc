from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from stats_timeseries.db.schema import create_rollup_table
from tests.helpers import create_source_tables


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'stats.db'}"


@pytest.fixture
def engine(db_url: str) -> Generator[Engine, None, None]:
    eng = create_engine(db_url)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture
def source_engine(engine: Engine) -> Engine:
    """Fact source tables plus an empty rollup table."""
    create_source_tables(engine)
    create_rollup_table(engine)
    return engine
