from __future__ import annotations

import os
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from featurestore.client import Client
from featurestore.config import DbConfig, SearchConfig
from featurestore.schema import metadata


class FakeClock:
    """Deterministic client clock; tests move it with advance()."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


def _markexpr_allows(config: pytest.Config, marker_name: str) -> bool:
    """Return True if the user's `-m` expression mentions marker_name."""
    expr = getattr(config.option, "markexpr", "") or ""
    return marker_name in expr


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip concurrency tests unless explicitly selected with `-m concurrency`."""
    if _markexpr_allows(config, "concurrency"):
        return
    skip_concurrency = pytest.mark.skip(
        reason="Skipped: run with `pytest -m concurrency` to execute concurrency invariant tests."
    )
    for item in items:
        if item.get_closest_marker("concurrency") is not None:
            item.add_marker(skip_concurrency)


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """
    Database URL for tests.

    Defaults to a fresh SQLite file per test. Set FEATURESTORE_TEST_DB_URL to
    run against a real server (e.g. mysql+pymysql://...); the schema is then
    created and dropped around each test.
    """
    return os.environ.get("FEATURESTORE_TEST_DB_URL") or f"sqlite:///{tmp_path / 'featurestore.db'}"


@pytest.fixture
def engine(db_url: str) -> Iterator[Engine]:
    eng = create_engine(db_url)
    try:
        with eng.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
    except Exception as exc:  # pragma: no cover
        pytest.fail(
            "Test database is not reachable.\n"
            f"- FEATURESTORE_TEST_DB_URL={db_url!r}\n"
            f"- Underlying error: {exc}",
            pytrace=False,
        )

    metadata.drop_all(eng)
    metadata.create_all(eng)
    yield eng
    metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def client(engine: Engine, db_url: str, clock: FakeClock) -> Iterator[Client]:
    c = Client(
        engine,
        DbConfig(url=db_url),
        SearchConfig(max_owned_searches_per_user=3, max_bookmarks_per_user=2),
        clock=clock,
    )
    yield c
