from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy import create_engine

from featurestore.client import Client
from featurestore.config import DbConfig, SearchConfig
from featurestore.errors import BadClientConfig


class TestDbConfig:
    def test_defaults(self) -> None:
        config = DbConfig(url="sqlite://")
        assert config.max_transaction_attempts == 3
        assert config.sync_batch_size == 1000
        assert config.batch_write_chunk_size == 500
        assert config.batch_queue_capacity == 1000

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"url": ""},
            {"url": "sqlite://", "max_transaction_attempts": 0},
            {"url": "sqlite://", "sync_batch_size": 0},
            {"url": "sqlite://", "batch_write_chunk_size": 0},
            {"url": "sqlite://", "batch_queue_capacity": 0},
        ],
    )
    def test_invalid_values_raise(self, kwargs) -> None:
        with pytest.raises(ValueError):
            DbConfig(**kwargs)

    def test_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("FEATURESTORE_DB_URL", "sqlite:///x.db")
        monkeypatch.setenv("FEATURESTORE_SYNC_BATCH_SIZE", "50")
        monkeypatch.delenv("FEATURESTORE_MAX_TRANSACTION_ATTEMPTS", raising=False)

        config = DbConfig.from_env()

        assert config.url == "sqlite:///x.db"
        assert config.sync_batch_size == 50
        assert config.max_transaction_attempts == 3

    def test_from_env_requires_url(self, monkeypatch) -> None:
        monkeypatch.delenv("FEATURESTORE_DB_URL", raising=False)
        with pytest.raises(ValueError):
            DbConfig.from_env()


class TestSearchConfig:
    def test_negative_limits_raise(self) -> None:
        with pytest.raises(ValueError):
            SearchConfig(max_owned_searches_per_user=-1)
        with pytest.raises(ValueError):
            SearchConfig(max_bookmarks_per_user=-1)


class TestClient:
    def test_from_config_builds_engine(self) -> None:
        client = Client.from_config(DbConfig(url="sqlite://"))
        try:
            assert client.engine.dialect.name == "sqlite"
            assert client.factory.max_attempts == 3
        finally:
            client.close()

    def test_from_config_rejects_unknown_dialect(self) -> None:
        with pytest.raises(BadClientConfig):
            Client.from_config(DbConfig(url="nosuchdialect://host/db"))

    def test_naive_clock_is_rejected(self) -> None:
        client = Client(create_engine("sqlite://"), clock=lambda: datetime(2024, 1, 1))
        with pytest.raises(ValueError):
            client.time_now()
