from __future__ import annotations

import os
from dataclasses import dataclass

ENV_PREFIX = "FEATURESTORE_"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


@dataclass
class DbConfig:
    url: str
    pool_pre_ping: bool = True
    # Attempts of a read-write transaction aborted by the engine (deadlock,
    # serialization failure). Application errors are never retried.
    max_transaction_attempts: int = 3
    # Mutations per transaction when a sync is applied in chunks.
    sync_batch_size: int = 1000
    batch_write_chunk_size: int = 500
    batch_queue_capacity: int = 1000

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if not self.url:
            raise ValueError("url must not be empty")
        if self.max_transaction_attempts < 1:
            raise ValueError("max_transaction_attempts must be >= 1")
        if self.sync_batch_size < 1:
            raise ValueError("sync_batch_size must be >= 1")
        if self.batch_write_chunk_size < 1:
            raise ValueError("batch_write_chunk_size must be >= 1")
        if self.batch_queue_capacity < 1:
            raise ValueError(
                "batch_queue_capacity must be >= 1; an unbounded queue disables backpressure"
            )

    @classmethod
    def from_env(cls) -> "DbConfig":
        """
        Build a DbConfig from FEATURESTORE_* environment variables.

        FEATURESTORE_DB_URL is required; every other setting falls back to
        the dataclass default.
        """
        url = os.environ.get(f"{ENV_PREFIX}DB_URL", "")
        return cls(
            url=url,
            max_transaction_attempts=_env_int(f"{ENV_PREFIX}MAX_TRANSACTION_ATTEMPTS", 3),
            sync_batch_size=_env_int(f"{ENV_PREFIX}SYNC_BATCH_SIZE", 1000),
            batch_write_chunk_size=_env_int(f"{ENV_PREFIX}BATCH_WRITE_CHUNK_SIZE", 500),
            batch_queue_capacity=_env_int(f"{ENV_PREFIX}BATCH_QUEUE_CAPACITY", 1000),
        )


@dataclass
class SearchConfig:
    max_owned_searches_per_user: int = 25
    max_bookmarks_per_user: int = 25

    def __post_init__(self) -> None:
        if self.max_owned_searches_per_user < 0:
            raise ValueError("max_owned_searches_per_user must be >= 0")
        if self.max_bookmarks_per_user < 0:
            raise ValueError("max_bookmarks_per_user must be >= 0")
