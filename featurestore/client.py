from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import MetaData, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import ArgumentError

from .config import DbConfig, SearchConfig
from .db.session import _utc_now
from .db.tx import DbFactory
from .errors import BadClientConfig
from .schema import metadata as default_metadata

logger = logging.getLogger(__name__)


class Client:
    """
    Entry point handed to every table function.

    Holds the engine, the session factory, configuration and the clock.
    The clock is injectable so TTL and audit-timestamp logic can be tested
    deterministically; it must return aware UTC datetimes.

    Usage:
        client = Client.from_config(DbConfig.from_env())
        sync_web_features(client, features)
    """

    def __init__(
        self,
        engine: Engine,
        db_config: DbConfig | None = None,
        search_config: SearchConfig | None = None,
        *,
        metadata: MetaData = default_metadata,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.engine = engine
        self.db_config = db_config or DbConfig(url=str(engine.url))
        self.search_config = search_config or SearchConfig()
        self.metadata = metadata
        self._clock = clock
        self.factory = DbFactory(
            engine,
            metadata,
            clock=self.time_now,
            max_attempts=self.db_config.max_transaction_attempts,
        )

    @classmethod
    def from_config(
        cls,
        db_config: DbConfig,
        search_config: SearchConfig | None = None,
        **kwargs,
    ) -> "Client":
        """
        Build the engine from a DbConfig.

        Raises:
            BadClientConfig: If the URL cannot be parsed or names an unknown dialect
        """
        try:
            engine = create_engine(db_config.url, pool_pre_ping=db_config.pool_pre_ping)
        except (ArgumentError, ImportError) as exc:
            raise BadClientConfig(f"unable to create engine for {db_config.url!r}: {exc}") from exc
        logger.info("created engine for dialect %s", engine.dialect.name)
        return cls(engine, db_config, search_config, **kwargs)

    def time_now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            raise ValueError("client clock must return timezone-aware datetimes")
        return now.astimezone(timezone.utc)

    def close(self) -> None:
        self.engine.dispose()
