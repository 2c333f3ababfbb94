from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, Mapping, Protocol, TypeVar

from sqlalchemy import MetaData
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.sql import Executable

from ..errors import InternalQueryFailure, OperationCancelled
from .mutations import Mutation
from .session import DbSession, _utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

# MySQL: 1205 lock wait timeout, 1213 deadlock.
_RETRYABLE_MYSQL_CODES = (1205, 1213)
# PostgreSQL / Spanner PG interface: serialization_failure, deadlock_detected.
_RETRYABLE_SQLSTATES = ("40001", "40P01")
_RETRYABLE_MESSAGES = (
    "deadlock",
    "lock wait timeout",
    "could not serialize",
    "database is locked",
    "transaction was aborted",
)


class DbTx(Protocol):
    """
    Protocol for the transaction handle passed down the call chain.

    Table functions accept an optional DbTx so several reads and writes can
    land in one commit; mapper hooks receive the same handle.
    """

    commit_timestamp: datetime | None

    def buffer_write(self, mutations: Iterable[Mutation]) -> None:
        """Stage mutations for commit."""
        ...

    def execute_scalar(
        self,
        sql: str | Executable,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """Execute a statement expected to return a single scalar value."""
        ...

    def fetch_one(
        self,
        sql: str | Executable,
        params: Mapping[str, Any] | None = None,
        *,
        for_update: bool = False,
    ) -> dict[str, Any] | None:
        """Execute a SELECT expected to return 0 or 1 row."""
        ...

    def fetch_all(
        self,
        sql: str | Executable,
        params: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Execute a SELECT returning multiple rows."""
        ...


def is_retryable_error(exc: BaseException) -> bool:
    """
    Check if an engine error means "transaction aborted, run it again".

    Covers MySQL deadlock / lock wait timeout, PostgreSQL serialization
    failures and SQLite's busy database. Everything else is permanent.
    """
    if isinstance(exc, InternalQueryFailure) and exc.cause is not None:
        return is_retryable_error(exc.cause)

    if not isinstance(exc, DBAPIError):
        return False

    orig = getattr(exc, "orig", None)
    args = getattr(orig, "args", None) or ()
    if args and args[0] in _RETRYABLE_MYSQL_CODES:
        return True

    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True

    if isinstance(exc, OperationalError):
        message = str(exc).lower()
        return any(fragment in message for fragment in _RETRYABLE_MESSAGES)

    return False


class DbFactory:
    """
    Factory for database sessions.

    ⚠️ IMPORTANT: Never retry inside a single DbSession. run_read_write()
    re-runs the whole function in a NEW session when the engine aborts the
    transaction, which is the only retry this package performs.

    Usage:
        factory = DbFactory(engine, metadata)

        with factory.session(read_only=True) as session:
            rows = session.fetch_all(...)

        factory.run_read_write(lambda session: session.buffer_write([...]))
    """

    def __init__(
        self,
        engine: Engine,
        metadata: MetaData,
        *,
        clock: Callable[[], datetime] = _utc_now,
        max_attempts: int = 3,
    ) -> None:
        """
        Args:
            engine: SQLAlchemy Engine instance
            metadata: MetaData holding every table mutations may target
            clock: Source of commit timestamps
            max_attempts: Attempts per read-write transaction on engine aborts
        """
        self.engine = engine
        self.metadata = metadata
        self.clock = clock
        self.max_attempts = max_attempts

    def session(self, *, read_only: bool = False) -> DbSession:
        """
        Create a new, not yet entered, session.
        """
        return DbSession(self.engine, self.metadata, read_only=read_only, clock=self.clock)

    def run_read_write(
        self,
        fn: Callable[[DbSession], T],
        *,
        cancel: threading.Event | None = None,
    ) -> T:
        """
        Run fn inside a read-write session and commit.

        Args:
            fn: Body of the transaction; receives the active session
            cancel: Optional event; when set, the in-flight attempt rolls
                back and OperationCancelled is raised

        Returns:
            Whatever fn returned on the committed attempt

        Raises:
            OperationCancelled: If cancel was set before commit
            Any exception raised by fn, or the last retryable engine error
            once max_attempts is exhausted
        """
        attempt = 0
        while True:
            attempt += 1
            if cancel is not None and cancel.is_set():
                raise OperationCancelled("transaction cancelled before start")
            try:
                with self.session() as session:
                    result = fn(session)
                    if cancel is not None and cancel.is_set():
                        raise OperationCancelled("transaction cancelled before commit")
                return result
            except Exception as exc:
                if attempt >= self.max_attempts or not is_retryable_error(exc):
                    raise
                logger.warning(
                    "transaction aborted by the engine (attempt %d/%d), retrying: %s",
                    attempt,
                    self.max_attempts,
                    exc,
                )
