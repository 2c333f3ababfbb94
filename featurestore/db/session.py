from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import MetaData, Select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql import Executable

from .metrics import observe_db_write
from .mutations import Mutation, apply_mutation


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _statement(sql: str | Executable) -> Executable:
    return text(sql) if isinstance(sql, str) else sql


class DbSession:
    """
    Transactional wrapper around a SQLAlchemy Engine connection.

    Use as:
        with DbSession(engine, metadata) as session:
            row = session.fetch_one(...)
            session.buffer_write([Mutation.insert_or_update(...)])

    Writes are buffered and applied in order right before commit, the way
    a Spanner read-write transaction buffers mutations: reads inside the
    session never observe its own buffered writes.

    A read-only session always rolls back on exit and refuses buffer_write().
    """

    def __init__(
        self,
        engine: Engine,
        metadata: MetaData,
        *,
        read_only: bool = False,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.engine = engine
        self.metadata = metadata
        self.read_only = read_only
        self.clock = clock
        self.commit_timestamp: datetime | None = None
        self._conn: Connection | None = None
        self._tx = None
        self._buffer: list[tuple[float, Mutation]] = []

    def __enter__(self) -> "DbSession":
        if self._conn is not None:
            raise RuntimeError("DbSession is already active; nested sessions are not allowed")
        self._conn = self.engine.connect()
        self._tx = self._conn.begin()
        self._buffer = []
        self.commit_timestamp = None
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if self._tx is not None:
                if exc_type or self.read_only:
                    self._rollback()
                else:
                    self._commit()
        finally:
            if self._conn is not None:
                self._conn.close()

            self._conn = None
            self._tx = None
            self._buffer = []

        # propagate exceptions (if any)
        return False

    @property
    def active(self) -> bool:
        return self._conn is not None

    def _connection(self) -> Connection:
        if self._conn is None:
            raise RuntimeError("DbSession is not active; use within a context manager")
        return self._conn

    def _commit(self) -> None:
        status = "success"
        buffered = self._buffer
        try:
            if buffered:
                self.commit_timestamp = self.clock()
                conn = self._connection()
                for _, mutation in buffered:
                    apply_mutation(
                        conn,
                        self.metadata.tables[mutation.table],
                        mutation,
                        self.commit_timestamp,
                    )
            self._tx.commit()
        except Exception:
            status = "error"
            self._tx.rollback()
            raise
        finally:
            self._emit_write_metrics(buffered, status)

    def _rollback(self) -> None:
        buffered = self._buffer
        try:
            self._tx.rollback()
        finally:
            self._emit_write_metrics(buffered, "rolled_back")

    def _emit_write_metrics(self, buffered: list[tuple[float, Mutation]], status: str) -> None:
        end_time = time.monotonic()
        try:
            for start_time, mutation in buffered:
                observe_db_write(
                    table=mutation.table,
                    op_type=mutation.op_type.value,
                    status=status,
                    latency_s=end_time - start_time,
                )
        except Exception:
            # Metric failures must not mask the transaction outcome.
            pass

    def buffer_write(self, mutations: Iterable[Mutation]) -> None:
        """
        Stage mutations for commit.

        Raises:
            RuntimeError: If the session is not active or is read-only
            KeyError: If a mutation targets a table unknown to the metadata
        """
        self._connection()
        if self.read_only:
            raise RuntimeError("cannot buffer writes in a read-only DbSession")
        now = time.monotonic()
        for mutation in mutations:
            if mutation.table not in self.metadata.tables:
                raise KeyError(f"unknown table {mutation.table!r}")
            self._buffer.append((now, mutation))

    @property
    def pending_mutations(self) -> list[Mutation]:
        return [mutation for _, mutation in self._buffer]

    def execute(
        self,
        sql: str | Executable,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        """
        Execute a non-SELECT statement immediately and return affected row count.
        Bypasses the mutation buffer; prefer buffer_write() for row writes.
        """
        conn = self._connection()
        if self.read_only:
            raise RuntimeError("cannot execute writes in a read-only DbSession")
        result = conn.execute(_statement(sql), params or {})
        try:
            if result.rowcount is None:
                raise RuntimeError(
                    "execute() received None rowcount for statement. "
                    "This may indicate a DDL statement or unsupported operation type."
                )
            return int(result.rowcount)
        finally:
            result.close()

    def execute_scalar(
        self,
        sql: str | Executable,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Execute a statement expected to return a single scalar value
        (COUNT(*), MAX(...), an id lookup).
        """
        conn = self._connection()
        result = conn.execute(_statement(sql), params or {})
        try:
            return result.scalar_one_or_none()
        finally:
            result.close()

    def fetch_one(
        self,
        sql: str | Executable,
        params: Mapping[str, Any] | None = None,
        *,
        for_update: bool = False,
    ) -> dict[str, Any] | None:
        """
        Execute a SELECT expected to return 0 or 1 row. Raises if more than one row.

        for_update adds FOR UPDATE to Core selects in read-write sessions;
        dialects without row locks compile it away.
        """
        conn = self._connection()
        stmt = _statement(sql)
        if for_update and not self.read_only and isinstance(stmt, Select):
            stmt = stmt.with_for_update()
        result = conn.execute(stmt, params or {})
        try:
            row = result.mappings().one_or_none()
            if row is None:
                return None
            return dict(row)
        finally:
            result.close()

    def fetch_all(
        self,
        sql: str | Executable,
        params: Mapping[str, Any] | None = None,
        *,
        for_update: bool = False,
    ) -> list[dict[str, Any]]:
        """
        Execute a SELECT expected to return multiple rows.

        for_update behaves as in fetch_one.
        """
        conn = self._connection()
        stmt = _statement(sql)
        if for_update and not self.read_only and isinstance(stmt, Select):
            stmt = stmt.with_for_update()
        result = conn.execute(stmt, params or {})
        try:
            return [dict(row) for row in result.mappings()]
        finally:
            result.close()
