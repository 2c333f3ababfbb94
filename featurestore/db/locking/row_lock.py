from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import and_, select

from ..helpers import _validate_identifier
from ..session import DbSession


class RowLock:
    """
    Pessimistic read-modify-write protection using SELECT ... FOR UPDATE.

    Row locks are held for the entire duration of the surrounding transaction
    and are released only when the transaction commits or rolls back.

    This is NOT a context manager - locks are transaction-scoped, not method-scoped.
    Dialects without row locks (SQLite) compile FOR UPDATE away and rely on
    the database-level write lock instead.

    Usage:
        with client.factory.session() as session:
            row = RowLock(session, "SavedSearches", {"id": search_id}).acquire()
            if row is None:
                return  # row doesn't exist
            session.buffer_write([Mutation.update("SavedSearches", {...})])
    """

    def __init__(self, session: DbSession, table: str, where: Mapping[str, Any]) -> None:
        """
        Args:
            session: Active DbSession instance
            table: Name of a table in the session's metadata
            where: Column -> value equality predicates, normally the primary key
        """
        self.session = session
        self.table = _validate_identifier(table, "table")
        self.where = dict(where)
        for column in self.where:
            _validate_identifier(column, "column name")

    def acquire(self) -> dict | None:
        """
        Lock and return the matching row, or None when it does not exist.

        Raises:
            RuntimeError: If the DbSession is not active
            KeyError: If the table or a column is unknown
        """
        if not self.session.active:
            raise RuntimeError(
                "RowLock.acquire() requires an active DbSession. "
                "Use RowLock within a 'with factory.session() as session:' block."
            )

        table = self.session.metadata.tables[self.table]
        predicates = [table.c[col] == val for col, val in sorted(self.where.items())]
        stmt = select(table).where(and_(*predicates))
        return self.session.fetch_one(stmt, for_update=True)
