from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Sequence

from sqlalchemy import Table, and_, delete, insert, update
from sqlalchemy.engine import Connection

from .helpers import _validate_identifier


class _CommitTimestamp:
    """Placeholder replaced by the transaction's commit timestamp."""

    _instance: "_CommitTimestamp | None" = None

    def __new__(cls) -> "_CommitTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "COMMIT_TIMESTAMP"


COMMIT_TIMESTAMP = _CommitTimestamp()


class MutationType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    INSERT_OR_UPDATE = "insert_or_update"
    DELETE = "delete"


@dataclass(frozen=True)
class Mutation:
    """
    A single buffered row mutation.

    ``values`` maps column -> value. For DELETE it holds only the primary
    key columns; for every other type it must include them.
    """
    table: str
    op_type: MutationType
    values: Mapping[str, Any]

    def __post_init__(self) -> None:
        _validate_identifier(self.table, "table")
        for column in self.values:
            _validate_identifier(column, "column name")

    @classmethod
    def insert(cls, table: str, values: Mapping[str, Any]) -> "Mutation":
        return cls(table, MutationType.INSERT, dict(values))

    @classmethod
    def update(cls, table: str, values: Mapping[str, Any]) -> "Mutation":
        return cls(table, MutationType.UPDATE, dict(values))

    @classmethod
    def insert_or_update(cls, table: str, values: Mapping[str, Any]) -> "Mutation":
        return cls(table, MutationType.INSERT_OR_UPDATE, dict(values))

    @classmethod
    def delete(cls, table: str, key: Mapping[str, Any]) -> "Mutation":
        return cls(table, MutationType.DELETE, dict(key))


@dataclass
class ExtraMutationsGroup:
    """Mutations on a dependent table, staged by a mapper hook."""
    table: str
    mutations: list[Mutation] = field(default_factory=list)


def _resolve_values(values: Mapping[str, Any], commit_ts: datetime) -> dict[str, Any]:
    return {
        col: (commit_ts if val is COMMIT_TIMESTAMP else val)
        for col, val in values.items()
    }


def _key_clause(table: Table, values: Mapping[str, Any]):
    key_columns = list(table.primary_key.columns)
    missing = [col.name for col in key_columns if col.name not in values]
    if missing:
        raise ValueError(
            f"mutation on {table.name} is missing primary key column(s): {', '.join(missing)}"
        )
    return and_(*[col == values[col.name] for col in key_columns])


def apply_mutation(
    conn: Connection,
    table: Table,
    mutation: Mutation,
    commit_ts: datetime,
) -> int:
    """
    Apply one mutation on an open connection and return the affected row count.

    INSERT_OR_UPDATE is an UPDATE by primary key followed by an INSERT when
    nothing matched; inside a serializable transaction that is equivalent
    to an engine-native upsert.
    """
    values = _resolve_values(mutation.values, commit_ts)

    if mutation.op_type == MutationType.INSERT:
        return conn.execute(insert(table).values(**values)).rowcount

    if mutation.op_type == MutationType.DELETE:
        return conn.execute(delete(table).where(_key_clause(table, values))).rowcount

    key_names = {col.name for col in table.primary_key.columns}
    payload = {col: val for col, val in values.items() if col not in key_names}

    if mutation.op_type == MutationType.UPDATE:
        if not payload:
            return 0  # nothing to update
        return conn.execute(
            update(table).where(_key_clause(table, values)).values(**payload)
        ).rowcount

    if mutation.op_type == MutationType.INSERT_OR_UPDATE:
        rowcount = 0
        if payload:
            rowcount = conn.execute(
                update(table).where(_key_clause(table, values)).values(**payload)
            ).rowcount
        else:
            # Key-only rows: an UPDATE cannot tell us whether the row exists.
            existing = conn.execute(
                table.select().where(_key_clause(table, values))
            ).first()
            rowcount = 1 if existing is not None else 0
        if rowcount == 0:
            rowcount = conn.execute(insert(table).values(**values)).rowcount
        return rowcount

    raise ValueError(f"Unsupported mutation type: {mutation.op_type}")


def flatten_groups(groups: Sequence[ExtraMutationsGroup] | None) -> list[Mutation]:
    if not groups:
        return []
    return [m for group in groups for m in group.mutations]
