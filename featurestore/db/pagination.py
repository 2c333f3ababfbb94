from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sqlalchemy import and_, or_
from sqlalchemy.sql.elements import ColumnElement

from .cursor import encode_cursor

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: list[T]
    next_page_token: str | None = None


@dataclass(frozen=True)
class SortKey:
    """One column of a keyset sort together with the last value seen."""
    column: Any
    last_value: Any
    descending: bool = False

    def after(self) -> ColumnElement[bool]:
        if self.descending:
            return self.column < self.last_value
        return self.column > self.last_value

    def equal(self) -> ColumnElement[bool]:
        return self.column == self.last_value


def keyset_filter(keys: Sequence[SortKey]) -> ColumnElement[bool]:
    """
    Filter selecting rows strictly after the last row of the previous page.

    ``keys`` lists the sort columns in ORDER BY order; the last one must be
    unique so the order is total. For (a DESC, id ASC) this builds

        a < :a OR (a = :a AND id > :id)
    """
    if not keys:
        raise ValueError("keyset_filter needs at least one sort key")
    clauses = []
    for i, key in enumerate(keys):
        clauses.append(and_(*[k.equal() for k in keys[:i]], key.after()))
    return or_(*clauses)


def build_page(
    items: list[T],
    page_size: int,
    make_cursor: Callable[[T], Any],
) -> Page[T]:
    """
    Wrap one fetched page. A next-page token is produced iff exactly
    ``page_size`` items came back; fewer means the end of the results.
    """
    if page_size < 1:
        raise ValueError("page_size must be >= 1")
    token = None
    if items and len(items) == page_size:
        token = encode_cursor(make_cursor(items[-1]))
    return Page(items=items, next_page_token=token)
