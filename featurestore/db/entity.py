"""
Single-entity primitives driven by a table mapper.

Every public method accepts an optional ``session``. Without one, reads run
in a fresh read-only session and writes in a fresh read-write transaction
(retried by DbFactory when the engine aborts it). With one, the work joins
the caller's transaction and nothing is committed here.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Generic, Mapping, TypeVar

from ..errors import InternalQueryFailure, OperationCancelled, QueryReturnedNoResults
from .helpers import translate_errors
from .mapper import EntityMapper, WritableEntityMapper
from .mutations import Mutation, flatten_groups
from .session import DbSession

if TYPE_CHECKING:
    from ..client import Client

logger = logging.getLogger(__name__)

E = TypeVar("E")
I = TypeVar("I")  # noqa: E741
K = TypeVar("K")
T = TypeVar("T")


def decode_row(mapper: Any, row: Mapping[str, Any]) -> Any:
    """Run mapper.from_row, turning decode failures into InternalQueryFailure."""
    try:
        return mapper.from_row(row)
    except (KeyError, TypeError, ValueError) as exc:
        raise InternalQueryFailure(f"decode {mapper.table()} row", exc) from exc


def check_cancelled(cancel: threading.Event | None, operation: str) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f"{operation} cancelled")


def run_read_only(
    client: "Client",
    fn: Callable[[DbSession], T],
    session: DbSession | None,
    cancel: threading.Event | None = None,
) -> T:
    check_cancelled(cancel, "read")
    if session is not None:
        return fn(session)
    with client.factory.session(read_only=True) as ro_session:
        return fn(ro_session)


def run_read_write(
    client: "Client",
    fn: Callable[[DbSession], T],
    session: DbSession | None,
    cancel: threading.Event | None = None,
) -> T:
    """
    Run fn in the caller's session, or in a retried transaction of its own.

    With a caller session, cancel is checked once before fn runs; the
    caller owns the commit.
    """
    if session is not None:
        check_cancelled(cancel, "write")
        return fn(session)
    return client.factory.run_read_write(fn, cancel=cancel)


class EntityReader(Generic[K, I]):
    """
    Reads rows through a mapper's select_one / select_all.

    Usage:
        reader = EntityReader(client, WebFeatureMapper())
        feature = reader.read_row_by_key("grid")
    """

    def __init__(self, client: "Client", mapper: EntityMapper[K, I]) -> None:
        self.client = client
        self.mapper = mapper

    def read_row_by_key(
        self, key: K, session: DbSession | None = None, *, cancel: threading.Event | None = None
    ) -> I:
        """
        Raises:
            QueryReturnedNoResults: If zero rows match
            InternalQueryFailure: On any engine or decode failure
        """
        def _read(s: DbSession) -> I:
            row = s.fetch_one(self.mapper.select_one(key))
            if row is None:
                raise QueryReturnedNoResults(f"no {self.mapper.table()} row for key {key!r}")
            return decode_row(self.mapper, row)

        with translate_errors(f"read {self.mapper.table()}"):
            return run_read_only(self.client, _read, session, cancel)

    def read_all(self, session: DbSession | None = None, *, cancel: threading.Event | None = None) -> list[I]:
        def _read(s: DbSession) -> list[I]:
            return [decode_row(self.mapper, row) for row in s.fetch_all(self.mapper.select_all())]

        with translate_errors(f"read all {self.mapper.table()}"):
            return run_read_only(self.client, _read, session, cancel)


class EntityWriter(Generic[E, K, I]):
    """
    Read-modify-write upsert of one external entity.

    Per call, inside one read-write transaction:
        1. select_one(key) (FOR UPDATE where the dialect supports it)
        2. not found: new_entity() and stage INSERT_OR_UPDATE, then the
           mapper's post_write_hook mutations if it has one
        3. found: merge_and_check_changed(); stage INSERT_OR_UPDATE only
           when changed, so no-op upserts never bump audit timestamps
        4. commit

    Concurrency relies on the engine's transaction isolation; the writer
    does not retry on its own.
    """

    def __init__(self, client: "Client", mapper: WritableEntityMapper[E, K, I]) -> None:
        self.client = client
        self.mapper = mapper

    def _upsert(self, session: DbSession, entity: E) -> I:
        mapper = self.mapper
        key = mapper.get_key_from_external(entity)
        row = session.fetch_one(mapper.select_one(key), for_update=True)

        if row is None:
            internal = mapper.new_entity(entity)
            session.buffer_write([Mutation.insert_or_update(mapper.table(), mapper.to_row(internal))])
            hook = getattr(mapper, "post_write_hook", None)
            if hook is not None:
                session.buffer_write(hook(session, internal) or [])
            return internal

        existing = decode_row(mapper, row)
        merged, changed = mapper.merge_and_check_changed(entity, existing)
        if changed:
            session.buffer_write([Mutation.insert_or_update(mapper.table(), mapper.to_row(merged))])
        else:
            logger.debug("upsert of %s key %r is a no-op", mapper.table(), key)
        return merged

    def upsert(self, entity: E, session: DbSession | None = None, *, cancel: threading.Event | None = None) -> None:
        """
        Raises:
            InternalQueryFailure: On any engine failure; nothing is persisted
        """
        with translate_errors(f"upsert {self.mapper.table()}"):
            run_read_write(self.client, lambda s: self._upsert(s, entity), session, cancel)

    def upsert_with_id(
        self, entity: E, session: DbSession | None = None, *, cancel: threading.Event | None = None
    ) -> str:
        """
        Upsert and return the internal identifier of the stored row
        (freshly generated on insert). Requires mapper.get_id_from_internal.
        """
        with translate_errors(f"upsert {self.mapper.table()}"):
            internal = run_read_write(self.client, lambda s: self._upsert(s, entity), session, cancel)
        return self.mapper.get_id_from_internal(internal)

    def get_id_by_key(
        self, key: K, session: DbSession | None = None, *, cancel: threading.Event | None = None
    ) -> str:
        """
        Raises:
            QueryReturnedNoResults: If no row has this business key
        """
        internal = EntityReader(self.client, self.mapper).read_row_by_key(key, session, cancel=cancel)
        return self.mapper.get_id_from_internal(internal)


class EntityMutator(Generic[K, I]):
    """
    Read a row, let the caller inspect it, stage whatever mutation it returns.

    The inspect function receives the decoded row or None when absent and
    returns a Mutation, or None to write nothing. Exceptions it raises
    abort the transaction and propagate unchanged, which is how lock and
    ownership checks reject a request.
    """

    def __init__(self, client: "Client", mapper: EntityMapper[K, I]) -> None:
        self.client = client
        self.mapper = mapper

    def read_inspect_mutate(
        self,
        key: K,
        inspect: Callable[[I | None], Mutation | None],
        session: DbSession | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> None:
        def _mutate(s: DbSession) -> None:
            row = s.fetch_one(self.mapper.select_one(key), for_update=True)
            existing = decode_row(self.mapper, row) if row is not None else None
            mutation = inspect(existing)
            if mutation is not None:
                s.buffer_write([mutation])

        with translate_errors(f"mutate {self.mapper.table()}"):
            run_read_write(self.client, _mutate, session, cancel)


class EntityCreator(Generic[E, I]):
    """Insert a brand-new entity; the mapper's new_entity() generates its id."""

    def __init__(self, client: "Client", mapper: Any) -> None:
        self.client = client
        self.mapper = mapper

    def create(self, entity: E, session: DbSession | None = None, *, cancel: threading.Event | None = None) -> I:
        def _create(s: DbSession) -> I:
            internal = self.mapper.new_entity(entity)
            s.buffer_write([Mutation.insert(self.mapper.table(), self.mapper.to_row(internal))])
            return internal

        with translate_errors(f"create {self.mapper.table()}"):
            return run_read_write(self.client, _create, session, cancel)


class EntityRemover(Generic[K, I]):
    """
    Delete one row by key, together with the dependent rows the mapper's
    get_child_delete_key_mutations hook reports.
    """

    def __init__(self, client: "Client", mapper: Any) -> None:
        self.client = client
        self.mapper = mapper

    def remove(self, key: K, session: DbSession | None = None, *, cancel: threading.Event | None = None) -> I:
        """
        Returns:
            The deleted entity

        Raises:
            QueryReturnedNoResults: If no row has this key
        """
        def _remove(s: DbSession) -> I:
            row = s.fetch_one(self.mapper.select_one(key), for_update=True)
            if row is None:
                raise QueryReturnedNoResults(f"no {self.mapper.table()} row for key {key!r}")
            existing = decode_row(self.mapper, row)
            child_hook = getattr(self.mapper, "get_child_delete_key_mutations", None)
            if child_hook is not None:
                s.buffer_write(flatten_groups(child_hook(s, [existing])))
            s.buffer_write([self.mapper.delete_mutation(existing)])
            return existing

        with translate_errors(f"remove {self.mapper.table()}"):
            return run_read_write(self.client, _remove, session, cancel)
