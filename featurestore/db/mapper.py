"""
Strategy contracts implemented once per logical table.

A generic primitive (reader, writer, synchronizer, lock) receives a mapper
instance in its constructor and never knows which table it is driving.
Mappers are plain classes; they do not inherit from these protocols.

Type parameters, by convention:
    E: external entity (caller-facing, identified by a business key)
    I: internal entity (stored row shape, may carry a generated id)
    K: key (business key; may be a tuple or a small frozen dataclass)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Protocol, TypeVar

from sqlalchemy import Select

from .mutations import Mutation

E = TypeVar("E")
I = TypeVar("I")  # noqa: E741
K = TypeVar("K")


class EntityMapper(Protocol[K, I]):
    """Read side: locate one row by key and decode it."""

    def table(self) -> str:
        ...

    def select_one(self, key: K) -> Select:
        ...

    def from_row(self, row: Mapping[str, Any]) -> I:
        ...


class WritableEntityMapper(Protocol[E, K, I]):
    """
    Upsert side. merge_and_check_changed must be idempotent: merging an
    external entity equal to the stored state reports changed=False.

    Optional hooks, detected by attribute lookup:
        get_id_from_internal(internal) -> str
        post_write_hook(tx, internal) -> list[Mutation]
            extra mutations staged after a NEW entity is inserted.
    """

    def table(self) -> str:
        ...

    def select_one(self, key: K) -> Select:
        ...

    def from_row(self, row: Mapping[str, Any]) -> I:
        ...

    def to_row(self, internal: I) -> dict[str, Any]:
        ...

    def get_key_from_external(self, entity: E) -> K:
        ...

    def new_entity(self, entity: E) -> I:
        ...

    def merge_and_check_changed(self, entity: E, existing: I) -> tuple[I, bool]:
        ...


class SyncableEntityMapper(WritableEntityMapper[E, K, I], Protocol[E, K, I]):
    """
    Reconciliation side.

    Optional hooks, detected by attribute lookup:
        prepare(tx) -> None
            runs first inside the sync transaction; loads lookup data
            (e.g. foreign business key -> id) that new_entity and
            merge_and_check_changed need.
        pre_delete_hook(tx, to_delete, inserted) -> list[ExtraMutationsGroup]
            runs before deletes are staged (e.g. move data to a redirect target).
            ``inserted`` maps the keys inserted by the same pass to their new
            entities; those rows are only buffered, so tx cannot read them.
        get_child_delete_key_mutations(tx, to_delete) -> list[ExtraMutationsGroup]
            deletes of dependent rows the engine does not cascade.
    """

    def select_all(self) -> Select:
        ...

    def get_key_from_internal(self, internal: I) -> K:
        ...

    def delete_mutation(self, internal: I) -> Mutation:
        ...


class LockableEntityMapper(Protocol[K, I]):
    """
    A row carrying worker-lock columns, used by TtlLock.

    with_lock builds the mutation storing the new lock state; owner and
    expires_at are both None on release. Non-lock columns of ``existing``
    must be preserved.
    """

    def table(self) -> str:
        ...

    def select_one(self, key: K) -> Select:
        ...

    def from_row(self, row: Mapping[str, Any]) -> I:
        ...

    def lock_owner(self, internal: I) -> str | None:
        ...

    def lock_expires_at(self, internal: I) -> datetime | None:
        ...

    def with_lock(
        self,
        key: K,
        existing: I | None,
        owner: str | None,
        expires_at: datetime | None,
    ) -> Mutation:
        ...
