from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from sqlalchemy import select

from ..db.entity import EntityMutator, EntityReader
from ..db.helpers import as_utc
from ..db.locking.ttl_lock import TtlLock
from ..db.mutations import Mutation
from ..db.session import DbSession
from ..errors import QueryReturnedNoResults
from ..schema import saved_search_state

if TYPE_CHECKING:
    from ..client import Client

SAVED_SEARCH_STATE_TABLE = saved_search_state.name


class SnapshotType(str, Enum):
    IMMEDIATE = "IMMEDIATE"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class SavedSearchStateKey:
    saved_search_id: str
    snapshot_type: str


@dataclass
class SavedSearchState:
    saved_search_id: str
    snapshot_type: str
    last_known_state_blob_path: str | None = None
    worker_lock_id: str | None = None
    worker_lock_expires_at: datetime | None = None


class SavedSearchStateMapper:
    """Per (saved search, snapshot type) notification state with worker lock columns."""

    def table(self) -> str:
        return SAVED_SEARCH_STATE_TABLE

    def select_one(self, key: SavedSearchStateKey):
        return select(saved_search_state).where(
            saved_search_state.c.saved_search_id == key.saved_search_id,
            saved_search_state.c.snapshot_type == key.snapshot_type,
        )

    def from_row(self, row: Mapping[str, Any]) -> SavedSearchState:
        return SavedSearchState(
            saved_search_id=row["saved_search_id"],
            snapshot_type=row["snapshot_type"],
            last_known_state_blob_path=row["last_known_state_blob_path"],
            worker_lock_id=row["worker_lock_id"],
            worker_lock_expires_at=as_utc(row["worker_lock_expires_at"]),
        )

    def to_row(self, internal: SavedSearchState) -> dict[str, Any]:
        return {
            "saved_search_id": internal.saved_search_id,
            "snapshot_type": internal.snapshot_type,
            "last_known_state_blob_path": internal.last_known_state_blob_path,
            "worker_lock_id": internal.worker_lock_id,
            "worker_lock_expires_at": internal.worker_lock_expires_at,
        }

    def lock_owner(self, internal: SavedSearchState) -> str | None:
        return internal.worker_lock_id

    def lock_expires_at(self, internal: SavedSearchState) -> datetime | None:
        return internal.worker_lock_expires_at

    def with_lock(
        self,
        key: SavedSearchStateKey,
        existing: SavedSearchState | None,
        owner: str | None,
        expires_at: datetime | None,
    ) -> Mutation:
        state = SavedSearchState(
            saved_search_id=key.saved_search_id,
            snapshot_type=key.snapshot_type,
            last_known_state_blob_path=existing.last_known_state_blob_path if existing else None,
            worker_lock_id=owner,
            worker_lock_expires_at=expires_at,
        )
        return Mutation.insert_or_update(SAVED_SEARCH_STATE_TABLE, self.to_row(state))


def _key(saved_search_id: str, snapshot_type: SnapshotType | str) -> SavedSearchStateKey:
    return SavedSearchStateKey(saved_search_id, SnapshotType(snapshot_type).value)


def try_acquire_saved_search_state_worker_lock(
    client: "Client",
    saved_search_id: str,
    snapshot_type: SnapshotType | str,
    worker_id: str,
    ttl: timedelta,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> bool:
    """
    Take (or renew) the worker lock for one saved search snapshot.
    The state row is created on first acquisition.

    Raises:
        AlreadyLocked: If another worker holds an unexpired lock
    """
    lock = TtlLock(client, SavedSearchStateMapper())
    return lock.try_acquire(_key(saved_search_id, snapshot_type), worker_id, ttl, session, cancel=cancel)


def release_saved_search_state_worker_lock(
    client: "Client",
    saved_search_id: str,
    snapshot_type: SnapshotType | str,
    worker_id: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> None:
    """
    Raises:
        LockNotOwned: If ``worker_id`` does not hold the lock
    """
    lock = TtlLock(client, SavedSearchStateMapper())
    lock.release(_key(saved_search_id, snapshot_type), worker_id, session, cancel=cancel)


def get_saved_search_state(
    client: "Client",
    saved_search_id: str,
    snapshot_type: SnapshotType | str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> SavedSearchState:
    return EntityReader(client, SavedSearchStateMapper()).read_row_by_key(
        _key(saved_search_id, snapshot_type), session, cancel=cancel
    )


def update_saved_search_state_last_known_state_blob_path(
    client: "Client",
    saved_search_id: str,
    snapshot_type: SnapshotType | str,
    blob_path: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> None:
    """
    Raises:
        QueryReturnedNoResults: If the state row does not exist yet
    """
    mapper = SavedSearchStateMapper()
    key = _key(saved_search_id, snapshot_type)

    def _inspect(existing: SavedSearchState | None) -> Mutation:
        if existing is None:
            raise QueryReturnedNoResults(f"no saved search state for {key!r}")
        updated = replace(existing, last_known_state_blob_path=blob_path)
        return Mutation.update(SAVED_SEARCH_STATE_TABLE, mapper.to_row(updated))

    EntityMutator(client, mapper).read_inspect_mutate(key, _inspect, session, cancel=cancel)
