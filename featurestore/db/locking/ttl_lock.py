from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import TYPE_CHECKING, Generic, TypeVar

from ...errors import AlreadyLocked, FeaturestoreError, LockNotOwned
from ..entity import EntityMutator
from ..helpers import as_utc
from ..mapper import LockableEntityMapper
from ..metrics import observe_lock_acquisition
from ..mutations import Mutation
from ..session import DbSession

if TYPE_CHECKING:
    from ...client import Client

logger = logging.getLogger(__name__)

I = TypeVar("I")  # noqa: E741
K = TypeVar("K")


class TtlLock(Generic[K, I]):
    """
    Time-bounded worker lock stored in the lock columns of a row.

    A lock is held while its owner column is set and its expiry lies in the
    future. Ownership is fenced on the worker id: an expired lock is free
    for anyone, and only the current owner may renew or release it.

    Usage:
        lock = TtlLock(client, SavedSearchStateMapper())
        try:
            lock.try_acquire(key, "worker-1", timedelta(minutes=5))
        except AlreadyLocked:
            return
        try:
            ...
        finally:
            lock.release(key, "worker-1")

    "Now" comes from the client clock, so expiry is testable with a fake clock.
    """

    def __init__(self, client: "Client", mapper: LockableEntityMapper[K, I]) -> None:
        self.client = client
        self.mapper = mapper
        self._mutator: EntityMutator[K, I] = EntityMutator(client, mapper)

    def try_acquire(
        self,
        key: K,
        worker_id: str,
        ttl: timedelta,
        session: DbSession | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> bool:
        """
        Acquire or renew the lock for ``ttl``.

        Returns:
            True when the lock is now held by ``worker_id``

        Raises:
            AlreadyLocked: If another worker holds an unexpired lock; nothing is written
            OperationCancelled: If cancel is set before the write commits
        """
        if not worker_id:
            raise ValueError("worker_id must not be empty")
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")

        def _inspect(existing: I | None) -> Mutation:
            now = self.client.time_now()
            if existing is not None:
                owner = self.mapper.lock_owner(existing)
                expires_at = as_utc(self.mapper.lock_expires_at(existing))
                held_by_other = owner is not None and owner != worker_id
                active = expires_at is not None and expires_at > now
                if held_by_other and active:
                    raise AlreadyLocked(
                        f"{self.mapper.table()} {key!r} is locked by {owner} until {expires_at.isoformat()}"
                    )
            return self.mapper.with_lock(key, existing, worker_id, now + ttl)

        resource = self.mapper.table()
        try:
            self._mutator.read_inspect_mutate(key, _inspect, session, cancel=cancel)
        except AlreadyLocked:
            observe_lock_acquisition(resource, "already_locked")
            logger.info("lock on %s %r not acquired by %s: already locked", resource, key, worker_id)
            raise
        except FeaturestoreError:
            observe_lock_acquisition(resource, "error")
            raise
        observe_lock_acquisition(resource, "acquired")
        logger.debug("lock on %s %r acquired by %s for %s", resource, key, worker_id, ttl)
        return True

    def release(
        self,
        key: K,
        worker_id: str,
        session: DbSession | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> None:
        """
        Clear the lock columns. A missing row is a no-op.

        Raises:
            LockNotOwned: If the row is unlocked or locked by another worker; nothing is written
        """
        def _inspect(existing: I | None) -> Mutation | None:
            if existing is None:
                return None
            owner = self.mapper.lock_owner(existing)
            if owner is None or owner != worker_id:
                raise LockNotOwned(
                    f"{worker_id} cannot release {self.mapper.table()} {key!r} held by {owner}"
                )
            return self.mapper.with_lock(key, existing, None, None)

        try:
            self._mutator.read_inspect_mutate(key, _inspect, session, cancel=cancel)
        except LockNotOwned:
            logger.info("release of %s %r by %s refused: not owner", self.mapper.table(), key, worker_id)
            raise
