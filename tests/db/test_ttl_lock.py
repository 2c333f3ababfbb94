from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from featurestore.db.locking.ttl_lock import TtlLock
from featurestore.db.metrics import observe_lock_acquisition
from featurestore.errors import AlreadyLocked, LockNotOwned, OperationCancelled, QueryReturnedNoResults
from featurestore.metrics.registry import DB_LOCK_ACQUIRE_TOTAL
from featurestore.tables.saved_search_state import (
    SavedSearchStateKey,
    SavedSearchStateMapper,
    get_saved_search_state,
)

KEY = SavedSearchStateKey("search-1", "IMMEDIATE")
TTL = timedelta(minutes=5)


@pytest.fixture
def lock(client) -> TtlLock:
    return TtlLock(client, SavedSearchStateMapper())


def _owner(client) -> str | None:
    return get_saved_search_state(client, KEY.saved_search_id, KEY.snapshot_type).worker_lock_id


def test_acquire_on_missing_row_creates_it(client, clock, lock) -> None:
    assert lock.try_acquire(KEY, "worker-a", TTL) is True

    state = get_saved_search_state(client, KEY.saved_search_id, KEY.snapshot_type)
    assert state.worker_lock_id == "worker-a"
    assert state.worker_lock_expires_at == clock.now + TTL


def test_lock_fencing_sequence(client, clock, lock) -> None:
    # (1) A acquires an unlocked resource.
    lock.try_acquire(KEY, "worker-a", TTL)

    # (2) B is refused while A's lock is live.
    with pytest.raises(AlreadyLocked):
        lock.try_acquire(KEY, "worker-b", TTL)
    assert _owner(client) == "worker-a"

    # (3) B takes over once the TTL has elapsed.
    clock.advance(TTL + timedelta(seconds=1))
    assert lock.try_acquire(KEY, "worker-b", TTL) is True
    assert _owner(client) == "worker-b"

    # (4) A can no longer release what B now holds.
    with pytest.raises(LockNotOwned):
        lock.release(KEY, "worker-a")
    assert _owner(client) == "worker-b"


def test_owner_can_renew(client, clock, lock) -> None:
    lock.try_acquire(KEY, "worker-a", TTL)
    clock.advance(timedelta(minutes=4))
    lock.try_acquire(KEY, "worker-a", TTL)

    state = get_saved_search_state(client, KEY.saved_search_id, KEY.snapshot_type)
    assert state.worker_lock_expires_at == clock.now + TTL


def test_lock_expiring_exactly_now_is_free(client, clock, lock) -> None:
    lock.try_acquire(KEY, "worker-a", TTL)
    clock.advance(TTL)
    assert lock.try_acquire(KEY, "worker-b", TTL) is True


def test_release_clears_lock_and_keeps_row(client, lock) -> None:
    lock.try_acquire(KEY, "worker-a", TTL)
    lock.release(KEY, "worker-a")

    state = get_saved_search_state(client, KEY.saved_search_id, KEY.snapshot_type)
    assert state.worker_lock_id is None
    assert state.worker_lock_expires_at is None


def test_release_of_missing_row_is_noop(lock) -> None:
    lock.release(SavedSearchStateKey("nope", "WEEKLY"), "worker-a")


def test_release_of_unlocked_row_is_refused(lock) -> None:
    lock.try_acquire(KEY, "worker-a", TTL)
    lock.release(KEY, "worker-a")
    with pytest.raises(LockNotOwned):
        lock.release(KEY, "worker-a")


def test_cancelled_acquire_and_release_write_nothing(client, lock) -> None:
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(OperationCancelled):
        lock.try_acquire(KEY, "worker-a", TTL, cancel=cancel)
    with pytest.raises(QueryReturnedNoResults):
        get_saved_search_state(client, KEY.saved_search_id, KEY.snapshot_type)

    lock.try_acquire(KEY, "worker-a", TTL)
    with pytest.raises(OperationCancelled):
        lock.release(KEY, "worker-a", cancel=cancel)
    assert _owner(client) == "worker-a"


def test_rejects_bad_arguments(lock) -> None:
    with pytest.raises(ValueError):
        lock.try_acquire(KEY, "", TTL)
    with pytest.raises(ValueError):
        lock.try_acquire(KEY, "worker-a", timedelta(0))


def test_acquisition_outcomes_are_counted(lock) -> None:
    acquired = DB_LOCK_ACQUIRE_TOTAL.labels(resource="SavedSearchState", outcome="acquired")
    refused = DB_LOCK_ACQUIRE_TOTAL.labels(resource="SavedSearchState", outcome="already_locked")
    acquired_before = acquired._value.get()
    refused_before = refused._value.get()

    lock.try_acquire(KEY, "worker-a", TTL)
    with pytest.raises(AlreadyLocked):
        lock.try_acquire(KEY, "worker-b", TTL)

    assert acquired._value.get() == acquired_before + 1
    assert refused._value.get() == refused_before + 1


def test_observe_lock_acquisition_uses_labels() -> None:
    counter = DB_LOCK_ACQUIRE_TOTAL.labels(resource="custom", outcome="error")
    before = counter._value.get()
    observe_lock_acquisition("custom", "error")
    assert counter._value.get() == before + 1
