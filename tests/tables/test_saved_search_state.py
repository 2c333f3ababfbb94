from __future__ import annotations

from datetime import timedelta

import pytest

from featurestore.errors import AlreadyLocked, LockNotOwned, QueryReturnedNoResults
from featurestore.tables.saved_search_state import (
    SnapshotType,
    get_saved_search_state,
    release_saved_search_state_worker_lock,
    try_acquire_saved_search_state_worker_lock,
    update_saved_search_state_last_known_state_blob_path,
)

TTL = timedelta(minutes=5)


def test_state_row_is_created_on_first_lock(client) -> None:
    assert try_acquire_saved_search_state_worker_lock(client, "s1", SnapshotType.WEEKLY, "w1", TTL)

    state = get_saved_search_state(client, "s1", SnapshotType.WEEKLY)
    assert state.snapshot_type == "WEEKLY"
    assert state.worker_lock_id == "w1"
    assert state.last_known_state_blob_path is None


def test_snapshot_types_lock_independently(client) -> None:
    try_acquire_saved_search_state_worker_lock(client, "s1", SnapshotType.WEEKLY, "w1", TTL)
    try_acquire_saved_search_state_worker_lock(client, "s1", SnapshotType.MONTHLY, "w2", TTL)

    with pytest.raises(AlreadyLocked):
        try_acquire_saved_search_state_worker_lock(client, "s1", "WEEKLY", "w2", TTL)


def test_unknown_snapshot_type_is_rejected(client) -> None:
    with pytest.raises(ValueError):
        try_acquire_saved_search_state_worker_lock(client, "s1", "HOURLY", "w1", TTL)


def test_blob_path_survives_lock_cycles(client) -> None:
    try_acquire_saved_search_state_worker_lock(client, "s1", "IMMEDIATE", "w1", TTL)
    update_saved_search_state_last_known_state_blob_path(client, "s1", "IMMEDIATE", "gs://bucket/state-1")
    release_saved_search_state_worker_lock(client, "s1", "IMMEDIATE", "w1")
    try_acquire_saved_search_state_worker_lock(client, "s1", "IMMEDIATE", "w2", TTL)

    state = get_saved_search_state(client, "s1", "IMMEDIATE")
    assert state.last_known_state_blob_path == "gs://bucket/state-1"
    assert state.worker_lock_id == "w2"


def test_blob_path_update_needs_existing_row(client) -> None:
    with pytest.raises(QueryReturnedNoResults):
        update_saved_search_state_last_known_state_blob_path(client, "s1", "IMMEDIATE", "gs://x")


def test_release_by_non_owner_is_refused(client) -> None:
    try_acquire_saved_search_state_worker_lock(client, "s1", "IMMEDIATE", "w1", TTL)
    with pytest.raises(LockNotOwned):
        release_saved_search_state_worker_lock(client, "s1", "IMMEDIATE", "w2")
