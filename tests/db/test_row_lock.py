from __future__ import annotations

import pytest

from featurestore.db.locking.row_lock import RowLock
from featurestore.db.mutations import Mutation
from featurestore.db.session import DbSession
from featurestore.schema import metadata


def _seed(client) -> None:
    client.factory.run_read_write(lambda s: s.buffer_write([
        Mutation.insert("WebFeatures", {
            "id": "1", "feature_key": "grid", "name": "Grid", "description": "", "description_html": "",
        })
    ]))


def test_raises_runtime_error_if_dbsession_inactive(engine) -> None:
    session = DbSession(engine, metadata)  # not entered
    with pytest.raises(RuntimeError):
        RowLock(session, "WebFeatures", {"id": "1"}).acquire()


def test_returns_row_as_dict_if_exists(client) -> None:
    _seed(client)
    with client.factory.session() as session:
        row = RowLock(session, "WebFeatures", {"id": "1"}).acquire()
    assert row is not None
    assert row["feature_key"] == "grid"


def test_returns_none_if_row_does_not_exist(client) -> None:
    with client.factory.session() as session:
        assert RowLock(session, "WebFeatures", {"id": "999"}).acquire() is None


def test_where_dict_order_is_deterministic(client) -> None:
    _seed(client)
    with client.factory.session() as session:
        row_a = RowLock(session, "WebFeatures", {"id": "1", "feature_key": "grid"}).acquire()
        row_b = RowLock(session, "WebFeatures", {"feature_key": "grid", "id": "1"}).acquire()
    assert row_a == row_b


def test_lock_then_buffered_update_commits(client) -> None:
    _seed(client)
    with client.factory.session() as session:
        row = RowLock(session, "WebFeatures", {"id": "1"}).acquire()
        session.buffer_write([Mutation.update("WebFeatures", {"id": row["id"], "name": "CSS Grid"})])

    with client.factory.session(read_only=True) as session:
        assert RowLock(session, "WebFeatures", {"id": "1"}).acquire()["name"] == "CSS Grid"


def test_rejects_unsafe_identifiers(client) -> None:
    with client.factory.session() as session:
        with pytest.raises(ValueError):
            RowLock(session, "WebFeatures; --", {"id": "1"})
        with pytest.raises(ValueError):
            RowLock(session, "WebFeatures", {"id OR 1=1": "1"})


def test_unknown_table_raises_key_error(client) -> None:
    with client.factory.session() as session:
        with pytest.raises(KeyError):
            RowLock(session, "NoSuchTable", {"id": "1"}).acquire()
