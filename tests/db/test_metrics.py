from __future__ import annotations

import pytest

from featurestore.db.metrics import observe_db_write, observe_sync
from featurestore.db.mutations import Mutation
from featurestore.metrics.registry import (
    DB_WRITE_LATENCY_SECONDS,
    DB_WRITE_TOTAL,
    SYNC_MUTATIONS_TOTAL,
)
from featurestore.tables.web_features import WebFeature, sync_web_features


def _value(counter, **labels) -> float:
    return counter.labels(**labels)._value.get()


class TestObserveDbWrite:
    """Tests for observe_db_write() function."""

    def test_increments_counter_with_correct_labels(self) -> None:
        labels = {"table": "test_table", "op_type": "insert", "status": "success"}
        before = _value(DB_WRITE_TOTAL, **labels)

        observe_db_write(latency_s=0.1, **labels)

        assert _value(DB_WRITE_TOTAL, **labels) == before + 1

    def test_records_latency_in_histogram(self) -> None:
        observe_db_write(table="test_table", op_type="update", status="success", latency_s=0.25)

        samples = list(DB_WRITE_LATENCY_SECONDS.labels(table="test_table", op_type="update").collect())
        assert len(samples) > 0


class TestObserveSync:
    def test_only_nonzero_actions_are_counted(self) -> None:
        before_insert = _value(SYNC_MUTATIONS_TOTAL, table="t_sync", action="insert")
        before_delete = _value(SYNC_MUTATIONS_TOTAL, table="t_sync", action="delete")

        observe_sync("t_sync", inserted=3, updated=0, deleted=1)

        assert _value(SYNC_MUTATIONS_TOTAL, table="t_sync", action="insert") == before_insert + 3
        assert _value(SYNC_MUTATIONS_TOTAL, table="t_sync", action="delete") == before_delete + 1


class TestSessionMetricsIntegration:
    def test_committed_mutations_are_counted(self, client) -> None:
        labels = {"table": "WebFeatures", "op_type": "insert", "status": "success"}
        before = _value(DB_WRITE_TOTAL, **labels)

        sync_web_features(client, [WebFeature("a", name="A"), WebFeature("b", name="B")])

        assert _value(DB_WRITE_TOTAL, **labels) == before + 2

    def test_rolled_back_mutations_are_counted(self, client) -> None:
        labels = {"table": "WebFeatures", "op_type": "delete", "status": "rolled_back"}
        before = _value(DB_WRITE_TOTAL, **labels)

        with pytest.raises(RuntimeError):
            with client.factory.session() as session:
                session.buffer_write([Mutation.delete("WebFeatures", {"id": "1"})])
                raise RuntimeError("abort")

        assert _value(DB_WRITE_TOTAL, **labels) == before + 1

    def test_sync_actions_are_counted(self, client) -> None:
        before = _value(SYNC_MUTATIONS_TOTAL, table="WebFeatures", action="insert")
        sync_web_features(client, [WebFeature("a", name="A")])
        assert _value(SYNC_MUTATIONS_TOTAL, table="WebFeatures", action="insert") == before + 1

    def test_metric_failure_does_not_mask_commit(self, client, monkeypatch) -> None:
        def broken(**kwargs):
            raise RuntimeError("metrics backend down")

        monkeypatch.setattr("featurestore.db.session.observe_db_write", broken)
        sync_web_features(client, [WebFeature("a", name="A")])
