from __future__ import annotations

from ..metrics.registry import (
    DB_LOCK_ACQUIRE_TOTAL,
    DB_WRITE_LATENCY_SECONDS,
    DB_WRITE_TOTAL,
    SYNC_MUTATIONS_TOTAL,
)


def observe_db_write(table: str, op_type: str, status: str, latency_s: float) -> None:
    """Record one committed or rolled-back mutation."""
    DB_WRITE_TOTAL.labels(table=table, op_type=op_type, status=status).inc()
    DB_WRITE_LATENCY_SECONDS.labels(table=table, op_type=op_type).observe(latency_s)


def observe_lock_acquisition(resource: str, outcome: str) -> None:
    """outcome is one of "acquired", "already_locked", "error"."""
    DB_LOCK_ACQUIRE_TOTAL.labels(resource=resource, outcome=outcome).inc()


def observe_sync(table: str, inserted: int, updated: int, deleted: int) -> None:
    if inserted:
        SYNC_MUTATIONS_TOTAL.labels(table=table, action="insert").inc(inserted)
    if updated:
        SYNC_MUTATIONS_TOTAL.labels(table=table, action="update").inc(updated)
    if deleted:
        SYNC_MUTATIONS_TOTAL.labels(table=table, action="delete").inc(deleted)
