from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from sqlalchemy import select

from ..db.entity import EntityReader, EntityWriter, run_read_only, run_read_write
from ..db.helpers import as_utc, translate_errors
from ..db.session import DbSession
from ..schema import feature_baseline_status
from .web_features import get_id_from_feature_key

if TYPE_CHECKING:
    from ..client import Client

FEATURE_BASELINE_STATUS_TABLE = feature_baseline_status.name


class BaselineStatus(str, Enum):
    NONE = "none"
    LOW = "low"
    HIGH = "high"


@dataclass
class FeatureBaselineStatus:
    """None fields keep whatever is stored when upserted."""
    status: BaselineStatus | None = None
    low_date: datetime | None = None
    high_date: datetime | None = None


@dataclass
class StoredFeatureBaselineStatus:
    web_feature_id: str
    status: str | None
    low_date: datetime | None
    high_date: datetime | None


class FeatureBaselineStatusMapper:
    """Bound to one feature id; the caller resolves it from the feature key."""

    def __init__(self, web_feature_id: str) -> None:
        self.web_feature_id = web_feature_id

    def table(self) -> str:
        return FEATURE_BASELINE_STATUS_TABLE

    def select_one(self, key: str):
        return select(feature_baseline_status).where(feature_baseline_status.c.web_feature_id == key)

    def from_row(self, row: Mapping[str, Any]) -> StoredFeatureBaselineStatus:
        return StoredFeatureBaselineStatus(
            web_feature_id=row["web_feature_id"],
            status=row["status"],
            low_date=as_utc(row["low_date"]),
            high_date=as_utc(row["high_date"]),
        )

    def to_row(self, internal: StoredFeatureBaselineStatus) -> dict[str, Any]:
        return {
            "web_feature_id": internal.web_feature_id,
            "status": internal.status,
            "low_date": internal.low_date,
            "high_date": internal.high_date,
        }

    def get_key_from_external(self, entity: FeatureBaselineStatus) -> str:
        return self.web_feature_id

    def new_entity(self, entity: FeatureBaselineStatus) -> StoredFeatureBaselineStatus:
        return StoredFeatureBaselineStatus(
            web_feature_id=self.web_feature_id,
            status=BaselineStatus(entity.status).value if entity.status is not None else None,
            low_date=as_utc(entity.low_date),
            high_date=as_utc(entity.high_date),
        )

    def merge_and_check_changed(
        self, entity: FeatureBaselineStatus, existing: StoredFeatureBaselineStatus
    ) -> tuple[StoredFeatureBaselineStatus, bool]:
        incoming = self.new_entity(entity)
        merged = StoredFeatureBaselineStatus(
            web_feature_id=existing.web_feature_id,
            status=incoming.status if incoming.status is not None else existing.status,
            low_date=incoming.low_date if incoming.low_date is not None else existing.low_date,
            high_date=incoming.high_date if incoming.high_date is not None else existing.high_date,
        )
        return merged, merged != existing


def upsert_feature_baseline_status(
    client: "Client",
    feature_key: str,
    status: FeatureBaselineStatus,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> None:
    """
    Raises:
        QueryReturnedNoResults: If the feature key is unknown
    """
    def _upsert(s: DbSession) -> None:
        feature_id = get_id_from_feature_key(client, feature_key, s)
        EntityWriter(client, FeatureBaselineStatusMapper(feature_id)).upsert(status, s)

    with translate_errors("upsert FeatureBaselineStatus"):
        run_read_write(client, _upsert, session, cancel)


def get_feature_baseline_status(
    client: "Client",
    feature_key: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> FeatureBaselineStatus:
    def _get(s: DbSession) -> FeatureBaselineStatus:
        feature_id = get_id_from_feature_key(client, feature_key, s)
        stored = EntityReader(client, FeatureBaselineStatusMapper(feature_id)).read_row_by_key(feature_id, s)
        return FeatureBaselineStatus(
            status=BaselineStatus(stored.status) if stored.status is not None else None,
            low_date=stored.low_date,
            high_date=stored.high_date,
        )

    with translate_errors("read FeatureBaselineStatus"):
        return run_read_only(client, _get, session, cancel)
