"""
WebFeaturesMappingData: per-feature data from the web-features mappings
project, currently the standards positions of browser vendors.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Mapping

from sqlalchemy import select

from ..db.entity import run_read_only
from ..db.helpers import translate_errors
from ..db.mutations import Mutation
from ..db.session import DbSession
from ..db.sync import EntitySynchronizer, SyncResult
from ..schema import web_features, web_features_mapping_data

if TYPE_CHECKING:
    from ..client import Client

logger = logging.getLogger(__name__)

WEB_FEATURES_MAPPING_DATA_TABLE = web_features_mapping_data.name


@dataclass
class WebFeaturesMappingData:
    feature_key: str
    # Decoded JSON; None stores SQL NULL.
    vendor_positions: Any = None


@dataclass
class StoredWebFeaturesMappingData:
    web_feature_id: str
    vendor_positions: Any = None


class WebFeaturesMappingDataMapper:
    """Syncable mapper keyed by internal feature id."""

    def table(self) -> str:
        return WEB_FEATURES_MAPPING_DATA_TABLE

    def select_one(self, key: str):
        return select(web_features_mapping_data).where(web_features_mapping_data.c.web_feature_id == key)

    def select_all(self):
        return select(web_features_mapping_data)

    def from_row(self, row: Mapping[str, Any]) -> StoredWebFeaturesMappingData:
        return StoredWebFeaturesMappingData(
            web_feature_id=row["web_feature_id"],
            vendor_positions=row["vendor_positions"],
        )

    def to_row(self, internal: StoredWebFeaturesMappingData) -> dict[str, Any]:
        return {
            "web_feature_id": internal.web_feature_id,
            "vendor_positions": internal.vendor_positions,
        }

    def get_key_from_external(self, entity: StoredWebFeaturesMappingData) -> str:
        return entity.web_feature_id

    def get_key_from_internal(self, internal: StoredWebFeaturesMappingData) -> str:
        return internal.web_feature_id

    def new_entity(self, entity: StoredWebFeaturesMappingData) -> StoredWebFeaturesMappingData:
        return entity

    def merge_and_check_changed(
        self, entity: StoredWebFeaturesMappingData, existing: StoredWebFeaturesMappingData
    ) -> tuple[StoredWebFeaturesMappingData, bool]:
        if entity.vendor_positions == existing.vendor_positions:
            return existing, False
        return replace(existing, vendor_positions=entity.vendor_positions), True

    def delete_mutation(self, internal: StoredWebFeaturesMappingData) -> Mutation:
        return Mutation.delete(WEB_FEATURES_MAPPING_DATA_TABLE, {"web_feature_id": internal.web_feature_id})


def sync_web_features_mapping_data(
    client: "Client",
    data: list[WebFeaturesMappingData],
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> SyncResult:
    """
    Make WebFeaturesMappingData hold exactly ``data``.

    Entries whose feature key has no WebFeatures row are logged and
    skipped, so their stored rows (if any) are deleted.
    """
    def _feature_ids(s: DbSession) -> dict[str, str]:
        rows = s.fetch_all(select(web_features.c.feature_key, web_features.c.id))
        return {row["feature_key"]: row["id"] for row in rows}

    with translate_errors("read WebFeatures"):
        feature_ids = run_read_only(client, _feature_ids, session, cancel)

    stored = []
    for entry in data:
        feature_id = feature_ids.get(entry.feature_key)
        if feature_id is None:
            logger.warning("feature key %s not found, skipping mapping data", entry.feature_key)
            continue
        stored.append(StoredWebFeaturesMappingData(feature_id, entry.vendor_positions))

    return EntitySynchronizer(client, WebFeaturesMappingDataMapper()).sync(stored, session, cancel=cancel)
