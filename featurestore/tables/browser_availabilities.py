"""
BrowserFeatureAvailabilities: the browser version in which a feature
first shipped, one row per (feature, browser).

Callers speak in feature keys; rows store the feature's internal id.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Mapping

from sqlalchemy import select

from ..db.entity import EntityReader, EntityWriter, run_read_write
from ..db.helpers import translate_errors
from ..db.mutations import Mutation
from ..db.session import DbSession
from ..db.sync import EntitySynchronizer, SyncResult
from ..errors import QueryReturnedNoResults
from ..schema import browser_feature_availabilities, web_features

if TYPE_CHECKING:
    from ..client import Client

BROWSER_FEATURE_AVAILABILITIES_TABLE = browser_feature_availabilities.name


@dataclass
class BrowserFeatureAvailability:
    feature_key: str
    browser_name: str
    browser_version: str


@dataclass
class StoredBrowserFeatureAvailability:
    web_feature_id: str
    feature_key: str
    browser_name: str
    browser_version: str


@dataclass(frozen=True)
class AvailabilityKey:
    feature_key: str
    browser_name: str


def _with_feature_key():
    a, f = browser_feature_availabilities, web_features
    return select(a, f.c.feature_key).select_from(a.join(f, a.c.web_feature_id == f.c.id))


class BrowserFeatureAvailabilityMapper:
    """
    Syncable mapper keyed by (feature key, browser).

    Feature ids are looked up in ``feature_ids``, loaded by prepare() inside
    the writing transaction. An unknown feature key raises
    QueryReturnedNoResults, which aborts a sync before anything is staged.
    """

    def __init__(self, feature_ids: dict[str, str] | None = None) -> None:
        self.feature_ids = dict(feature_ids or {})

    def prepare(self, tx: DbSession) -> None:
        rows = tx.fetch_all(select(web_features.c.feature_key, web_features.c.id))
        self.feature_ids = {row["feature_key"]: row["id"] for row in rows}

    def _feature_id(self, feature_key: str) -> str:
        try:
            return self.feature_ids[feature_key]
        except KeyError:
            raise QueryReturnedNoResults(f"unknown web feature {feature_key!r}") from None

    def table(self) -> str:
        return BROWSER_FEATURE_AVAILABILITIES_TABLE

    def select_one(self, key: AvailabilityKey):
        return _with_feature_key().where(
            web_features.c.feature_key == key.feature_key,
            browser_feature_availabilities.c.browser_name == key.browser_name,
        )

    def select_all(self):
        return _with_feature_key()

    def from_row(self, row: Mapping[str, Any]) -> StoredBrowserFeatureAvailability:
        return StoredBrowserFeatureAvailability(
            web_feature_id=row["web_feature_id"],
            feature_key=row["feature_key"],
            browser_name=row["browser_name"],
            browser_version=row["browser_version"],
        )

    def to_row(self, internal: StoredBrowserFeatureAvailability) -> dict[str, Any]:
        return {
            "web_feature_id": internal.web_feature_id,
            "browser_name": internal.browser_name,
            "browser_version": internal.browser_version,
        }

    def get_key_from_external(self, entity: BrowserFeatureAvailability) -> AvailabilityKey:
        return AvailabilityKey(entity.feature_key, entity.browser_name)

    def get_key_from_internal(self, internal: StoredBrowserFeatureAvailability) -> AvailabilityKey:
        return AvailabilityKey(internal.feature_key, internal.browser_name)

    def new_entity(self, entity: BrowserFeatureAvailability) -> StoredBrowserFeatureAvailability:
        return StoredBrowserFeatureAvailability(
            web_feature_id=self._feature_id(entity.feature_key),
            feature_key=entity.feature_key,
            browser_name=entity.browser_name,
            browser_version=entity.browser_version,
        )

    def merge_and_check_changed(
        self, entity: BrowserFeatureAvailability, existing: StoredBrowserFeatureAvailability
    ) -> tuple[StoredBrowserFeatureAvailability, bool]:
        merged = replace(existing, browser_version=entity.browser_version or existing.browser_version)
        return merged, merged != existing

    def delete_mutation(self, internal: StoredBrowserFeatureAvailability) -> Mutation:
        return Mutation.delete(
            BROWSER_FEATURE_AVAILABILITIES_TABLE,
            {"web_feature_id": internal.web_feature_id, "browser_name": internal.browser_name},
        )


def sync_browser_feature_availabilities(
    client: "Client",
    availabilities: list[BrowserFeatureAvailability],
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> SyncResult:
    """
    Raises:
        QueryReturnedNoResults: If any availability names an unknown feature;
            the table is left untouched
    """
    return EntitySynchronizer(client, BrowserFeatureAvailabilityMapper()).sync(availabilities, session, cancel=cancel)


def upsert_browser_feature_availability(
    client: "Client",
    availability: BrowserFeatureAvailability,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> None:
    def _upsert(s: DbSession) -> None:
        mapper = BrowserFeatureAvailabilityMapper()
        mapper.prepare(s)
        EntityWriter(client, mapper).upsert(availability, s)

    with translate_errors("upsert BrowserFeatureAvailabilities"):
        run_read_write(client, _upsert, session, cancel)


def get_browser_feature_availability(
    client: "Client",
    feature_key: str,
    browser_name: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> BrowserFeatureAvailability:
    stored = EntityReader(client, BrowserFeatureAvailabilityMapper()).read_row_by_key(
        AvailabilityKey(feature_key, browser_name), session, cancel=cancel
    )
    return BrowserFeatureAvailability(stored.feature_key, stored.browser_name, stored.browser_version)
