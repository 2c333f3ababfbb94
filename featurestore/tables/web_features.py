"""
WebFeatures: the catalogue of web platform features keyed by feature key.

Rows carry a generated ``id`` so every dependent table references the
feature independently of its human-readable key.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Mapping

from sqlalchemy import select

from ..db.cursor import decode_cursor
from ..db.entity import EntityReader, EntityWriter, run_read_only
from ..db.helpers import translate_errors
from ..db.mutations import ExtraMutationsGroup, Mutation
from ..db.pagination import Page, SortKey, build_page, keyset_filter
from ..db.session import DbSession
from ..db.sync import EntitySynchronizer, SyncResult
from ..errors import QueryReturnedNoResults
from ..schema import (
    browser_feature_availabilities,
    browser_feature_support_events,
    feature_baseline_status,
    latest_daily_chromium_histogram_metrics,
    latest_feature_developer_signals,
    latest_wpt_run_feature_metrics,
    web_feature_chromium_histogram_enum_values,
    web_features,
    web_features_mapping_data,
    wpt_run_feature_metrics,
)
from . import saved_searches

if TYPE_CHECKING:
    from ..client import Client

logger = logging.getLogger(__name__)

WEB_FEATURES_TABLE = web_features.name


@dataclass
class WebFeature:
    feature_key: str
    name: str = ""
    description: str = ""
    description_html: str = ""


@dataclass
class StoredWebFeature:
    id: str
    feature_key: str
    name: str
    description: str
    description_html: str

    def to_external(self) -> WebFeature:
        return WebFeature(
            feature_key=self.feature_key,
            name=self.name,
            description=self.description,
            description_html=self.description_html,
        )


@dataclass
class WebFeatureCursor:
    last_feature_key: str


# Dependent tables whose rows are keyed by web_feature_id and must go when
# the feature goes.
_DEPENDENT_TABLES = (
    wpt_run_feature_metrics,
    latest_wpt_run_feature_metrics,
    browser_feature_support_events,
    browser_feature_availabilities,
    feature_baseline_status,
    web_feature_chromium_histogram_enum_values,
    latest_daily_chromium_histogram_metrics,
    latest_feature_developer_signals,
    web_features_mapping_data,
)

# Dependent tables whose rows follow a feature to its redirect target.
_MOVABLE_TABLES = (
    wpt_run_feature_metrics,
    latest_wpt_run_feature_metrics,
    web_feature_chromium_histogram_enum_values,
    latest_daily_chromium_histogram_metrics,
    latest_feature_developer_signals,
)


def _key_of(table, row: Mapping[str, Any]) -> dict[str, Any]:
    return {col.name: row[col.name] for col in table.primary_key.columns}


@dataclass
class WebFeatureMapper:
    """
    Syncable mapper for WebFeatures.

    Merge policy: an empty name or description keeps the stored value.

    ``redirect_targets`` maps a feature key that is going away to the key
    that replaces it; the dependent data of the old feature is moved to the
    target before the old feature is deleted. The target may be a feature
    inserted by the same sync.
    """
    redirect_targets: dict[str, str] = field(default_factory=dict)
    _search_heirs: set[str] = field(default_factory=set, init=False, repr=False, compare=False)

    def table(self) -> str:
        return WEB_FEATURES_TABLE

    def select_one(self, key: str):
        return select(web_features).where(web_features.c.feature_key == key)

    def select_all(self):
        return select(web_features)

    def from_row(self, row: Mapping[str, Any]) -> StoredWebFeature:
        return StoredWebFeature(
            id=row["id"],
            feature_key=row["feature_key"],
            name=row["name"],
            description=row["description"] or "",
            description_html=row["description_html"] or "",
        )

    def to_row(self, internal: StoredWebFeature) -> dict[str, Any]:
        return {
            "id": internal.id,
            "feature_key": internal.feature_key,
            "name": internal.name,
            "description": internal.description,
            "description_html": internal.description_html,
        }

    def get_key_from_external(self, entity: WebFeature) -> str:
        return entity.feature_key

    def get_key_from_internal(self, internal: StoredWebFeature) -> str:
        return internal.feature_key

    def get_id_from_internal(self, internal: StoredWebFeature) -> str:
        return internal.id

    def new_entity(self, entity: WebFeature) -> StoredWebFeature:
        return StoredWebFeature(
            id=str(uuid.uuid4()),
            feature_key=entity.feature_key,
            name=entity.name,
            description=entity.description,
            description_html=entity.description_html,
        )

    def merge_and_check_changed(
        self, entity: WebFeature, existing: StoredWebFeature
    ) -> tuple[StoredWebFeature, bool]:
        merged = replace(
            existing,
            name=entity.name or existing.name,
            description=entity.description or existing.description,
            description_html=entity.description_html or existing.description_html,
        )
        return merged, merged != existing

    def delete_mutation(self, internal: StoredWebFeature) -> Mutation:
        return Mutation.delete(WEB_FEATURES_TABLE, {"id": internal.id})

    def post_write_hook(self, tx: DbSession, internal: StoredWebFeature) -> list[Mutation]:
        # A new feature gets its own system-managed saved search, unless it
        # inherits one from a feature redirected to it in the same sync.
        if internal.feature_key in self._search_heirs:
            return []
        existing = saved_searches.find_system_managed_saved_search(tx, internal.id)
        if existing is not None:
            return []
        return saved_searches.system_managed_saved_search_mutations(
            internal.id, internal.feature_key, internal.name
        )

    def prepare(self, tx: DbSession) -> None:
        self._search_heirs = set()
        if not self.redirect_targets:
            return
        rows = tx.fetch_all(
            select(web_features.c.id, web_features.c.feature_key).where(
                web_features.c.feature_key.in_(list(self.redirect_targets))
            )
        )
        source_keys_by_id = {row["id"]: row["feature_key"] for row in rows}
        for source_key in self.redirect_targets.keys() - set(source_keys_by_id.values()):
            logger.warning("redirect source feature %s not found, skipping", source_key)
        for system in saved_searches.list_system_managed_saved_searches(tx, list(source_keys_by_id)):
            self._search_heirs.add(self.redirect_targets[source_keys_by_id[system.feature_id]])

    def _redirect_target_id(
        self,
        tx: DbSession,
        source_key: str,
        target_key: str,
        inserted: Mapping[str, StoredWebFeature],
        deleting: set[str],
    ) -> str:
        if target_key in inserted:
            return inserted[target_key].id
        if target_key in deleting:
            raise QueryReturnedNoResults(
                f"redirect target feature {target_key!r} for {source_key!r} is being removed"
            )
        target_id = tx.execute_scalar(
            select(web_features.c.id).where(web_features.c.feature_key == target_key)
        )
        if target_id is None:
            raise QueryReturnedNoResults(
                f"redirect target feature {target_key!r} for {source_key!r} does not exist"
            )
        return target_id

    def pre_delete_hook(
        self,
        tx: DbSession,
        to_delete: list[StoredWebFeature],
        inserted: Mapping[str, StoredWebFeature] | None = None,
    ) -> list[ExtraMutationsGroup]:
        if not self.redirect_targets:
            return []

        inserted = inserted or {}
        deleting = {feature.feature_key for feature in to_delete}
        groups = {table.name: ExtraMutationsGroup(table.name) for table in _MOVABLE_TABLES}
        search_group = ExtraMutationsGroup(saved_searches.SAVED_SEARCHES_TABLE)
        system_group = ExtraMutationsGroup(saved_searches.SYSTEM_MANAGED_SAVED_SEARCHES_TABLE)
        # Targets that already received a moved search in this pass.
        claimed: set[str] = set()

        for source in to_delete:
            target_key = self.redirect_targets.get(source.feature_key)
            if target_key is None:
                continue
            target_id = self._redirect_target_id(tx, source.feature_key, target_key, inserted, deleting)

            # web_feature_id is part of these keys, so rows are copied under
            # the target id; the source rows go with the child deletes.
            for table in _MOVABLE_TABLES:
                for row in tx.fetch_all(select(table).where(table.c.web_feature_id == source.id)):
                    moved = dict(row, web_feature_id=target_id)
                    groups[table.name].mutations.append(Mutation.insert_or_update(table.name, moved))

            if target_id in claimed:
                target_has_search = True
            elif target_key in inserted:
                # post_write_hook skipped the search for heirs.
                target_has_search = target_key not in self._search_heirs
            else:
                target_has_search = saved_searches.find_system_managed_saved_search(tx, target_id) is not None
            search_mutations, system_mutations = saved_searches.move_system_managed_saved_search(
                tx, source.id, target_id, target_key, target_has_search=target_has_search
            )
            if system_mutations:
                claimed.add(target_id)
            search_group.mutations.extend(search_mutations)
            system_group.mutations.extend(system_mutations)

        return [g for g in [*groups.values(), search_group, system_group] if g.mutations]

    def get_child_delete_key_mutations(
        self, tx: DbSession, to_delete: list[StoredWebFeature]
    ) -> list[ExtraMutationsGroup]:
        ids = [feature.id for feature in to_delete]
        groups = []
        for table in _DEPENDENT_TABLES:
            rows = tx.fetch_all(select(table).where(table.c.web_feature_id.in_(ids)))
            mutations = [Mutation.delete(table.name, _key_of(table, row)) for row in rows]
            if mutations:
                groups.append(ExtraMutationsGroup(table.name, mutations))

        redirected_sources = set(self.redirect_targets)
        search_mutations = []
        for system in saved_searches.list_system_managed_saved_searches(tx, ids):
            search_mutations.append(
                Mutation.delete(
                    saved_searches.SYSTEM_MANAGED_SAVED_SEARCHES_TABLE,
                    {"feature_id": system.feature_id},
                )
            )
            # A redirected feature hands its saved search to the target.
            owner_key = next((f.feature_key for f in to_delete if f.id == system.feature_id), None)
            if owner_key not in redirected_sources:
                search_mutations.append(
                    Mutation.delete(saved_searches.SAVED_SEARCHES_TABLE, {"id": system.saved_search_id})
                )
        if search_mutations:
            groups.append(ExtraMutationsGroup(saved_searches.SAVED_SEARCHES_TABLE, search_mutations))
        return groups


def sync_web_features(
    client: "Client",
    features: list[WebFeature],
    *,
    redirect_targets: dict[str, str] | None = None,
    session: DbSession | None = None,
    cancel: threading.Event | None = None,
) -> SyncResult:
    """
    Make WebFeatures hold exactly ``features``.

    Removed features take their dependent rows with them. A removed feature
    listed in ``redirect_targets`` first hands its metrics, usage mappings,
    developer signals and system-managed saved search to the target
    feature, which may itself be new in ``features``.
    """
    desired_keys = {feature.feature_key for feature in features}
    # A source that is still desired is not removed, so it keeps its data.
    redirects = {
        source: target for source, target in (redirect_targets or {}).items() if source not in desired_keys
    }
    mapper = WebFeatureMapper(redirect_targets=redirects)
    return EntitySynchronizer(client, mapper).sync(features, session, cancel=cancel)


def upsert_web_feature(
    client: "Client",
    feature: WebFeature,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> str:
    """Insert or merge one feature; returns its internal id."""
    return EntityWriter(client, WebFeatureMapper()).upsert_with_id(feature, session, cancel=cancel)


def get_web_feature_by_key(
    client: "Client",
    feature_key: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> WebFeature:
    return EntityReader(client, WebFeatureMapper()).read_row_by_key(feature_key, session, cancel=cancel).to_external()


def get_id_from_feature_key(
    client: "Client",
    feature_key: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> str:
    return EntityWriter(client, WebFeatureMapper()).get_id_by_key(feature_key, session, cancel=cancel)


def list_web_features_paged(
    client: "Client",
    page_size: int,
    page_token: str | None = None,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> Page[WebFeature]:
    """Features ordered by feature key."""
    stmt = select(web_features).order_by(web_features.c.feature_key).limit(page_size)
    if page_token:
        cursor = decode_cursor(WebFeatureCursor, page_token)
        stmt = stmt.where(keyset_filter([SortKey(web_features.c.feature_key, cursor.last_feature_key)]))

    mapper = WebFeatureMapper()

    def _list(s: DbSession) -> list[WebFeature]:
        return [mapper.from_row(row).to_external() for row in s.fetch_all(stmt)]

    with translate_errors("list WebFeatures"):
        items = run_read_only(client, _list, session, cancel)
    return build_page(items, page_size, lambda f: WebFeatureCursor(last_feature_key=f.feature_key))
