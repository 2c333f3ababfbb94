"""
LatestFeatureDeveloperSignals: the current developer vote count and the
link to the discussion behind it, one row per feature.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Mapping

from sqlalchemy import select

from ..db.entity import EntityReader
from ..db.mutations import Mutation
from ..db.session import DbSession
from ..db.sync import EntitySynchronizer, SyncResult
from ..errors import QueryReturnedNoResults
from ..schema import latest_feature_developer_signals, web_features

if TYPE_CHECKING:
    from ..client import Client

LATEST_FEATURE_DEVELOPER_SIGNALS_TABLE = latest_feature_developer_signals.name


@dataclass
class FeatureDeveloperSignal:
    feature_key: str
    votes: int
    link: str = ""


@dataclass
class StoredFeatureDeveloperSignal:
    web_feature_id: str
    feature_key: str
    votes: int
    link: str

    def to_external(self) -> FeatureDeveloperSignal:
        return FeatureDeveloperSignal(feature_key=self.feature_key, votes=self.votes, link=self.link)


def _with_feature_key():
    d, f = latest_feature_developer_signals, web_features
    return select(d, f.c.feature_key).select_from(d.join(f, d.c.web_feature_id == f.c.id))


class FeatureDeveloperSignalMapper:
    """
    Syncable mapper keyed by feature key.

    Votes and link are replaced wholesale; a row is rewritten only when
    either differs from what is stored.
    """

    def __init__(self) -> None:
        self.feature_ids: dict[str, str] = {}

    def prepare(self, tx: DbSession) -> None:
        rows = tx.fetch_all(select(web_features.c.feature_key, web_features.c.id))
        self.feature_ids = {row["feature_key"]: row["id"] for row in rows}

    def table(self) -> str:
        return LATEST_FEATURE_DEVELOPER_SIGNALS_TABLE

    def select_one(self, key: str):
        return _with_feature_key().where(web_features.c.feature_key == key)

    def select_all(self):
        return _with_feature_key()

    def from_row(self, row: Mapping[str, Any]) -> StoredFeatureDeveloperSignal:
        return StoredFeatureDeveloperSignal(
            web_feature_id=row["web_feature_id"],
            feature_key=row["feature_key"],
            votes=row["votes"],
            link=row["link"] or "",
        )

    def to_row(self, internal: StoredFeatureDeveloperSignal) -> dict[str, Any]:
        return {
            "web_feature_id": internal.web_feature_id,
            "votes": internal.votes,
            "link": internal.link,
        }

    def get_key_from_external(self, entity: FeatureDeveloperSignal) -> str:
        return entity.feature_key

    def get_key_from_internal(self, internal: StoredFeatureDeveloperSignal) -> str:
        return internal.feature_key

    def new_entity(self, entity: FeatureDeveloperSignal) -> StoredFeatureDeveloperSignal:
        try:
            feature_id = self.feature_ids[entity.feature_key]
        except KeyError:
            raise QueryReturnedNoResults(f"unknown web feature {entity.feature_key!r}") from None
        return StoredFeatureDeveloperSignal(
            web_feature_id=feature_id,
            feature_key=entity.feature_key,
            votes=entity.votes,
            link=entity.link,
        )

    def merge_and_check_changed(
        self, entity: FeatureDeveloperSignal, existing: StoredFeatureDeveloperSignal
    ) -> tuple[StoredFeatureDeveloperSignal, bool]:
        merged = replace(existing, votes=entity.votes, link=entity.link)
        return merged, merged != existing

    def delete_mutation(self, internal: StoredFeatureDeveloperSignal) -> Mutation:
        return Mutation.delete(LATEST_FEATURE_DEVELOPER_SIGNALS_TABLE, {"web_feature_id": internal.web_feature_id})


def sync_latest_feature_developer_signals(
    client: "Client",
    signals: list[FeatureDeveloperSignal],
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> SyncResult:
    """
    Make LatestFeatureDeveloperSignals hold exactly ``signals``.

    Raises:
        QueryReturnedNoResults: If a signal names an unknown feature; the
            table is left untouched
        DuplicateBusinessKey: If two signals share a feature key
    """
    return EntitySynchronizer(client, FeatureDeveloperSignalMapper()).sync(signals, session, cancel=cancel)


def get_all_latest_feature_developer_signals(
    client: "Client",
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> list[FeatureDeveloperSignal]:
    stored = EntityReader(client, FeatureDeveloperSignalMapper()).read_all(session, cancel=cancel)
    return [signal.to_external() for signal in stored]
