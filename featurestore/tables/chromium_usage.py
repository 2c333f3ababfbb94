"""
Chromium usage histograms.

ChromiumHistogramEnums names a histogram, ChromiumHistogramEnumValues its
buckets, and WebFeatureChromiumHistogramEnumValues maps a web feature to the
bucket that counts it. Daily rates land in DailyChromiumHistogramMetrics and
LatestDailyChromiumHistogramMetrics points at the newest day per feature.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import date
from typing import TYPE_CHECKING, Any, Mapping

from sqlalchemy import func, select

from ..db.entity import EntityReader, EntityWriter, run_read_only, run_read_write
from ..db.helpers import is_newer, translate_errors
from ..db.mutations import Mutation
from ..db.session import DbSession
from ..errors import QueryReturnedNoResults
from ..schema import (
    chromium_histogram_enum_values,
    chromium_histogram_enums,
    daily_chromium_histogram_metrics,
    latest_daily_chromium_histogram_metrics,
    web_feature_chromium_histogram_enum_values,
    web_features,
)
from .web_features import get_id_from_feature_key

if TYPE_CHECKING:
    from ..client import Client

logger = logging.getLogger(__name__)


@dataclass
class ChromiumHistogramEnum:
    histogram_name: str


@dataclass
class StoredChromiumHistogramEnum:
    id: str
    histogram_name: str


@dataclass
class ChromiumHistogramEnumValue:
    chromium_histogram_enum_id: str
    bucket_id: int
    label: str


@dataclass
class StoredChromiumHistogramEnumValue:
    id: str
    chromium_histogram_enum_id: str
    bucket_id: int
    label: str


@dataclass(frozen=True)
class EnumValueKey:
    chromium_histogram_enum_id: str
    bucket_id: int


@dataclass
class DailyChromiumHistogramMetric:
    day: date
    rate: float


@dataclass(frozen=True)
class DailyMetricKey:
    chromium_histogram_enum_value_id: str
    day: date


@dataclass
class StoredDailyChromiumHistogramMetric:
    chromium_histogram_enum_value_id: str
    day: date
    rate: float


class ChromiumHistogramEnumMapper:
    def table(self) -> str:
        return chromium_histogram_enums.name

    def select_one(self, histogram_name: str):
        return select(chromium_histogram_enums).where(chromium_histogram_enums.c.histogram_name == histogram_name)

    def from_row(self, row: Mapping[str, Any]) -> StoredChromiumHistogramEnum:
        return StoredChromiumHistogramEnum(id=row["id"], histogram_name=row["histogram_name"])

    def to_row(self, internal: StoredChromiumHistogramEnum) -> dict[str, Any]:
        return {"id": internal.id, "histogram_name": internal.histogram_name}

    def get_key_from_external(self, entity: ChromiumHistogramEnum) -> str:
        return entity.histogram_name

    def get_id_from_internal(self, internal: StoredChromiumHistogramEnum) -> str:
        return internal.id

    def new_entity(self, entity: ChromiumHistogramEnum) -> StoredChromiumHistogramEnum:
        return StoredChromiumHistogramEnum(id=str(uuid.uuid4()), histogram_name=entity.histogram_name)

    def merge_and_check_changed(
        self, entity: ChromiumHistogramEnum, existing: StoredChromiumHistogramEnum
    ) -> tuple[StoredChromiumHistogramEnum, bool]:
        # Only the name is stored and it is the key.
        return existing, False


class ChromiumHistogramEnumValueMapper:
    def table(self) -> str:
        return chromium_histogram_enum_values.name

    def select_one(self, key: EnumValueKey):
        c = chromium_histogram_enum_values.c
        return select(chromium_histogram_enum_values).where(
            c.chromium_histogram_enum_id == key.chromium_histogram_enum_id,
            c.bucket_id == key.bucket_id,
        )

    def from_row(self, row: Mapping[str, Any]) -> StoredChromiumHistogramEnumValue:
        return StoredChromiumHistogramEnumValue(
            id=row["id"],
            chromium_histogram_enum_id=row["chromium_histogram_enum_id"],
            bucket_id=row["bucket_id"],
            label=row["label"],
        )

    def to_row(self, internal: StoredChromiumHistogramEnumValue) -> dict[str, Any]:
        return {
            "id": internal.id,
            "chromium_histogram_enum_id": internal.chromium_histogram_enum_id,
            "bucket_id": internal.bucket_id,
            "label": internal.label,
        }

    def get_key_from_external(self, entity: ChromiumHistogramEnumValue) -> EnumValueKey:
        return EnumValueKey(entity.chromium_histogram_enum_id, entity.bucket_id)

    def get_id_from_internal(self, internal: StoredChromiumHistogramEnumValue) -> str:
        return internal.id

    def new_entity(self, entity: ChromiumHistogramEnumValue) -> StoredChromiumHistogramEnumValue:
        return StoredChromiumHistogramEnumValue(
            id=str(uuid.uuid4()),
            chromium_histogram_enum_id=entity.chromium_histogram_enum_id,
            bucket_id=entity.bucket_id,
            label=entity.label,
        )

    def merge_and_check_changed(
        self, entity: ChromiumHistogramEnumValue, existing: StoredChromiumHistogramEnumValue
    ) -> tuple[StoredChromiumHistogramEnumValue, bool]:
        merged = replace(existing, label=entity.label or existing.label)
        return merged, merged != existing


class DailyChromiumHistogramMetricMapper:
    def table(self) -> str:
        return daily_chromium_histogram_metrics.name

    def select_one(self, key: DailyMetricKey):
        c = daily_chromium_histogram_metrics.c
        return select(daily_chromium_histogram_metrics).where(
            c.chromium_histogram_enum_value_id == key.chromium_histogram_enum_value_id,
            c.day == key.day,
        )

    def from_row(self, row: Mapping[str, Any]) -> StoredDailyChromiumHistogramMetric:
        return StoredDailyChromiumHistogramMetric(
            chromium_histogram_enum_value_id=row["chromium_histogram_enum_value_id"],
            day=row["day"],
            rate=row["rate"],
        )

    def to_row(self, internal: StoredDailyChromiumHistogramMetric) -> dict[str, Any]:
        return {
            "chromium_histogram_enum_value_id": internal.chromium_histogram_enum_value_id,
            "day": internal.day,
            "rate": internal.rate,
        }

    def get_key_from_external(self, entity: StoredDailyChromiumHistogramMetric) -> DailyMetricKey:
        return DailyMetricKey(entity.chromium_histogram_enum_value_id, entity.day)

    def new_entity(self, entity: StoredDailyChromiumHistogramMetric) -> StoredDailyChromiumHistogramMetric:
        return entity

    def merge_and_check_changed(
        self, entity: StoredDailyChromiumHistogramMetric, existing: StoredDailyChromiumHistogramMetric
    ) -> tuple[StoredDailyChromiumHistogramMetric, bool]:
        merged = replace(existing, rate=entity.rate)
        return merged, merged.rate != existing.rate


def upsert_chromium_histogram_enum(
    client: "Client",
    histogram_name: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> str:
    return EntityWriter(client, ChromiumHistogramEnumMapper()).upsert_with_id(
        ChromiumHistogramEnum(histogram_name), session, cancel=cancel
    )


def upsert_chromium_histogram_enum_value(
    client: "Client",
    value: ChromiumHistogramEnumValue,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> str:
    """Insert a bucket or relabel it; returns the bucket's id."""
    return EntityWriter(client, ChromiumHistogramEnumValueMapper()).upsert_with_id(value, session, cancel=cancel)


def get_chromium_histogram_enum_value_id(
    client: "Client",
    histogram_name: str,
    bucket_id: int,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> str:
    """
    Raises:
        QueryReturnedNoResults: If the histogram or the bucket is unknown
    """
    def _get(s: DbSession) -> str:
        enum_id = EntityWriter(client, ChromiumHistogramEnumMapper()).get_id_by_key(histogram_name, s)
        return EntityWriter(client, ChromiumHistogramEnumValueMapper()).get_id_by_key(
            EnumValueKey(enum_id, bucket_id), s
        )

    return run_read_only(client, _get, session, cancel)


def upsert_web_feature_chromium_histogram_enum_value(
    client: "Client",
    feature_key: str,
    chromium_histogram_enum_value_id: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> None:
    """Point a feature at the histogram bucket that measures it."""
    def _upsert(s: DbSession) -> None:
        feature_id = get_id_from_feature_key(client, feature_key, s)
        s.buffer_write([
            Mutation.insert_or_update(
                web_feature_chromium_histogram_enum_values.name,
                {
                    "web_feature_id": feature_id,
                    "chromium_histogram_enum_value_id": chromium_histogram_enum_value_id,
                },
            )
        ])

    with translate_errors("upsert WebFeatureChromiumHistogramEnumValues"):
        run_read_write(client, _upsert, session, cancel)


def _latest_day(s: DbSession, enum_value_id: str) -> date | None:
    latest = latest_daily_chromium_histogram_metrics
    return s.execute_scalar(
        select(func.max(latest.c.day)).where(latest.c.chromium_histogram_enum_value_id == enum_value_id)
    )


def upsert_daily_chromium_histogram_metric(
    client: "Client",
    histogram_name: str,
    bucket_id: int,
    metric: DailyChromiumHistogramMetric,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> bool:
    """
    Store one day's rate for a histogram bucket.

    The feature's latest pointer moves only when ``metric.day`` is newer
    than the day it already points at. Buckets with no enum value row
    (draft features) are skipped with a warning.

    Returns:
        False if the bucket was unknown and nothing was written

    Raises:
        QueryReturnedNoResults: If the histogram itself is unknown
    """
    def _upsert(s: DbSession) -> bool:
        enum_id = EntityWriter(client, ChromiumHistogramEnumMapper()).get_id_by_key(histogram_name, s)
        try:
            value_id = EntityWriter(client, ChromiumHistogramEnumValueMapper()).get_id_by_key(
                EnumValueKey(enum_id, bucket_id), s
            )
        except QueryReturnedNoResults:
            logger.warning(
                "no enum value for histogram %s bucket %d, likely a draft feature; skipping",
                histogram_name,
                bucket_id,
            )
            return False

        EntityWriter(client, DailyChromiumHistogramMetricMapper()).upsert(
            StoredDailyChromiumHistogramMetric(value_id, metric.day, metric.rate), s
        )

        if not is_newer(_latest_day(s, value_id), metric.day):
            return True

        mapping = web_feature_chromium_histogram_enum_values
        feature_id = s.execute_scalar(
            select(mapping.c.web_feature_id).where(mapping.c.chromium_histogram_enum_value_id == value_id)
        )
        if feature_id is None:
            logger.debug("bucket %s is not mapped to a feature, latest pointer not written", value_id)
            return True
        s.buffer_write([
            Mutation.insert_or_update(
                latest_daily_chromium_histogram_metrics.name,
                {
                    "web_feature_id": feature_id,
                    "chromium_histogram_enum_value_id": value_id,
                    "day": metric.day,
                },
            )
        ])
        return True

    with translate_errors("upsert DailyChromiumHistogramMetrics"):
        return run_read_write(client, _upsert, session, cancel)


def get_daily_chromium_histogram_metric(
    client: "Client",
    chromium_histogram_enum_value_id: str,
    day: date,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> DailyChromiumHistogramMetric:
    stored = EntityReader(client, DailyChromiumHistogramMetricMapper()).read_row_by_key(
        DailyMetricKey(chromium_histogram_enum_value_id, day), session, cancel=cancel
    )
    return DailyChromiumHistogramMetric(day=stored.day, rate=stored.rate)


def get_latest_daily_chromium_histogram_metric(
    client: "Client",
    feature_key: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> DailyChromiumHistogramMetric:
    """
    Raises:
        QueryReturnedNoResults: If the feature has no usage data
    """
    latest, daily, f = latest_daily_chromium_histogram_metrics, daily_chromium_histogram_metrics, web_features
    stmt = (
        select(daily.c.day, daily.c.rate)
        .select_from(
            latest.join(f, latest.c.web_feature_id == f.c.id).join(
                daily,
                (daily.c.chromium_histogram_enum_value_id == latest.c.chromium_histogram_enum_value_id)
                & (daily.c.day == latest.c.day),
            )
        )
        .where(f.c.feature_key == feature_key)
        .order_by(daily.c.day.desc())
    )

    def _get(s: DbSession) -> DailyChromiumHistogramMetric:
        row = s.fetch_one(stmt)
        if row is None:
            raise QueryReturnedNoResults(f"no chromium usage for feature {feature_key!r}")
        return DailyChromiumHistogramMetric(day=row["day"], rate=row["rate"])

    with translate_errors("read LatestDailyChromiumHistogramMetrics"):
        return run_read_only(client, _get, session, cancel)
