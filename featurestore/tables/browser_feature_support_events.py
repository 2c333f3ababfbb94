"""
BrowserFeatureSupportEvents: for every target browser, every browser
release event and every feature, whether the target browser supported the
feature at the moment of that release.

The table is a cross product (browsers x releases x features), so it is
written through BatchWriter instead of one transaction.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Iterator

from sqlalchemy import select

from ..db.batch import BatchWriter, Emit
from ..db.helpers import as_utc, translate_errors
from ..db.mutations import Mutation
from ..schema import browser_feature_availabilities, browser_feature_support_events, browser_releases, web_features

if TYPE_CHECKING:
    from ..client import Client

logger = logging.getLogger(__name__)

BROWSER_FEATURE_SUPPORT_EVENTS_TABLE = browser_feature_support_events.name


class BrowserFeatureSupportStatus(str, Enum):
    UNSUPPORTED = "unsupported"
    SUPPORTED = "supported"


def build_availability_map(
    releases: list[dict],
    availabilities: list[dict],
) -> dict[str, dict[str, datetime]]:
    """browser name -> feature id -> release date of the version that shipped it."""
    release_dates: dict[tuple[str, str], datetime] = {
        (r["browser_name"], r["browser_version"]): as_utc(r["release_date"]) for r in releases
    }
    availability: dict[str, dict[str, datetime]] = defaultdict(dict)
    for row in availabilities:
        released = release_dates.get((row["browser_name"], row["browser_version"]))
        # Availability in a version with no known release date is ignored.
        if released is not None:
            availability[row["browser_name"]][row["web_feature_id"]] = released
    return availability


def iter_support_events(
    availability: dict[str, dict[str, datetime]],
    releases: list[dict],
    feature_ids: list[str],
) -> Iterator[dict]:
    target_browsers = sorted({r["browser_name"] for r in releases})
    for target in target_browsers:
        shipped = availability.get(target, {})
        for event in releases:
            event_date = as_utc(event["release_date"])
            for feature_id in feature_ids:
                available_at = shipped.get(feature_id)
                supported = available_at is not None and available_at <= event_date
                yield {
                    "target_browser_name": target,
                    "event_browser_name": event["browser_name"],
                    "event_release_date": event_date,
                    "web_feature_id": feature_id,
                    "support_status": (
                        BrowserFeatureSupportStatus.SUPPORTED if supported
                        else BrowserFeatureSupportStatus.UNSUPPORTED
                    ).value,
                }


def precalculate_browser_feature_support_events(
    client: "Client",
    cancel: threading.Event | None = None,
) -> int:
    """
    Recompute every support event and write it with INSERT_OR_UPDATE.

    Returns:
        Number of rows written
    """
    with translate_errors("read support event inputs"):
        with client.factory.session(read_only=True) as session:
            releases = session.fetch_all(select(browser_releases))
            availabilities = session.fetch_all(select(browser_feature_availabilities))
            feature_ids = [row["id"] for row in session.fetch_all(select(web_features.c.id))]

    availability = build_availability_map(releases, availabilities)
    logger.info(
        "precalculating support events for %d releases and %d features",
        len(releases),
        len(feature_ids),
    )

    def producer(emit: Emit) -> None:
        for row in iter_support_events(availability, releases, feature_ids):
            emit(Mutation.insert_or_update(BROWSER_FEATURE_SUPPORT_EVENTS_TABLE, row))

    writer = BatchWriter(
        client.factory,
        chunk_size=client.db_config.batch_write_chunk_size,
        queue_capacity=client.db_config.batch_queue_capacity,
    )
    with translate_errors("write support events"):
        return writer.run(producer, cancel=cancel)
