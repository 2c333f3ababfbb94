from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select

from ..db.cursor import decode_cursor
from ..db.entity import run_read_only
from ..db.helpers import as_utc, translate_errors
from ..db.pagination import Page, build_page
from ..db.session import DbSession
from ..schema import browser_feature_availabilities, browser_releases

if TYPE_CHECKING:
    from ..client import Client


@dataclass
class BrowserFeatureCountMetric:
    release_date: datetime
    # Cumulative number of features available as of this release.
    feature_count: int


@dataclass
class BrowserFeatureCountCursor:
    last_release_date: datetime
    last_cumulative_count: int


def _daily_counts(target_browser: str):
    """Features that first shipped in each release of the target browser."""
    r, a = browser_releases, browser_feature_availabilities
    return (
        select(r.c.release_date, func.count(func.distinct(a.c.web_feature_id)).label("feature_count"))
        .select_from(
            r.outerjoin(a, (a.c.browser_name == r.c.browser_name) & (a.c.browser_version == r.c.browser_version))
        )
        .where(r.c.browser_name == target_browser)
        .group_by(r.c.release_date)
    )


def list_browser_feature_count_metric(
    client: "Client",
    target_browser: str,
    start_at: datetime,
    end_at: datetime,
    page_size: int,
    page_token: str | None = None,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> Page[BrowserFeatureCountMetric]:
    """
    Cumulative feature count of ``target_browser`` for each of its releases
    in [start_at, end_at), oldest first.

    The first page starts from the count of everything released before
    ``start_at``; later pages carry the running total in the cursor.
    """
    cursor = decode_cursor(BrowserFeatureCountCursor, page_token) if page_token else None
    r = browser_releases

    stmt = (
        _daily_counts(target_browser)
        .where(r.c.release_date >= start_at, r.c.release_date < end_at)
        .order_by(r.c.release_date)
        .limit(page_size)
    )
    if cursor is not None:
        stmt = stmt.where(r.c.release_date > cursor.last_release_date)

    def _list(s: DbSession) -> list[BrowserFeatureCountMetric]:
        if cursor is not None:
            cumulative = cursor.last_cumulative_count
        else:
            before = _daily_counts(target_browser).where(r.c.release_date < start_at).subquery()
            cumulative = s.execute_scalar(select(func.coalesce(func.sum(before.c.feature_count), 0))) or 0

        metrics = []
        for row in s.fetch_all(stmt):
            cumulative += row["feature_count"]
            metrics.append(
                BrowserFeatureCountMetric(release_date=as_utc(row["release_date"]), feature_count=cumulative)
            )
        return metrics

    with translate_errors("list browser feature count"):
        items = run_read_only(client, _list, session, cancel)

    return build_page(
        items,
        page_size,
        lambda m: BrowserFeatureCountCursor(last_release_date=m.release_date, last_cumulative_count=m.feature_count),
    )
