"""
WPTRuns, WPTRunFeatureMetrics and LatestWPTRunFeatureMetrics.

Runs are identified externally by the wpt.fyi run id and internally by a
generated ``id`` that the per-feature metrics reference. Metrics rows also
carry a denormalized copy of the run's browser, channel and start time.
The latest table points each (feature, browser, channel) at the metrics
of the most recently started run.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping

from sqlalchemy import select

from ..db.cursor import decode_cursor
from ..db.entity import decode_row, run_read_only, run_read_write
from ..db.helpers import as_utc, is_newer, translate_errors
from ..db.mutations import Mutation
from ..db.pagination import Page, SortKey, build_page, keyset_filter
from ..db.session import DbSession
from ..errors import QueryReturnedNoResults
from ..schema import latest_wpt_run_feature_metrics, web_features, wpt_run_feature_metrics, wpt_runs

if TYPE_CHECKING:
    from ..client import Client

logger = logging.getLogger(__name__)

WPT_RUNS_TABLE = wpt_runs.name
WPT_RUN_FEATURE_METRICS_TABLE = wpt_run_feature_metrics.name
LATEST_WPT_RUN_FEATURE_METRICS_TABLE = latest_wpt_run_feature_metrics.name


@dataclass
class WptRun:
    run_id: int
    time_start: datetime
    time_end: datetime
    browser_name: str
    browser_version: str
    channel: str
    os_name: str = ""
    os_version: str = ""
    full_revision_hash: str = ""


@dataclass
class WptRunFeatureMetric:
    total_tests: int | None = None
    test_pass: int | None = None


@dataclass
class LatestWptRunFeatureMetric:
    run_id: int
    time_start: datetime
    metric: WptRunFeatureMetric


@dataclass
class WptRunCursor:
    last_time_start: datetime
    last_run_id: int


class WptRunMapper:
    def table(self) -> str:
        return WPT_RUNS_TABLE

    def select_one(self, run_id: int):
        return select(wpt_runs).where(wpt_runs.c.external_run_id == run_id)

    def from_row(self, row: Mapping[str, Any]) -> WptRun:
        return WptRun(
            run_id=row["external_run_id"],
            time_start=as_utc(row["time_start"]),
            time_end=as_utc(row["time_end"]),
            browser_name=row["browser_name"],
            browser_version=row["browser_version"],
            channel=row["channel"],
            os_name=row["os_name"] or "",
            os_version=row["os_version"] or "",
            full_revision_hash=row["full_revision_hash"] or "",
        )

    def to_row(self, run_id: str, run: WptRun) -> dict[str, Any]:
        return {
            "id": run_id,
            "external_run_id": run.run_id,
            "time_start": as_utc(run.time_start),
            "time_end": as_utc(run.time_end),
            "browser_name": run.browser_name,
            "browser_version": run.browser_version,
            "channel": run.channel,
            "os_name": run.os_name,
            "os_version": run.os_version,
            "full_revision_hash": run.full_revision_hash,
        }


def insert_wpt_run(
    client: "Client",
    run: WptRun,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> None:
    """
    Insert a run unless one with the same external run id exists.

    Existing runs are never rewritten; the metrics rows copy some of their
    columns.
    """
    mapper = WptRunMapper()

    def _insert(s: DbSession) -> None:
        if s.fetch_one(mapper.select_one(run.run_id), for_update=True) is not None:
            logger.debug("wpt run %d already stored, leaving it as is", run.run_id)
            return
        s.buffer_write([Mutation.insert(WPT_RUNS_TABLE, mapper.to_row(str(uuid.uuid4()), run))])

    with translate_errors("insert WPTRuns"):
        run_read_write(client, _insert, session, cancel)


def _run_row_by_external_id(s: DbSession, external_run_id: int) -> Mapping[str, Any]:
    row = s.fetch_one(WptRunMapper().select_one(external_run_id))
    if row is None:
        raise QueryReturnedNoResults(f"no wpt run with external id {external_run_id}")
    return row


def get_wpt_run_id_by_external_id(
    client: "Client",
    external_run_id: int,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> str:
    """
    Raises:
        QueryReturnedNoResults: If the run was never inserted
    """
    with translate_errors("read WPTRuns"):
        return run_read_only(client, lambda s: _run_row_by_external_id(s, external_run_id)["id"], session, cancel)


def get_wpt_run(
    client: "Client",
    external_run_id: int,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> WptRun:
    mapper = WptRunMapper()
    with translate_errors("read WPTRuns"):
        row = run_read_only(client, lambda s: _run_row_by_external_id(s, external_run_id), session, cancel)
    return decode_row(mapper, row)


def upsert_wpt_run_feature_metrics(
    client: "Client",
    external_run_id: int,
    metrics_by_feature_key: Mapping[str, WptRunFeatureMetric],
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> int:
    """
    Write the per-feature metrics of one run.

    Each feature's latest pointer for the run's browser and channel moves
    to this run when the run started strictly later than the one it points
    at. Feature keys with no WebFeatures row are logged and skipped.

    Returns:
        Number of metric rows written

    Raises:
        QueryReturnedNoResults: If the run does not exist
    """
    def _upsert(s: DbSession) -> int:
        run = _run_row_by_external_id(s, external_run_id)
        run_start = as_utc(run["time_start"])
        keys = list(metrics_by_feature_key)
        ids = {
            row["feature_key"]: row["id"]
            for row in s.fetch_all(
                select(web_features.c.feature_key, web_features.c.id).where(web_features.c.feature_key.in_(keys))
            )
        }
        latest = latest_wpt_run_feature_metrics
        latest_starts = {
            row["web_feature_id"]: as_utc(row["time_start"])
            for row in s.fetch_all(
                select(latest.c.web_feature_id, latest.c.time_start).where(
                    latest.c.web_feature_id.in_(list(ids.values())),
                    latest.c.browser_name == run["browser_name"],
                    latest.c.channel == run["channel"],
                ),
                for_update=True,
            )
        }
        mutations = []
        latest_mutations = []
        for feature_key, metric in metrics_by_feature_key.items():
            feature_id = ids.get(feature_key)
            if feature_id is None:
                logger.warning("unable to find web feature for key %s, skipping its metrics", feature_key)
                continue
            mutations.append(
                Mutation.insert_or_update(
                    WPT_RUN_FEATURE_METRICS_TABLE,
                    {
                        "id": run["id"],
                        "web_feature_id": feature_id,
                        "channel": run["channel"],
                        "browser_name": run["browser_name"],
                        "time_start": run_start,
                        "total_tests": metric.total_tests,
                        "test_pass": metric.test_pass,
                    },
                )
            )
            if is_newer(latest_starts.get(feature_id), run_start):
                latest_mutations.append(
                    Mutation.insert_or_update(
                        LATEST_WPT_RUN_FEATURE_METRICS_TABLE,
                        {
                            "web_feature_id": feature_id,
                            "browser_name": run["browser_name"],
                            "channel": run["channel"],
                            "run_metric_id": run["id"],
                            "time_start": run_start,
                        },
                    )
                )
        s.buffer_write(mutations + latest_mutations)
        return len(mutations)

    with translate_errors("upsert WPTRunFeatureMetrics"):
        return run_read_write(client, _upsert, session, cancel)


def get_wpt_run_feature_metric(
    client: "Client",
    external_run_id: int,
    feature_key: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> WptRunFeatureMetric:
    m, r, f = wpt_run_feature_metrics, wpt_runs, web_features
    stmt = (
        select(m.c.total_tests, m.c.test_pass)
        .select_from(m.join(r, m.c.id == r.c.id).join(f, m.c.web_feature_id == f.c.id))
        .where(r.c.external_run_id == external_run_id, f.c.feature_key == feature_key)
    )

    def _get(s: DbSession) -> WptRunFeatureMetric:
        row = s.fetch_one(stmt)
        if row is None:
            raise QueryReturnedNoResults(f"no metric for run {external_run_id} and feature {feature_key!r}")
        return WptRunFeatureMetric(total_tests=row["total_tests"], test_pass=row["test_pass"])

    with translate_errors("read WPTRunFeatureMetrics"):
        return run_read_only(client, _get, session, cancel)


def get_latest_wpt_run_feature_metric(
    client: "Client",
    feature_key: str,
    browser_name: str,
    channel: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> LatestWptRunFeatureMetric:
    """
    The metric of the most recently started run for a feature on one
    browser and channel.

    Raises:
        QueryReturnedNoResults: If no run has reported on the feature there
    """
    latest, m, r, f = latest_wpt_run_feature_metrics, wpt_run_feature_metrics, wpt_runs, web_features
    stmt = (
        select(r.c.external_run_id, latest.c.time_start, m.c.total_tests, m.c.test_pass)
        .select_from(
            latest.join(f, latest.c.web_feature_id == f.c.id)
            .join(
                m,
                (m.c.id == latest.c.run_metric_id) & (m.c.web_feature_id == latest.c.web_feature_id),
            )
            .join(r, r.c.id == latest.c.run_metric_id)
        )
        .where(f.c.feature_key == feature_key, latest.c.browser_name == browser_name, latest.c.channel == channel)
    )

    def _get(s: DbSession) -> LatestWptRunFeatureMetric:
        row = s.fetch_one(stmt)
        if row is None:
            raise QueryReturnedNoResults(
                f"no latest metric for feature {feature_key!r} on {browser_name}/{channel}"
            )
        return LatestWptRunFeatureMetric(
            run_id=row["external_run_id"],
            time_start=as_utc(row["time_start"]),
            metric=WptRunFeatureMetric(total_tests=row["total_tests"], test_pass=row["test_pass"]),
        )

    with translate_errors("read LatestWPTRunFeatureMetrics"):
        return run_read_only(client, _get, session, cancel)


def list_wpt_runs_paged(
    client: "Client",
    page_size: int,
    page_token: str | None = None,
    *,
    browser_name: str | None = None,
    channel: str | None = None,
    session: DbSession | None = None,
    cancel: threading.Event | None = None,
) -> Page[WptRun]:
    """Newest run first; ties on start time go to the higher external run id."""
    c = wpt_runs.c
    stmt = select(wpt_runs).order_by(c.time_start.desc(), c.external_run_id.desc()).limit(page_size)
    if browser_name is not None:
        stmt = stmt.where(c.browser_name == browser_name)
    if channel is not None:
        stmt = stmt.where(c.channel == channel)
    if page_token:
        cursor = decode_cursor(WptRunCursor, page_token)
        stmt = stmt.where(
            keyset_filter([
                SortKey(c.time_start, cursor.last_time_start, descending=True),
                SortKey(c.external_run_id, cursor.last_run_id, descending=True),
            ])
        )

    mapper = WptRunMapper()

    def _list(s: DbSession) -> list[WptRun]:
        return [decode_row(mapper, row) for row in s.fetch_all(stmt)]

    with translate_errors("list WPTRuns"):
        items = run_read_only(client, _list, session, cancel)
    return build_page(
        items,
        page_size,
        lambda run: WptRunCursor(last_time_start=run.time_start, last_run_id=run.run_id),
    )
