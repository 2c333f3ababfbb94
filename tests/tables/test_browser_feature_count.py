from __future__ import annotations

from datetime import datetime, timezone

import pytest

from featurestore.tables.browser_availabilities import (
    BrowserFeatureAvailability,
    sync_browser_feature_availabilities,
)
from featurestore.tables.browser_feature_count import (
    BrowserFeatureCountMetric,
    list_browser_feature_count_metric,
)
from featurestore.tables.browser_releases import BrowserRelease, upsert_browser_release
from featurestore.tables.web_features import WebFeature, sync_web_features


def _at(month: int) -> datetime:
    return datetime(2024, month, 1, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def seeded(client) -> None:
    sync_web_features(client, [WebFeature(f"f{i}", name=f"F{i}") for i in range(1, 6)])
    for version, month in [("100", 1), ("101", 2), ("102", 3), ("103", 4)]:
        upsert_browser_release(client, BrowserRelease("chrome", version, _at(month)))
    upsert_browser_release(client, BrowserRelease("firefox", "120", _at(2)))
    sync_browser_feature_availabilities(client, [
        BrowserFeatureAvailability("f1", "chrome", "100"),
        BrowserFeatureAvailability("f2", "chrome", "101"),
        BrowserFeatureAvailability("f3", "chrome", "101"),
        BrowserFeatureAvailability("f4", "chrome", "103"),
        BrowserFeatureAvailability("f5", "firefox", "120"),
    ])


def test_counts_are_cumulative_from_the_start(client) -> None:
    page = list_browser_feature_count_metric(client, "chrome", _at(1), _at(12), 10)

    assert page.items == [
        BrowserFeatureCountMetric(_at(1), 1),
        BrowserFeatureCountMetric(_at(2), 3),
        BrowserFeatureCountMetric(_at(3), 3),
        BrowserFeatureCountMetric(_at(4), 4),
    ]
    assert page.next_page_token is None


def test_window_starts_from_everything_released_before_it(client) -> None:
    page = list_browser_feature_count_metric(client, "chrome", _at(2), _at(4), 10)

    assert [(m.release_date, m.feature_count) for m in page.items] == [(_at(2), 3), (_at(3), 3)]


def test_cursor_carries_the_running_total(client) -> None:
    counts = []
    token = None
    while True:
        page = list_browser_feature_count_metric(client, "chrome", _at(2), _at(12), 1, token)
        counts.extend(m.feature_count for m in page.items)
        token = page.next_page_token
        if token is None:
            break

    assert counts == [3, 3, 4]


def test_other_browsers_are_not_counted(client) -> None:
    page = list_browser_feature_count_metric(client, "firefox", _at(1), _at(12), 10)
    assert page.items == [BrowserFeatureCountMetric(_at(2), 1)]


def test_unknown_browser_yields_empty_page(client) -> None:
    page = list_browser_feature_count_metric(client, "safari", _at(1), _at(12), 10)
    assert page.items == []
    assert page.next_page_token is None
