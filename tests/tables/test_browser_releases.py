from __future__ import annotations

from datetime import datetime, timezone

import pytest

from featurestore.errors import QueryReturnedNoResults
from featurestore.tables.browser_releases import (
    BrowserRelease,
    get_browser_release,
    list_browser_releases_paged,
    upsert_browser_release,
)


def _at(month: int, day: int = 1) -> datetime:
    return datetime(2024, month, day, tzinfo=timezone.utc)


def test_upsert_overwrites_release_date(client) -> None:
    upsert_browser_release(client, BrowserRelease("chrome", "120", _at(1)))
    upsert_browser_release(client, BrowserRelease("chrome", "120", _at(2)))

    assert get_browser_release(client, "chrome", "120").release_date == _at(2)


def test_missing_release_raises_not_found(client) -> None:
    with pytest.raises(QueryReturnedNoResults):
        get_browser_release(client, "chrome", "1")


def test_list_orders_newest_first_with_ties_by_name_and_version(client) -> None:
    releases = [
        BrowserRelease("chrome", "120", _at(1)),
        BrowserRelease("firefox", "121", _at(3)),
        BrowserRelease("chrome", "121", _at(3)),
        BrowserRelease("safari", "17", _at(2)),
        BrowserRelease("edge", "121", _at(3)),
    ]
    for release in releases:
        upsert_browser_release(client, release)

    seen = []
    token = None
    while True:
        page = list_browser_releases_paged(client, 2, token)
        seen.extend((r.browser_name, r.browser_version) for r in page.items)
        token = page.next_page_token
        if token is None:
            break

    assert seen == [
        ("chrome", "121"),
        ("edge", "121"),
        ("firefox", "121"),
        ("safari", "17"),
        ("chrome", "120"),
    ]


def test_list_filters_by_browser(client) -> None:
    upsert_browser_release(client, BrowserRelease("chrome", "120", _at(1)))
    upsert_browser_release(client, BrowserRelease("firefox", "121", _at(2)))
    upsert_browser_release(client, BrowserRelease("chrome", "121", _at(3)))

    first = list_browser_releases_paged(client, 1, browser_name="chrome")
    second = list_browser_releases_paged(client, 1, first.next_page_token, browser_name="chrome")

    assert [r.browser_version for r in first.items + second.items] == ["121", "120"]
