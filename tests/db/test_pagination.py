from __future__ import annotations

from dataclasses import dataclass

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import sqlite

from featurestore.db.cursor import decode_cursor
from featurestore.db.mutations import Mutation
from featurestore.db.pagination import SortKey, build_page, keyset_filter
from featurestore.schema import browser_releases, web_features


@dataclass
class NameCursor:
    last_name: str


def _sql(clause) -> str:
    return str(clause.compile(dialect=sqlite.dialect(), compile_kwargs={"literal_binds": True}))


def test_single_key_filter() -> None:
    clause = keyset_filter([SortKey(web_features.c.feature_key, "grid")])
    assert _sql(clause) == '"WebFeatures".feature_key > \'grid\''


def test_descending_key_with_tie_breaker() -> None:
    c = browser_releases.c
    clause = keyset_filter([
        SortKey(c.browser_name, "chrome", descending=True),
        SortKey(c.browser_version, "120"),
    ])
    sql = _sql(clause)
    assert "browser_name < 'chrome'" in sql
    assert "browser_name = 'chrome' AND \"BrowserReleases\".browser_version > '120'" in sql
    assert " OR " in sql


def test_keyset_filter_needs_keys() -> None:
    with pytest.raises(ValueError):
        keyset_filter([])


def test_build_page_emits_token_only_for_full_pages() -> None:
    full = build_page(["a", "b"], 2, lambda item: NameCursor(last_name=item))
    assert full.next_page_token is not None
    assert decode_cursor(NameCursor, full.next_page_token) == NameCursor("b")

    short = build_page(["a"], 2, lambda item: NameCursor(last_name=item))
    assert short.next_page_token is None
    assert build_page([], 2, lambda item: NameCursor(last_name=item)).next_page_token is None


def test_build_page_rejects_bad_page_size() -> None:
    with pytest.raises(ValueError):
        build_page([], 0, lambda item: NameCursor(last_name=item))


def test_keyset_pages_cover_every_row_once(client) -> None:
    names = ["b", "a", "d", "c", "e"]
    client.factory.run_read_write(lambda s: s.buffer_write([
        Mutation.insert("WebFeatures", {
            "id": str(i), "feature_key": n, "name": n, "description": "", "description_html": "",
        })
        for i, n in enumerate(names)
    ]))

    seen = []
    token = None
    while True:
        stmt = select(web_features.c.feature_key).order_by(web_features.c.feature_key).limit(2)
        if token:
            cursor = decode_cursor(NameCursor, token)
            stmt = stmt.where(keyset_filter([SortKey(web_features.c.feature_key, cursor.last_name)]))
        with client.factory.session(read_only=True) as session:
            rows = [r["feature_key"] for r in session.fetch_all(stmt)]
        page = build_page(rows, 2, lambda key: NameCursor(last_name=key))
        seen.extend(page.items)
        token = page.next_page_token
        if token is None:
            break

    assert seen == sorted(names)
