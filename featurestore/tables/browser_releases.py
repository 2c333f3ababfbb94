from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping

from sqlalchemy import select

from ..db.cursor import decode_cursor
from ..db.entity import EntityReader, EntityWriter, decode_row, run_read_only
from ..db.helpers import as_utc, translate_errors
from ..db.pagination import Page, SortKey, build_page, keyset_filter
from ..db.session import DbSession
from ..schema import browser_releases

if TYPE_CHECKING:
    from ..client import Client

BROWSER_RELEASES_TABLE = browser_releases.name


@dataclass
class BrowserRelease:
    browser_name: str
    browser_version: str
    release_date: datetime


@dataclass(frozen=True)
class BrowserReleaseKey:
    browser_name: str
    browser_version: str


@dataclass
class BrowserReleaseCursor:
    last_release_date: datetime
    last_browser_name: str
    last_browser_version: str


class BrowserReleaseMapper:
    def table(self) -> str:
        return BROWSER_RELEASES_TABLE

    def select_one(self, key: BrowserReleaseKey):
        return select(browser_releases).where(
            browser_releases.c.browser_name == key.browser_name,
            browser_releases.c.browser_version == key.browser_version,
        )

    def from_row(self, row: Mapping[str, Any]) -> BrowserRelease:
        return BrowserRelease(
            browser_name=row["browser_name"],
            browser_version=row["browser_version"],
            release_date=as_utc(row["release_date"]),
        )

    def to_row(self, internal: BrowserRelease) -> dict[str, Any]:
        return {
            "browser_name": internal.browser_name,
            "browser_version": internal.browser_version,
            "release_date": internal.release_date,
        }

    def get_key_from_external(self, entity: BrowserRelease) -> BrowserReleaseKey:
        return BrowserReleaseKey(entity.browser_name, entity.browser_version)

    def new_entity(self, entity: BrowserRelease) -> BrowserRelease:
        return replace(entity, release_date=as_utc(entity.release_date))

    def merge_and_check_changed(
        self, entity: BrowserRelease, existing: BrowserRelease
    ) -> tuple[BrowserRelease, bool]:
        merged = replace(existing, release_date=as_utc(entity.release_date))
        return merged, merged.release_date != existing.release_date


def upsert_browser_release(
    client: "Client",
    release: BrowserRelease,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> None:
    EntityWriter(client, BrowserReleaseMapper()).upsert(release, session, cancel=cancel)


def get_browser_release(
    client: "Client",
    browser_name: str,
    browser_version: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> BrowserRelease:
    key = BrowserReleaseKey(browser_name, browser_version)
    return EntityReader(client, BrowserReleaseMapper()).read_row_by_key(key, session, cancel=cancel)


def list_browser_releases_paged(
    client: "Client",
    page_size: int,
    page_token: str | None = None,
    *,
    browser_name: str | None = None,
    session: DbSession | None = None,
    cancel: threading.Event | None = None,
) -> Page[BrowserRelease]:
    """Newest release first; browser name and version break ties."""
    c = browser_releases.c
    stmt = (
        select(browser_releases)
        .order_by(c.release_date.desc(), c.browser_name, c.browser_version)
        .limit(page_size)
    )
    if browser_name is not None:
        stmt = stmt.where(c.browser_name == browser_name)
    if page_token:
        cursor = decode_cursor(BrowserReleaseCursor, page_token)
        stmt = stmt.where(
            keyset_filter([
                SortKey(c.release_date, cursor.last_release_date, descending=True),
                SortKey(c.browser_name, cursor.last_browser_name),
                SortKey(c.browser_version, cursor.last_browser_version),
            ])
        )

    mapper = BrowserReleaseMapper()

    def _list(s: DbSession) -> list[BrowserRelease]:
        return [decode_row(mapper, row) for row in s.fetch_all(stmt)]

    with translate_errors("list BrowserReleases"):
        items = run_read_only(client, _list, session, cancel)
    return build_page(
        items,
        page_size,
        lambda r: BrowserReleaseCursor(
            last_release_date=r.release_date,
            last_browser_name=r.browser_name,
            last_browser_version=r.browser_version,
        ),
    )
