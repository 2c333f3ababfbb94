"""
Saved searches, the roles users hold on them, and user bookmarks.

User-created searches have scope USER_PUBLIC. Every web feature also owns
one SYSTEM_MANAGED search, linked through SystemManagedSavedSearches and
maintained by the web feature sync.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from sqlalchemy import and_, func, select

from ..db.cursor import decode_cursor
from ..db.entity import (
    EntityMutator,
    EntityReader,
    EntityRemover,
    EntityWriter,
    decode_row,
    run_read_only,
    run_read_write,
)
from ..db.helpers import as_utc, translate_errors
from ..db.mutations import COMMIT_TIMESTAMP, ExtraMutationsGroup, Mutation
from ..db.pagination import Page, SortKey, build_page, keyset_filter
from ..db.session import DbSession
from ..errors import (
    MissingRequiredRole,
    OwnerCannotDeleteBookmark,
    OwnerSavedSearchLimitExceeded,
    QueryReturnedNoResults,
    UserSearchBookmarkLimitExceeded,
)
from ..schema import saved_search_state as saved_search_state_table
from ..schema import saved_search_user_roles as roles_table
from ..schema import saved_searches as saved_searches_table
from ..schema import system_managed_saved_searches as system_managed_table
from ..schema import user_saved_search_bookmarks as bookmarks_table

if TYPE_CHECKING:
    from ..client import Client

logger = logging.getLogger(__name__)

SAVED_SEARCHES_TABLE = saved_searches_table.name
SAVED_SEARCH_USER_ROLES_TABLE = roles_table.name
USER_SAVED_SEARCH_BOOKMARKS_TABLE = bookmarks_table.name
SYSTEM_MANAGED_SAVED_SEARCHES_TABLE = system_managed_table.name

SYSTEM_AUTHOR_ID = "system"


class SavedSearchScope(str, Enum):
    USER_PUBLIC = "USER_PUBLIC"
    SYSTEM_MANAGED = "SYSTEM_MANAGED"


class SavedSearchRole(str, Enum):
    OWNER = "OWNER"


@dataclass
class SavedSearch:
    id: str
    name: str
    query: str
    scope: str
    author_id: str
    created_at: datetime
    updated_at: datetime
    description: str | None = None


@dataclass
class UserSavedSearch(SavedSearch):
    # Both stay None when the search is read without a user.
    role: str | None = None
    is_bookmarked: bool | None = None


@dataclass
class CreateUserSavedSearchRequest:
    name: str
    query: str
    owner_user_id: str
    description: str | None = None


@dataclass
class UpdateSavedSearchRequest:
    """None leaves the stored field unchanged."""
    id: str
    author_id: str
    name: str | None = None
    query: str | None = None
    description: str | None = None


@dataclass
class UserSavedSearchBookmark:
    user_id: str
    saved_search_id: str


@dataclass
class SystemManagedSavedSearch:
    feature_id: str
    saved_search_id: str
    created_at: datetime
    updated_at: datetime


@dataclass
class UserSavedSearchesCursor:
    last_id: str
    last_name: str


def system_saved_search_name(feature_key: str) -> str:
    return f"Feature {feature_key}"


def system_saved_search_query(feature_key: str) -> str:
    return f'id:"{feature_key}"'


def _saved_search_from_row(row: Mapping[str, Any]) -> SavedSearch:
    return SavedSearch(
        id=row["id"],
        name=row["name"],
        query=row["query"],
        scope=row["scope"],
        author_id=row["author_id"],
        created_at=as_utc(row["created_at"]),
        updated_at=as_utc(row["updated_at"]),
        description=row["description"],
    )


class SavedSearchMapper:
    """Saved searches by id; ``scope`` restricts reads to one scope."""

    def __init__(self, scope: SavedSearchScope | None = None) -> None:
        self.scope = scope

    def table(self) -> str:
        return SAVED_SEARCHES_TABLE

    def select_one(self, key: str):
        stmt = select(saved_searches_table).where(saved_searches_table.c.id == key)
        if self.scope is not None:
            stmt = stmt.where(saved_searches_table.c.scope == self.scope.value)
        return stmt

    def from_row(self, row: Mapping[str, Any]) -> SavedSearch:
        return _saved_search_from_row(row)

    def delete_mutation(self, internal: SavedSearch) -> Mutation:
        return Mutation.delete(SAVED_SEARCHES_TABLE, {"id": internal.id})

    def get_child_delete_key_mutations(
        self, tx: DbSession, to_delete: list[SavedSearch]
    ) -> list[ExtraMutationsGroup]:
        ids = [search.id for search in to_delete]
        groups = []
        for table in (roles_table, bookmarks_table, saved_search_state_table):
            rows = tx.fetch_all(select(table).where(table.c.saved_search_id.in_(ids)))
            mutations = [
                Mutation.delete(table.name, {col.name: row[col.name] for col in table.primary_key.columns})
                for row in rows
            ]
            if mutations:
                groups.append(ExtraMutationsGroup(table.name, mutations))
        return groups


@dataclass(frozen=True)
class UserSavedSearchKey:
    id: str
    user_id: str


class UserSavedSearchMapper:
    """A USER_PUBLIC search joined with one user's role and bookmark."""

    def table(self) -> str:
        return SAVED_SEARCHES_TABLE

    def select_one(self, key: UserSavedSearchKey):
        return _user_saved_search_select(key.user_id, bookmarked_only=False).where(
            saved_searches_table.c.id == key.id
        )

    def from_row(self, row: Mapping[str, Any]) -> UserSavedSearch:
        search = _saved_search_from_row(row)
        return UserSavedSearch(
            **vars(search),
            role=row["role"],
            is_bookmarked=row["bookmark_user_id"] is not None,
        )


def _user_saved_search_select(user_id: str, *, bookmarked_only: bool):
    s, r, b = saved_searches_table, roles_table, bookmarks_table
    joined = s.outerjoin(r, and_(s.c.id == r.c.saved_search_id, r.c.user_id == user_id))
    bookmark_on = and_(s.c.id == b.c.saved_search_id, b.c.user_id == user_id)
    joined = joined.join(b, bookmark_on) if bookmarked_only else joined.outerjoin(b, bookmark_on)
    return (
        select(s, r.c.user_role.label("role"), b.c.user_id.label("bookmark_user_id"))
        .select_from(joined)
        .where(s.c.scope == SavedSearchScope.USER_PUBLIC.value)
    )


class BookmarkMapper:
    def table(self) -> str:
        return USER_SAVED_SEARCH_BOOKMARKS_TABLE

    def select_one(self, key: UserSavedSearchBookmark):
        return select(bookmarks_table).where(
            bookmarks_table.c.user_id == key.user_id,
            bookmarks_table.c.saved_search_id == key.saved_search_id,
        )

    def from_row(self, row: Mapping[str, Any]) -> UserSavedSearchBookmark:
        return UserSavedSearchBookmark(user_id=row["user_id"], saved_search_id=row["saved_search_id"])

    def to_row(self, internal: UserSavedSearchBookmark) -> dict[str, Any]:
        return {"user_id": internal.user_id, "saved_search_id": internal.saved_search_id}

    def get_key_from_external(self, entity: UserSavedSearchBookmark) -> UserSavedSearchBookmark:
        return entity

    def new_entity(self, entity: UserSavedSearchBookmark) -> UserSavedSearchBookmark:
        return entity

    def merge_and_check_changed(
        self, entity: UserSavedSearchBookmark, existing: UserSavedSearchBookmark
    ) -> tuple[UserSavedSearchBookmark, bool]:
        return existing, False

    def delete_mutation(self, internal: UserSavedSearchBookmark) -> Mutation:
        return Mutation.delete(USER_SAVED_SEARCH_BOOKMARKS_TABLE, self.to_row(internal))


def _user_role(tx: DbSession, saved_search_id: str, user_id: str) -> str | None:
    return tx.execute_scalar(
        select(roles_table.c.user_role).where(
            roles_table.c.saved_search_id == saved_search_id,
            roles_table.c.user_id == user_id,
        )
    )


def _require_owner(tx: DbSession, saved_search_id: str, user_id: str) -> None:
    if _user_role(tx, saved_search_id, user_id) != SavedSearchRole.OWNER.value:
        raise MissingRequiredRole(f"user {user_id} does not own saved search {saved_search_id}")


def create_user_saved_search(
    client: "Client",
    request: CreateUserSavedSearchRequest,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> str:
    """
    Create a USER_PUBLIC search owned and bookmarked by its author.

    Raises:
        OwnerSavedSearchLimitExceeded: If the owner is already at the
            configured maximum of owned searches; nothing is written
    """
    search_id = str(uuid.uuid4())
    limit = client.search_config.max_owned_searches_per_user

    def _create(s: DbSession) -> str:
        owned = s.execute_scalar(
            select(func.count()).select_from(roles_table).where(
                roles_table.c.user_id == request.owner_user_id,
                roles_table.c.user_role == SavedSearchRole.OWNER.value,
            )
        )
        if (owned or 0) >= limit:
            raise OwnerSavedSearchLimitExceeded(
                f"user {request.owner_user_id} already owns {owned} saved searches (limit {limit})"
            )
        s.buffer_write([
            Mutation.insert(SAVED_SEARCHES_TABLE, {
                "id": search_id,
                "name": request.name,
                "query": request.query,
                "description": request.description,
                "scope": SavedSearchScope.USER_PUBLIC.value,
                "author_id": request.owner_user_id,
                "created_at": COMMIT_TIMESTAMP,
                "updated_at": COMMIT_TIMESTAMP,
            }),
            Mutation.insert(SAVED_SEARCH_USER_ROLES_TABLE, {
                "saved_search_id": search_id,
                "user_id": request.owner_user_id,
                "user_role": SavedSearchRole.OWNER.value,
            }),
            Mutation.insert(USER_SAVED_SEARCH_BOOKMARKS_TABLE, {
                "user_id": request.owner_user_id,
                "saved_search_id": search_id,
            }),
        ])
        return search_id

    with translate_errors("create saved search"):
        return run_read_write(client, _create, session, cancel)


def get_saved_search(
    client: "Client",
    saved_search_id: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> SavedSearch:
    """Any saved search by id, regardless of scope."""
    return EntityReader(client, SavedSearchMapper()).read_row_by_key(saved_search_id, session, cancel=cancel)


def get_user_saved_search(
    client: "Client",
    saved_search_id: str,
    user_id: str | None = None,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> UserSavedSearch:
    """
    A USER_PUBLIC search. With ``user_id`` the result carries that user's
    role and bookmark state; without it both are None.
    """
    if user_id is None:
        search = EntityReader(client, SavedSearchMapper(SavedSearchScope.USER_PUBLIC)).read_row_by_key(
            saved_search_id, session, cancel=cancel
        )
        return UserSavedSearch(**vars(search))
    key = UserSavedSearchKey(id=saved_search_id, user_id=user_id)
    return EntityReader(client, UserSavedSearchMapper()).read_row_by_key(key, session, cancel=cancel)


def update_user_saved_search(
    client: "Client",
    request: UpdateSavedSearchRequest,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> None:
    """
    Raises:
        MissingRequiredRole: If the author does not own the search
        QueryReturnedNoResults: If there is no USER_PUBLIC search with this id
    """
    mapper = SavedSearchMapper(SavedSearchScope.USER_PUBLIC)

    def _inspect(existing: SavedSearch | None) -> Mutation | None:
        if existing is None:
            raise QueryReturnedNoResults(f"no saved search {request.id}")
        values = {
            "id": existing.id,
            "name": request.name or existing.name,
            "query": request.query or existing.query,
            "description": request.description if request.description is not None else existing.description,
        }
        if (values["name"], values["query"], values["description"]) == (
            existing.name, existing.query, existing.description
        ):
            return None
        values["updated_at"] = COMMIT_TIMESTAMP
        return Mutation.update(SAVED_SEARCHES_TABLE, values)

    def _update(s: DbSession) -> None:
        _require_owner(s, request.id, request.author_id)
        EntityMutator(client, mapper).read_inspect_mutate(request.id, _inspect, s)

    with translate_errors("update saved search"):
        run_read_write(client, _update, session, cancel)


def delete_user_saved_search(
    client: "Client",
    saved_search_id: str,
    user_id: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> None:
    """
    Delete a search together with its roles, bookmarks and notification state.

    Raises:
        MissingRequiredRole: If the user does not own the search
    """
    mapper = SavedSearchMapper(SavedSearchScope.USER_PUBLIC)

    def _delete(s: DbSession) -> None:
        _require_owner(s, saved_search_id, user_id)
        EntityRemover(client, mapper).remove(saved_search_id, s)

    with translate_errors("delete saved search"):
        run_read_write(client, _delete, session, cancel)
    logger.info("user %s deleted saved search %s", user_id, saved_search_id)


def list_user_saved_searches_paged(
    client: "Client",
    user_id: str,
    page_size: int,
    page_token: str | None = None,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> Page[UserSavedSearch]:
    """
    Searches bookmarked by the user (owned searches are always bookmarked),
    ordered by name with id as tie-breaker.
    """
    s = saved_searches_table
    stmt = _user_saved_search_select(user_id, bookmarked_only=True).order_by(s.c.name, s.c.id).limit(page_size)
    if page_token:
        cursor = decode_cursor(UserSavedSearchesCursor, page_token)
        stmt = stmt.where(keyset_filter([SortKey(s.c.name, cursor.last_name), SortKey(s.c.id, cursor.last_id)]))

    mapper = UserSavedSearchMapper()

    def _list(tx: DbSession) -> list[UserSavedSearch]:
        return [decode_row(mapper, row) for row in tx.fetch_all(stmt)]

    with translate_errors("list saved searches"):
        items = run_read_only(client, _list, session, cancel)
    return build_page(items, page_size, lambda r: UserSavedSearchesCursor(last_id=r.id, last_name=r.name))


def add_user_search_bookmark(
    client: "Client",
    bookmark: UserSavedSearchBookmark,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> None:
    """
    Raises:
        QueryReturnedNoResults: If there is no USER_PUBLIC search with this id
        UserSearchBookmarkLimitExceeded: If the user is at the bookmark limit
    """
    limit = client.search_config.max_bookmarks_per_user

    def _add(s: DbSession) -> None:
        EntityReader(client, SavedSearchMapper(SavedSearchScope.USER_PUBLIC)).read_row_by_key(
            bookmark.saved_search_id, s
        )
        # Bookmarks on the user's own searches do not count.
        b, r = bookmarks_table, roles_table
        count = s.execute_scalar(
            select(func.count()).select_from(
                b.outerjoin(r, and_(b.c.saved_search_id == r.c.saved_search_id, b.c.user_id == r.c.user_id))
            ).where(
                b.c.user_id == bookmark.user_id,
                (r.c.user_role != SavedSearchRole.OWNER.value) | r.c.user_role.is_(None),
            )
        )
        if (count or 0) >= limit:
            raise UserSearchBookmarkLimitExceeded(
                f"user {bookmark.user_id} already has {count} bookmarks (limit {limit})"
            )
        EntityWriter(client, BookmarkMapper()).upsert(bookmark, s)

    with translate_errors("add bookmark"):
        run_read_write(client, _add, session, cancel)


def delete_user_search_bookmark(
    client: "Client",
    bookmark: UserSavedSearchBookmark,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> None:
    """
    Raises:
        QueryReturnedNoResults: If the search or the bookmark does not exist
        OwnerCannotDeleteBookmark: If the user owns the search
    """
    def _delete(s: DbSession) -> None:
        EntityReader(client, SavedSearchMapper(SavedSearchScope.USER_PUBLIC)).read_row_by_key(
            bookmark.saved_search_id, s
        )
        if _user_role(s, bookmark.saved_search_id, bookmark.user_id) == SavedSearchRole.OWNER.value:
            raise OwnerCannotDeleteBookmark(
                f"user {bookmark.user_id} owns saved search {bookmark.saved_search_id}"
            )
        EntityRemover(client, BookmarkMapper()).remove(bookmark, s)

    with translate_errors("delete bookmark"):
        run_read_write(client, _delete, session, cancel)


# System-managed searches, maintained by the web feature sync.


def _system_managed_from_row(row: Mapping[str, Any]) -> SystemManagedSavedSearch:
    return SystemManagedSavedSearch(
        feature_id=row["feature_id"],
        saved_search_id=row["saved_search_id"],
        created_at=as_utc(row["created_at"]),
        updated_at=as_utc(row["updated_at"]),
    )


def find_system_managed_saved_search(tx: DbSession, feature_id: str) -> SystemManagedSavedSearch | None:
    row = tx.fetch_one(select(system_managed_table).where(system_managed_table.c.feature_id == feature_id))
    return _system_managed_from_row(row) if row is not None else None


def list_system_managed_saved_searches(tx: DbSession, feature_ids: list[str]) -> list[SystemManagedSavedSearch]:
    if not feature_ids:
        return []
    rows = tx.fetch_all(
        select(system_managed_table).where(system_managed_table.c.feature_id.in_(feature_ids))
    )
    return [_system_managed_from_row(row) for row in rows]


def get_system_managed_saved_search_by_feature_id(
    client: "Client",
    feature_id: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> SystemManagedSavedSearch:
    """
    Raises:
        QueryReturnedNoResults: If the feature has no system-managed search
    """
    def _get(s: DbSession) -> SystemManagedSavedSearch:
        found = find_system_managed_saved_search(s, feature_id)
        if found is None:
            raise QueryReturnedNoResults(f"no system-managed saved search for feature {feature_id}")
        return found

    with translate_errors("read system-managed saved search"):
        return run_read_only(client, _get, session, cancel)


def system_managed_saved_search_mutations(feature_id: str, feature_key: str, feature_name: str) -> list[Mutation]:
    search_id = str(uuid.uuid4())
    return [
        Mutation.insert(SAVED_SEARCHES_TABLE, {
            "id": search_id,
            "name": system_saved_search_name(feature_key),
            "query": system_saved_search_query(feature_key),
            "description": f"A system-managed saved search for the feature {feature_name}",
            "scope": SavedSearchScope.SYSTEM_MANAGED.value,
            "author_id": SYSTEM_AUTHOR_ID,
            "created_at": COMMIT_TIMESTAMP,
            "updated_at": COMMIT_TIMESTAMP,
        }),
        Mutation.insert(SYSTEM_MANAGED_SAVED_SEARCHES_TABLE, {
            "feature_id": feature_id,
            "saved_search_id": search_id,
            "created_at": COMMIT_TIMESTAMP,
            "updated_at": COMMIT_TIMESTAMP,
        }),
    ]


def move_system_managed_saved_search(
    tx: DbSession,
    source_id: str,
    target_id: str,
    target_key: str,
    *,
    target_has_search: bool,
) -> tuple[list[Mutation], list[Mutation]]:
    """
    Hand the source feature's system-managed search to the target feature.

    Returns (saved search mutations, system-managed link mutations). The
    source link itself is deleted with the source feature's children.
    When the target already has a search (stored or staged earlier in the
    same transaction) the source's is dropped instead.
    """
    source = find_system_managed_saved_search(tx, source_id)
    if source is None:
        logger.warning("system-managed saved search for feature %s not found, skipping move", source_id)
        return [], []

    if target_has_search:
        return [Mutation.delete(SAVED_SEARCHES_TABLE, {"id": source.saved_search_id})], []

    search_mutations = [
        Mutation.update(SAVED_SEARCHES_TABLE, {
            "id": source.saved_search_id,
            "name": system_saved_search_name(target_key),
            "query": system_saved_search_query(target_key),
            "updated_at": COMMIT_TIMESTAMP,
        })
    ]
    link_mutations = [
        Mutation.insert(SYSTEM_MANAGED_SAVED_SEARCHES_TABLE, {
            "feature_id": target_id,
            "saved_search_id": source.saved_search_id,
            "created_at": COMMIT_TIMESTAMP,
            "updated_at": COMMIT_TIMESTAMP,
        })
    ]
    return search_mutations, link_mutations
