from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from featurestore.errors import (
    MissingRequiredRole,
    OwnerCannotDeleteBookmark,
    OwnerSavedSearchLimitExceeded,
    QueryReturnedNoResults,
    UserSearchBookmarkLimitExceeded,
)
from featurestore.schema import saved_search_state, saved_search_user_roles, user_saved_search_bookmarks
from featurestore.tables.saved_search_state import try_acquire_saved_search_state_worker_lock
from featurestore.tables.saved_searches import (
    CreateUserSavedSearchRequest,
    UpdateSavedSearchRequest,
    UserSavedSearchBookmark,
    add_user_search_bookmark,
    create_user_saved_search,
    delete_user_saved_search,
    delete_user_search_bookmark,
    get_saved_search,
    get_user_saved_search,
    list_user_saved_searches_paged,
    update_user_saved_search,
)


def _create(client, owner: str = "alice", name: str = "My search", query: str = "baseline_status:limited") -> str:
    return create_user_saved_search(client, CreateUserSavedSearchRequest(name=name, query=query, owner_user_id=owner))


def _count(client, table) -> int:
    with client.factory.session(read_only=True) as session:
        return session.execute_scalar(select(func.count()).select_from(table))


class TestCreate:
    def test_owner_role_and_bookmark_are_created(self, client) -> None:
        search_id = _create(client)

        search = get_user_saved_search(client, search_id, "alice")
        assert search.name == "My search"
        assert search.role == "OWNER"
        assert search.is_bookmarked is True
        assert search.author_id == "alice"
        assert search.created_at == search.updated_at == client.time_now()

    def test_quota_is_enforced(self, client) -> None:
        for i in range(3):
            _create(client, name=f"s{i}")

        with pytest.raises(OwnerSavedSearchLimitExceeded):
            _create(client, name="one too many")
        assert _count(client, saved_search_user_roles) == 3

    def test_quota_is_per_user(self, client) -> None:
        for i in range(3):
            _create(client, name=f"s{i}")
        _create(client, owner="bob")


class TestGet:
    def test_without_user_has_no_role(self, client) -> None:
        search_id = _create(client)
        search = get_user_saved_search(client, search_id)
        assert search.role is None
        assert search.is_bookmarked is None

    def test_other_user_sees_no_role(self, client) -> None:
        search_id = _create(client)
        search = get_user_saved_search(client, search_id, "bob")
        assert search.role is None
        assert search.is_bookmarked is False

    def test_missing_raises_not_found(self, client) -> None:
        with pytest.raises(QueryReturnedNoResults):
            get_saved_search(client, "nope")


class TestUpdate:
    def test_owner_can_update_and_timestamp_moves(self, client, clock) -> None:
        search_id = _create(client)
        created = get_saved_search(client, search_id)
        clock.advance(timedelta(minutes=10))

        update_user_saved_search(
            client, UpdateSavedSearchRequest(id=search_id, author_id="alice", name="Renamed", description="d")
        )

        updated = get_saved_search(client, search_id)
        assert updated.name == "Renamed"
        assert updated.query == created.query
        assert updated.description == "d"
        assert updated.updated_at == created.updated_at + timedelta(minutes=10)

    def test_no_change_keeps_timestamp(self, client, clock) -> None:
        search_id = _create(client)
        before = get_saved_search(client, search_id).updated_at
        clock.advance(timedelta(minutes=10))

        update_user_saved_search(client, UpdateSavedSearchRequest(id=search_id, author_id="alice", name="My search"))

        assert get_saved_search(client, search_id).updated_at == before

    def test_non_owner_is_refused(self, client) -> None:
        search_id = _create(client)
        with pytest.raises(MissingRequiredRole):
            update_user_saved_search(client, UpdateSavedSearchRequest(id=search_id, author_id="bob", name="x"))
        assert get_saved_search(client, search_id).name == "My search"


class TestDelete:
    def test_owner_delete_cascades(self, client) -> None:
        search_id = _create(client)
        add_user_search_bookmark(client, UserSavedSearchBookmark("bob", search_id))
        try_acquire_saved_search_state_worker_lock(client, search_id, "WEEKLY", "w1", timedelta(minutes=1))

        delete_user_saved_search(client, search_id, "alice")

        with pytest.raises(QueryReturnedNoResults):
            get_saved_search(client, search_id)
        assert _count(client, saved_search_user_roles) == 0
        assert _count(client, user_saved_search_bookmarks) == 0
        assert _count(client, saved_search_state) == 0

    def test_non_owner_is_refused(self, client) -> None:
        search_id = _create(client)
        with pytest.raises(MissingRequiredRole):
            delete_user_saved_search(client, search_id, "bob")
        assert get_saved_search(client, search_id).id == search_id


class TestBookmarks:
    def test_add_and_remove(self, client) -> None:
        search_id = _create(client)
        add_user_search_bookmark(client, UserSavedSearchBookmark("bob", search_id))
        assert get_user_saved_search(client, search_id, "bob").is_bookmarked is True

        delete_user_search_bookmark(client, UserSavedSearchBookmark("bob", search_id))
        assert get_user_saved_search(client, search_id, "bob").is_bookmarked is False

    def test_adding_twice_is_idempotent(self, client) -> None:
        search_id = _create(client)
        add_user_search_bookmark(client, UserSavedSearchBookmark("bob", search_id))
        add_user_search_bookmark(client, UserSavedSearchBookmark("bob", search_id))
        assert _count(client, user_saved_search_bookmarks) == 2  # alice's own plus bob's

    def test_bookmark_limit_ignores_owned_searches(self, client) -> None:
        ids = [_create(client, owner="alice", name=f"s{i}") for i in range(3)]
        bob_own = _create(client, owner="bob", name="bob's")
        assert bob_own

        add_user_search_bookmark(client, UserSavedSearchBookmark("bob", ids[0]))
        add_user_search_bookmark(client, UserSavedSearchBookmark("bob", ids[1]))
        with pytest.raises(UserSearchBookmarkLimitExceeded):
            add_user_search_bookmark(client, UserSavedSearchBookmark("bob", ids[2]))

    def test_owner_cannot_remove_own_bookmark(self, client) -> None:
        search_id = _create(client)
        with pytest.raises(OwnerCannotDeleteBookmark):
            delete_user_search_bookmark(client, UserSavedSearchBookmark("alice", search_id))

    def test_bookmark_on_missing_search_raises_not_found(self, client) -> None:
        with pytest.raises(QueryReturnedNoResults):
            add_user_search_bookmark(client, UserSavedSearchBookmark("bob", "nope"))

    def test_removing_missing_bookmark_raises_not_found(self, client) -> None:
        search_id = _create(client)
        with pytest.raises(QueryReturnedNoResults):
            delete_user_search_bookmark(client, UserSavedSearchBookmark("bob", search_id))


class TestList:
    def test_lists_bookmarked_searches_by_name(self, client) -> None:
        mine = [_create(client, owner="bob", name=n) for n in ["zeta", "alpha"]]
        others = _create(client, owner="alice", name="middle")
        _create(client, owner="alice", name="not bookmarked")
        add_user_search_bookmark(client, UserSavedSearchBookmark("bob", others))

        first = list_user_saved_searches_paged(client, "bob", 2)
        second = list_user_saved_searches_paged(client, "bob", 2, first.next_page_token)

        assert [s.name for s in first.items] == ["alpha", "middle"]
        assert [s.name for s in second.items] == ["zeta"]
        assert second.next_page_token is None
        assert {s.role for s in first.items} == {"OWNER", None}
        assert all(s.is_bookmarked for s in first.items + second.items)
        assert set(mine) <= {s.id for s in first.items + second.items}
