from __future__ import annotations

import threading
import uuid
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from sqlalchemy import select

from ..db.cursor import decode_cursor
from ..db.entity import (
    EntityCreator,
    EntityMutator,
    EntityReader,
    EntityRemover,
    decode_row,
    run_read_only,
    run_read_write,
)
from ..db.helpers import as_utc, translate_errors
from ..db.mutations import COMMIT_TIMESTAMP, Mutation
from ..db.pagination import Page, SortKey, build_page, keyset_filter
from ..db.session import DbSession
from ..errors import MissingRequiredRole, QueryReturnedNoResults
from ..schema import notification_channels

if TYPE_CHECKING:
    from ..client import Client

NOTIFICATION_CHANNELS_TABLE = notification_channels.name


class NotificationChannelType(str, Enum):
    EMAIL = "email"


@dataclass
class EmailConfig:
    address: str = ""
    is_verified: bool = False
    verification_token: str | None = None

    def to_json(self) -> dict[str, Any]:
        # Empty values are omitted from the stored document.
        return {k: v for k, v in asdict(self).items() if v not in (None, "", False)}

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "EmailConfig":
        return cls(
            address=data.get("address", ""),
            is_verified=bool(data.get("is_verified", False)),
            verification_token=data.get("verification_token"),
        )


@dataclass
class NotificationChannel:
    id: str
    user_id: str
    name: str
    type: str
    email_config: EmailConfig | None
    created_at: datetime
    updated_at: datetime


@dataclass
class CreateNotificationChannelRequest:
    user_id: str
    name: str
    type: NotificationChannelType = NotificationChannelType.EMAIL
    email_config: EmailConfig | None = None


@dataclass
class UpdateNotificationChannelRequest:
    """Fields left as None are not changed."""
    id: str
    user_id: str
    name: str | None = None
    email_config: EmailConfig | None = None


@dataclass
class NotificationChannelCursor:
    last_id: str
    last_updated_at: datetime


class NotificationChannelMapper:
    def table(self) -> str:
        return NOTIFICATION_CHANNELS_TABLE

    def select_one(self, key: str):
        return select(notification_channels).where(notification_channels.c.id == key)

    def from_row(self, row: Mapping[str, Any]) -> NotificationChannel:
        config = row["config"]
        return NotificationChannel(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            type=row["type"],
            email_config=EmailConfig.from_json(config) if config is not None else None,
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
        )

    def to_row(self, internal: NotificationChannel) -> dict[str, Any]:
        return {
            "id": internal.id,
            "user_id": internal.user_id,
            "name": internal.name,
            "type": internal.type,
            "config": internal.email_config.to_json() if internal.email_config is not None else None,
            "created_at": internal.created_at,
            "updated_at": internal.updated_at,
        }

    def new_entity(self, request: CreateNotificationChannelRequest) -> NotificationChannel:
        return NotificationChannel(
            id=str(uuid.uuid4()),
            user_id=request.user_id,
            name=request.name,
            type=NotificationChannelType(request.type).value,
            email_config=request.email_config,
            created_at=COMMIT_TIMESTAMP,
            updated_at=COMMIT_TIMESTAMP,
        )

    def delete_mutation(self, internal: NotificationChannel) -> Mutation:
        return Mutation.delete(NOTIFICATION_CHANNELS_TABLE, {"id": internal.id})


def _check_ownership(tx: DbSession, channel_id: str, user_id: str) -> None:
    found = tx.execute_scalar(
        select(notification_channels.c.id).where(
            notification_channels.c.id == channel_id,
            notification_channels.c.user_id == user_id,
        )
    )
    if found is None:
        raise MissingRequiredRole(f"user {user_id} does not own notification channel {channel_id}")


def create_notification_channel(
    client: "Client",
    request: CreateNotificationChannelRequest,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> str:
    """Returns the id of the new channel."""
    return EntityCreator(client, NotificationChannelMapper()).create(request, session, cancel=cancel).id


def get_notification_channel(
    client: "Client",
    channel_id: str,
    user_id: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> NotificationChannel:
    """
    Raises:
        MissingRequiredRole: If the channel does not exist or belongs to someone else
    """
    def _get(s: DbSession) -> NotificationChannel:
        _check_ownership(s, channel_id, user_id)
        return EntityReader(client, NotificationChannelMapper()).read_row_by_key(channel_id, s)

    with translate_errors("read notification channel"):
        return run_read_only(client, _get, session, cancel)


def update_notification_channel(
    client: "Client",
    request: UpdateNotificationChannelRequest,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> None:
    mapper = NotificationChannelMapper()

    def _inspect(existing: NotificationChannel | None) -> Mutation | None:
        if existing is None:
            raise QueryReturnedNoResults(f"no notification channel {request.id}")
        merged = existing
        if request.name is not None:
            merged = replace(merged, name=request.name)
        if request.email_config is not None:
            merged = replace(merged, email_config=request.email_config)
        if merged == existing:
            return None
        return Mutation.update(
            NOTIFICATION_CHANNELS_TABLE,
            {
                "id": merged.id,
                "name": merged.name,
                "config": mapper.to_row(merged)["config"],
                "updated_at": COMMIT_TIMESTAMP,
            },
        )

    def _update(s: DbSession) -> None:
        _check_ownership(s, request.id, request.user_id)
        EntityMutator(client, mapper).read_inspect_mutate(request.id, _inspect, s)

    with translate_errors("update notification channel"):
        run_read_write(client, _update, session, cancel)


def delete_notification_channel(
    client: "Client",
    channel_id: str,
    user_id: str,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> None:
    def _delete(s: DbSession) -> None:
        _check_ownership(s, channel_id, user_id)
        EntityRemover(client, NotificationChannelMapper()).remove(channel_id, s)

    with translate_errors("delete notification channel"):
        run_read_write(client, _delete, session, cancel)


def list_notification_channels_paged(
    client: "Client",
    user_id: str,
    page_size: int,
    page_token: str | None = None,
    session: DbSession | None = None,
    *,
    cancel: threading.Event | None = None,
) -> Page[NotificationChannel]:
    """A user's channels, most recently updated first."""
    c = notification_channels.c
    stmt = (
        select(notification_channels)
        .where(c.user_id == user_id)
        .order_by(c.updated_at.desc(), c.id)
        .limit(page_size)
    )
    if page_token:
        cursor = decode_cursor(NotificationChannelCursor, page_token)
        stmt = stmt.where(
            keyset_filter([
                SortKey(c.updated_at, cursor.last_updated_at, descending=True),
                SortKey(c.id, cursor.last_id),
            ])
        )

    mapper = NotificationChannelMapper()

    def _list(s: DbSession) -> list[NotificationChannel]:
        return [decode_row(mapper, row) for row in s.fetch_all(stmt)]

    with translate_errors("list notification channels"):
        items = run_read_only(client, _list, session, cancel)
    return build_page(
        items,
        page_size,
        lambda ch: NotificationChannelCursor(last_id=ch.id, last_updated_at=ch.updated_at),
    )
