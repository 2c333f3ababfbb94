"""
Reconcile a full desired-state list against the rows stored for one table.

    synchronizer = EntitySynchronizer(client, WebFeatureMapper())
    result = synchronizer.sync(features)

After a successful sync the table holds exactly the business keys of the
desired list. Rows whose merge reports no change are not written at all.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from ..errors import DuplicateBusinessKey
from .entity import check_cancelled, decode_row
from .helpers import translate_errors
from .mapper import SyncableEntityMapper
from .metrics import observe_sync
from .mutations import Mutation, flatten_groups
from .session import DbSession

if TYPE_CHECKING:
    from ..client import Client

logger = logging.getLogger(__name__)

E = TypeVar("E")
I = TypeVar("I")  # noqa: E741
K = TypeVar("K")


@dataclass
class SyncResult:
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    # Mutations staged on other tables by mapper hooks.
    extra_mutations: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.inserted or self.updated or self.deleted or self.extra_mutations)


@dataclass
class SyncPlan:
    """
    Mutations computed for one sync pass, in the order they must be applied:
    upserts (with post-write mutations), pre-delete moves, child deletes,
    then the primary deletes.
    """
    upserts: list[Mutation] = field(default_factory=list)
    pre_delete: list[Mutation] = field(default_factory=list)
    child_deletes: list[Mutation] = field(default_factory=list)
    deletes: list[Mutation] = field(default_factory=list)
    result: SyncResult = field(default_factory=SyncResult)

    def ordered(self) -> list[Mutation]:
        return self.upserts + self.pre_delete + self.child_deletes + self.deletes

    def __len__(self) -> int:
        return len(self.upserts) + len(self.pre_delete) + len(self.child_deletes) + len(self.deletes)


def chunked(mutations: Sequence[Mutation], size: int) -> list[list[Mutation]]:
    return [list(mutations[i:i + size]) for i in range(0, len(mutations), size)]


class EntitySynchronizer(Generic[E, K, I]):
    """
    Set reconciliation over a SyncableEntityMapper.

    Duplicate business keys in the desired list are rejected with
    DuplicateBusinessKey before anything is read.

    Any error raised while planning (including a mapper failing to resolve
    a foreign business key in new_entity or merge_and_check_changed)
    aborts the sync before a single mutation is staged.

    When the plan fits in ``batch_size`` mutations it commits in the same
    transaction that read the stored rows. Larger plans are applied in
    ordered chunks, one transaction per chunk.
    """

    def __init__(
        self,
        client: "Client",
        mapper: SyncableEntityMapper[E, K, I],
        *,
        batch_size: int | None = None,
    ) -> None:
        self.client = client
        self.mapper = mapper
        self.batch_size = batch_size or client.db_config.sync_batch_size

    def _index_desired(self, desired: Sequence[E]) -> dict[K, E]:
        desired_by_key: dict[K, E] = {}
        for entity in desired:
            key = self.mapper.get_key_from_external(entity)
            if key in desired_by_key:
                raise DuplicateBusinessKey(
                    f"duplicate key {key!r} in desired {self.mapper.table()} list"
                )
            desired_by_key[key] = entity
        return desired_by_key

    def plan(self, session: DbSession, desired_by_key: dict[K, E]) -> SyncPlan:
        """Compute the mutations for one pass without staging them."""
        mapper = self.mapper
        table = mapper.table()
        plan = SyncPlan()

        prepare = getattr(mapper, "prepare", None)
        if prepare is not None:
            prepare(session)

        stored_by_key: dict[K, I] = {}
        for row in session.fetch_all(mapper.select_all(), for_update=True):
            internal = decode_row(mapper, row)
            stored_by_key[mapper.get_key_from_internal(internal)] = internal

        post_write_hook = getattr(mapper, "post_write_hook", None)
        inserted: dict[K, I] = {}
        for key, entity in desired_by_key.items():
            existing = stored_by_key.get(key)
            if existing is None:
                internal = mapper.new_entity(entity)
                inserted[key] = internal
                plan.upserts.append(Mutation.insert(table, mapper.to_row(internal)))
                plan.result.inserted += 1
                if post_write_hook is not None:
                    extra = post_write_hook(session, internal) or []
                    plan.upserts.extend(extra)
                    plan.result.extra_mutations += len(extra)
                continue

            merged, changed = mapper.merge_and_check_changed(entity, existing)
            if changed:
                plan.upserts.append(Mutation.insert_or_update(table, mapper.to_row(merged)))
                plan.result.updated += 1
            else:
                plan.result.unchanged += 1

        to_delete = [internal for key, internal in stored_by_key.items() if key not in desired_by_key]
        if to_delete:
            pre_delete_hook = getattr(mapper, "pre_delete_hook", None)
            if pre_delete_hook is not None:
                plan.pre_delete = flatten_groups(pre_delete_hook(session, to_delete, inserted))
            child_hook = getattr(mapper, "get_child_delete_key_mutations", None)
            if child_hook is not None:
                plan.child_deletes = flatten_groups(child_hook(session, to_delete))
            plan.deletes = [mapper.delete_mutation(internal) for internal in to_delete]
            plan.result.deleted = len(to_delete)
            plan.result.extra_mutations += len(plan.pre_delete) + len(plan.child_deletes)

        return plan

    def sync(
        self,
        desired: Sequence[E],
        session: DbSession | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> SyncResult:
        """
        Make the stored table match ``desired`` exactly.

        An empty list deletes every stored row. With a caller session the
        whole plan is buffered into it regardless of size.

        Raises:
            DuplicateBusinessKey: If two desired entities share a key
            OperationCancelled: If cancel is set before a transaction commits
            InternalQueryFailure: On any engine failure
        """
        table = self.mapper.table()
        desired_by_key = self._index_desired(desired)
        logger.info("syncing %d desired %s entities", len(desired_by_key), table)

        with translate_errors(f"sync {table}"):
            if session is not None:
                check_cancelled(cancel, f"sync {table}")
                plan = self.plan(session, desired_by_key)
                session.buffer_write(plan.ordered())
            else:
                plan = self._sync_in_transactions(desired_by_key, cancel)

        result = plan.result
        observe_sync(table, result.inserted, result.updated, result.deleted)
        logger.info(
            "synced %s: %d inserted, %d updated, %d deleted, %d unchanged, %d dependent mutations",
            table,
            result.inserted,
            result.updated,
            result.deleted,
            result.unchanged,
            result.extra_mutations,
        )
        return result

    def _sync_in_transactions(
        self,
        desired_by_key: dict[K, E],
        cancel: threading.Event | None,
    ) -> SyncPlan:
        def _plan_and_maybe_apply(s: DbSession) -> tuple[SyncPlan, bool]:
            plan = self.plan(s, desired_by_key)
            if len(plan) <= self.batch_size:
                s.buffer_write(plan.ordered())
                return plan, True
            return plan, False

        plan, applied = self.client.factory.run_read_write(_plan_and_maybe_apply, cancel=cancel)
        if applied:
            return plan

        chunks = chunked(plan.ordered(), self.batch_size)
        logger.info(
            "applying %d %s sync mutations in %d chunks",
            len(plan),
            self.mapper.table(),
            len(chunks),
        )
        for chunk in chunks:
            self.client.factory.run_read_write(
                lambda s, chunk=chunk: s.buffer_write(chunk), cancel=cancel
            )
        return plan
