from .batch import BatchWriter
from .cursor import decode_cursor, encode_cursor
from .entity import EntityCreator, EntityMutator, EntityReader, EntityRemover, EntityWriter
from .helpers import is_newer
from .locking.row_lock import RowLock
from .locking.ttl_lock import TtlLock
from .mutations import COMMIT_TIMESTAMP, ExtraMutationsGroup, Mutation, MutationType
from .pagination import Page, SortKey, build_page, keyset_filter
from .session import DbSession
from .sync import EntitySynchronizer, SyncResult
from .tx import DbFactory, DbTx

__all__ = [
    "DbSession",
    "DbTx",
    "DbFactory",
    "Mutation",
    "MutationType",
    "ExtraMutationsGroup",
    "COMMIT_TIMESTAMP",
    "EntityReader",
    "EntityWriter",
    "EntityMutator",
    "EntityCreator",
    "EntityRemover",
    "EntitySynchronizer",
    "SyncResult",
    "BatchWriter",
    "RowLock",
    "TtlLock",
    "Page",
    "SortKey",
    "build_page",
    "keyset_filter",
    "encode_cursor",
    "decode_cursor",
    "is_newer",
]
