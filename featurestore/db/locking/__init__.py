from .row_lock import RowLock
from .ttl_lock import TtlLock

__all__ = ["RowLock", "TtlLock"]
