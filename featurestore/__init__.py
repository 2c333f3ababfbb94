from .client import Client
from .config import DbConfig, SearchConfig
from .db.pagination import Page
from .db.sync import SyncResult

__all__ = ["Client", "DbConfig", "SearchConfig", "Page", "SyncResult"]
