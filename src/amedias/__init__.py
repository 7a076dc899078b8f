"""A Medias state persistence, sharing and sync core."""

from amedias.config import Settings, load_settings
from amedias.context import AppContext
from amedias.hybrid import HybridCoordinator, SyncInfo
from amedias.share_url import AddressBar, ShareURLManager
from amedias.state import AppState, ShareMode, ShareSession, SyncStatus
from amedias.store import LocalStore
from amedias.sync import RemoteSyncManager, SupabaseShareClient
from amedias.timers import AsyncioScheduler, VirtualScheduler

__all__ = [
    "AddressBar",
    "AppContext",
    "AppState",
    "AsyncioScheduler",
    "HybridCoordinator",
    "LocalStore",
    "RemoteSyncManager",
    "Settings",
    "ShareMode",
    "ShareSession",
    "ShareURLManager",
    "SupabaseShareClient",
    "SyncInfo",
    "SyncStatus",
    "VirtualScheduler",
    "load_settings",
]
