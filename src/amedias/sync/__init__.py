"""Remote share backends and the sync manager."""

from amedias.sync.base import ShareBackend, ShareRecord
from amedias.sync.manager import RemoteSyncManager, SyncPhase
from amedias.sync.supabase import SupabaseShareClient

__all__ = [
    "ShareBackend",
    "ShareRecord",
    "RemoteSyncManager",
    "SyncPhase",
    "SupabaseShareClient",
]
