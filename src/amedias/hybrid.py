"""HybridCoordinator: the only sync object the UI talks to.

It always keeps the latest state in the :class:`~amedias.store.LocalStore`
and, depending on the active :class:`~amedias.state.ShareMode`, also:

- ``url``    – rewrites the share link in the address bar on every edit
- ``remote`` – queues a debounced push through the
  :class:`~amedias.sync.manager.RemoteSyncManager`

Startup priority (:meth:`HybridCoordinator.init`):

1. the address carries an embedded payload (``d``)   → URL mode
2. the address carries ``share`` + ``key``            → remote mode
3. otherwise                                          → last local snapshot
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any

from amedias.share_url import ShareURLManager, ShareURLResult
from amedias.state import SHARE_MODE_KEY, STATE_KEY, ShareMode, SyncStatus
from amedias.store import LocalStore
from amedias.sync.manager import REMOTE_PARAMS, RemoteSyncManager

logger = logging.getLogger(__name__)

_BACKEND_LABELS = {
    ShareMode.NONE: "Local only",
    ShareMode.URL: "URL (local first)",
    ShareMode.REMOTE: "Supabase",
}


@dataclass
class SyncInfo:
    mode: ShareMode
    status: SyncStatus
    is_sharing: bool
    share_url: str | None
    last_synced_at: datetime | None
    backend: str


class HybridCoordinator:
    def __init__(
        self,
        store: LocalStore,
        url_share: ShareURLManager,
        sync: RemoteSyncManager,
        *,
        on_state_change: Callable[[Any], Awaitable[None] | None] | None = None,
        on_status_change: Callable[[SyncStatus], None] | None = None,
    ) -> None:
        self.store = store
        self.url_share = url_share
        self.sync = sync
        self.on_state_change = on_state_change
        self.on_status_change = on_status_change

        self.mode = ShareMode.NONE
        self._status = SyncStatus.IDLE

        sync.on_state_change = self._apply_remote
        sync.on_status_change = self._relay_status

    @property
    def address(self):
        return self.url_share.address

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def status(self) -> SyncStatus:
        if self.mode is ShareMode.REMOTE:
            return self.sync.status
        return self._status

    def _set_status(self, status: SyncStatus) -> None:
        if status is self._status:
            return
        self._status = status
        if self.mode is not ShareMode.REMOTE:
            self._notify_status(status)

    def _relay_status(self, status: SyncStatus) -> None:
        if self.mode is ShareMode.REMOTE or self.sync.is_sharing:
            self._notify_status(status)

    def _notify_status(self, status: SyncStatus) -> None:
        if self.on_status_change is not None:
            try:
                self.on_status_change(status)
            except Exception:  # noqa: BLE001
                logger.exception("Status callback failed")

    async def _emit_state(self, state: Any) -> None:
        if self.on_state_change is None:
            return
        result = self.on_state_change(state)
        if inspect.isawaitable(result):
            await result

    async def _persist_mode(self, mode: ShareMode) -> None:
        self.mode = mode
        await self.store.save(SHARE_MODE_KEY, mode.value)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def init(self) -> bool:
        """Pick the share mode from the current address and replay the state.

        Returns ``False`` only when a shared link was present but unusable; the
        app then carries on with the local snapshot.
        """
        stored_mode = await self.store.load(SHARE_MODE_KEY, ShareMode.NONE.value)

        if self.url_share.has_shared_data():
            return await self._load_from_url()

        params = self.address.params
        if params.get("share") and params.get("key"):
            if not self.sync.enabled:
                logger.warning("Shared link needs remote sync, which is not configured")
            elif await self.sync.init_from_share_parameters(params["share"], params["key"]):
                await self._persist_mode(ShareMode.REMOTE)
                return True
            else:
                await self._persist_mode(ShareMode.NONE)
                await self._replay_local()
                self._set_status(SyncStatus.ERROR)
                return False

        if stored_mode != ShareMode.NONE.value:
            # The link itself held the shared data; without it there is
            # nothing to keep in sync, so fall back to local only.
            logger.info("Stored share mode %r has no link in the address, using local mode", stored_mode)
            await self._persist_mode(ShareMode.NONE)

        await self._replay_local()
        self._set_status(SyncStatus.IDLE)
        return True

    async def _replay_local(self) -> None:
        saved = await self.store.load(STATE_KEY)
        if saved is not None:
            logger.debug("Replaying local snapshot")
            await self._emit_state(saved)

    async def _load_from_url(self) -> bool:
        self._set_status(SyncStatus.LOADING)
        result = self.url_share.read_share_url()
        if not result.success:
            logger.error("Shared link unusable (%s), using local data", result.error)
            await self._replay_local()
            self._set_status(SyncStatus.ERROR)
            return False

        await self._persist_mode(ShareMode.URL)
        await self.save_local(result.data)
        await self._emit_state(result.data)
        self._set_status(SyncStatus.SYNCED)
        return True

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    async def save_local(self, state: Any) -> bool:
        return await self.store.save(STATE_KEY, state)

    async def save_state(self, state: Any) -> bool:
        """Persist a local edit and forward it to the active share, if any."""
        saved = await self.save_local(state)
        if self.mode is ShareMode.URL:
            await self.update_share_url(state)
        elif self.mode is ShareMode.REMOTE:
            self.sync.queue_save(state)
        return saved

    async def _apply_remote(self, state: Any) -> None:
        await self.save_local(state)
        await self._emit_state(state)

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------

    async def create_share_url(self, state: Any) -> ShareURLResult:
        if self.mode is not ShareMode.NONE:
            logger.info("A shared link is already active")
            return ShareURLResult(
                success=False,
                url=self.share_url,
                error="already_sharing",
                message="A shared link is already active",
            )

        self._set_status(SyncStatus.LOADING)
        estimate = self.url_share.estimate_size(state)
        if estimate is not None and not estimate.can_share:
            self._set_status(SyncStatus.ERROR)
            return ShareURLResult(
                success=False,
                error="too_large",
                message="The data is too large to share via URL",
                size=estimate.estimated_url_length,
                max_size=self.url_share.max_url_length,
            )

        result = self.url_share.create_share_url(state)
        if not result.success:
            self._set_status(SyncStatus.ERROR)
            return result

        await self.save_local(state)
        await self._persist_mode(ShareMode.URL)
        self.address.replace(result.url)
        self._set_status(SyncStatus.SYNCED)
        return result

    async def update_share_url(self, state: Any) -> bool:
        """Regenerate the link in place after a local edit (URL mode only)."""
        if self.mode is not ShareMode.URL:
            return False
        self._set_status(SyncStatus.SAVING)
        result = self.url_share.create_share_url(state)
        if not result.success:
            logger.warning("Could not refresh shared link: %s", result.error)
            self._set_status(SyncStatus.ERROR)
            return False
        self.address.replace(result.url)
        self._set_status(SyncStatus.SYNCED)
        return True

    async def create_remote_share(self, state: Any) -> str | None:
        if self.mode is not ShareMode.NONE:
            logger.info("A shared link is already active")
            return None
        await self.save_local(state)
        link = await self.sync.create_share(state)
        if link is None:
            return None
        await self._persist_mode(ShareMode.REMOTE)
        return link

    @property
    def share_url(self) -> str | None:
        if self.mode is ShareMode.URL and self.url_share.has_shared_data():
            return self.address.href
        if self.mode is ShareMode.REMOTE:
            return self.sync.build_share_link()
        return None

    def generate_qr_code(self, size: int = 300) -> str | None:
        link = self.share_url
        if link is None:
            logger.info("No active shared link to encode")
            return None
        return self.url_share.generate_qr_code(link, size)

    async def leave_share(self) -> bool:
        """Stop sharing; the local snapshot stays.  ``False`` if nothing was shared."""
        if self.mode is ShareMode.NONE:
            return False
        if self.mode is ShareMode.REMOTE:
            self.sync.leave_share()
        self.url_share.clear_share_params()
        self.address.remove_params(*REMOTE_PARAMS)
        await self._persist_mode(ShareMode.NONE)
        self._set_status(SyncStatus.IDLE)
        logger.info("Stopped sharing, data stays on this device")
        return True

    def get_sync_info(self) -> SyncInfo:
        return SyncInfo(
            mode=self.mode,
            status=self.status,
            is_sharing=self.mode is not ShareMode.NONE,
            share_url=self.share_url,
            last_synced_at=self.sync.session.last_synced_at if self.mode is ShareMode.REMOTE else None,
            backend=_BACKEND_LABELS[self.mode],
        )

    async def notify_online(self) -> None:
        if self.mode is ShareMode.REMOTE:
            await self.sync.notify_online()

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    async def export_all_data(self, dest: Path | str) -> Path:
        """Write the local snapshot as pretty JSON; *dest* may be a directory."""
        dest = Path(dest)
        if dest.is_dir():
            dest = dest / f"a-medias-backup-{date.today().isoformat()}.json"
        state = await self.store.load(STATE_KEY)
        dest.write_text(json.dumps(state, indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info("Backup written to %s", dest)
        return dest

    async def import_data(self, path: Path | str) -> bool:
        try:
            state = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Could not import %s: %s", path, exc)
            return False
        await self.save_state(state)
        await self._emit_state(state)
        return True

    async def clear_all_data(self) -> bool:
        await self.leave_share()
        cleared = await self.store.clear()
        self.mode = ShareMode.NONE
        return cleared
