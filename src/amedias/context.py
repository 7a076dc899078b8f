"""AppContext: explicit owner of every long-lived sync service.

Build one at startup and hand it to the UI::

    async with AppContext(load_settings(), href="https://amedias.example.org/?d=...") as ctx:
        ctx.coordinator.on_state_change = render
        await ctx.coordinator.init()
        ...

``initialize`` opens the local store; ``shutdown`` cancels all timers and
closes the HTTP client and the store.
"""

from __future__ import annotations

import logging

from amedias.config import Settings
from amedias.hybrid import HybridCoordinator
from amedias.share_url import AddressBar, ShareURLManager
from amedias.store import LocalStore
from amedias.sync.base import ShareBackend
from amedias.sync.manager import RemoteSyncManager
from amedias.sync.supabase import SupabaseShareClient
from amedias.timers import AsyncioScheduler, Scheduler

logger = logging.getLogger(__name__)


class AppContext:
    def __init__(
        self,
        settings: Settings,
        *,
        href: str | None = None,
        scheduler: Scheduler | None = None,
        backend: ShareBackend | None = None,
        store: LocalStore | None = None,
    ) -> None:
        self.settings = settings
        self.address = AddressBar(href or settings.base_url)
        self.scheduler = scheduler or AsyncioScheduler()
        self.store = store or LocalStore(settings.store_path)

        if backend is None and settings.remote.enabled:
            backend = SupabaseShareClient(settings.remote)
        self.backend = backend

        self.url_share = ShareURLManager(self.address, max_url_length=settings.max_url_length)
        self.sync = RemoteSyncManager(
            self.backend,
            self.scheduler,
            self.address,
            timings=settings.timings,
        )
        self.coordinator = HybridCoordinator(self.store, self.url_share, self.sync)
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self.store.initialize()
        self._initialized = True
        logger.info(
            "A Medias sync core ready (store: %s, remote: %s)",
            self.store.backend,
            "on" if self.backend is not None else "off",
        )

    async def shutdown(self) -> None:
        await self.sync.shutdown()
        await self.scheduler.shutdown()
        if self.backend is not None:
            await self.backend.aclose()
        await self.store.close()
        self._initialized = False

    async def __aenter__(self) -> "AppContext":
        await self.initialize()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.shutdown()
