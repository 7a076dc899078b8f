"""RemoteSyncManager: keeps the local state mirrored to a remote share.

State machine
-------------
``status`` moves through :class:`~amedias.state.SyncStatus`::

    idle ──create/init──▶ loading ──ok──▶ synced ◀──ok── saving
                             │                 │           ▲
                             └──fail──▶ error ◀┴───fail────┘

``leave_share`` returns to ``idle`` from anywhere.  Alongside the status the
manager tracks a :class:`SyncPhase`; while a pulled state is being applied
locally the phase is ``APPLYING_REMOTE`` and every push path refuses to run,
so a state that just came from the remote is never echoed back to it.

Timing
------
- pushes are debounced: ``queue_save`` restarts a single timer and only the
  latest queued state is sent when it fires
- failures retry after ``min(base * 2**n, cap)`` for ``n < max_retries``, then
  give up until the next explicit trigger
- a push that failed is kept and resent after the next successful fetch,
  even when its own retry was cancelled or given up
- while a session is active the remote is polled silently every
  ``poll_interval_ms``

All timers go through a :class:`~amedias.timers.Scheduler`.
"""

from __future__ import annotations

import inspect
import logging
import secrets
import string
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx

from amedias.codec import fingerprint
from amedias.config import SyncTimings
from amedias.errors import BackendError, ShareNotFoundError
from amedias.share_url import AddressBar
from amedias.state import ShareMode, ShareSession, SyncStatus
from amedias.sync.base import ShareBackend
from amedias.timers import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)

REMOTE_PARAMS = ("share", "key")

_TOKEN_ALPHABET = string.ascii_letters + string.digits

StateCallback = Callable[[Any], Awaitable[None] | None]
StatusCallback = Callable[[SyncStatus], None]


class SyncPhase(str, Enum):
    STEADY = "steady"
    APPLYING_REMOTE = "applying_remote"


def random_token(length: int) -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


def _describe(exc: Exception) -> str:
    # httpx messages embed the request URL, which carries the share secret
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code}"
    if isinstance(exc, httpx.HTTPError):
        return type(exc).__name__
    return str(exc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RemoteSyncManager:
    """Push/pull coordination against a :class:`ShareBackend`."""

    def __init__(
        self,
        backend: ShareBackend | None,
        scheduler: Scheduler,
        address: AddressBar,
        *,
        timings: SyncTimings | None = None,
        on_state_change: StateCallback | None = None,
        on_status_change: StatusCallback | None = None,
    ) -> None:
        self.backend = backend
        self.scheduler = scheduler
        self.address = address
        self.timings = timings or SyncTimings()
        self.on_state_change = on_state_change
        self.on_status_change = on_status_change

        self.session = ShareSession()
        self._status = SyncStatus.IDLE
        self._phase = SyncPhase.STEADY
        self._retry_count = 0
        self._push_generation = 0
        self._queued_state: Any = None
        self._unsaved_state: Any = None
        self._poll_task: ScheduledTask | None = None
        self._save_task: ScheduledTask | None = None
        self._retry_task: ScheduledTask | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self.backend is not None

    @property
    def is_sharing(self) -> bool:
        return self.session.has_credentials

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None

    def _set_status(self, status: SyncStatus) -> None:
        if status is self._status:
            return
        self._status = status
        if self.on_status_change is not None:
            try:
                self.on_status_change(status)
            except Exception:  # noqa: BLE001
                logger.exception("Status callback failed")

    def _can_push(self) -> bool:
        return self.enabled and self.is_sharing and self._phase is SyncPhase.STEADY

    @asynccontextmanager
    async def _applying_remote(self):
        self._phase = SyncPhase.APPLYING_REMOTE
        try:
            yield
        finally:
            self._phase = SyncPhase.STEADY

    # ------------------------------------------------------------------
    # Retries
    # ------------------------------------------------------------------

    def retry_delay(self) -> int:
        """Backoff delay for the next retry, in milliseconds."""
        t = self.timings
        return min(t.retry_base_ms * 2**self._retry_count, t.retry_cap_ms)

    def _reset_retries(self) -> None:
        self._retry_count = 0
        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None

    def _schedule_retry(self, action: Callable[[], Awaitable[Any]]) -> int | None:
        if self._retry_count >= self.timings.max_retries:
            logger.error("Giving up after %d retries", self._retry_count)
            self._reset_retries()
            return None

        delay = self.retry_delay()
        self._retry_count += 1

        async def _retry() -> None:
            self._retry_task = None
            if self._status is SyncStatus.ERROR:
                await action()

        if self._retry_task is not None:
            self._retry_task.cancel()
        self._retry_task = self.scheduler.call_later(delay, _retry)
        logger.warning("Retrying in %d ms (attempt %d/%d)", delay, self._retry_count, self.timings.max_retries)
        return delay

    # ------------------------------------------------------------------
    # Share lifecycle
    # ------------------------------------------------------------------

    async def create_share(self, state: Any) -> str | None:
        """Create a new remote share for *state* and return its link.

        Returns ``None`` when remote sync is not configured, when a session is
        already active, or when the backend rejects the request.
        """
        if not self.enabled:
            logger.warning("Remote sharing is not configured")
            return None
        if self.is_sharing:
            logger.info("A shared link is already active")
            return None

        self._set_status(SyncStatus.LOADING)
        share_id = random_token(16)
        share_secret = random_token(32)

        try:
            record = await self.backend.create(share_id, share_secret, state)
        except (httpx.HTTPError, BackendError) as exc:
            logger.error("Could not create remote share: %s", _describe(exc))
            self._set_status(SyncStatus.ERROR)
            return None

        self.session = ShareSession(
            mode=ShareMode.REMOTE,
            remote_id=share_id,
            remote_secret=share_secret,
            last_fingerprint=fingerprint(state),
            last_synced_at=record.updated_at or _utcnow(),
        )
        self._set_status(SyncStatus.SYNCED)
        self.address.set_params(share=share_id, key=share_secret)
        self.start_polling()
        return self.build_share_link()

    async def init_from_share_parameters(self, share_id: str, share_secret: str) -> bool:
        """Join an existing share; on failure the session is dropped again."""
        if not self.enabled:
            logger.warning("Shared link ignored: remote sharing is not configured")
            return False

        self._clear_session()
        self.session = ShareSession(mode=ShareMode.REMOTE, remote_id=share_id, remote_secret=share_secret)
        self._set_status(SyncStatus.LOADING)
        await self.fetch_remote_state()

        if self._status is not SyncStatus.SYNCED:
            logger.error("Could not load shared link %s", share_id)
            self._clear_session()
            return False

        self.address.set_params(share=share_id, key=share_secret)
        self.start_polling()
        logger.info("Connected to shared link %s", share_id)
        return True

    def leave_share(self) -> bool:
        """Stop syncing; local data is untouched.  Returns ``False`` if not sharing."""
        was_sharing = self.is_sharing
        self._clear_session()
        self.address.remove_params(*REMOTE_PARAMS)
        if was_sharing:
            logger.info("Left shared link")
        return was_sharing

    def _clear_session(self) -> None:
        self.stop_polling()
        if self._save_task is not None:
            self._save_task.cancel()
            self._save_task = None
        self._reset_retries()
        self._queued_state = None
        self._unsaved_state = None
        self.session = ShareSession()
        self._set_status(SyncStatus.IDLE)

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def fetch_remote_state(self, silent: bool = False) -> Any | None:
        """Pull the remote state and apply it if it changed.

        Returns the remote payload, or ``None`` on failure / no session.
        """
        if not self.enabled or not self.is_sharing:
            return None
        share_id = self.session.remote_id
        share_secret = self.session.remote_secret

        generation = self._push_generation
        if not silent:
            self._set_status(SyncStatus.LOADING)

        try:
            record = await self.backend.fetch(share_id, share_secret)
            if record is None:
                raise ShareNotFoundError()
        except (httpx.HTTPError, BackendError) as exc:
            if self.session.remote_id != share_id:
                return None
            logger.error("Fetching remote state failed: %s", _describe(exc))
            self._set_status(SyncStatus.ERROR)
            self._schedule_retry(self._retry_fetch)
            return None

        if self.session.remote_id != share_id:
            # left (or switched) while the request was in flight
            return None

        session = self.session
        synced_at = record.updated_at or _utcnow()
        incoming = fingerprint(record.payload)

        if incoming == session.last_fingerprint:
            session.last_synced_at = synced_at
        elif self._push_generation != generation:
            # a push landed while this request was in flight; the response
            # may predate it, so leave the decision to the next poll
            logger.debug("Ignoring remote state fetched across a push")
        else:
            session.last_fingerprint = incoming
            session.last_synced_at = synced_at
            await self._apply_remote(record.payload)

        self._set_status(SyncStatus.SYNCED)
        self._reset_retries()
        if self._unsaved_state is not None:
            # the backend is reachable again; resend the edit whose retry was just cancelled
            self.queue_save(self._unsaved_state)
        return record.payload

    async def _retry_fetch(self) -> None:
        await self.fetch_remote_state(silent=True)

    async def _apply_remote(self, payload: Any) -> None:
        if self.on_state_change is None or self._phase is SyncPhase.APPLYING_REMOTE:
            return
        async with self._applying_remote():
            try:
                result = self.on_state_change(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                logger.exception("Applying remote state failed")

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def queue_save(self, state: Any) -> bool:
        """Debounce a push of *state*; returns ``False`` if the push is refused."""
        if not self._can_push():
            if self._phase is SyncPhase.APPLYING_REMOTE:
                logger.debug("Skipping push while applying remote state")
            return False

        self._queued_state = state
        self._unsaved_state = None
        if self._save_task is not None:
            self._save_task.cancel()
        self._set_status(SyncStatus.SAVING)
        self._save_task = self.scheduler.call_later(self.timings.debounce_ms, self._flush_queued)
        return True

    async def _flush_queued(self) -> None:
        self._save_task = None
        state, self._queued_state = self._queued_state, None
        await self.save_remote_state(state)

    async def save_remote_state(self, state: Any) -> bool:
        if not self._can_push():
            return False
        share_id = self.session.remote_id
        share_secret = self.session.remote_secret

        self._set_status(SyncStatus.SAVING)
        try:
            record = await self.backend.update(share_id, share_secret, state)
        except (httpx.HTTPError, BackendError) as exc:
            if self.session.remote_id != share_id:
                return False
            logger.error("Saving remote state failed: %s", _describe(exc))
            self._set_status(SyncStatus.ERROR)
            self._unsaved_state = state

            async def _requeue() -> None:
                self.queue_save(state)

            self._schedule_retry(_requeue)
            return False

        if self.session.remote_id != share_id:
            return False

        self._push_generation += 1
        self._unsaved_state = None
        self.session.last_fingerprint = fingerprint(state)
        self.session.last_synced_at = record.updated_at or _utcnow()
        if self._save_task is None:
            self._set_status(SyncStatus.SYNCED)
        self._reset_retries()
        return True

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def start_polling(self) -> None:
        self.stop_polling()
        if not self.is_sharing:
            return
        self._poll_task = self.scheduler.call_every(self.timings.poll_interval_ms, self._poll)

    def stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll(self) -> None:
        if not self.is_sharing:
            self.stop_polling()
            return
        await self.fetch_remote_state(silent=True)

    async def notify_online(self) -> Any | None:
        """Explicit trigger after connectivity returns: retry budget resets."""
        if not self.is_sharing:
            return None
        self._reset_retries()
        return await self.fetch_remote_state(silent=True)

    # ------------------------------------------------------------------
    # Links / info
    # ------------------------------------------------------------------

    def build_share_link(self) -> str | None:
        if not self.is_sharing:
            return None
        return self.address.with_params(share=self.session.remote_id, key=self.session.remote_secret)

    def get_sync_info(self) -> dict[str, Any]:
        return {
            "is_sharing": self.is_sharing,
            "status": self._status,
            "last_synced_at": self.session.last_synced_at,
            "share_link": self.build_share_link(),
        }

    async def shutdown(self) -> None:
        """Cancel every timer without touching the session."""
        self.stop_polling()
        if self._save_task is not None:
            self._save_task.cancel()
            self._save_task = None
        self._reset_retries()
