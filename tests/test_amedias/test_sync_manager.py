"""Unit tests for amedias.sync.manager.RemoteSyncManager."""

import asyncio
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from amedias.codec import fingerprint
from amedias.config import SyncTimings
from amedias.state import ShareMode, SyncStatus
from amedias.sync.manager import RemoteSyncManager, SyncPhase
from amedias.timers import VirtualScheduler

STATE = {"calc": {"nomina1": 1800, "nomina2": 1500}}


def _link_params(link: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(link).query).items()}


async def _shared(sync: RemoteSyncManager, state=STATE) -> tuple[str, str]:
    link = await sync.create_share(state)
    assert link is not None
    params = _link_params(link)
    return params["share"], params["key"]


# ---------------------------------------------------------------------------
# create_share()
# ---------------------------------------------------------------------------


class TestCreateShare:
    @pytest.mark.asyncio
    async def test_creates_session_and_link(self, sync, backend, address):
        statuses = []
        sync.on_status_change = statuses.append

        link = await sync.create_share(STATE)

        params = _link_params(link)
        assert len(params["share"]) == 16
        assert len(params["key"]) == 32
        assert sync.status is SyncStatus.SYNCED
        assert statuses == [SyncStatus.LOADING, SyncStatus.SYNCED]
        assert sync.session.mode is ShareMode.REMOTE
        assert sync.session.last_fingerprint == fingerprint(STATE)
        assert sync.session.last_synced_at == backend.rows[params["share"]]["updated_at"]
        assert address.params == {"share": params["share"], "key": params["key"]}
        assert sync.is_polling

    @pytest.mark.asyncio
    async def test_tokens_are_fresh(self, backend, scheduler, address):
        a = RemoteSyncManager(backend, scheduler, address)
        b = RemoteSyncManager(backend, scheduler, address)
        ids = {_link_params(await a.create_share(STATE))["share"], _link_params(await b.create_share(STATE))["share"]}
        assert len(ids) == 2

    @pytest.mark.asyncio
    async def test_refuses_when_already_sharing(self, sync, backend):
        await sync.create_share(STATE)
        assert await sync.create_share({"other": 1}) is None
        assert len(backend.rows) == 1

    @pytest.mark.asyncio
    async def test_disabled_without_backend(self, scheduler, address):
        sync = RemoteSyncManager(None, scheduler, address)
        assert await sync.create_share(STATE) is None
        assert sync.status is SyncStatus.IDLE

    @pytest.mark.asyncio
    async def test_backend_failure(self, sync, backend):
        async def broken(*_):
            raise httpx.ConnectError("down")

        backend.create = broken
        assert await sync.create_share(STATE) is None
        assert sync.status is SyncStatus.ERROR
        assert not sync.is_sharing


# ---------------------------------------------------------------------------
# init_from_share_parameters()
# ---------------------------------------------------------------------------


class TestInitFromShareParameters:
    @pytest.mark.asyncio
    async def test_joins_existing_share(self, sync, backend, address):
        backend.seed("abc", "secret", STATE)
        applied = []
        sync.on_state_change = applied.append

        assert await sync.init_from_share_parameters("abc", "secret") is True
        assert applied == [STATE]
        assert sync.status is SyncStatus.SYNCED
        assert sync.is_polling
        assert address.params == {"share": "abc", "key": "secret"}

    @pytest.mark.asyncio
    async def test_wrong_secret_clears_session(self, sync, backend, scheduler):
        backend.seed("abc", "secret", STATE)
        assert await sync.init_from_share_parameters("abc", "wrong") is False
        assert not sync.is_sharing
        assert sync.status is SyncStatus.IDLE
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_unknown_id_looks_the_same(self, sync, backend, caplog):
        backend.seed("abc", "secret", STATE)
        await sync.init_from_share_parameters("abc", "wrong")
        wrong_secret_log = [r.getMessage() for r in caplog.records if r.name == "amedias.sync.manager"]
        caplog.clear()
        await sync.init_from_share_parameters("zzz", "wrong")
        unknown_id_log = [
            r.getMessage().replace("zzz", "abc") for r in caplog.records if r.name == "amedias.sync.manager"
        ]
        assert wrong_secret_log == unknown_id_log


# ---------------------------------------------------------------------------
# fetch_remote_state()
# ---------------------------------------------------------------------------


class TestFetch:
    @pytest.mark.asyncio
    async def test_unchanged_state_skips_callback_but_advances_timestamp(self, sync, backend):
        share_id, _ = await _shared(sync)
        applied = []
        sync.on_state_change = applied.append
        before = sync.session.last_synced_at

        later = backend.remote_write(share_id, STATE)
        await sync.fetch_remote_state()

        assert applied == []
        assert sync.session.last_synced_at == later
        assert sync.session.last_synced_at > before
        assert sync.status is SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_changed_state_is_applied_once(self, sync, backend):
        share_id, _ = await _shared(sync)
        applied = []
        sync.on_state_change = applied.append

        backend.remote_write(share_id, {"calc": {"nomina1": 2000}})
        await sync.fetch_remote_state()
        await sync.fetch_remote_state()

        assert applied == [{"calc": {"nomina1": 2000}}]
        assert sync.session.last_fingerprint == fingerprint({"calc": {"nomina1": 2000}})

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self, sync, backend):
        share_id, _ = await _shared(sync)
        applied = []

        async def apply(state):
            await asyncio.sleep(0)
            applied.append(state)

        sync.on_state_change = apply
        backend.remote_write(share_id, {"x": 1})
        await sync.fetch_remote_state()
        assert applied == [{"x": 1}]

    @pytest.mark.asyncio
    async def test_silent_fetch_does_not_show_loading(self, sync, backend):
        await _shared(sync)
        statuses = []
        sync.on_status_change = statuses.append
        await sync.fetch_remote_state(silent=True)
        assert SyncStatus.LOADING not in statuses

    @pytest.mark.asyncio
    async def test_without_session_does_nothing(self, sync, backend):
        assert await sync.fetch_remote_state() is None
        assert backend.fetch_calls == 0

    @pytest.mark.asyncio
    async def test_callback_error_is_contained(self, sync, backend):
        share_id, _ = await _shared(sync)

        def explode(_state):
            raise RuntimeError("UI broke")

        sync.on_state_change = explode
        backend.remote_write(share_id, {"x": 1})
        await sync.fetch_remote_state()
        assert sync.status is SyncStatus.SYNCED
        assert sync.phase is SyncPhase.STEADY

    @pytest.mark.asyncio
    async def test_secret_never_logged(self, sync, backend, caplog):
        _, secret = await _shared(sync)
        sync.stop_polling()
        backend.fetch_failures = 1
        backend.fetch_error = httpx.ConnectError(f"could not reach ...&share_key=eq.{secret}")
        await sync.fetch_remote_state()
        assert sync.status is SyncStatus.ERROR
        assert secret not in caplog.text


# ---------------------------------------------------------------------------
# Retry / backoff
# ---------------------------------------------------------------------------


class TestBackoff:
    @pytest.mark.asyncio
    async def test_three_retries_then_stop(self, sync, backend, scheduler):
        await _shared(sync)
        sync.stop_polling()
        backend.fetch_failures = 100

        await sync.fetch_remote_state()
        assert sync.status is SyncStatus.ERROR
        assert scheduler.pending_delays() == [2000]

        await scheduler.advance(2000)
        assert scheduler.pending_delays() == [4000]

        await scheduler.advance(4000)
        assert scheduler.pending_delays() == [8000]

        await scheduler.advance(8000)
        assert scheduler.pending_delays() == []
        assert backend.fetch_calls == 4
        assert sync.retry_count == 0
        assert sync.status is SyncStatus.ERROR

        await scheduler.advance(60000)
        assert backend.fetch_calls == 4

    @pytest.mark.asyncio
    async def test_delay_is_capped(self, backend, scheduler, address):
        sync = RemoteSyncManager(backend, scheduler, address, timings=SyncTimings(max_retries=6))
        await _shared(sync)
        sync.stop_polling()
        backend.fetch_failures = 100

        await sync.fetch_remote_state()
        delays = []
        while scheduler.pending_delays():
            delay = scheduler.pending_delays()[0]
            delays.append(delay)
            await scheduler.advance(delay)
        assert delays == [2000, 4000, 8000, 16000, 30000, 30000]

    @pytest.mark.asyncio
    async def test_success_resets_counter(self, sync, backend, scheduler):
        await _shared(sync)
        sync.stop_polling()
        backend.fetch_failures = 1

        await sync.fetch_remote_state()
        assert sync.retry_count == 1
        await scheduler.advance(2000)
        assert sync.status is SyncStatus.SYNCED
        assert sync.retry_count == 0
        assert scheduler.pending_delays() == []

    @pytest.mark.asyncio
    async def test_notify_online_is_an_explicit_trigger(self, sync, backend, scheduler):
        share_id, _ = await _shared(sync)
        sync.stop_polling()
        backend.fetch_failures = 4
        await sync.fetch_remote_state()
        await scheduler.advance(2000 + 4000 + 8000)
        assert sync.status is SyncStatus.ERROR

        applied = []
        sync.on_state_change = applied.append
        backend.remote_write(share_id, {"back": "online"})
        await sync.notify_online()
        assert sync.status is SyncStatus.SYNCED
        assert applied == [{"back": "online"}]

    @pytest.mark.asyncio
    async def test_failed_save_is_requeued(self, sync, backend, scheduler):
        await _shared(sync)
        sync.stop_polling()
        backend.update_failures = 1

        sync.queue_save({"v": 1})
        await scheduler.advance(300)
        assert sync.status is SyncStatus.ERROR
        assert scheduler.pending_delays() == [2000]

        await scheduler.advance(2000)
        assert sync.status is SyncStatus.SAVING
        await scheduler.advance(300)

        assert backend.updates == [{"v": 1}]
        assert sync.status is SyncStatus.SYNCED
        assert sync.retry_count == 0

    @pytest.mark.asyncio
    async def test_poll_failures_share_the_retry_budget(self, sync, backend, scheduler):
        await _shared(sync)
        backend.fetch_failures = 100

        await sync.fetch_remote_state()  # t=0, retries due at 2000, 6000, 14000
        await scheduler.advance(7999)
        assert scheduler.pending_delays() == [6001]
        assert backend.fetch_calls == 3

        # the poll at 8000 is the fourth failure: budget spent, retry at 14000 dropped
        await scheduler.advance(1)
        assert scheduler.pending_delays() == []
        assert sync.retry_count == 0
        assert backend.fetch_calls == 4

        # the next poll starts a fresh chain
        await scheduler.advance(8000)
        assert scheduler.pending_delays() == [2000]
        assert sync.retry_count == 1
        assert backend.fetch_calls == 5
        assert sync.status is SyncStatus.ERROR

    @pytest.mark.asyncio
    async def test_failed_save_is_resent_after_successful_poll(self, sync, backend, scheduler):
        await _shared(sync)
        backend.update_failures = 3

        sync.queue_save({"edit": 1})
        # pushes fail at 300, 2600 and 6900; the last retry would be due at 14900
        await scheduler.advance(7999)
        assert sync.status is SyncStatus.ERROR
        assert backend.updates == []

        # the poll at 8000 succeeds, cancels that retry and resends the edit
        await scheduler.advance(301)
        assert backend.updates == [{"edit": 1}]
        assert sync.status is SyncStatus.SYNCED
        assert scheduler.pending_delays() == []

    @pytest.mark.asyncio
    async def test_newer_edit_supersedes_unsaved_one(self, sync, backend, scheduler):
        await _shared(sync)
        sync.stop_polling()
        backend.update_failures = 1

        sync.queue_save({"edit": 1})
        await scheduler.advance(300)
        assert sync.status is SyncStatus.ERROR

        sync.queue_save({"edit": 2})
        await scheduler.advance(300)
        await sync.notify_online()
        await scheduler.advance(5000)
        assert backend.updates == [{"edit": 2}]


# ---------------------------------------------------------------------------
# Push: debounce + echo prevention
# ---------------------------------------------------------------------------


class TestPush:
    @pytest.mark.asyncio
    async def test_debounce_coalesces_to_last_state(self, sync, backend, scheduler):
        await _shared(sync)
        sync.stop_polling()

        for n in range(1, 6):
            assert sync.queue_save({"edit": n}) is True
            assert sync.status is SyncStatus.SAVING
            await scheduler.advance(50)

        assert backend.updates == []
        await scheduler.advance(300)
        assert backend.updates == [{"edit": 5}]
        assert sync.status is SyncStatus.SYNCED
        assert sync.session.last_fingerprint == fingerprint({"edit": 5})

    @pytest.mark.asyncio
    async def test_applying_remote_blocks_push(self, sync, backend, scheduler):
        share_id, _ = await _shared(sync)
        sync.stop_polling()
        seen = {}

        def echo(state):
            # a naive UI writes every applied state straight back
            seen["phase"] = sync.phase
            seen["queued"] = sync.queue_save(state)

        sync.on_state_change = echo
        backend.remote_write(share_id, {"from": "other device"})
        await sync.fetch_remote_state()
        await scheduler.advance(5000)

        assert seen == {"phase": SyncPhase.APPLYING_REMOTE, "queued": False}
        assert backend.updates == []
        assert sync.phase is SyncPhase.STEADY

    @pytest.mark.asyncio
    async def test_direct_save_also_blocked_while_applying(self, sync, backend):
        share_id, _ = await _shared(sync)
        results = []

        async def echo(state):
            results.append(await sync.save_remote_state(state))

        sync.on_state_change = echo
        backend.remote_write(share_id, {"from": "other device"})
        await sync.fetch_remote_state()
        assert results == [False]
        assert backend.updates == []

    @pytest.mark.asyncio
    async def test_push_allowed_after_apply(self, sync, backend, scheduler):
        share_id, _ = await _shared(sync)
        sync.stop_polling()
        backend.remote_write(share_id, {"from": "other device"})
        await sync.fetch_remote_state()

        assert sync.queue_save({"local": "edit"}) is True
        await scheduler.advance(300)
        assert backend.updates == [{"local": "edit"}]

    @pytest.mark.asyncio
    async def test_stale_fetch_racing_a_save_is_not_applied(self, sync, backend):
        await _shared(sync, {"v": 0})
        sync.stop_polling()
        applied = []
        sync.on_state_change = applied.append

        backend.gate = asyncio.Event()
        fetch = asyncio.create_task(sync.fetch_remote_state(silent=True))
        await asyncio.sleep(0)  # fetch has read the old row and is waiting

        backend_gate, backend.gate = backend.gate, None
        assert await sync.save_remote_state({"v": 2}) is True
        backend_gate.set()
        await fetch

        assert applied == []
        assert sync.session.last_fingerprint == fingerprint({"v": 2})

    @pytest.mark.asyncio
    async def test_no_push_without_session(self, sync, backend, scheduler):
        assert sync.queue_save(STATE) is False
        await scheduler.advance(1000)
        assert backend.updates == []


# ---------------------------------------------------------------------------
# Polling + leave_share()
# ---------------------------------------------------------------------------


class TestPollingAndLeave:
    @pytest.mark.asyncio
    async def test_polls_every_interval(self, sync, backend, scheduler):
        share_id, _ = await _shared(sync)
        applied = []
        sync.on_state_change = applied.append

        await scheduler.advance(7999)
        assert backend.fetch_calls == 0
        backend.remote_write(share_id, {"poll": 1})
        await scheduler.advance(1)
        assert applied == [{"poll": 1}]
        await scheduler.advance(16000)
        assert backend.fetch_calls == 3

    @pytest.mark.asyncio
    async def test_leave_share_clears_everything(self, sync, backend, scheduler, address):
        await _shared(sync)
        sync.queue_save({"pending": True})
        backend.fetch_failures = 1
        await sync.fetch_remote_state()

        assert sync.leave_share() is True

        assert not sync.is_sharing
        assert sync.session.remote_id is None
        assert sync.session.remote_secret is None
        assert sync.session.last_fingerprint is None
        assert sync.status is SyncStatus.IDLE
        assert not sync.is_polling
        assert scheduler.pending == 0
        assert "share" not in address.params and "key" not in address.params

        calls = backend.fetch_calls
        await scheduler.advance(60000)
        assert backend.fetch_calls == calls
        assert backend.updates == []
        assert sync.queue_save({"after": "leave"}) is False

    @pytest.mark.asyncio
    async def test_leave_without_session(self, sync):
        assert sync.leave_share() is False

    @pytest.mark.asyncio
    async def test_sync_info(self, sync):
        info = sync.get_sync_info()
        assert info["is_sharing"] is False
        assert info["share_link"] is None

        link = await sync.create_share(STATE)
        info = sync.get_sync_info()
        assert info["status"] is SyncStatus.SYNCED
        assert info["share_link"] == link

    @pytest.mark.asyncio
    async def test_shutdown_keeps_session(self, sync, scheduler):
        await _shared(sync)
        sync.queue_save({"x": 1})
        await sync.shutdown()
        assert scheduler.pending == 0
        assert sync.is_sharing


class TestSchedulerWiring:
    @pytest.mark.asyncio
    async def test_uses_injected_scheduler_only(self, backend, address):
        scheduler = VirtualScheduler()
        sync = RemoteSyncManager(backend, scheduler, address)
        await sync.create_share(STATE)
        assert scheduler.pending == 1  # the poller
