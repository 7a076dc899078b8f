"""Shared fixtures: an in-memory share backend and a fake PostgREST server."""

from __future__ import annotations

import asyncio
import itertools
import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from amedias.config import RemoteConfig
from amedias.share_url import AddressBar
from amedias.store import LocalStore
from amedias.sync.base import ShareRecord
from amedias.sync.manager import RemoteSyncManager
from amedias.timers import VirtualScheduler

BASE_URL = "https://amedias.test/app/"

_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class FakeBackend:
    """ShareBackend kept in a dict, with switchable failures."""

    def __init__(self) -> None:
        self.rows: dict[str, dict[str, Any]] = {}
        self.fetch_failures = 0
        self.update_failures = 0
        self.fetch_error: Exception = httpx.ConnectError("network unreachable")
        self.fetch_calls = 0
        self.updates: list[Any] = []
        self.gate: asyncio.Event | None = None
        self.closed = False
        self._ticks = itertools.count(1)

    def _tick(self) -> datetime:
        return _EPOCH + timedelta(seconds=next(self._ticks))

    def seed(self, share_id: str, secret: str, payload: Any) -> None:
        self.rows[share_id] = {"secret": secret, "payload": payload, "updated_at": self._tick()}

    def remote_write(self, share_id: str, payload: Any) -> datetime:
        """Simulate another device writing to the share."""
        row = self.rows[share_id]
        row["payload"] = payload
        row["updated_at"] = self._tick()
        return row["updated_at"]

    def _match(self, share_id: str, secret: str) -> dict[str, Any] | None:
        row = self.rows.get(share_id)
        if row is None or row["secret"] != secret:
            return None
        return row

    async def create(self, share_id: str, share_secret: str, state: Any) -> ShareRecord:
        self.seed(share_id, share_secret, state)
        return ShareRecord(share_id=share_id, updated_at=self.rows[share_id]["updated_at"], payload=state)

    async def fetch(self, share_id: str, share_secret: str) -> ShareRecord | None:
        self.fetch_calls += 1
        if self.fetch_failures:
            self.fetch_failures -= 1
            raise self.fetch_error
        row = self._match(share_id, share_secret)
        snapshot = dict(row) if row else None
        if self.gate is not None:
            await self.gate.wait()
        if snapshot is None:
            return None
        return ShareRecord(share_id=share_id, updated_at=snapshot["updated_at"], payload=snapshot["payload"])

    async def update(self, share_id: str, share_secret: str, state: Any) -> ShareRecord:
        if self.update_failures:
            self.update_failures -= 1
            raise httpx.ConnectError("network unreachable")
        row = self._match(share_id, share_secret)
        if row is None:
            from amedias.errors import ShareNotFoundError

            raise ShareNotFoundError()
        row["payload"] = state
        row["updated_at"] = self._tick()
        self.updates.append(state)
        return ShareRecord(share_id=share_id, updated_at=row["updated_at"], payload=state)

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fake PostgREST server for httpx.MockTransport
# ---------------------------------------------------------------------------


class FakePostgREST:
    """Minimal PostgREST emulation of the share table."""

    def __init__(self, anon_key: str = "anon-key") -> None:
        self.anon_key = anon_key
        self.rows: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None
        self._ticks = itertools.count(1)

    def _now(self) -> str:
        return (_EPOCH + timedelta(seconds=next(self._ticks))).isoformat()

    def _matching(self, params: httpx.QueryParams) -> list[dict[str, Any]]:
        def value(name: str) -> str | None:
            raw = params.get(name)
            return raw[3:] if raw and raw.startswith("eq.") else None

        return [
            r
            for r in self.rows
            if r["share_id"] == value("share_id") and r["share_key"] == value("share_key")
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("apikey") != self.anon_key:
            return httpx.Response(401, json={"message": "Invalid API key"})
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"message": "boom"})

        if request.method == "POST":
            row = json.loads(request.content)
            row["updated_at"] = self._now()
            self.rows.append(row)
            return httpx.Response(201, json=[row])

        if request.method == "GET":
            matches = self._matching(request.url.params)
            cols = request.url.params.get("select", "").split(",")
            return httpx.Response(200, json=[{c: r[c] for c in cols if c in r} for r in matches[:1]])

        if request.method == "PATCH":
            body = json.loads(request.content)
            matches = self._matching(request.url.params)
            for r in matches:
                r["payload"] = body["payload"]
                r["updated_at"] = self._now()
            return httpx.Response(200, json=matches)

        return httpx.Response(405)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def scheduler() -> VirtualScheduler:
    return VirtualScheduler()


@pytest.fixture()
def address() -> AddressBar:
    return AddressBar(BASE_URL)


@pytest.fixture()
def sync(backend: FakeBackend, scheduler: VirtualScheduler, address: AddressBar) -> RemoteSyncManager:
    return RemoteSyncManager(backend, scheduler, address)


@pytest.fixture()
def store() -> LocalStore:
    return LocalStore()


@pytest.fixture()
def postgrest() -> FakePostgREST:
    return FakePostgREST()


@pytest.fixture()
def remote_config() -> RemoteConfig:
    return RemoteConfig(url="https://project.supabase.test", anon_key="anon-key")
