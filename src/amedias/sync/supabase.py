"""Supabase (PostgREST) share backend.

A thin async HTTP client over a single table, one row per share::

    CREATE TABLE a_medias_shares (
      id         BIGSERIAL PRIMARY KEY,
      share_id   TEXT UNIQUE NOT NULL,
      share_key  TEXT NOT NULL,
      payload    JSONB NOT NULL DEFAULT '{}'::jsonb,
      created_at TIMESTAMPTZ DEFAULT NOW(),
      updated_at TIMESTAMPTZ DEFAULT NOW()
    );

Routes used
-----------
POST  /rest/v1/{table}                                   – create a share
GET   /rest/v1/{table}?share_id=eq.X&share_key=eq.Y      – fetch a share
PATCH /rest/v1/{table}?share_id=eq.X&share_key=eq.Y      – update the payload

Every request carries ``apikey`` and ``Authorization: Bearer`` with the anon
key.  Requests for an existing share also carry ``X-Share-Key``; that header
is informational, the row filter on ``share_key`` is what enforces access.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from amedias.config import RemoteConfig
from amedias.errors import BackendError, ShareNotFoundError
from amedias.sync.base import ShareRecord

logger = logging.getLogger(__name__)


def _parse_ts(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseShareClient:
    """HTTP share backend backed by a Supabase table."""

    def __init__(
        self,
        config: RemoteConfig,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not config.enabled:
            raise BackendError("Supabase URL and anon key are required for remote sharing")
        self._table = config.table
        self._client = httpx.AsyncClient(
            base_url=f"{config.url}/rest/v1",
            headers={
                "apikey": config.anon_key,
                "Authorization": f"Bearer {config.anon_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @staticmethod
    def _filters(share_id: str, share_secret: str) -> dict[str, str]:
        return {"share_id": f"eq.{share_id}", "share_key": f"eq.{share_secret}"}

    @staticmethod
    def _first_row(response: httpx.Response) -> dict[str, Any] | None:
        try:
            rows = response.json()
        except ValueError as exc:
            raise BackendError("Unexpected response body from share backend") from exc
        if not isinstance(rows, list):
            raise BackendError("Unexpected response shape from share backend")
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Shares
    # ------------------------------------------------------------------

    async def create(self, share_id: str, share_secret: str, state: Any) -> ShareRecord:
        now = _now_iso()
        r = await self._client.post(
            f"/{self._table}",
            headers={"Prefer": "return=representation"},
            json={
                "share_id": share_id,
                "share_key": share_secret,
                "payload": state,
                "created_at": now,
                "updated_at": now,
            },
        )
        r.raise_for_status()
        row = self._first_row(r) or {}
        logger.info("Created remote share %s", share_id)
        return ShareRecord(
            share_id=share_id,
            updated_at=_parse_ts(row.get("updated_at")) or _parse_ts(now),
            payload=row.get("payload", state),
            created_at=_parse_ts(row.get("created_at")),
        )

    async def fetch(self, share_id: str, share_secret: str) -> ShareRecord | None:
        r = await self._client.get(
            f"/{self._table}",
            headers={"X-Share-Key": share_secret},
            params={"select": "payload,updated_at", **self._filters(share_id, share_secret), "limit": "1"},
        )
        r.raise_for_status()
        row = self._first_row(r)
        if row is None:
            return None
        return ShareRecord(
            share_id=share_id,
            updated_at=_parse_ts(row.get("updated_at")),
            payload=row.get("payload", {}),
        )

    async def update(self, share_id: str, share_secret: str, state: Any) -> ShareRecord:
        now = _now_iso()
        r = await self._client.patch(
            f"/{self._table}",
            headers={"Prefer": "return=representation", "X-Share-Key": share_secret},
            params=self._filters(share_id, share_secret),
            json={"payload": state, "updated_at": now},
        )
        r.raise_for_status()
        row = self._first_row(r)
        if row is None:
            raise ShareNotFoundError()
        return ShareRecord(
            share_id=share_id,
            updated_at=_parse_ts(row.get("updated_at")) or _parse_ts(now),
            payload=row.get("payload", state),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "SupabaseShareClient":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()
