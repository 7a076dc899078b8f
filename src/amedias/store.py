"""LocalStore: durable key/value store for the app state on this device.

Two tiers
---------
1. **DuckDB** (primary): a single ``app_state`` table in a DuckDB file (or an
   in-memory database when no path is given).  Blocking DuckDB calls run in a
   worker thread so the event loop keeps ticking.
2. **Fallback**: if DuckDB cannot open the database the store silently drops
   to a synchronous tier: a JSON file next to the requested path, or a plain
   dict when there is no path.  Callers are never told; only a warning is
   logged.

Every public method awaits initialization first, so callers can use the store
right after constructing it::

    store = LocalStore(Path("~/.amedias/state.duckdb").expanduser())
    await store.save("a_medias_app_state", {"calc": {...}})
    state = await store.load("a_medias_app_state", default={})

Values are JSON-serializable.  Writes are last-write-wins per key; there are
no cross-key transactions.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol

import polars as pl

logger = logging.getLogger(__name__)

_TABLE = "app_state"


class _Tier(Protocol):
    name: str

    def put(self, key: str, value: Any) -> None: ...
    def get(self, key: str) -> tuple[bool, Any]: ...
    def delete(self, key: str) -> None: ...
    def keys(self) -> list[str]: ...
    def wipe(self) -> None: ...
    def rows(self) -> pl.DataFrame: ...
    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# DuckDB tier
# ---------------------------------------------------------------------------


class _DuckDBTier:
    name = "duckdb"

    def __init__(self, db_path: Path | None) -> None:
        import duckdb

        if db_path is not None:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn: duckdb.DuckDBPyConnection = duckdb.connect(str(db_path) if db_path else ":memory:")
        self.conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {_TABLE} (
                state_key  VARCHAR PRIMARY KEY,
                data       JSON        NOT NULL,
                updated_at TIMESTAMPTZ DEFAULT now()
            )
        """)

    def put(self, key: str, value: Any) -> None:
        self.conn.execute(
            f"""
            INSERT INTO {_TABLE} (state_key, data, updated_at)
            VALUES (?, ?, now())
            ON CONFLICT (state_key) DO UPDATE SET
                data       = excluded.data,
                updated_at = now();
            """,
            [key, json.dumps(value)],
        )

    def get(self, key: str) -> tuple[bool, Any]:
        row = self.conn.execute(f"SELECT data FROM {_TABLE} WHERE state_key = ?", [key]).fetchone()
        if row is None:
            return False, None
        raw = row[0]
        return True, json.loads(raw) if isinstance(raw, str) else raw

    def delete(self, key: str) -> None:
        self.conn.execute(f"DELETE FROM {_TABLE} WHERE state_key = ?", [key])

    def keys(self) -> list[str]:
        rows = self.conn.execute(f"SELECT state_key FROM {_TABLE} ORDER BY state_key").fetchall()
        return [r[0] for r in rows]

    def wipe(self) -> None:
        self.conn.execute(f"DELETE FROM {_TABLE}")

    def rows(self) -> pl.DataFrame:
        return self.conn.execute(
            f'SELECT state_key AS "key", updated_at, length(CAST(data AS VARCHAR)) AS size FROM {_TABLE} ORDER BY state_key'
        ).pl()

    def close(self) -> None:
        self.conn.close()


# ---------------------------------------------------------------------------
# Synchronous fallback tier
# ---------------------------------------------------------------------------


class _FallbackTier:
    """Dict kept in memory and, when a path is given, mirrored to a JSON file."""

    name = "fallback"

    def __init__(self, json_path: Path | None) -> None:
        self._path = json_path
        self._data: dict[str, Any] = {}
        if json_path is not None and json_path.is_file():
            try:
                self._data = json.loads(json_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Ignoring unreadable fallback store %s: %s", json_path, exc)

    def _flush(self) -> None:
        if self._path is not None:
            self._path.write_text(json.dumps(self._data), encoding="utf-8")

    def put(self, key: str, value: Any) -> None:
        # Round-trip through JSON so stored values behave like the DuckDB tier
        self._data[key] = json.loads(json.dumps(value))
        self._flush()

    def get(self, key: str) -> tuple[bool, Any]:
        if key not in self._data:
            return False, None
        return True, self._data[key]

    def delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._flush()

    def keys(self) -> list[str]:
        return sorted(self._data)

    def wipe(self) -> None:
        self._data = {}
        self._flush()

    def rows(self) -> pl.DataFrame:
        return pl.DataFrame(
            {
                "key": self.keys(),
                "size": [len(json.dumps(self._data[k])) for k in self.keys()],
            },
            schema={"key": pl.Utf8, "size": pl.Int64},
        )

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Public store
# ---------------------------------------------------------------------------


class LocalStore:
    """Async key/value store with a silent synchronous fallback tier."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path) if db_path is not None else None
        self._tier: _Tier | None = None
        self._init_lock = asyncio.Lock()
        self._op_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the primary tier, or the fallback tier if that fails (idempotent)."""
        async with self._init_lock:
            if self._tier is not None:
                return
            try:
                self._tier = await asyncio.to_thread(_DuckDBTier, self._db_path)
                logger.debug("Local store ready (duckdb, %s)", self._db_path or ":memory:")
            except Exception as exc:  # noqa: BLE001
                logger.warning("DuckDB store unavailable, using fallback tier: %s", exc)
                self._tier = _FallbackTier(self._fallback_path())

    def _fallback_path(self) -> Path | None:
        if self._db_path is None:
            return None
        candidate = self._db_path.with_name(self._db_path.name + ".json")
        return candidate if candidate.parent.is_dir() else None

    async def _ready(self) -> _Tier:
        if self._tier is None:
            await self.initialize()
        assert self._tier is not None
        return self._tier

    @property
    def backend(self) -> str | None:
        """Name of the active tier, or ``None`` before initialization."""
        return self._tier.name if self._tier is not None else None

    async def _run(self, fn, *args):
        tier = await self._ready()
        async with self._op_lock:
            if isinstance(tier, _DuckDBTier):
                return await asyncio.to_thread(getattr(tier, fn), *args)
            return getattr(tier, fn)(*args)

    # ------------------------------------------------------------------
    # Key/value API
    # ------------------------------------------------------------------

    async def save(self, key: str, value: Any) -> bool:
        try:
            await self._run("put", key, value)
        except Exception as exc:  # noqa: BLE001
            logger.error("Could not save %r: %s", key, exc)
            return False
        logger.debug("Saved %r", key)
        return True

    async def load(self, key: str, default: Any = None) -> Any:
        try:
            found, value = await self._run("get", key)
        except Exception as exc:  # noqa: BLE001
            logger.error("Could not load %r: %s", key, exc)
            return default
        return value if found else default

    async def remove(self, key: str) -> bool:
        try:
            await self._run("delete", key)
        except Exception as exc:  # noqa: BLE001
            logger.error("Could not remove %r: %s", key, exc)
            return False
        return True

    async def list_keys(self) -> list[str]:
        try:
            return await self._run("keys")
        except Exception as exc:  # noqa: BLE001
            logger.error("Could not list keys: %s", exc)
            return []

    async def clear(self) -> bool:
        try:
            await self._run("wipe")
        except Exception as exc:  # noqa: BLE001
            logger.error("Could not clear store: %s", exc)
            return False
        logger.info("Local store cleared")
        return True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def records(self) -> pl.DataFrame:
        """One row per stored key with its serialized size."""
        return await self._run("rows")

    async def get_stats(self) -> dict[str, Any]:
        df = await self.records()
        stats: dict[str, Any] = {
            "backend": self.backend,
            "item_count": df.height,
            "estimated_size": int(df["size"].sum()) if df.height else 0,
        }
        if self._db_path is not None:
            stats["path"] = str(self._db_path)
        return stats

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        if self._tier is not None:
            async with self._op_lock:
                self._tier.close()
            self._tier = None

    async def __aenter__(self) -> "LocalStore":
        await self.initialize()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()
