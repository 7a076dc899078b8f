"""Runtime configuration.

Backend credentials are never compiled in.  Values are resolved in this
order (first hit wins):

1. keyword arguments passed to :func:`load_settings`
2. environment variables
3. the ``[amedias]`` table of an optional TOML file
4. built-in defaults

Environment variables:
    AMEDIAS_SUPABASE_URL       – project URL (e.g. https://xyz.supabase.co)
    AMEDIAS_SUPABASE_ANON_KEY  – public/anon API key
    AMEDIAS_SUPABASE_TABLE     – share table (default: ``a_medias_shares``)
    AMEDIAS_BASE_URL           – the app's own address, used for share links
    AMEDIAS_STORE_PATH         – DuckDB file for the local store

Example ``amedias.toml``::

    [amedias]
    base_url = "https://amedias.example.org/"
    store_path = "~/.local/share/amedias/state.duckdb"

    [amedias.supabase]
    url = "https://xyz.supabase.co"
    anon_key = "eyJhbGciOi..."
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from amedias.errors import ConfigError

DEFAULT_TABLE = "a_medias_shares"
DEFAULT_BASE_URL = "http://localhost:8000/"

#: Hard cap on the length of a URL-embedded share link.
MAX_URL_LENGTH = 8000

#: Format version written to the ``v`` parameter of share links.
SHARE_FORMAT_VERSION = "1"


@dataclass(frozen=True)
class SyncTimings:
    """Timer constants for the remote sync manager, in milliseconds."""

    poll_interval_ms: int = 8000
    debounce_ms: int = 300
    retry_base_ms: int = 2000
    retry_cap_ms: int = 30000
    max_retries: int = 3


@dataclass(frozen=True)
class RemoteConfig:
    url: str = ""
    anon_key: str = field(default="", repr=False)
    table: str = DEFAULT_TABLE

    @property
    def enabled(self) -> bool:
        return bool(self.url and self.anon_key)


@dataclass(frozen=True)
class Settings:
    base_url: str = DEFAULT_BASE_URL
    store_path: Path | None = None
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    timings: SyncTimings = field(default_factory=SyncTimings)
    max_url_length: int = MAX_URL_LENGTH


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "rb") as fh:
            data = tomllib.load(fh)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    return data.get("amedias", {})


def load_settings(
    path: Path | str | None = None,
    *,
    base_url: str | None = None,
    store_path: Path | str | None = None,
    supabase_url: str | None = None,
    supabase_anon_key: str | None = None,
    supabase_table: str | None = None,
    timings: SyncTimings | None = None,
) -> Settings:
    """Build :class:`Settings` from kwargs, environment and an optional TOML file."""
    file_cfg = _read_toml(Path(path).expanduser()) if path else {}
    file_remote = file_cfg.get("supabase", {})

    store = store_path or os.getenv("AMEDIAS_STORE_PATH") or file_cfg.get("store_path")

    remote = RemoteConfig(
        url=(supabase_url or os.getenv("AMEDIAS_SUPABASE_URL") or file_remote.get("url", "")).rstrip("/"),
        anon_key=supabase_anon_key or os.getenv("AMEDIAS_SUPABASE_ANON_KEY") or file_remote.get("anon_key", ""),
        table=supabase_table or os.getenv("AMEDIAS_SUPABASE_TABLE") or file_remote.get("table", DEFAULT_TABLE),
    )

    if timings is None:
        raw = file_cfg.get("timings", {})
        try:
            timings = SyncTimings(**raw)
        except TypeError as exc:
            raise ConfigError(f"Unknown timing option in config: {exc}") from exc

    return Settings(
        base_url=base_url or os.getenv("AMEDIAS_BASE_URL") or file_cfg.get("base_url", DEFAULT_BASE_URL),
        store_path=Path(store).expanduser() if store else None,
        remote=remote,
        timings=timings,
        max_url_length=int(file_cfg.get("max_url_length", MAX_URL_LENGTH)),
    )
