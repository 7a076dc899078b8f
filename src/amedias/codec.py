"""State codec: canonical JSON, compression strategies, base64url, fingerprint.

Wire format
-----------
``compress`` produces either a gzip stream or the plain UTF-8 JSON bytes.
There is no explicit flag; ``decompress`` recognises gzip by its two magic
bytes (``1f 8b``).  A JSON document always starts with printable text, so
the two formats can never be confused.

The fingerprint is a 32-bit rolling hash (``h = h * 31 + code``) rendered in
base 36.  It only gates UI refreshes and is **not** a security primitive.
"""

from __future__ import annotations

import base64
import binascii
import importlib.util
import json
import logging
from typing import Any, Protocol, runtime_checkable

from amedias.errors import DecodeError

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"

_B36 = "0123456789abcdefghijklmnopqrstuvwxyz"


# ---------------------------------------------------------------------------
# Serialization + fingerprint
# ---------------------------------------------------------------------------


def canonical_json(state: Any) -> str:
    """Compact JSON, insertion order preserved (the fingerprint is order-sensitive)."""
    return json.dumps(state, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def _to_base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_B36[rem])
    return "".join(reversed(digits))


def fingerprint(state: Any) -> str:
    """Short, deterministic change-detection digest of *state*."""
    h = 0
    for ch in canonical_json(state):
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _to_base36(abs(h))


# ---------------------------------------------------------------------------
# Compression strategies
# ---------------------------------------------------------------------------


@runtime_checkable
class Compression(Protocol):
    name: str

    def compress(self, raw: bytes) -> bytes: ...
    def decompress(self, data: bytes) -> bytes: ...


class GzipCompression:
    name = "gzip"

    def compress(self, raw: bytes) -> bytes:
        import gzip

        # mtime=0 keeps the output stable for identical input
        return gzip.compress(raw, compresslevel=9, mtime=0)

    def decompress(self, data: bytes) -> bytes:
        import gzip

        return gzip.decompress(data)


class PassThroughCompression:
    name = "identity"

    def compress(self, raw: bytes) -> bytes:
        return raw

    def decompress(self, data: bytes) -> bytes:
        return data


_selected: Compression | None = None


def select_compression(*, refresh: bool = False) -> Compression:
    """Capability probe: gzip when ``zlib`` is present and works, else pass-through.

    The result is cached; pass ``refresh=True`` to probe again.
    """
    global _selected
    if _selected is not None and not refresh:
        return _selected

    choice: Compression = PassThroughCompression()
    if importlib.util.find_spec("zlib") is not None:
        candidate = GzipCompression()
        try:
            if candidate.decompress(candidate.compress(b"{}")) == b"{}":
                choice = candidate
        except Exception as exc:  # noqa: BLE001
            logger.warning("gzip self-test failed, sharing uncompressed: %s", exc)
    logger.debug("Share payload compression: %s", choice.name)
    _selected = choice
    return choice


def compress(state: Any, compression: Compression | None = None) -> bytes:
    """Serialize and compress *state*; falls back to raw UTF-8 if compression fails."""
    raw = canonical_json(state).encode("utf-8")
    strategy = compression or select_compression()
    try:
        return strategy.compress(raw)
    except Exception as exc:  # noqa: BLE001
        logger.warning("%s compression failed, using raw payload: %s", strategy.name, exc)
        return raw


def _reject_constant(name: str) -> Any:
    # NaN and Infinity are not JSON and cannot be fingerprinted
    raise DecodeError(f"Payload contains non-finite number {name}")


def decompress(data: bytes) -> Any:
    """Inverse of :func:`compress`; raises :class:`DecodeError` if nothing fits."""
    if data[:2] == GZIP_MAGIC:
        try:
            import zlib
        except ImportError as exc:
            raise DecodeError("Payload is gzip-compressed but zlib is unavailable") from exc
        try:
            raw = GzipCompression().decompress(data)
        except (OSError, EOFError, zlib.error) as exc:
            raise DecodeError(f"Corrupt gzip payload: {exc}") from exc
    else:
        raw = PassThroughCompression().decompress(data)

    try:
        return json.loads(raw.decode("utf-8"), parse_constant=_reject_constant)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"Payload is not valid JSON: {exc}") from exc


# ---------------------------------------------------------------------------
# URL-safe text
# ---------------------------------------------------------------------------


def to_url_safe_text(data: bytes) -> str:
    """base64url without ``=`` padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def from_url_safe_text(text: str) -> bytes:
    """Decode base64url text; missing padding is restored."""
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise DecodeError(f"Invalid base64url payload: {exc}") from exc
