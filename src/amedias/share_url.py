"""Backend-free sharing: the whole app state travels inside the link.

Link layout
-----------
``<base address>?d=<payload>&h=<fingerprint>&v=1``

- ``d`` – base64url of the (possibly gzip-compressed) canonical JSON
- ``h`` – :func:`amedias.codec.fingerprint` of the state, for a soft
  integrity check on read
- ``v`` – share format version

The base address is the app's own address without query string or fragment.
Links longer than ``max_url_length`` (8000 characters by default) are refused
with a structured result; :class:`ShareURLManager` never raises for codec
problems.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from amedias import codec
from amedias.config import MAX_URL_LENGTH, SHARE_FORMAT_VERSION
from amedias.errors import DecodeError

logger = logging.getLogger(__name__)

SHARE_PARAMS = ("d", "h", "v")

QR_ENDPOINT = "https://api.qrserver.com/v1/create-qr-code/"

# Allowance for parameter names, separators, fingerprint and version.
_PARAM_OVERHEAD = 100


# ---------------------------------------------------------------------------
# Address bar
# ---------------------------------------------------------------------------


class AddressBar:
    """The app's current address, updated in place without navigating."""

    def __init__(self, href: str) -> None:
        self.href = href

    @property
    def base(self) -> str:
        """Scheme, host and path only."""
        parts = urlsplit(self.href)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))

    @property
    def params(self) -> dict[str, str]:
        return dict(parse_qsl(urlsplit(self.href).query, keep_blank_values=True))

    def replace(self, href: str) -> None:
        self.href = href

    def with_params(self, **updates: str | None) -> str:
        """Current address with *updates* applied; ``None`` removes a parameter."""
        parts = urlsplit(self.href)
        query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in updates]
        query.extend((k, v) for k, v in updates.items() if v is not None)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), ""))

    def set_params(self, **params: str) -> None:
        self.replace(self.with_params(**params))

    def remove_params(self, *names: str) -> None:
        self.replace(self.with_params(**{n: None for n in names}))

    def __repr__(self) -> str:
        return f"AddressBar({self.base!r})"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ShareURLResult:
    success: bool
    url: str | None = None
    size: int | None = None
    compressed: bool = False
    error: str | None = None
    message: str | None = None
    max_size: int | None = None


@dataclass
class ReadResult:
    success: bool
    data: Any = None
    version: str | None = None
    integrity_ok: bool = True
    error: str | None = None
    message: str | None = None


@dataclass
class SizeEstimate:
    compressed_bytes: int
    encoded_chars: int
    estimated_url_length: int
    can_share: bool
    #: compressed size as a percentage of the raw JSON size, e.g. ``"42.0%"``
    compression_ratio: str


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class ShareURLManager:
    """Builds and reads self-contained share links."""

    def __init__(
        self,
        address: AddressBar,
        *,
        max_url_length: int = MAX_URL_LENGTH,
        compression: codec.Compression | None = None,
    ) -> None:
        self.address = address
        self.max_url_length = max_url_length
        self._compression = compression

    @property
    def compression(self) -> codec.Compression:
        if self._compression is None:
            self._compression = codec.select_compression()
        return self._compression

    def create_share_url(self, state: Any) -> ShareURLResult:
        try:
            payload = codec.compress(state, self.compression)
            encoded = codec.to_url_safe_text(payload)
            digest = codec.fingerprint(state)
        except (TypeError, ValueError) as exc:
            logger.error("Could not encode share payload: %s", exc)
            return ShareURLResult(
                success=False,
                error="encode_failed",
                message=f"Could not encode the data: {exc}",
            )

        query = urlencode({"d": encoded, "h": digest, "v": SHARE_FORMAT_VERSION})
        url = f"{self.address.base}?{query}"
        size = len(url)

        if size > self.max_url_length:
            logger.warning("Share link too long: %d > %d characters", size, self.max_url_length)
            return ShareURLResult(
                success=False,
                error="too_large",
                message="The data is too large to share via URL",
                size=size,
                max_size=self.max_url_length,
            )

        logger.info("Share link created (%d characters)", size)
        return ShareURLResult(
            success=True,
            url=url,
            size=size,
            compressed=payload[:2] == codec.GZIP_MAGIC,
        )

    def read_share_url(self, url: str | None = None) -> ReadResult:
        params = dict(parse_qsl(urlsplit(url or self.address.href).query, keep_blank_values=True))
        encoded = params.get("d")
        if not encoded:
            return ReadResult(success=False, error="no_data", message="There is no shared data in the URL")

        try:
            data = codec.decompress(codec.from_url_safe_text(encoded))
        except DecodeError as exc:
            logger.error("Could not decode shared link: %s", exc)
            return ReadResult(
                success=False,
                error="decode_failed",
                message=f"Could not decode the shared data: {exc}",
            )

        integrity_ok = True
        expected = params.get("h")
        if expected and expected != codec.fingerprint(data):
            integrity_ok = False
            logger.warning("Shared link fingerprint mismatch, data may be corrupted")

        version = params.get("v") or SHARE_FORMAT_VERSION
        logger.info("Loaded shared state from link (format v%s)", version)
        return ReadResult(success=True, data=data, version=version, integrity_ok=integrity_ok)

    def has_shared_data(self, url: str | None = None) -> bool:
        try:
            return "d" in dict(parse_qsl(urlsplit(url or self.address.href).query))
        except ValueError:
            return False

    def clear_share_params(self) -> None:
        self.address.remove_params(*SHARE_PARAMS)

    def estimate_size(self, state: Any) -> SizeEstimate | None:
        try:
            raw_len = len(codec.canonical_json(state).encode("utf-8"))
            payload = codec.compress(state, self.compression)
        except (TypeError, ValueError) as exc:
            logger.error("Could not estimate share size: %s", exc)
            return None
        encoded_chars = len(codec.to_url_safe_text(payload))
        estimated = len(self.address.base) + encoded_chars + _PARAM_OVERHEAD
        return SizeEstimate(
            compressed_bytes=len(payload),
            encoded_chars=encoded_chars,
            estimated_url_length=estimated,
            can_share=estimated <= self.max_url_length,
            compression_ratio=f"{len(payload) / raw_len * 100:.1f}%" if raw_len else "0.0%",
        )

    @staticmethod
    def generate_qr_code(url: str, size: int = 300) -> str:
        """Reference URL of an externally rendered QR image for *url*."""
        return f"{QR_ENDPOINT}?size={size}x{size}&data={quote(url, safe='')}"
