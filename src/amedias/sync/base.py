"""Abstract remote share backend protocol."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable


@dataclass
class ShareRecord:
    """One row of the remote share table, as seen by the client."""

    share_id: str
    updated_at: datetime | None = None
    payload: Any = None
    created_at: datetime | None = field(default=None, repr=False)


@runtime_checkable
class ShareBackend(Protocol):
    """Common interface for remote share storage.

    A share is addressed by a discoverable ``share_id`` and a capability
    ``share_secret``.  Implementations must answer a wrong secret exactly like
    an unknown id.
    """

    async def create(self, share_id: str, share_secret: str, state: Any) -> ShareRecord:
        """Insert a new share row holding *state*."""
        ...

    async def fetch(self, share_id: str, share_secret: str) -> ShareRecord | None:
        """Return the share row, or ``None`` when no row matches both values."""
        ...

    async def update(self, share_id: str, share_secret: str, state: Any) -> ShareRecord:
        """Overwrite the payload; raises :class:`~amedias.errors.ShareNotFoundError` on no match."""
        ...

    async def aclose(self) -> None: ...
