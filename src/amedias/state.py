"""AppState dataclass and the enums shared by the sync components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

#: Current version of the persisted AppState layout.
DATA_VERSION = 2

#: Storage keys used in the local store.
STATE_KEY = "a_medias_app_state"
SHARE_MODE_KEY = "a_medias_share_mode"


class SyncStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SAVING = "saving"
    SYNCED = "synced"
    ERROR = "error"


class ShareMode(str, Enum):
    NONE = "none"      # local only
    URL = "url"        # state embedded in the link
    REMOTE = "remote"  # state mirrored to the backend


@dataclass
class AppState:
    """Snapshot of everything the UI needs to restore itself.

    The sync layer never looks inside it; it only moves the dict produced by
    :meth:`to_dict` around.
    """

    active_view: str = "calc"
    calculator_inputs: dict[str, Any] = field(default_factory=dict)
    reimbursement_list: list[dict[str, Any]] = field(default_factory=list)
    format_version: int = DATA_VERSION
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.format_version,
            "activeTab": self.active_view,
            "calc": self.calculator_inputs,
            "reimbursements": self.reimbursement_list,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppState":
        """Rebuild a snapshot, tolerating missing or malformed sections."""
        calc = data.get("calc")
        reimbursements = data.get("reimbursements")
        return cls(
            active_view=data.get("activeTab") or "calc",
            calculator_inputs=calc if isinstance(calc, dict) else {},
            reimbursement_list=reimbursements if isinstance(reimbursements, list) else [],
            format_version=int(data.get("version", DATA_VERSION)),
            timestamp=data.get("timestamp") or datetime.now(timezone.utc).isoformat(),
        )


@dataclass
class ShareSession:
    """Active sharing mode plus its credentials and sync bookkeeping."""

    mode: ShareMode = ShareMode.NONE
    remote_id: str | None = None
    remote_secret: str | None = field(default=None, repr=False)
    last_fingerprint: str | None = None
    last_synced_at: datetime | None = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.remote_id and self.remote_secret)
