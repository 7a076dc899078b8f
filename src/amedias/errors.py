"""Exception hierarchy for the sync and sharing core."""

from __future__ import annotations


class AMediasError(Exception):
    """Base class for every error raised by :mod:`amedias`."""


class ConfigError(AMediasError):
    """Invalid or unreadable configuration."""


class DecodeError(AMediasError):
    """A share payload could not be decoded by any known format."""


class BackendError(AMediasError):
    """The remote backend answered with something we cannot use."""


class ShareNotFoundError(BackendError):
    """No share matches the given ``(id, secret)`` pair.

    Raised both for an unknown id and for a wrong secret so callers cannot
    tell which half of the credential was wrong.
    """

    def __init__(self) -> None:
        super().__init__("Shared link not found")
