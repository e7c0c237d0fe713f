"""Exception hierarchy for the arena core."""
from __future__ import annotations


class ArenaError(Exception):
    """Base exception for arena errors."""


class StoreError(ArenaError):
    """Raised when session data cannot be written or read back."""


class SessionNotFoundError(ArenaError):
    """Raised when a session id does not exist in the store."""


class RouterStateError(ArenaError):
    """Raised when the router is driven out of order (e.g. start before initialize)."""
