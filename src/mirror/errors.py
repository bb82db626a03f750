"""
Error taxonomy for the mirror.

Unit-level errors (a message, a conversation, a resync target) are
absorbed where they occur and logged.  ``AuthorizationError`` is the only
remote error that escalates past a single user's pass.
"""

from __future__ import annotations


class MirrorError(Exception):
    """Base class for all mirror errors."""


class TransientRemoteError(MirrorError):
    """A single remote call failed (network, timeout, RPC error).

    The affected unit is skipped; the next pass will try again.
    """


class AuthorizationError(MirrorError):
    """The remote platform rejected the session.

    Aborts the current user's pass.  The scheduler marks the user
    inactive and evicts the session from the connection registry.
    """


class MalformedDataError(MirrorError):
    """A single raw record cannot be turned into a stored entity."""


class PeerResolutionError(MalformedDataError):
    """A conversation cannot be addressed (e.g. channel without access hash)."""
