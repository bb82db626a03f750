"""
ReadOnlyTelegramClient: allowlist proxy around Telethon's TelegramClient.

The mirror only ever reads.  Every attribute lookup on the wrapper is
checked against ``ALLOWED_METHODS`` and every raw TL request passed to
``await client(request)`` is checked against ``ALLOWED_REQUESTS``; anything
else raises ``PermissionError`` and is logged at CRITICAL.

Raw requests are needed because the incremental sync works on
``updates.getDifference`` / ``updates.getState`` and because history
batches must come back together with their sender directory, which the
high-level ``get_messages`` helper does not expose.
"""

from __future__ import annotations

import logging
import time
from typing import Any, FrozenSet
from weakref import WeakKeyDictionary

from telethon import TelegramClient as TelethonClient

logger = logging.getLogger("mirror.readonly_client")

# ---------------------------------------------------------------------------
# Allowlists.  Do NOT add send/edit/delete/forward/read-acknowledge methods
# or any request that mutates server-side state (including marking
# messages as read).
# ---------------------------------------------------------------------------
ALLOWED_METHODS: FrozenSet[str] = frozenset(
    {
        # Connection lifecycle
        "connect",
        "disconnect",
        "is_connected",
        # Session liveness / profile
        "get_me",
        # Conversation listing
        "get_dialogs",
    }
)

ALLOWED_REQUESTS: FrozenSet[str] = frozenset(
    {
        "messages.GetHistoryRequest",
        "updates.GetDifferenceRequest",
        "updates.GetStateRequest",
    }
)

_CLIENT_MAP: "WeakKeyDictionary[ReadOnlyTelegramClient, TelethonClient]" = WeakKeyDictionary()

_PROTOCOL_NAMES = frozenset(
    {
        "__class__",
        "__repr__",
        "__call__",
        "__aenter__",
        "__aexit__",
        "__setattr__",
        "__delattr__",
        "__getattribute__",
        "_state",
    }
)


def request_name(request: Any) -> str:
    """Qualified TL name of a request object (``messages.GetHistoryRequest``)."""
    cls = type(request)
    namespace = cls.__module__.rsplit(".", 1)[-1]
    return f"{namespace}.{cls.__name__}"


class ReadOnlyTelegramClient:
    """Read-only proxy around a TelethonClient instance.

    Usage::

        client = ReadOnlyTelegramClient(TelethonClient(path, api_id, api_hash))
        await client.connect()
        state = await client(GetStateRequest())

    Blocked attribute lookups and blocked requests raise ``PermissionError``
    before reaching the underlying client.
    """

    __slots__ = ("__weakref__",)

    def __init__(self, client: TelethonClient) -> None:
        _CLIENT_MAP[self] = client

    @staticmethod
    def _state(self: "ReadOnlyTelegramClient") -> TelethonClient:
        client = _CLIENT_MAP.get(self)
        if client is None:
            raise PermissionError("ReadOnlyTelegramClient: internal state unavailable.")
        return client

    # ----- raw requests ---------------------------------------------------

    async def __call__(self, request: Any, ordered: bool = False) -> Any:
        """Invoke an allowlisted raw TL request on the underlying client."""
        client = ReadOnlyTelegramClient._state(self)
        name = request_name(request)
        if name not in ALLOWED_REQUESTS:
            logger.critical(
                "BLOCKED  | request=%-28s ts=%s  — PermissionError raised",
                name,
                time.time(),
            )
            raise PermissionError(
                f"ReadOnlyTelegramClient: request '{name}' is denied. "
                f"Only these requests are permitted: {sorted(ALLOWED_REQUESTS)}"
            )
        logger.debug("ALLOWED  | request=%-28s ts=%s", name, time.time())
        return await client(request, ordered=ordered)

    # ----- async context manager ------------------------------------------

    async def __aenter__(self) -> "ReadOnlyTelegramClient":
        client = ReadOnlyTelegramClient._state(self)
        await client.connect()
        logger.info("ReadOnlyTelegramClient connected.")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        client = ReadOnlyTelegramClient._state(self)
        await client.disconnect()
        logger.info("ReadOnlyTelegramClient disconnected.")

    # ----- attribute proxy ------------------------------------------------

    def __getattribute__(self, name: str) -> Any:
        """Return allowlisted client methods; deny everything else."""
        if name in _PROTOCOL_NAMES:
            return object.__getattribute__(self, name)

        if name.startswith("_"):
            logger.critical(
                "BLOCKED  | attr=%-27s ts=%s  — internal attribute access denied",
                name,
                time.time(),
            )
            raise PermissionError(
                f"ReadOnlyTelegramClient: internal attribute access to '{name}' is denied."
            )

        if name not in ALLOWED_METHODS:
            logger.critical(
                "BLOCKED  | method=%-25s ts=%s  — PermissionError raised",
                name,
                time.time(),
            )
            raise PermissionError(
                f"ReadOnlyTelegramClient: access to '{name}' is denied. "
                f"Only these methods are permitted: {sorted(ALLOWED_METHODS)}"
            )

        try:
            client = ReadOnlyTelegramClient._state(self)
            attr = getattr(client, name)
        except PermissionError:
            raise
        except Exception:
            logger.critical(
                "BLOCKED  | method=%-25s ts=%s  — lookup failed; failing closed",
                name,
                time.time(),
                exc_info=True,
            )
            raise PermissionError(
                f"ReadOnlyTelegramClient: access to '{name}' denied "
                f"(fail-closed on unexpected error)."
            )

        if not callable(attr):
            raise PermissionError(
                f"ReadOnlyTelegramClient: allowed member '{name}' is not callable."
            )
        return attr

    def __setattr__(self, name: str, value: Any) -> None:
        raise PermissionError("ReadOnlyTelegramClient: setting attributes is not allowed.")

    def __delattr__(self, name: str) -> None:
        raise PermissionError("ReadOnlyTelegramClient: deleting attributes is not allowed.")

    def __repr__(self) -> str:
        client = ReadOnlyTelegramClient._state(self)
        return (
            f"<ReadOnlyTelegramClient "
            f"methods={sorted(ALLOWED_METHODS)} "
            f"requests={sorted(ALLOWED_REQUESTS)} "
            f"connected={client.is_connected()}>"
        )
