"""
Connection registry: remote sessions keyed by credential fingerprint.

Only ``max_live`` sessions may be open at once (one by default, since the
remote platform is used under one credential set at a time).  Callers
borrow a session through :meth:`ConnectionRegistry.lease`::

    async with registry.lease(credentials) as lease:
        await engine.run(lease.session, user_id, 50, cancel=lease.cancel)

Connecting and tearing down happen inside a registry-wide critical
section, so a session is never switched under a caller that holds it.
Every entry carries its own cancellation event; it is set when the entry
is evicted or the registry is closed, and in-flight passes check it
between conversations.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict

from mirror.errors import TransientRemoteError
from mirror.models import Credentials
from mirror.remote import RemoteClient, RemoteSession

logger = logging.getLogger("mirror.connections")


@dataclass(eq=False)
class _Entry:
    credentials: Credentials
    session: RemoteSession
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0
    closed: bool = False

    @property
    def fingerprint(self) -> str:
        return self.credentials.fingerprint

    @property
    def reusable(self) -> bool:
        return self.session.valid and not self.cancel.is_set() and not self.closed


@dataclass(frozen=True, slots=True)
class Lease:
    """A borrowed session plus the cancellation signal tied to its lifetime."""

    credentials: Credentials
    session: RemoteSession
    cancel: asyncio.Event

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()


class ConnectionRegistry:
    """Pool of remote sessions bounded to ``max_live`` open connections.

    Args:
        remote: Remote client used to connect and disconnect sessions.
        max_live: Maximum number of simultaneously open sessions.
    """

    def __init__(self, remote: RemoteClient, max_live: int = 1) -> None:
        if max_live < 1:
            raise ValueError("max_live must be at least 1")
        self._remote = remote
        self._max_live = max_live
        self._entries: Dict[str, _Entry] = {}
        self._swap_lock = asyncio.Lock()
        self._slots = asyncio.Semaphore(max_live)
        self._closed = False

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self._entries

    @asynccontextmanager
    async def lease(self, credentials: Credentials) -> AsyncIterator[Lease]:
        """Borrow a live session for ``credentials``.

        Reuses the open session for the same fingerprint while it is
        valid; otherwise connects, evicting idle sessions when the
        registry is full.

        Raises:
            RuntimeError: The registry is closed.
            AuthorizationError / TransientRemoteError: Connecting failed.
        """
        if self._closed:
            raise RuntimeError("connection registry is closed")

        async with self._slots:
            entry = await self._checkout(credentials)
            try:
                async with entry.lock:
                    yield Lease(credentials, entry.session, entry.cancel)
            finally:
                await self._checkin(entry)

    async def evict(self, fingerprint: str) -> None:
        """Cancel and disconnect the session for ``fingerprint``.

        An entry that is currently leased is cancelled now and torn down
        when the lease is released.
        """
        async with self._swap_lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return
            entry.cancel.set()
            if entry.holders == 0:
                await self._teardown(entry)

    def cancel_all(self) -> None:
        """Signal every in-flight lease to stop at its next checkpoint."""
        for entry in self._entries.values():
            entry.cancel.set()

    async def close(self) -> None:
        """Cancel and disconnect every session; further leases are refused."""
        self._closed = True
        self.cancel_all()
        async with self._swap_lock:
            for entry in list(self._entries.values()):
                await self._teardown(entry)
        logger.info("Connection registry closed")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _checkout(self, credentials: Credentials) -> _Entry:
        fingerprint = credentials.fingerprint
        async with self._swap_lock:
            if self._closed:
                raise RuntimeError("connection registry is closed")

            entry = self._entries.get(fingerprint)
            if entry is not None and entry.reusable:
                entry.holders += 1
                return entry
            if entry is not None and entry.holders == 0:
                await self._teardown(entry)
            elif entry is not None:
                # Still held by a cancelled lease; it is torn down on release.
                self._entries.pop(fingerprint, None)

            while len(self._entries) >= self._max_live:
                idle = next((e for e in self._entries.values() if e.holders == 0), None)
                if idle is None:
                    raise RuntimeError("no idle connection available to evict")
                logger.info(
                    "Evicting idle session for user %s to connect user %s",
                    idle.credentials.user_id,
                    credentials.user_id,
                )
                await self._teardown(idle)

            session = await self._remote.connect(credentials)
            entry = _Entry(credentials, session, holders=1)
            self._entries[fingerprint] = entry
            return entry

    async def _checkin(self, entry: _Entry) -> None:
        async with self._swap_lock:
            entry.holders -= 1
            if entry.holders == 0 and not entry.reusable:
                await self._teardown(entry)

    async def _teardown(self, entry: _Entry) -> None:
        entry.cancel.set()
        if self._entries.get(entry.fingerprint) is entry:
            del self._entries[entry.fingerprint]
        if entry.closed:
            return
        entry.closed = True
        try:
            await self._remote.disconnect(entry.session)
        except (TransientRemoteError, OSError):
            logger.warning(
                "Disconnect failed for user %s",
                entry.credentials.user_id,
                exc_info=True,
            )
