"""
Multi-user sync scheduler.

- **Startup recovery**: the most recently created active credentials are
  connected, probed for liveness, bound to the account they belong to,
  and synced once.
- **Periodic tick**: every active user, one at a time, gets a sync pass
  followed by the channel watermark resync.  A rejected session marks the
  user inactive and evicts the connection; the tick moves on to the next
  user.
- **On demand**: :meth:`Scheduler.sync_now` runs a forced bootstrap pass
  with the larger history window.

Users are processed sequentially because the registry holds one live
connection by default.  The watermark resync runs as its own task while
the pass result is recorded, but always finishes before the lease is
released.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from mirror.clock import SystemClock
from mirror.connections import ConnectionRegistry, Lease
from mirror.engine import SyncEngine, SyncReport
from mirror.errors import AuthorizationError, TransientRemoteError
from mirror.models import Credentials
from mirror.remote import RemoteClient
from mirror.store import MirrorStore
from mirror.watermark import ChannelWatermarkResync, ResyncReport
from shared.audit import AuditLogger

logger = logging.getLogger("mirror.scheduler")

DEFAULT_SYNC_INTERVAL_SECONDS = 60.0
DEFAULT_SCHEDULED_HISTORY_LIMIT = 50
DEFAULT_ON_DEMAND_HISTORY_LIMIT = 100


@dataclass(slots=True)
class UserPassResult:
    sync: SyncReport
    resync: Optional[ResyncReport] = None


class Scheduler:
    """Drives sync passes for every active user.

    Args:
        remote: Remote client (liveness probe and profile lookup).
        store: Persistence backend.
        registry: Connection registry that owns the live sessions.
        engine: Per-user sync engine.
        resync: Channel watermark resync.
        audit: Audit trail; ``None`` disables audit records.
        clock: Time source; ``SystemClock`` when omitted.
        sync_interval: Seconds between periodic ticks.
        scheduled_history_limit: History window for scheduled bootstraps.
        on_demand_history_limit: History window for :meth:`sync_now`.
    """

    def __init__(
        self,
        remote: RemoteClient,
        store: MirrorStore,
        registry: ConnectionRegistry,
        engine: SyncEngine,
        resync: ChannelWatermarkResync,
        audit: Optional[AuditLogger] = None,
        clock: Optional[SystemClock] = None,
        sync_interval: float = DEFAULT_SYNC_INTERVAL_SECONDS,
        scheduled_history_limit: int = DEFAULT_SCHEDULED_HISTORY_LIMIT,
        on_demand_history_limit: int = DEFAULT_ON_DEMAND_HISTORY_LIMIT,
    ) -> None:
        self._remote = remote
        self._store = store
        self._registry = registry
        self._engine = engine
        self._resync = resync
        self._audit = audit
        self._clock = clock or SystemClock()
        self._interval = sync_interval
        self._scheduled_limit = scheduled_history_limit
        self._on_demand_limit = on_demand_history_limit
        self._shutdown = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def startup_recovery(self) -> Optional[int]:
        """Re-establish the most recent active session and sync it once.

        Returns:
            The recovered user id, or ``None`` if nothing was recovered.
        """
        credentials = await self._store.latest_active_credentials()
        if credentials is None:
            logger.info("No active credentials stored; nothing to recover")
            return None

        try:
            async with self._registry.lease(credentials) as lease:
                if not await self._remote.is_live(lease.session):
                    raise AuthorizationError("stored session is no longer authorized")

                me = await self._remote.get_self(lease.session)
                me.is_active = True
                await self._store.upsert_user(me)
                if credentials.user_id != me.id and credentials.id is not None:
                    await self._store.bind_credentials_user(credentials.id, me.id)
                logger.info("Recovered session for %s (id=%d)", me.display_name, me.id)

                result = await self._run_user_pass(lease, me.id, self._scheduled_limit)
        except AuthorizationError as exc:
            await self._handle_rejection(credentials.user_id, credentials, exc)
            return None
        except TransientRemoteError as exc:
            logger.warning("Startup recovery skipped: %s", exc)
            await self._record("startup_recovery", {"error": str(exc)}, success=False)
            return None

        await self._record(
            "startup_recovery",
            {"messages_stored": result.sync.messages_stored},
            user_id=me.id,
        )
        return me.id

    async def tick(self) -> int:
        """Run one pass for every active user.

        Returns:
            Number of users whose pass completed.

        Raises:
            asyncpg.PostgresError / OSError: Infrastructure failures abort
                the tick; the next tick retries.
        """
        users = await self._store.active_users()
        completed = 0
        for user in users:
            if self._shutdown.is_set():
                logger.info("Shutdown requested; ending tick early")
                break
            if await self._sync_user(user.id):
                completed += 1
        logger.debug("Tick complete: %d/%d users synced", completed, len(users))
        return completed

    async def sync_now(self, user_id: int) -> UserPassResult:
        """Forced bootstrap-style pass for one user.

        Raises:
            LookupError: The user has no active credentials.
            AuthorizationError: The session was rejected (the user is
                marked inactive first).
            TransientRemoteError: The pass could not run.
        """
        credentials = await self._store.active_credentials_for_user(user_id)
        if credentials is None:
            raise LookupError(f"no active credentials for user {user_id}")

        try:
            async with self._registry.lease(credentials) as lease:
                if not await self._remote.is_live(lease.session):
                    raise AuthorizationError("session is no longer authorized")
                return await self._run_user_pass(
                    lease,
                    user_id,
                    self._on_demand_limit,
                    force_bootstrap=True,
                )
        except AuthorizationError as exc:
            await self._handle_rejection(user_id, credentials, exc)
            raise

    async def run(self) -> None:
        """Startup recovery, then a tick every ``sync_interval`` until stopped."""
        try:
            await self.startup_recovery()
        except Exception:
            logger.exception("Startup recovery failed")
            await self._record("startup_recovery", {"error": "see logs"}, success=False)

        tick_number = 0
        while not self._shutdown.is_set():
            if await self._clock.sleep(self._interval, self._shutdown):
                break
            tick_number += 1
            try:
                completed = await self.tick()
            except Exception:
                logger.exception("Error during sync tick #%d", tick_number)
                await self._record("sync_tick", {"tick": tick_number, "error": "see logs"}, success=False)
            else:
                logger.debug("Sync tick #%d finished (%d users)", tick_number, completed)

        logger.info("Scheduler loop exited")

    def start(self) -> None:
        if self.running:
            return
        self._shutdown.clear()
        self._task = asyncio.get_running_loop().create_task(self.run(), name="tg-mirror-scheduler")

    async def stop(self) -> None:
        """Signal shutdown, cancel in-flight leases and wait for the loop."""
        self._shutdown.set()
        self._registry.cancel_all()
        if self._task is not None:
            await self._task
            self._task = None

    # ------------------------------------------------------------------
    # Per-user pass
    # ------------------------------------------------------------------

    async def _sync_user(self, user_id: int) -> bool:
        credentials = await self._store.active_credentials_for_user(user_id)
        if credentials is None:
            logger.info("User %d has no active credentials; skipping", user_id)
            return False

        try:
            async with self._registry.lease(credentials) as lease:
                if not await self._remote.is_live(lease.session):
                    raise AuthorizationError("liveness probe failed")
                await self._run_user_pass(lease, user_id, self._scheduled_limit)
        except AuthorizationError as exc:
            await self._handle_rejection(user_id, credentials, exc)
            return False
        except TransientRemoteError as exc:
            logger.warning("Sync for user %d skipped this tick: %s", user_id, exc)
            await self._record("sync_pass", {"error": str(exc)}, user_id=user_id, success=False)
            return False
        return True

    async def _run_user_pass(
        self,
        lease: Lease,
        user_id: int,
        history_limit: int,
        force_bootstrap: bool = False,
    ) -> UserPassResult:
        report = await self._engine.run(
            lease.session,
            user_id,
            history_limit,
            force_bootstrap=force_bootstrap,
            cancel=lease.cancel,
        )
        if report.cancelled:
            return UserPassResult(report)

        resync_task = asyncio.get_running_loop().create_task(
            self._resync.run_for_user(lease.session, user_id, cancel=lease.cancel),
            name=f"tg-mirror-resync-{user_id}",
        )
        try:
            await self._store.touch_last_sync(user_id, self._clock.now())
            await self._record("sync_pass", report.as_details(), user_id=user_id)
        except BaseException:
            resync_task.cancel()
            await asyncio.gather(resync_task, return_exceptions=True)
            raise

        resync_report = await resync_task
        logger.info(
            "User %d: %s pass stored %d, channel resync stored %d",
            user_id,
            report.mode.value,
            report.messages_stored,
            resync_report.messages_stored,
        )
        return UserPassResult(report, resync_report)

    async def _handle_rejection(
        self,
        user_id: Optional[int],
        credentials: Credentials,
        exc: AuthorizationError,
    ) -> None:
        logger.warning("Session for user %s rejected: %s", user_id, exc)
        if user_id is not None:
            await self._store.mark_user_inactive(user_id)
        await self._registry.evict(credentials.fingerprint)
        await self._record("session_rejected", {"reason": str(exc)}, user_id=user_id, success=False)

    async def _record(
        self,
        action: str,
        details: Dict[str, Any],
        *,
        user_id: Optional[int] = None,
        success: bool = True,
    ) -> None:
        if self._audit is not None:
            await self._audit.log(action, details, user_id=user_id, success=success)

