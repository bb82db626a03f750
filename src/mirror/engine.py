"""
Per-user synchronization state machine.

A pass is either a **bootstrap** (no cursor stored yet, or forced by an
on-demand trigger) or **incremental** (one diff request from the stored
cursor):

- Bootstrap lists every conversation, upserts it, then pulls a bounded
  window of recent history for each one with a fixed delay between
  fetches.  Only after every conversation was visited is the platform's
  current state written as the new cursor.
- Incremental asks for everything since the stored cursor and ingests it
  message by message.  The candidate cursor is applied only if it is not
  degenerate and does not move backwards.

Unit failures (a conversation that cannot be addressed or fetched, a
malformed message) are logged and skipped.  ``AuthorizationError`` aborts
the pass and propagates to the scheduler.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

import asyncpg

from mirror.clock import SystemClock
from mirror.errors import MalformedDataError, PeerResolutionError, TransientRemoteError
from mirror.models import Conversation, Message, SyncCursor
from mirror.normalizer import normalize_message, preview_text
from mirror.peers import PeerResolver
from mirror.progress import ConversationProgress, PassProgress
from mirror.raw import RawBatch, RawConversation
from mirror.remote import RemoteClient, RemoteSession
from mirror.store import MirrorStore

logger = logging.getLogger("mirror.engine")

DEFAULT_HISTORY_DELAY_SECONDS = 1.0
_PROGRESS_EVERY = 25


class SyncMode(str, enum.Enum):
    BOOTSTRAP = "bootstrap"
    INCREMENTAL = "incremental"


@dataclass(slots=True)
class SyncReport:
    user_id: int
    mode: SyncMode
    conversations_seen: int = 0
    conversations_synced: int = 0
    conversations_skipped: int = 0
    messages_stored: int = 0
    messages_skipped: int = 0
    cursor_updated: bool = False
    cursor_reset: bool = False
    diff_failed: bool = False
    cancelled: bool = False

    def as_details(self) -> Dict[str, object]:
        """Flat dict for audit records."""
        return {
            "mode": self.mode.value,
            "conversations_seen": self.conversations_seen,
            "conversations_synced": self.conversations_synced,
            "conversations_skipped": self.conversations_skipped,
            "messages_stored": self.messages_stored,
            "messages_skipped": self.messages_skipped,
            "cursor_updated": self.cursor_updated,
            "cursor_reset": self.cursor_reset,
            "diff_failed": self.diff_failed,
            "cancelled": self.cancelled,
        }


@dataclass(slots=True)
class IngestResult:
    stored: int = 0
    skipped: int = 0
    known: int = 0


def should_apply_cursor(candidate: SyncCursor, stored: SyncCursor) -> bool:
    """Whether ``candidate`` may replace ``stored``.

    A candidate with neither pts nor date is degenerate and never applied;
    neither pts nor date may move backwards.
    """
    if candidate.is_degenerate:
        return False
    return not candidate.regresses_from(stored)


async def ingest_batch(
    store: MirrorStore,
    batch: RawBatch,
    user_id: int,
    conversation_id: Optional[int] = None,
    above_id: int = 0,
) -> IngestResult:
    """Normalize and upsert every message of ``batch``.

    Args:
        store: Persistence backend.
        batch: Raw messages plus their sender directory.
        user_id: Owning (mirrored) user.
        conversation_id: Conversation the batch belongs to; ``None`` to
            take it from each message's own peer (diff batches).
        above_id: When nonzero, messages with an id at or below it are
            treated as already known and not written.

    Malformed messages and rows the database rejects as invalid data are
    skipped and logged.  Conversation previews are bumped from the newest
    stored message per conversation.
    """
    result = IngestResult()
    newest: Dict[int, Message] = {}

    for raw in batch.messages:
        if above_id and raw.id is not None and raw.id <= above_id:
            result.known += 1
            continue
        try:
            message = normalize_message(raw, batch.senders, user_id, conversation_id)
        except MalformedDataError as exc:
            logger.warning("Skipping malformed message for user %d: %s", user_id, exc)
            result.skipped += 1
            continue
        try:
            await store.upsert_message(message)
        except asyncpg.DataError:
            logger.warning(
                "Database rejected message_id=%d conversation_id=%d; skipping",
                message.remote_message_id,
                message.conversation_id,
                exc_info=True,
            )
            result.skipped += 1
            continue
        result.stored += 1

        current = newest.get(message.conversation_id)
        if current is None or (message.timestamp, message.remote_message_id) > (
            current.timestamp,
            current.remote_message_id,
        ):
            newest[message.conversation_id] = message

    for message in newest.values():
        await store.bump_conversation_preview(
            user_id,
            message.conversation_id,
            preview_text(message),
            message.timestamp,
        )
    return result


def _conversation_from_raw(raw: RawConversation, user_id: int) -> Conversation:
    last_message = ""
    last_time: Optional[datetime] = raw.last_time
    if raw.last_message is not None:
        try:
            preview = normalize_message(raw.last_message, {}, user_id, raw.id)
        except MalformedDataError:
            logger.debug("Conversation %d has an unusable last message", raw.id)
        else:
            last_message = preview_text(preview)
            last_time = last_time or preview.timestamp
    return Conversation(
        id=raw.id,
        user_id=user_id,
        type=raw.type,
        title=raw.title,
        username=raw.username,
        avatar_url=raw.avatar_url,
        access_hash=raw.access_hash,
        last_message=last_message,
        last_time=last_time,
    )


class SyncEngine:
    """Runs one bootstrap or incremental pass for a user.

    Args:
        remote: Remote messaging client.
        store: Persistence backend.
        resolver: Peer resolver; built from ``remote`` when omitted.
        history_delay: Fixed pause between per-conversation history fetches.
        clock: Time source; ``SystemClock`` when omitted.
    """

    def __init__(
        self,
        remote: RemoteClient,
        store: MirrorStore,
        resolver: Optional[PeerResolver] = None,
        history_delay: float = DEFAULT_HISTORY_DELAY_SECONDS,
        clock: Optional[SystemClock] = None,
    ) -> None:
        self._remote = remote
        self._store = store
        self._resolver = resolver or PeerResolver(remote)
        self._history_delay = max(0.0, history_delay)
        self._clock = clock or SystemClock()

    async def run(
        self,
        session: RemoteSession,
        user_id: int,
        history_limit: int,
        force_bootstrap: bool = False,
        cancel: Optional[asyncio.Event] = None,
    ) -> SyncReport:
        """Run one pass for ``user_id``.

        Raises:
            AuthorizationError: The remote session was rejected.
            TransientRemoteError: The conversation listing failed (bootstrap).
        """
        stored = await self._store.get_cursor(user_id)
        if force_bootstrap or stored.is_zero:
            return await self._bootstrap(session, user_id, history_limit, stored, cancel)
        return await self._incremental(session, user_id, stored)

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    async def _bootstrap(
        self,
        session: RemoteSession,
        user_id: int,
        history_limit: int,
        stored: SyncCursor,
        cancel: Optional[asyncio.Event],
    ) -> SyncReport:
        report = SyncReport(user_id, SyncMode.BOOTSTRAP)

        raw_conversations = await self._remote.list_conversations(session)
        conversations: List[Conversation] = []
        for raw in raw_conversations:
            conversation = _conversation_from_raw(raw, user_id)
            try:
                await self._store.upsert_conversation(conversation)
            except asyncpg.DataError:
                logger.warning(
                    "Database rejected conversation_id=%d (%s); skipping",
                    conversation.id,
                    conversation.title,
                    exc_info=True,
                )
                report.conversations_skipped += 1
                continue
            conversations.append(conversation)
        report.conversations_seen = len(raw_conversations)
        logger.info(
            "Bootstrap for user %d: %d conversations, history limit %d",
            user_id,
            len(conversations),
            history_limit,
        )

        progress = PassProgress(user_id, SyncMode.BOOTSTRAP.value, len(conversations))
        for index, conversation in enumerate(conversations, start=1):
            if index > 1 and self._history_delay:
                await self._clock.sleep(self._history_delay, cancel)
            if cancel is not None and cancel.is_set():
                logger.info(
                    "Bootstrap for user %d cancelled after %d/%d conversations; cursor left untouched",
                    user_id,
                    index - 1,
                    len(conversations),
                )
                report.cancelled = True
                return report

            conversation_progress = ConversationProgress(index, len(conversations), conversation.title)
            try:
                batch = await self._resolver.fetch_history(session, conversation, history_limit)
            except PeerResolutionError as exc:
                logger.warning("Skipping conversation %d: %s", conversation.id, exc)
                report.conversations_skipped += 1
                continue
            except TransientRemoteError as exc:
                logger.warning(
                    "History fetch failed for conversation %d (%s): %s",
                    conversation.id,
                    conversation.title,
                    exc,
                )
                report.conversations_skipped += 1
                continue

            result = await ingest_batch(self._store, batch, user_id, conversation.id)
            conversation_progress.update(len(batch.messages), result.stored, result.skipped)
            conversation_progress.log_complete()
            progress.update_from_conversation(conversation_progress)
            report.conversations_synced += 1
            report.messages_stored += result.stored
            report.messages_skipped += result.skipped
            if index % _PROGRESS_EVERY == 0:
                progress.log_pass_progress()

        try:
            state = await self._remote.fetch_current_state(session)
        except TransientRemoteError as exc:
            logger.warning(
                "Could not fetch current state for user %d; next pass bootstraps again: %s",
                user_id,
                exc,
            )
            progress.log_complete()
            return report

        if should_apply_cursor(state, stored):
            await self._store.set_cursor(user_id, state)
            report.cursor_updated = True
        else:
            logger.warning(
                "Ignoring state snapshot for user %d (pts=%d date=%d, stored pts=%d date=%d)",
                user_id,
                state.pts,
                state.date,
                stored.pts,
                stored.date,
            )
        progress.log_complete()
        return report

    # ------------------------------------------------------------------
    # Incremental
    # ------------------------------------------------------------------

    async def _incremental(
        self,
        session: RemoteSession,
        user_id: int,
        stored: SyncCursor,
    ) -> SyncReport:
        report = SyncReport(user_id, SyncMode.INCREMENTAL)

        try:
            diff = await self._remote.fetch_diff(session, stored)
        except TransientRemoteError as exc:
            logger.warning(
                "Diff request failed for user %d; relying on channel resync this pass: %s",
                user_id,
                exc,
            )
            report.diff_failed = True
            return report

        if diff.too_long:
            logger.warning(
                "Diff gap too long for user %d; resetting cursor so the next pass bootstraps",
                user_id,
            )
            await self._store.set_cursor(user_id, SyncCursor.zero())
            report.cursor_reset = True
            return report

        result = await ingest_batch(self._store, diff.batch, user_id)
        report.messages_stored = result.stored
        report.messages_skipped = result.skipped

        candidate = diff.cursor
        if candidate == stored:
            logger.debug("Cursor for user %d unchanged", user_id)
        elif should_apply_cursor(candidate, stored):
            await self._store.set_cursor(user_id, candidate)
            report.cursor_updated = True
        else:
            logger.info(
                "Retaining cursor for user %d: candidate pts=%d date=%d vs stored pts=%d date=%d",
                user_id,
                candidate.pts,
                candidate.date,
                stored.pts,
                stored.date,
            )

        if result.stored or result.skipped:
            logger.info(
                "Incremental pass for user %d: %d stored, %d skipped",
                user_id,
                result.stored,
                result.skipped,
            )
        return report
