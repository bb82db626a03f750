"""
Channel watermark resync.

The generic diff stream does not reliably carry channel and supergroup
traffic, so after every pass each channel-like conversation gets a
bounded look-back: fetch the newest ``lookback`` messages and keep those
above the highest remote message id already stored (the watermark).

Known limitation: if more than ``lookback`` messages arrived since the
watermark, the older part of that gap is never backfilled.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from mirror.engine import ingest_batch
from mirror.errors import PeerResolutionError, TransientRemoteError
from mirror.peers import PeerResolver
from mirror.remote import RemoteSession
from mirror.store import MirrorStore

logger = logging.getLogger("mirror.watermark")

DEFAULT_LOOKBACK = 50


@dataclass(slots=True)
class ResyncReport:
    user_id: int
    conversations_checked: int = 0
    conversations_skipped: int = 0
    messages_stored: int = 0
    cancelled: bool = False


class ChannelWatermarkResync:
    """Bounded look-back pass over a user's channel-like conversations.

    Args:
        resolver: Peer resolver used for history fetches.
        store: Persistence backend.
        lookback: Most recent messages fetched per conversation.
    """

    def __init__(
        self,
        resolver: PeerResolver,
        store: MirrorStore,
        lookback: int = DEFAULT_LOOKBACK,
    ) -> None:
        self._resolver = resolver
        self._store = store
        self._lookback = lookback

    async def run_for_user(
        self,
        session: RemoteSession,
        user_id: int,
        cancel: Optional[asyncio.Event] = None,
    ) -> ResyncReport:
        """Resync every channel, supergroup and hashed group of ``user_id``.

        Raises:
            AuthorizationError: The remote session was rejected.
        """
        report = ResyncReport(user_id)
        conversations = [c for c in await self._store.list_conversations(user_id) if c.is_channel_like]

        for conversation in conversations:
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                break
            if not conversation.access_hash:
                logger.info(
                    "Skipping channel resync for conversation %d: no access hash",
                    conversation.id,
                )
                report.conversations_skipped += 1
                continue

            watermark = await self._store.max_remote_message_id(user_id, conversation.id)
            try:
                batch = await self._resolver.fetch_history(session, conversation, self._lookback)
            except (PeerResolutionError, TransientRemoteError) as exc:
                logger.warning(
                    "Channel resync failed for conversation %d (%s): %s",
                    conversation.id,
                    conversation.title,
                    exc,
                )
                report.conversations_skipped += 1
                continue

            result = await ingest_batch(
                self._store,
                batch,
                user_id,
                conversation.id,
                above_id=watermark,
            )
            report.conversations_checked += 1
            report.messages_stored += result.stored
            if result.stored:
                logger.info(
                    "Channel resync stored %d new messages for %s (watermark %d)",
                    result.stored,
                    conversation.title,
                    watermark,
                )

        return report
