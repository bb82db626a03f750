"""
Sync progress lines for journalctl output.

``ConversationProgress`` tracks one conversation inside a bootstrap pass;
``PassProgress`` aggregates a whole user pass and logs the summary line.
"""

from __future__ import annotations

import logging
import time

logger = logging.getLogger("mirror.progress")


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples: ``"45s"``, ``"2m 30s"``, ``"1h 15m"``.
    """
    if seconds < 0:
        return "0s"
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if mins else f"{hours}h"


class ConversationProgress:
    """Counters for a single conversation's history fetch.

    Args:
        index: 1-based position of the conversation in the pass.
        total: Number of conversations in the pass.
        title: Display title for log lines.
    """

    def __init__(self, index: int, total: int, title: str) -> None:
        self.index = index
        self.total = total
        self.title = title
        self.fetched = 0
        self.stored = 0
        self.skipped = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    def update(self, fetched: int, stored: int, skipped: int = 0) -> None:
        self.fetched += fetched
        self.stored += stored
        self.skipped += skipped

    def log_complete(self) -> None:
        logger.info(
            '  [%d/%d] "%s" | %d stored, %d skipped in %s',
            self.index,
            self.total,
            self.title,
            self.stored,
            self.skipped,
            _format_duration(self.elapsed_seconds),
        )


class PassProgress:
    """Aggregate progress for one user pass.

    Args:
        user_id: The mirrored user.
        mode: ``"bootstrap"`` or ``"incremental"``.
        total_conversations: Conversations the pass will visit (0 if unknown).
    """

    def __init__(self, user_id: int, mode: str, total_conversations: int = 0) -> None:
        self.user_id = user_id
        self.mode = mode
        self.total_conversations = total_conversations
        self.conversations_completed = 0
        self.stored = 0
        self.skipped = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def rate(self) -> float:
        """Messages stored per second."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.stored / elapsed

    @property
    def eta_seconds(self) -> float | None:
        """Estimated seconds until every conversation is visited."""
        if self.total_conversations <= 0 or self.conversations_completed <= 0:
            return None
        per_conversation = self.elapsed_seconds / self.conversations_completed
        remaining = max(0, self.total_conversations - self.conversations_completed)
        return per_conversation * remaining

    def update_from_conversation(self, conversation: ConversationProgress) -> None:
        self.stored += conversation.stored
        self.skipped += conversation.skipped
        self.conversations_completed += 1

    def log_pass_progress(self) -> None:
        eta = self.eta_seconds
        eta_str = f"ETA: ~{_format_duration(eta)}" if eta is not None else ""
        logger.info(
            "  Pass (user %d): %d/%d conversations, %d messages | %.1f msg/s | %s",
            self.user_id,
            self.conversations_completed,
            self.total_conversations,
            self.stored,
            self.rate,
            eta_str,
        )

    def log_complete(self) -> None:
        logger.info(
            "%s pass for user %d complete: %d messages stored, %d skipped in %s",
            self.mode.capitalize(),
            self.user_id,
            self.stored,
            self.skipped,
            _format_duration(self.elapsed_seconds),
        )
