"""
PostgreSQL persistence for the mirror.

Uses ``asyncpg`` for async database access.  All queries use parameterized
placeholders ($1, $2, ...), never string interpolation.

Writes are idempotent upserts keyed the same way the sync engine keys its
work: users by Telegram id, conversations by (user, conversation id),
messages by (user, conversation, remote message id) and cursors by user.
Re-running any pass over the same remote data leaves the tables unchanged.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

import asyncpg

from mirror.models import (
    Conversation,
    ConversationType,
    Credentials,
    Message,
    MessageKind,
    SyncCursor,
    SyncStats,
    User,
)

logger = logging.getLogger("mirror.store")

_UPSERT_USER_SQL = """
    INSERT INTO users (id, first_name, last_name, username, phone, is_active, updated_at)
    VALUES ($1, $2, $3, $4, $5, $6, NOW())
    ON CONFLICT (id)
    DO UPDATE SET
        first_name = EXCLUDED.first_name,
        last_name = EXCLUDED.last_name,
        username = EXCLUDED.username,
        phone = EXCLUDED.phone,
        is_active = EXCLUDED.is_active,
        updated_at = NOW()
"""

_UPSERT_CONVERSATION_SQL = """
    INSERT INTO conversations (
        id, user_id, type, title, username, avatar_url,
        access_hash, last_message, last_time, updated_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, NOW())
    ON CONFLICT (user_id, id)
    DO UPDATE SET
        type = EXCLUDED.type,
        title = EXCLUDED.title,
        username = EXCLUDED.username,
        avatar_url = EXCLUDED.avatar_url,
        access_hash = COALESCE(EXCLUDED.access_hash, conversations.access_hash),
        last_message = CASE
            WHEN EXCLUDED.last_time IS NOT NULL
                 AND (conversations.last_time IS NULL OR EXCLUDED.last_time >= conversations.last_time)
            THEN EXCLUDED.last_message
            ELSE conversations.last_message
        END,
        last_time = GREATEST(conversations.last_time, EXCLUDED.last_time),
        updated_at = NOW()
"""

_UPSERT_MESSAGE_SQL = """
    INSERT INTO messages (
        user_id, conversation_id, message_id,
        from_id, from_username, from_first_name, from_last_name,
        content, message_type, media_url, timestamp
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
    ON CONFLICT (user_id, conversation_id, message_id)
    DO UPDATE SET
        from_id = EXCLUDED.from_id,
        from_username = EXCLUDED.from_username,
        from_first_name = EXCLUDED.from_first_name,
        from_last_name = EXCLUDED.from_last_name,
        content = EXCLUDED.content,
        message_type = EXCLUDED.message_type,
        media_url = EXCLUDED.media_url,
        timestamp = EXCLUDED.timestamp
"""

_UPSERT_CURSOR_SQL = """
    INSERT INTO sync_cursors (user_id, pts, qts, date, seq, updated_at)
    VALUES ($1, $2, $3, $4, $5, NOW())
    ON CONFLICT (user_id)
    DO UPDATE SET
        pts = EXCLUDED.pts,
        qts = EXCLUDED.qts,
        date = EXCLUDED.date,
        seq = EXCLUDED.seq,
        updated_at = NOW()
"""

_BUMP_PREVIEW_SQL = """
    UPDATE conversations
    SET last_message = $3, last_time = $4, updated_at = NOW()
    WHERE user_id = $1
      AND id = $2
      AND (last_time IS NULL OR last_time <= $4)
"""

_CREDENTIALS_COLUMNS = "id, user_id, api_id, api_hash, session_path, is_active"


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def _user_from_row(row: Any) -> User:
    return User(
        id=row["id"],
        first_name=row["first_name"] or "",
        last_name=row["last_name"] or "",
        username=row["username"] or "",
        phone=row["phone"] or "",
        is_active=bool(row["is_active"]),
        last_sync_time=row["last_sync_time"],
    )


def _conversation_from_row(row: Any) -> Conversation:
    return Conversation(
        id=row["id"],
        user_id=row["user_id"],
        type=ConversationType.parse(row["type"]),
        title=row["title"],
        username=row["username"] or "",
        avatar_url=row["avatar_url"] or "",
        access_hash=row["access_hash"] or None,
        last_message=row["last_message"] or "",
        last_time=row["last_time"],
    )


def _message_from_row(row: Any) -> Message:
    try:
        kind = MessageKind(row["message_type"])
    except ValueError:
        kind = MessageKind.TEXT
    return Message(
        id=row["id"],
        user_id=row["user_id"],
        conversation_id=row["conversation_id"],
        remote_message_id=row["message_id"],
        timestamp=row["timestamp"],
        kind=kind,
        body=row["content"] or "",
        sender_id=row["from_id"],
        sender_username=row["from_username"] or "",
        sender_first_name=row["from_first_name"] or "",
        sender_last_name=row["from_last_name"] or "",
        media_url=row["media_url"] or "",
    )


def _credentials_from_row(row: Any) -> Credentials:
    return Credentials(
        id=row["id"],
        user_id=row["user_id"],
        api_id=row["api_id"],
        api_hash=row["api_hash"],
        session_path=row["session_path"],
        is_active=bool(row["is_active"]),
    )


class MirrorStore:
    """Persistence for users, credentials, conversations, messages and cursors.

    Args:
        pool: An ``asyncpg`` connection pool (created via
              :func:`shared.db.get_connection_pool`).
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def upsert_user(self, user: User) -> None:
        await self._pool.execute(
            _UPSERT_USER_SQL,
            user.id,
            user.first_name,
            user.last_name,
            user.username,
            user.phone,
            user.is_active,
        )

    async def get_user(self, user_id: int) -> Optional[User]:
        row = await self._pool.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
        return _user_from_row(row) if row else None

    async def list_users(self) -> List[User]:
        rows = await self._pool.fetch("SELECT * FROM users ORDER BY id")
        return [_user_from_row(row) for row in rows]

    async def active_users(self) -> List[User]:
        rows = await self._pool.fetch("SELECT * FROM users WHERE is_active ORDER BY id")
        return [_user_from_row(row) for row in rows]

    async def mark_user_inactive(self, user_id: int) -> None:
        await self._pool.execute(
            "UPDATE users SET is_active = FALSE, updated_at = NOW() WHERE id = $1",
            user_id,
        )
        logger.info("Marked user %d inactive", user_id)

    async def touch_last_sync(self, user_id: int, when: datetime) -> None:
        await self._pool.execute(
            "UPDATE users SET last_sync_time = $2, updated_at = NOW() WHERE id = $1",
            user_id,
            when,
        )

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def latest_active_credentials(self) -> Optional[Credentials]:
        """Most recently created active credentials, bound or not."""
        row = await self._pool.fetchrow(
            f"""
            SELECT {_CREDENTIALS_COLUMNS}
            FROM auth_sessions
            WHERE is_active
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """
        )
        return _credentials_from_row(row) if row else None

    async def active_credentials_for_user(self, user_id: int) -> Optional[Credentials]:
        row = await self._pool.fetchrow(
            f"""
            SELECT {_CREDENTIALS_COLUMNS}
            FROM auth_sessions
            WHERE user_id = $1 AND is_active
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            user_id,
        )
        return _credentials_from_row(row) if row else None

    async def bind_credentials_user(self, credentials_id: int, user_id: int) -> None:
        await self._pool.execute(
            "UPDATE auth_sessions SET user_id = $2, updated_at = NOW() WHERE id = $1",
            credentials_id,
            user_id,
        )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def upsert_conversation(self, conversation: Conversation) -> None:
        await self._pool.execute(
            _UPSERT_CONVERSATION_SQL,
            conversation.id,
            conversation.user_id,
            conversation.type.value,
            conversation.title,
            conversation.username,
            conversation.avatar_url,
            conversation.access_hash,
            conversation.last_message,
            conversation.last_time,
        )

    async def list_conversations(self, user_id: int) -> List[Conversation]:
        rows = await self._pool.fetch(
            """
            SELECT *
            FROM conversations
            WHERE user_id = $1
            ORDER BY last_time DESC NULLS LAST, id
            """,
            user_id,
        )
        return [_conversation_from_row(row) for row in rows]

    async def bump_conversation_preview(
        self,
        user_id: int,
        conversation_id: int,
        text: str,
        when: datetime,
    ) -> None:
        """Set the preview unless the stored one is already newer."""
        await self._pool.execute(_BUMP_PREVIEW_SQL, user_id, conversation_id, text, when)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def upsert_message(self, message: Message) -> None:
        await self._pool.execute(
            _UPSERT_MESSAGE_SQL,
            message.user_id,
            message.conversation_id,
            message.remote_message_id,
            message.sender_id,
            message.sender_username,
            message.sender_first_name,
            message.sender_last_name,
            message.body,
            message.kind.value,
            message.media_url,
            message.timestamp,
        )
        logger.debug(
            "Stored message_id=%d conversation_id=%d user_id=%d",
            message.remote_message_id,
            message.conversation_id,
            message.user_id,
        )

    async def max_remote_message_id(self, user_id: int, conversation_id: int) -> int:
        """Highest stored remote message id for a conversation, 0 if none."""
        value = await self._pool.fetchval(
            """
            SELECT MAX(message_id)
            FROM messages
            WHERE user_id = $1 AND conversation_id = $2
            """,
            user_id,
            conversation_id,
        )
        return int(value or 0)

    async def get_messages(
        self,
        user_id: int,
        conversation_id: int,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Message]:
        """Stored messages for one conversation, newest first."""
        rows = await self._pool.fetch(
            """
            SELECT *
            FROM messages
            WHERE user_id = $1 AND conversation_id = $2
            ORDER BY timestamp DESC, message_id DESC
            LIMIT $3 OFFSET $4
            """,
            user_id,
            conversation_id,
            limit,
            offset,
        )
        return [_message_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Sync cursors
    # ------------------------------------------------------------------

    async def get_cursor(self, user_id: int) -> SyncCursor:
        """Stored cursor for ``user_id``; the zero cursor if none exists."""
        row = await self._pool.fetchrow(
            "SELECT pts, qts, date, seq FROM sync_cursors WHERE user_id = $1",
            user_id,
        )
        if row is None:
            return SyncCursor.zero()
        return SyncCursor(pts=row["pts"], qts=row["qts"], date=row["date"], seq=row["seq"])

    async def set_cursor(self, user_id: int, cursor: SyncCursor) -> None:
        await self._pool.execute(
            _UPSERT_CURSOR_SQL,
            user_id,
            cursor.pts,
            cursor.qts,
            cursor.date,
            cursor.seq,
        )
        logger.debug(
            "Cursor for user %d set to pts=%d qts=%d date=%d seq=%d",
            user_id,
            cursor.pts,
            cursor.qts,
            cursor.date,
            cursor.seq,
        )

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def get_sync_stats(self) -> SyncStats:
        """Return summary statistics for monitoring."""
        async with self._pool.acquire() as conn:
            total_users = await conn.fetchval("SELECT COUNT(*) FROM users")
            active_users = await conn.fetchval("SELECT COUNT(*) FROM users WHERE is_active")
            total_conversations = await conn.fetchval("SELECT COUNT(*) FROM conversations")
            total_messages = await conn.fetchval("SELECT COUNT(*) FROM messages")
            last_sync_time = await conn.fetchval("SELECT MAX(last_sync_time) FROM users")

        return SyncStats(
            total_users=total_users or 0,
            active_users=active_users or 0,
            total_conversations=total_conversations or 0,
            total_messages=total_messages or 0,
            last_sync_time=last_sync_time,
        )
