"""
Database helpers: connection pool management, schema initialisation,
and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  Every table except
``audit_log`` is partitioned by the owning (mirrored) user: two accounts
that share a group each get their own conversation row and their own
copy of its messages.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import asyncpg

logger = logging.getLogger("shared.db")


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(config: Dict[str, Any]) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: The ``[database]`` config table with keys ``host``,
                ``database``, ``user`` and optionally ``port``,
                ``password``, ``min_size``, ``max_size``.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
        OSError: If the server is unreachable.
    """
    pool = await asyncpg.create_pool(
        host=config["host"],
        port=config.get("port", 5432),
        database=config["database"],
        user=config["user"],
        password=config.get("password"),
        min_size=config.get("min_size", 1),
        max_size=config.get("max_size", 5),
    )
    logger.info(
        "Database pool created: %s@%s/%s",
        config["user"],
        config["host"],
        config["database"],
    )
    return pool


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id              BIGINT PRIMARY KEY,
        first_name      TEXT NOT NULL DEFAULT '',
        last_name       TEXT NOT NULL DEFAULT '',
        username        TEXT NOT NULL DEFAULT '',
        phone           TEXT NOT NULL DEFAULT '',
        is_active       BOOLEAN NOT NULL DEFAULT FALSE,
        last_sync_time  TIMESTAMPTZ,
        created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_sessions (
        id            BIGSERIAL PRIMARY KEY,
        user_id       BIGINT REFERENCES users(id),
        api_id        INTEGER NOT NULL,
        api_hash      TEXT NOT NULL,
        session_path  TEXT NOT NULL,
        is_active     BOOLEAN NOT NULL DEFAULT FALSE,
        created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id            BIGINT NOT NULL,
        user_id       BIGINT NOT NULL REFERENCES users(id),
        type          TEXT NOT NULL,
        title         TEXT NOT NULL,
        username      TEXT NOT NULL DEFAULT '',
        avatar_url    TEXT NOT NULL DEFAULT '',
        access_hash   TEXT,
        last_message  TEXT NOT NULL DEFAULT '',
        last_time     TIMESTAMPTZ,
        created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (user_id, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id                  BIGSERIAL PRIMARY KEY,
        user_id             BIGINT NOT NULL REFERENCES users(id),
        conversation_id     BIGINT NOT NULL,
        message_id          BIGINT NOT NULL,
        from_id             BIGINT,
        from_username       TEXT NOT NULL DEFAULT '',
        from_first_name     TEXT NOT NULL DEFAULT '',
        from_last_name      TEXT NOT NULL DEFAULT '',
        content             TEXT NOT NULL DEFAULT '',
        message_type        TEXT NOT NULL DEFAULT 'text',
        media_url           TEXT NOT NULL DEFAULT '',
        timestamp           TIMESTAMPTZ NOT NULL,
        created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (user_id, conversation_id, message_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_cursors (
        user_id     BIGINT PRIMARY KEY REFERENCES users(id),
        pts         INTEGER NOT NULL DEFAULT 0,
        qts         INTEGER NOT NULL DEFAULT 0,
        date        BIGINT NOT NULL DEFAULT 0,
        seq         INTEGER NOT NULL DEFAULT 0,
        updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id         BIGSERIAL PRIMARY KEY,
        timestamp  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        service    TEXT NOT NULL,
        action     TEXT NOT NULL,
        user_id    BIGINT,
        details    JSONB,
        success    BOOLEAN NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages (user_id, conversation_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages (timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_auth_sessions_active ON auth_sessions (is_active, created_at DESC)",
)


async def init_database(pool: asyncpg.Pool) -> None:
    """Create tables and indexes if they do not exist.

    Executed once at service startup.  Idempotent (uses IF NOT EXISTS).

    Tables:
        - ``users``: mirrored accounts and their active flag.
        - ``auth_sessions``: stored credentials (api id/hash, session file).
        - ``conversations``: per-user dialog metadata, including the
          access hash channel-style peers need.
        - ``messages``: normalized messages, unique per
          (user, conversation, remote message id).
        - ``sync_cursors``: one incremental-sync cursor per user.
        - ``audit_log``: structured audit events.
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in _SCHEMA:
                await conn.execute(statement)
    logger.info("Database schema initialised (%d statements)", len(_SCHEMA))


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1")
            return result == 1
    except (asyncpg.PostgresError, OSError):
        logger.exception("Database health check failed")
        return False
