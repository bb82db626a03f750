"""
Mirror package: keeps a local PostgreSQL copy of one or more users'
Telegram message history current.

All Telegram API access goes through ReadOnlyTelegramClient so the mirror
can never send, edit or delete anything on the user's behalf.  Users are
synced one at a time through a ConnectionRegistry lease; see
``mirror.scheduler`` for the orchestration and ``mirror.engine`` for the
per-user cursor state machine.
"""
