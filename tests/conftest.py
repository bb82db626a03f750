"""
Shared fixtures: in-memory stand-ins for the remote platform, the
database and the clock, so engine / scheduler tests run without
Telegram or PostgreSQL.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from mirror.errors import AuthorizationError, TransientRemoteError
from mirror.models import (
    Conversation,
    Credentials,
    Message,
    SyncCursor,
    SyncStats,
    User,
)
from mirror.peers import ChannelPeer, ChatPeer, IndividualPeer
from mirror.raw import (
    DiffResult,
    RawBatch,
    RawConversation,
    RawMessage,
    RawPeer,
    SenderInfo,
)
from mirror.remote import RemoteClient, RemoteSession

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def raw_message(
    message_id: int,
    peer: Optional[RawPeer] = None,
    text: str = "",
    sender: Optional[RawPeer] = None,
    media=None,
    minutes: Optional[int] = None,
) -> RawMessage:
    offset = message_id if minutes is None else minutes
    return RawMessage(
        id=message_id,
        peer=peer,
        date=BASE_TIME + timedelta(minutes=offset),
        text=text or f"message {message_id}",
        sender=sender,
        media=media,
    )


def make_credentials(user_id: Optional[int], cred_id: int = 1, session: str = "") -> Credentials:
    return Credentials(
        id=cred_id,
        user_id=user_id,
        api_id=1000 + cred_id,
        api_hash=f"hash-{cred_id}",
        session_path=session or f"/var/lib/tg-mirror/{cred_id}.session",
    )


def _peer_key(peer) -> Tuple[str, int]:
    match peer:
        case IndividualPeer(user_id=peer_id):
            return ("user", peer_id)
        case ChatPeer(chat_id=peer_id):
            return ("chat", peer_id)
        case ChannelPeer(channel_id=peer_id):
            return ("channel", peer_id)
    raise TypeError(peer)


# ---------------------------------------------------------------------------
# Fake remote
# ---------------------------------------------------------------------------


class FakeRemote(RemoteClient):
    """Scriptable remote platform.

    ``histories`` is keyed by ``(kind, id)`` where kind is ``"user"``,
    ``"chat"`` or ``"channel"``; a peer whose key is missing fails with
    ``TransientRemoteError`` (as Telegram rejects a wrongly typed peer).
    """

    def __init__(self) -> None:
        self.conversations: List[RawConversation] = []
        self.histories: Dict[Tuple[str, int], List[RawMessage]] = {}
        self.senders: Dict[int, SenderInfo] = {}
        self.history_errors: Dict[Tuple[str, int], Exception] = {}
        self.diffs: List[object] = []
        self.state = SyncCursor(pts=100, qts=0, date=1_700_000_000, seq=1)
        self.state_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.live: Dict[str, bool] = {}
        self.profiles: Dict[str, User] = {}
        self.connect_errors: Dict[str, Exception] = {}
        self.connected: List[Credentials] = []
        self.disconnected: List[RemoteSession] = []
        self.history_calls: List[Tuple[object, int, int]] = []
        self.diff_calls: List[SyncCursor] = []
        self.history_hook = None

    def add_history(self, kind: str, peer_id: int, messages: List[RawMessage]) -> None:
        self.histories[(kind, peer_id)] = sorted(messages, key=lambda m: m.id, reverse=True)

    async def connect(self, credentials: Credentials) -> RemoteSession:
        error = self.connect_errors.get(credentials.fingerprint)
        if error is not None:
            raise error
        self.connected.append(credentials)
        return RemoteSession(credentials, client=object())

    async def disconnect(self, session: RemoteSession) -> None:
        session.invalidate()
        self.disconnected.append(session)

    async def is_live(self, session: RemoteSession) -> bool:
        return session.valid and self.live.get(session.fingerprint, True)

    async def get_self(self, session: RemoteSession) -> User:
        profile = self.profiles.get(session.fingerprint)
        if profile is None:
            raise AuthorizationError("no profile")
        return User(
            id=profile.id,
            first_name=profile.first_name,
            last_name=profile.last_name,
            username=profile.username,
            phone=profile.phone,
        )

    async def list_conversations(self, session: RemoteSession) -> List[RawConversation]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.conversations)

    async def fetch_history(self, session, peer, limit, offset_id=0) -> RawBatch:
        self.history_calls.append((peer, limit, offset_id))
        if self.history_hook is not None:
            self.history_hook(peer)
        key = _peer_key(peer)
        error = self.history_errors.get(key)
        if error is not None:
            raise error
        if key not in self.histories:
            raise TransientRemoteError(f"PEER_ID_INVALID for {key}")
        return RawBatch(messages=list(self.histories[key][:limit]), senders=dict(self.senders))

    async def fetch_diff(self, session, cursor) -> DiffResult:
        self.diff_calls.append(cursor)
        outcome = self.diffs.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def fetch_current_state(self, session) -> SyncCursor:
        if self.state_error is not None:
            raise self.state_error
        return self.state


# ---------------------------------------------------------------------------
# Fake store
# ---------------------------------------------------------------------------


class FakeStore:
    """In-memory mirror of ``MirrorStore`` with the same upsert keys."""

    def __init__(self) -> None:
        self.users: Dict[int, User] = {}
        self.credentials: List[Credentials] = []
        self.conversations: Dict[Tuple[int, int], Conversation] = {}
        self.messages: Dict[Tuple[int, int, int], Message] = {}
        self.cursors: Dict[int, SyncCursor] = {}
        self.cursor_writes: List[Tuple[int, SyncCursor]] = []
        self.last_sync: Dict[int, datetime] = {}
        self.inactive_marked: List[int] = []
        self.active_users_error: Optional[Exception] = None
        self.conversation_errors: Dict[int, Exception] = {}

    # users
    async def upsert_user(self, user: User) -> None:
        self.users[user.id] = user

    async def get_user(self, user_id: int) -> Optional[User]:
        return self.users.get(user_id)

    async def list_users(self) -> List[User]:
        return sorted(self.users.values(), key=lambda u: u.id)

    async def active_users(self) -> List[User]:
        if self.active_users_error is not None:
            raise self.active_users_error
        return [u for u in await self.list_users() if u.is_active]

    async def mark_user_inactive(self, user_id: int) -> None:
        self.inactive_marked.append(user_id)
        if user_id in self.users:
            self.users[user_id].is_active = False

    async def touch_last_sync(self, user_id: int, when: datetime) -> None:
        self.last_sync[user_id] = when

    # credentials
    async def latest_active_credentials(self) -> Optional[Credentials]:
        active = [c for c in self.credentials if c.is_active]
        return active[-1] if active else None

    async def active_credentials_for_user(self, user_id: int) -> Optional[Credentials]:
        active = [c for c in self.credentials if c.is_active and c.user_id == user_id]
        return active[-1] if active else None

    async def bind_credentials_user(self, credentials_id: int, user_id: int) -> None:
        for cred in self.credentials:
            if cred.id == credentials_id:
                cred.user_id = user_id

    # conversations
    async def upsert_conversation(self, conversation: Conversation) -> None:
        error = self.conversation_errors.get(conversation.id)
        if error is not None:
            raise error
        key = (conversation.user_id, conversation.id)
        existing = self.conversations.get(key)
        if existing is not None and conversation.access_hash is None:
            conversation.access_hash = existing.access_hash
        self.conversations[key] = conversation

    async def list_conversations(self, user_id: int) -> List[Conversation]:
        return [c for (uid, _), c in sorted(self.conversations.items()) if uid == user_id]

    async def bump_conversation_preview(self, user_id, conversation_id, text, when) -> None:
        conversation = self.conversations.get((user_id, conversation_id))
        if conversation is None:
            return
        if conversation.last_time is None or conversation.last_time <= when:
            conversation.last_message = text
            conversation.last_time = when

    # messages
    async def upsert_message(self, message: Message) -> None:
        self.messages[message.key] = message

    async def max_remote_message_id(self, user_id: int, conversation_id: int) -> int:
        ids = [
            key[2]
            for key in self.messages
            if key[0] == user_id and key[1] == conversation_id
        ]
        return max(ids, default=0)

    async def get_messages(self, user_id, conversation_id, limit=50, offset=0) -> List[Message]:
        rows = [m for m in self.messages.values() if m.user_id == user_id and m.conversation_id == conversation_id]
        rows.sort(key=lambda m: (m.timestamp, m.remote_message_id), reverse=True)
        return rows[offset : offset + limit]

    # cursors
    async def get_cursor(self, user_id: int) -> SyncCursor:
        return self.cursors.get(user_id, SyncCursor.zero())

    async def set_cursor(self, user_id: int, cursor: SyncCursor) -> None:
        self.cursors[user_id] = cursor
        self.cursor_writes.append((user_id, cursor))

    async def get_sync_stats(self) -> SyncStats:
        return SyncStats(
            total_users=len(self.users),
            active_users=sum(1 for u in self.users.values() if u.is_active),
            total_conversations=len(self.conversations),
            total_messages=len(self.messages),
        )

    def stored_ids(self, user_id: int, conversation_id: int) -> List[int]:
        return sorted(
            key[2] for key in self.messages if key[0] == user_id and key[1] == conversation_id
        )


# ---------------------------------------------------------------------------
# Fake clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Clock that never really sleeps; records requested delays."""

    def __init__(self, now: datetime = BASE_TIME) -> None:
        self.current = now
        self.sleeps: List[float] = []
        self.on_sleep = None

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float, cancel: Optional[asyncio.Event] = None) -> bool:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)
        if self.on_sleep is not None:
            self.on_sleep(len(self.sleeps))
        await asyncio.sleep(0)
        return cancel is not None and cancel.is_set()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session() -> RemoteSession:
    return RemoteSession(make_credentials(42), client=object())

