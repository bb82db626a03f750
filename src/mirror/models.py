"""
Canonical entities persisted by the mirror.

These are the shapes ``MirrorStore`` reads and writes.  Raw remote
records live in ``mirror.raw`` and are converted by
``mirror.normalizer``.
"""

from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class ConversationType(str, enum.Enum):
    USER = "user"
    BOT = "bot"
    GROUP = "group"
    SUPERGROUP = "supergroup"
    CHANNEL = "channel"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ConversationType":
        """Map a stored type string onto the enum; anything else is UNKNOWN."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class MessageKind(str, enum.Enum):
    TEXT = "text"
    PHOTO = "photo"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    IMAGE = "image"
    GIF = "gif"
    STICKER = "sticker"
    CONTACT = "contact"
    LOCATION = "location"
    POLL = "poll"


@dataclass(slots=True)
class User:
    id: int
    first_name: str = ""
    last_name: str = ""
    username: str = ""
    phone: str = ""
    is_active: bool = False
    last_sync_time: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.username or str(self.id)


@dataclass(slots=True)
class Credentials:
    """One stored auth session: everything needed to open a remote session.

    ``session_path`` points at a Telethon session file, Fernet-encrypted
    at rest unless ``mirror.encrypted_sessions`` is disabled.  ``user_id``
    is ``None`` until startup recovery binds the session to an account.
    """

    user_id: Optional[int]
    api_id: int
    api_hash: str
    session_path: str
    id: Optional[int] = None
    is_active: bool = True

    @property
    def fingerprint(self) -> str:
        """Stable identity of this credential set (registry key)."""
        material = f"{self.api_id}:{self.api_hash}:{self.session_path}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class Conversation:
    id: int
    user_id: int
    type: ConversationType
    title: str
    username: str = ""
    avatar_url: str = ""
    access_hash: Optional[str] = None
    last_message: str = ""
    last_time: Optional[datetime] = None

    @property
    def is_channel_like(self) -> bool:
        """True for conversations the generic diff stream does not reliably cover."""
        if self.type in (ConversationType.CHANNEL, ConversationType.SUPERGROUP):
            return True
        return self.type is ConversationType.GROUP and bool(self.access_hash)


@dataclass(slots=True)
class Message:
    user_id: int
    conversation_id: int
    remote_message_id: int
    timestamp: datetime
    kind: MessageKind = MessageKind.TEXT
    body: str = ""
    sender_id: Optional[int] = None
    sender_username: str = ""
    sender_first_name: str = ""
    sender_last_name: str = ""
    media_url: str = ""
    id: Optional[int] = None

    @property
    def key(self) -> tuple[int, int, int]:
        """Upsert key: (user_id, conversation_id, remote_message_id)."""
        return (self.user_id, self.conversation_id, self.remote_message_id)


@dataclass(frozen=True, slots=True)
class SyncCursor:
    """Opaque incremental-sync checkpoint for one user.

    ``date`` is stored as epoch seconds.  The all-zero cursor means the
    user has never been bootstrapped.
    """

    pts: int = 0
    qts: int = 0
    date: int = 0
    seq: int = 0

    @classmethod
    def zero(cls) -> "SyncCursor":
        return cls()

    @property
    def is_zero(self) -> bool:
        return self.pts == 0 and self.qts == 0 and self.date == 0

    @property
    def is_degenerate(self) -> bool:
        """A response cursor carrying neither pts nor date."""
        return self.pts == 0 and self.date == 0

    def regresses_from(self, stored: "SyncCursor") -> bool:
        return self.pts < stored.pts or self.date < stored.date


@dataclass(slots=True)
class SyncStats:
    total_users: int = 0
    active_users: int = 0
    total_conversations: int = 0
    total_messages: int = 0
    last_sync_time: Optional[datetime] = None
