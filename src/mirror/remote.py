"""
Remote messaging boundary.

``RemoteClient`` is the interface the sync engine consumes;
``TelethonRemote`` binds it to Telegram through Telethon.  The binding is
thin: open a session, probe it, list conversations, fetch
history / diff / state, and translate TL objects into ``mirror.raw``
records.  Transport, wire encoding and flood-wait sleeping stay inside
Telethon.

Every call carries a timeout.  Errors are mapped onto the mirror's
taxonomy: Telethon ``UnauthorizedError`` becomes ``AuthorizationError``
(and invalidates the session handle); RPC, network and timeout errors
become ``TransientRemoteError``.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

from telethon import TelegramClient as TelethonClient
from telethon.errors import RPCError, UnauthorizedError
from telethon.tl import types
from telethon.tl.functions.messages import GetHistoryRequest
from telethon.tl.functions.updates import GetDifferenceRequest, GetStateRequest

from mirror.errors import AuthorizationError, TransientRemoteError
from mirror.models import ConversationType, Credentials, SyncCursor, User
from mirror.peers import AddressablePeer, ChannelPeer, ChatPeer, IndividualPeer
from mirror.raw import (
    AnimatedAttr,
    AudioAttr,
    ChannelRef,
    ChatRef,
    ContactMedia,
    DiffResult,
    DocumentAttr,
    DocumentMedia,
    FilenameAttr,
    GeoMedia,
    ImageSizeAttr,
    OtherMedia,
    PhotoMedia,
    PhotoVariant,
    PollMedia,
    RawBatch,
    RawConversation,
    RawMedia,
    RawMessage,
    RawPeer,
    SenderDirectory,
    SenderInfo,
    StickerAttr,
    UserRef,
    VideoAttr,
    WebPageMedia,
)
from mirror.readonly_client import ReadOnlyTelegramClient
from shared.secrets import materialize_session, shred_session

logger = logging.getLogger("mirror.remote")

T = TypeVar("T")

_DEFAULT_TIMEOUT_SECONDS = 30.0


# ---------------------------------------------------------------------------
# Session handle and interface
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class RemoteSession:
    """Explicit handle for one open remote connection.

    ``valid`` is the single source of truth for whether the handle may be
    used: it is cleared on disconnect and when the platform rejects the
    session.
    """

    credentials: Credentials
    client: Any
    valid: bool = True
    materialized_path: Optional[str] = field(default=None, repr=False)

    @property
    def fingerprint(self) -> str:
        return self.credentials.fingerprint

    def invalidate(self) -> None:
        self.valid = False


class RemoteClient(ABC):
    """Operations the mirror consumes from the remote platform."""

    @abstractmethod
    async def connect(self, credentials: Credentials) -> RemoteSession:
        """Open a session for ``credentials``."""

    @abstractmethod
    async def disconnect(self, session: RemoteSession) -> None:
        """Close the session and release its resources."""

    @abstractmethod
    async def is_live(self, session: RemoteSession) -> bool:
        """Return True if the platform still accepts the session.

        Raises TransientRemoteError when liveness cannot be determined.
        """

    @abstractmethod
    async def get_self(self, session: RemoteSession) -> User:
        """Profile of the account the session belongs to."""

    @abstractmethod
    async def list_conversations(self, session: RemoteSession) -> List[RawConversation]:
        ...

    @abstractmethod
    async def fetch_history(
        self,
        session: RemoteSession,
        peer: AddressablePeer,
        limit: int,
        offset_id: int = 0,
    ) -> RawBatch:
        """Up to ``limit`` most recent messages (newest first) before ``offset_id``."""

    @abstractmethod
    async def fetch_diff(self, session: RemoteSession, cursor: SyncCursor) -> DiffResult:
        ...

    @abstractmethod
    async def fetch_current_state(self, session: RemoteSession) -> SyncCursor:
        ...


# ---------------------------------------------------------------------------
# TL -> raw conversion
# ---------------------------------------------------------------------------


def _epoch_seconds(value: Any) -> int:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())
    return int(value or 0)


def raw_peer_from_tl(peer: Any) -> Optional[RawPeer]:
    if isinstance(peer, types.PeerUser):
        return UserRef(peer.user_id)
    if isinstance(peer, types.PeerChat):
        return ChatRef(peer.chat_id)
    if isinstance(peer, types.PeerChannel):
        return ChannelRef(peer.channel_id)
    return None


def _photo_variants(sizes: Iterable[Any]) -> tuple[PhotoVariant, ...]:
    variants: List[PhotoVariant] = []
    for size in sizes or ():
        if isinstance(size, types.PhotoSize):
            variants.append(PhotoVariant(size.type, size.w, size.h, size.size))
        elif isinstance(size, types.PhotoSizeProgressive):
            byte_size = max(size.sizes) if size.sizes else 0
            variants.append(PhotoVariant(size.type, size.w, size.h, byte_size))
    return tuple(variants)


def _document_attr_from_tl(attr: Any) -> Optional[DocumentAttr]:
    if isinstance(attr, types.DocumentAttributeVideo):
        return VideoAttr()
    if isinstance(attr, types.DocumentAttributeAudio):
        return AudioAttr(attr.title or "")
    if isinstance(attr, types.DocumentAttributeImageSize):
        return ImageSizeAttr(attr.w, attr.h)
    if isinstance(attr, types.DocumentAttributeAnimated):
        return AnimatedAttr()
    if isinstance(attr, types.DocumentAttributeSticker):
        return StickerAttr()
    if isinstance(attr, types.DocumentAttributeFilename):
        return FilenameAttr(attr.file_name)
    return None


def media_from_tl(media: Any) -> Optional[RawMedia]:
    if media is None or isinstance(media, types.MessageMediaEmpty):
        return None
    if isinstance(media, types.MessageMediaPhoto):
        photo = media.photo
        if isinstance(photo, types.Photo):
            return PhotoMedia(photo.id, _photo_variants(photo.sizes))
        return PhotoMedia(None)
    if isinstance(media, types.MessageMediaDocument):
        document = media.document
        if isinstance(document, types.Document):
            attrs = tuple(
                converted
                for converted in (_document_attr_from_tl(a) for a in document.attributes or ())
                if converted is not None
            )
            return DocumentMedia(document.id, document.size or 0, attrs)
        return DocumentMedia(None)
    if isinstance(media, types.MessageMediaWebPage):
        return WebPageMedia()
    if isinstance(media, types.MessageMediaContact):
        return ContactMedia()
    if isinstance(media, (types.MessageMediaGeo, types.MessageMediaGeoLive, types.MessageMediaVenue)):
        return GeoMedia()
    if isinstance(media, types.MessageMediaPoll):
        return PollMedia()
    return OtherMedia(type(media).__name__)


def raw_message_from_tl(message: Any) -> Optional[RawMessage]:
    """Convert a TL message; service and empty messages yield ``None``."""
    if not isinstance(message, types.Message):
        return None

    peer = raw_peer_from_tl(message.peer_id)
    sender = raw_peer_from_tl(message.from_id)
    # Incoming private messages carry no from_id; the peer is the sender.
    if sender is None and isinstance(peer, UserRef) and not message.out:
        sender = peer

    return RawMessage(
        id=message.id,
        peer=peer,
        date=message.date,
        text=message.message or "",
        sender=sender,
        media=media_from_tl(message.media),
    )


def sender_directory_from_tl(users: Iterable[Any]) -> SenderDirectory:
    directory: SenderDirectory = {}
    for user in users or ():
        if isinstance(user, types.User):
            directory[user.id] = SenderInfo(
                user_id=user.id,
                username=user.username or "",
                first_name=user.first_name or "",
                last_name=user.last_name or "",
            )
    return directory


def batch_from_tl(messages: Iterable[Any], users: Iterable[Any]) -> RawBatch:
    converted = [raw for raw in (raw_message_from_tl(m) for m in messages or ()) if raw]
    return RawBatch(messages=converted, senders=sender_directory_from_tl(users))


def conversation_from_entity(
    entity: Any,
    last_message: Any = None,
    last_time: Optional[datetime] = None,
) -> Optional[RawConversation]:
    """Convert a dialog entity (User / Chat / Channel) into a raw conversation.

    Forbidden or empty entities yield ``None``.
    """
    if isinstance(entity, types.User):
        title = f"{entity.first_name or ''} {entity.last_name or ''}".strip()
        avatar = ""
        if isinstance(entity.photo, types.UserProfilePhoto):
            avatar = f"telegram://avatar/{entity.photo.photo_id}"
        conversation = RawConversation(
            id=entity.id,
            type=ConversationType.BOT if entity.bot else ConversationType.USER,
            title=title or f"User {entity.id}",
            username=entity.username or "",
            avatar_url=avatar,
            access_hash=str(entity.access_hash) if entity.access_hash is not None else None,
        )
    elif isinstance(entity, types.Chat):
        avatar = ""
        if isinstance(entity.photo, types.ChatPhoto):
            avatar = f"telegram://chat_avatar/{entity.photo.photo_id}"
        conversation = RawConversation(
            id=entity.id,
            type=ConversationType.GROUP,
            title=entity.title or f"Chat {entity.id}",
            avatar_url=avatar,
        )
    elif isinstance(entity, types.Channel):
        avatar = ""
        if isinstance(entity.photo, types.ChatPhoto):
            avatar = f"telegram://chat_avatar/{entity.photo.photo_id}"
        conversation = RawConversation(
            id=entity.id,
            type=ConversationType.CHANNEL if entity.broadcast else ConversationType.SUPERGROUP,
            title=entity.title or f"Channel {entity.id}",
            username=entity.username or "",
            avatar_url=avatar,
            access_hash=str(entity.access_hash) if entity.access_hash is not None else None,
        )
    else:
        return None

    conversation.last_message = raw_message_from_tl(last_message)
    conversation.last_time = last_time
    return conversation


def input_peer_for(peer: AddressablePeer) -> Any:
    match peer:
        case IndividualPeer(user_id=user_id, access_hash=access_hash):
            return types.InputPeerUser(user_id=user_id, access_hash=access_hash)
        case ChatPeer(chat_id=chat_id):
            return types.InputPeerChat(chat_id=chat_id)
        case ChannelPeer(channel_id=channel_id, access_hash=access_hash):
            return types.InputPeerChannel(channel_id=channel_id, access_hash=access_hash)
    raise TypeError(f"not an addressable peer: {peer!r}")


def _cursor_from_state(state: Any) -> SyncCursor:
    return SyncCursor(
        pts=state.pts or 0,
        qts=state.qts or 0,
        date=_epoch_seconds(state.date),
        seq=state.seq or 0,
    )


def diff_from_tl(difference: Any, previous: SyncCursor) -> DiffResult:
    """Translate an ``updates.getDifference`` response."""
    if isinstance(difference, types.updates.DifferenceEmpty):
        # Nothing new: pts/qts stand, only date and seq move.
        cursor = SyncCursor(
            pts=previous.pts,
            qts=previous.qts,
            date=_epoch_seconds(difference.date),
            seq=difference.seq or 0,
        )
        return DiffResult(batch=RawBatch(), cursor=cursor)

    if isinstance(difference, types.updates.DifferenceTooLong):
        return DiffResult(batch=RawBatch(), cursor=SyncCursor.zero(), too_long=True)

    if isinstance(difference, types.updates.Difference):
        state = difference.state
    elif isinstance(difference, types.updates.DifferenceSlice):
        state = difference.intermediate_state
    else:
        raise TransientRemoteError(
            f"unexpected difference type: {type(difference).__name__}"
        )

    messages = list(difference.new_messages or ())
    # New messages can also arrive wrapped as updates (notably channel posts).
    for update in difference.other_updates or ():
        if isinstance(update, (types.UpdateNewMessage, types.UpdateNewChannelMessage)):
            messages.append(update.message)

    return DiffResult(
        batch=batch_from_tl(messages, difference.users),
        cursor=_cursor_from_state(state),
    )


# ---------------------------------------------------------------------------
# Telethon binding
# ---------------------------------------------------------------------------


class TelethonRemote(RemoteClient):
    """``RemoteClient`` backed by Telethon.

    Args:
        session_key: Fernet key for encrypted session files, or ``None``
            when session files are stored in plaintext.
        request_timeout: Seconds before any single remote call is abandoned.
        client_factory: Constructor for the underlying Telethon client.
    """

    def __init__(
        self,
        session_key: Optional[str] = None,
        request_timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        client_factory: Callable[..., Any] = TelethonClient,
    ) -> None:
        self._session_key = session_key
        self._timeout = request_timeout
        self._client_factory = client_factory

    async def _call(self, session: Optional[RemoteSession], awaitable: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except UnauthorizedError as exc:
            if session is not None:
                session.invalidate()
            raise AuthorizationError(f"{what}: session rejected ({exc})") from exc
        except asyncio.TimeoutError as exc:
            raise TransientRemoteError(f"{what}: timed out after {self._timeout}s") from exc
        except (RPCError, ConnectionError, OSError) as exc:
            raise TransientRemoteError(f"{what}: {exc}") from exc

    @staticmethod
    def _require_valid(session: RemoteSession) -> None:
        if not session.valid:
            raise TransientRemoteError("remote session is closed")

    async def connect(self, credentials: Credentials) -> RemoteSession:
        materialized: Optional[str] = None
        if self._session_key:
            materialized = materialize_session(Path(credentials.session_path), self._session_key)
            base_path = materialized
        else:
            base_path = credentials.session_path.removesuffix(".session")

        raw_client = self._client_factory(
            base_path,
            credentials.api_id,
            credentials.api_hash,
            flood_sleep_threshold=60,
            request_retries=5,
            receive_updates=False,
        )
        client = ReadOnlyTelegramClient(raw_client)
        session = RemoteSession(credentials, client, materialized_path=materialized)
        try:
            await self._call(session, client.connect(), "connect")
        except Exception:
            session.invalidate()
            if materialized:
                shred_session(materialized)
            raise
        logger.info("Connected remote session for user %s", credentials.user_id)
        return session

    async def disconnect(self, session: RemoteSession) -> None:
        session.invalidate()
        try:
            await asyncio.wait_for(session.client.disconnect(), timeout=self._timeout)
        except (asyncio.TimeoutError, ConnectionError, OSError):
            logger.warning(
                "Disconnect for user %s did not complete cleanly",
                session.credentials.user_id,
                exc_info=True,
            )
        finally:
            if session.materialized_path:
                shred_session(session.materialized_path)
                session.materialized_path = None

    async def is_live(self, session: RemoteSession) -> bool:
        self._require_valid(session)
        if not session.client.is_connected():
            logger.info("Remote session for user %s dropped, reconnecting", session.credentials.user_id)
            await self._call(session, session.client.connect(), "reconnect")
        try:
            me = await self._call(session, session.client.get_me(), "get_me")
        except AuthorizationError:
            return False
        if me is None:
            # Telethon reports an unauthorized session as "no user".
            session.invalidate()
            return False
        return True

    async def get_self(self, session: RemoteSession) -> User:
        self._require_valid(session)
        me = await self._call(session, session.client.get_me(), "get_me")
        if me is None:
            session.invalidate()
            raise AuthorizationError("get_me: session is not authorized")
        return User(
            id=me.id,
            first_name=me.first_name or "",
            last_name=me.last_name or "",
            username=me.username or "",
            phone=me.phone or "",
            is_active=True,
            last_sync_time=None,
        )

    async def list_conversations(self, session: RemoteSession) -> List[RawConversation]:
        self._require_valid(session)
        dialogs = await self._call(session, session.client.get_dialogs(limit=None), "get_dialogs")
        conversations: List[RawConversation] = []
        for dialog in dialogs:
            conversation = conversation_from_entity(
                dialog.entity,
                last_message=getattr(dialog, "message", None),
                last_time=getattr(dialog, "date", None),
            )
            if conversation is None:
                logger.debug("Skipping dialog with unsupported entity %s", type(dialog.entity).__name__)
                continue
            conversations.append(conversation)
        return conversations

    async def fetch_history(
        self,
        session: RemoteSession,
        peer: AddressablePeer,
        limit: int,
        offset_id: int = 0,
    ) -> RawBatch:
        self._require_valid(session)
        request = GetHistoryRequest(
            peer=input_peer_for(peer),
            offset_id=offset_id,
            offset_date=None,
            add_offset=0,
            limit=limit,
            max_id=0,
            min_id=0,
            hash=0,
        )
        result = await self._call(session, session.client(request), "messages.getHistory")
        # messages.messagesNotModified carries no messages at all.
        return batch_from_tl(getattr(result, "messages", ()), getattr(result, "users", ()))

    async def fetch_diff(self, session: RemoteSession, cursor: SyncCursor) -> DiffResult:
        self._require_valid(session)
        request = GetDifferenceRequest(pts=cursor.pts, date=cursor.date, qts=cursor.qts)
        difference = await self._call(session, session.client(request), "updates.getDifference")
        return diff_from_tl(difference, cursor)

    async def fetch_current_state(self, session: RemoteSession) -> SyncCursor:
        self._require_valid(session)
        state = await self._call(session, session.client(GetStateRequest()), "updates.getState")
        return _cursor_from_state(state)
