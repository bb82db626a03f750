"""
Raw remote records, as delivered by a ``RemoteClient``.

``TelethonRemote`` converts Telethon TL objects into these plain
dataclasses at the boundary; everything downstream (normalizer, engine,
watermark resync) works on them only.  Peer and media variants are
closed unions matched structurally in ``mirror.normalizer``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

from mirror.models import ConversationType, SyncCursor


# ---------------------------------------------------------------------------
# Peers as they appear on raw messages (sender / conversation)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class UserRef:
    user_id: int


@dataclass(frozen=True, slots=True)
class ChatRef:
    chat_id: int


@dataclass(frozen=True, slots=True)
class ChannelRef:
    channel_id: int


RawPeer = Union[UserRef, ChatRef, ChannelRef]


def raw_peer_id(peer: Optional[RawPeer]) -> Optional[int]:
    """Return the bare numeric id carried by a raw peer."""
    match peer:
        case UserRef(user_id=peer_id) | ChatRef(chat_id=peer_id) | ChannelRef(channel_id=peer_id):
            return peer_id
        case None:
            return None
    return None


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PhotoVariant:
    type: str
    width: int
    height: int
    size: int


@dataclass(frozen=True, slots=True)
class PhotoMedia:
    photo_id: Optional[int]
    variants: Tuple[PhotoVariant, ...] = ()


@dataclass(frozen=True, slots=True)
class VideoAttr:
    pass


@dataclass(frozen=True, slots=True)
class AudioAttr:
    title: str = ""


@dataclass(frozen=True, slots=True)
class ImageSizeAttr:
    width: int = 0
    height: int = 0


@dataclass(frozen=True, slots=True)
class AnimatedAttr:
    pass


@dataclass(frozen=True, slots=True)
class StickerAttr:
    pass


@dataclass(frozen=True, slots=True)
class FilenameAttr:
    file_name: str


DocumentAttr = Union[VideoAttr, AudioAttr, ImageSizeAttr, AnimatedAttr, StickerAttr, FilenameAttr]


@dataclass(frozen=True, slots=True)
class DocumentMedia:
    document_id: Optional[int]
    size: int = 0
    attributes: Tuple[DocumentAttr, ...] = ()


@dataclass(frozen=True, slots=True)
class WebPageMedia:
    pass


@dataclass(frozen=True, slots=True)
class ContactMedia:
    pass


@dataclass(frozen=True, slots=True)
class GeoMedia:
    pass


@dataclass(frozen=True, slots=True)
class PollMedia:
    pass


@dataclass(frozen=True, slots=True)
class OtherMedia:
    """Media the mirror does not classify (dice, games, invoices, ...)."""

    name: str = ""


RawMedia = Union[
    PhotoMedia,
    DocumentMedia,
    WebPageMedia,
    ContactMedia,
    GeoMedia,
    PollMedia,
    OtherMedia,
]


# ---------------------------------------------------------------------------
# Messages, senders, conversations
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RawMessage:
    id: Optional[int]
    peer: Optional[RawPeer]
    date: Optional[datetime]
    text: str = ""
    sender: Optional[RawPeer] = None
    media: Optional[RawMedia] = None


@dataclass(frozen=True, slots=True)
class SenderInfo:
    user_id: int
    username: str = ""
    first_name: str = ""
    last_name: str = ""


SenderDirectory = Dict[int, SenderInfo]


@dataclass(slots=True)
class RawBatch:
    """Messages plus the sender directory that came with them."""

    messages: List[RawMessage] = field(default_factory=list)
    senders: SenderDirectory = field(default_factory=dict)


@dataclass(slots=True)
class RawConversation:
    id: int
    type: ConversationType
    title: str
    username: str = ""
    avatar_url: str = ""
    access_hash: Optional[str] = None
    last_message: Optional[RawMessage] = None
    last_time: Optional[datetime] = None


@dataclass(slots=True)
class DiffResult:
    """Outcome of one diff request.

    ``too_long`` means the platform refused to enumerate the gap; the
    caller must fall back to a fresh bootstrap.
    """

    batch: RawBatch
    cursor: SyncCursor
    too_long: bool = False
