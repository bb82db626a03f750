"""
Message normalization: raw remote message + sender directory in,
canonical ``Message`` out.

A single bad record never takes down a batch: problems with media or
sender data degrade to best-effort fields and are logged.  Only a record
with nothing to key on (no message id, no conversation) raises
``MalformedDataError`` so the caller can skip it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from mirror.errors import MalformedDataError
from mirror.models import Message, MessageKind
from mirror.raw import (
    AnimatedAttr,
    AudioAttr,
    ContactMedia,
    DocumentMedia,
    FilenameAttr,
    GeoMedia,
    ImageSizeAttr,
    OtherMedia,
    PhotoMedia,
    PhotoVariant,
    PollMedia,
    RawMessage,
    SenderDirectory,
    StickerAttr,
    UserRef,
    VideoAttr,
    WebPageMedia,
    raw_peer_id,
)

logger = logging.getLogger("mirror.normalizer")

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)

PLACEHOLDERS = {
    MessageKind.PHOTO: "[Photo]",
    MessageKind.VIDEO: "[Video]",
    MessageKind.AUDIO: "[Audio]",
    MessageKind.IMAGE: "[Image]",
    MessageKind.GIF: "[GIF]",
    MessageKind.STICKER: "[Sticker]",
    MessageKind.DOCUMENT: "[Document]",
    MessageKind.CONTACT: "[Contact]",
    MessageKind.LOCATION: "[Location]",
    MessageKind.POLL: "[Poll]",
}
WEBPAGE_PLACEHOLDER = "[Webpage]"
MEDIA_NAME_PREFIX = "\n📁 "


# ---------------------------------------------------------------------------
# Media helpers
# ---------------------------------------------------------------------------


def largest_variant(variants: Tuple[PhotoVariant, ...]) -> Optional[PhotoVariant]:
    """Return the variant with the largest area; the first one wins ties."""
    best: Optional[PhotoVariant] = None
    best_area = 0
    for variant in variants:
        area = variant.width * variant.height
        if area > best_area:
            best, best_area = variant, area
    return best


def photo_url(media: PhotoMedia) -> str:
    variant = largest_variant(media.variants)
    if variant is None or media.photo_id is None:
        return ""
    return f"telegram://photo/{media.photo_id}_{variant.size}"


def document_url(media: DocumentMedia) -> str:
    if media.document_id is None:
        return ""
    return f"telegram://document/{media.document_id}_{media.size}"


def classify_document(media: DocumentMedia) -> Tuple[MessageKind, str]:
    """Walk document attributes in order and return ``(kind, media_name)``.

    Later attributes override earlier ones, except that an image-size
    attribute never downgrades a kind that is already set.
    """
    kind: Optional[MessageKind] = None
    media_name = ""

    for attr in media.attributes:
        match attr:
            case VideoAttr():
                kind = MessageKind.VIDEO
            case AudioAttr(title=title):
                kind = MessageKind.AUDIO
                if title:
                    media_name = title
            case ImageSizeAttr():
                if kind is None:
                    kind = MessageKind.IMAGE
            case AnimatedAttr():
                kind = MessageKind.GIF
            case StickerAttr():
                kind = MessageKind.STICKER
            case FilenameAttr(file_name=file_name):
                if not media_name:
                    media_name = file_name

    return kind or MessageKind.DOCUMENT, media_name


def _classify(raw: RawMessage) -> Tuple[MessageKind, str, str]:
    """Return ``(kind, body, media_url)`` for a raw message."""
    body = raw.text or ""

    match raw.media:
        case None:
            return MessageKind.TEXT, body, ""
        case PhotoMedia() as photo:
            return MessageKind.PHOTO, body or PLACEHOLDERS[MessageKind.PHOTO], photo_url(photo)
        case DocumentMedia() as document:
            kind, media_name = classify_document(document)
            body = body or PLACEHOLDERS[kind]
            if media_name:
                body = f"{body}{MEDIA_NAME_PREFIX}{media_name}"
            return kind, body, document_url(document)
        case WebPageMedia():
            return MessageKind.TEXT, body or WEBPAGE_PLACEHOLDER, ""
        case ContactMedia():
            return MessageKind.CONTACT, body or PLACEHOLDERS[MessageKind.CONTACT], ""
        case GeoMedia():
            return MessageKind.LOCATION, body or PLACEHOLDERS[MessageKind.LOCATION], ""
        case PollMedia():
            return MessageKind.POLL, body or PLACEHOLDERS[MessageKind.POLL], ""
        case OtherMedia():
            return MessageKind.TEXT, body, ""
    return MessageKind.TEXT, body, ""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize_message(
    raw: RawMessage,
    directory: SenderDirectory,
    user_id: int,
    conversation_id: Optional[int] = None,
) -> Message:
    """Convert one raw message into a canonical ``Message``.

    Args:
        raw: The raw remote message.
        directory: Sender directory delivered with the batch.
        user_id: Owning (mirrored) user.
        conversation_id: Conversation the message belongs to.  Defaults to
            the id carried by the message's own peer.

    Raises:
        MalformedDataError: The record has no message id or conversation.
    """
    if raw.id is None:
        raise MalformedDataError("raw message has no id")

    if conversation_id is None:
        conversation_id = raw_peer_id(raw.peer)
    if conversation_id is None:
        raise MalformedDataError(f"message {raw.id} has no conversation peer")

    try:
        kind, body, media_url = _classify(raw)
    except Exception:
        logger.warning(
            "Media classification failed for message_id=%s; storing as text",
            raw.id,
            exc_info=True,
        )
        kind, body, media_url = MessageKind.TEXT, raw.text or "", ""

    timestamp = raw.date
    if timestamp is None:
        logger.warning("Message %s has no date; using epoch", raw.id)
        timestamp = _EPOCH
    elif timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)

    message = Message(
        user_id=user_id,
        conversation_id=conversation_id,
        remote_message_id=raw.id,
        timestamp=timestamp,
        kind=kind,
        body=body,
        sender_id=raw_peer_id(raw.sender),
        media_url=media_url,
    )

    # Only user senders carry profile data; chat/channel senders keep the id only.
    match raw.sender:
        case UserRef(user_id=sender_id):
            info = directory.get(sender_id)
            if info is not None:
                message.sender_username = info.username or ""
                message.sender_first_name = info.first_name or ""
                message.sender_last_name = info.last_name or ""

    return message


def preview_text(message: Message, max_len: int = 100) -> str:
    """Single-line preview of a message body for conversation listings."""
    text = " ".join((message.body or "").split())
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."
