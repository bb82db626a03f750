"""
Unit tests for message normalization: media classification, placeholder
bodies, media references and sender resolution.
"""

from datetime import datetime, timezone

import pytest

from mirror.errors import MalformedDataError
from mirror.models import MessageKind
from mirror.normalizer import (
    classify_document,
    largest_variant,
    normalize_message,
    preview_text,
)
from mirror.raw import (
    AnimatedAttr,
    AudioAttr,
    ChannelRef,
    ChatRef,
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
    SenderInfo,
    StickerAttr,
    UserRef,
    VideoAttr,
    WebPageMedia,
)

WHEN = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def _raw(text="", media=None, sender=None, peer=ChatRef(500), message_id=7, date=WHEN):
    return RawMessage(id=message_id, peer=peer, date=date, text=text, sender=sender, media=media)


# ---------------------------------------------------------------------------
# Text and simple media
# ---------------------------------------------------------------------------


class TestPlainAndSimpleMedia:
    def test_text_message(self):
        msg = normalize_message(_raw("hello"), {}, user_id=1)
        assert msg.kind is MessageKind.TEXT
        assert msg.body == "hello"
        assert msg.media_url == ""

    def test_empty_text_stays_empty(self):
        msg = normalize_message(_raw(""), {}, user_id=1)
        assert msg.kind is MessageKind.TEXT
        assert msg.body == ""

    @pytest.mark.parametrize(
        "media, kind, placeholder",
        [
            (ContactMedia(), MessageKind.CONTACT, "[Contact]"),
            (GeoMedia(), MessageKind.LOCATION, "[Location]"),
            (PollMedia(), MessageKind.POLL, "[Poll]"),
            (WebPageMedia(), MessageKind.TEXT, "[Webpage]"),
        ],
    )
    def test_placeholder_when_body_empty(self, media, kind, placeholder):
        msg = normalize_message(_raw("", media=media), {}, user_id=1)
        assert msg.kind is kind
        assert msg.body == placeholder

    def test_webpage_keeps_text(self):
        msg = normalize_message(_raw("see https://example.org", media=WebPageMedia()), {}, user_id=1)
        assert msg.kind is MessageKind.TEXT
        assert msg.body == "see https://example.org"

    def test_unsupported_media_is_text_with_body_unchanged(self):
        msg = normalize_message(_raw("", media=OtherMedia("MessageMediaDice")), {}, user_id=1)
        assert msg.kind is MessageKind.TEXT
        assert msg.body == ""


# ---------------------------------------------------------------------------
# Photos
# ---------------------------------------------------------------------------


class TestPhotos:
    def test_photo_picks_largest_area(self):
        photo = PhotoMedia(
            photo_id=555,
            variants=(
                PhotoVariant("s", 100, 100, 1_000),
                PhotoVariant("x", 800, 600, 50_000),
                PhotoVariant("m", 320, 320, 9_000),
            ),
        )
        msg = normalize_message(_raw("", media=photo), {}, user_id=1)
        assert msg.kind is MessageKind.PHOTO
        assert msg.body == "[Photo]"
        assert msg.media_url == "telegram://photo/555_50000"

    def test_ties_go_to_first_variant(self):
        variants = (PhotoVariant("a", 10, 20, 1), PhotoVariant("b", 20, 10, 2))
        assert largest_variant(variants).type == "a"

    def test_photo_keeps_caption(self):
        photo = PhotoMedia(1, (PhotoVariant("s", 1, 1, 10),))
        msg = normalize_message(_raw("caption", media=photo), {}, user_id=1)
        assert msg.body == "caption"

    def test_photo_without_variants_has_no_reference(self):
        msg = normalize_message(_raw("", media=PhotoMedia(9)), {}, user_id=1)
        assert msg.kind is MessageKind.PHOTO
        assert msg.media_url == ""


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class TestDocuments:
    def test_video_document(self):
        doc = DocumentMedia(77, 1234, (VideoAttr(),))
        msg = normalize_message(_raw("", media=doc), {}, user_id=1)
        assert msg.kind is MessageKind.VIDEO
        assert msg.body == "[Video]"
        assert msg.media_url == "telegram://document/77_1234"

    def test_audio_title_appended_to_caption(self):
        doc = DocumentMedia(1, 10, (AudioAttr("Song"),))
        msg = normalize_message(_raw("listen", media=doc), {}, user_id=1)
        assert msg.kind is MessageKind.AUDIO
        assert msg.body == "listen\n📁 Song"

    def test_audio_title_does_not_yield_to_filename(self):
        kind, name = classify_document(DocumentMedia(1, 10, (AudioAttr("Song"), FilenameAttr("song.mp3"))))
        assert kind is MessageKind.AUDIO
        assert name == "Song"

    def test_image_size_only_when_no_kind_yet(self):
        kind, _ = classify_document(DocumentMedia(1, 10, (VideoAttr(), ImageSizeAttr(10, 10))))
        assert kind is MessageKind.VIDEO

    def test_image_size_alone_is_image(self):
        msg = normalize_message(_raw("", media=DocumentMedia(1, 10, (ImageSizeAttr(10, 10),))), {}, user_id=1)
        assert msg.kind is MessageKind.IMAGE
        assert msg.body == "[Image]"

    def test_animated_overrides_image_size(self):
        kind, _ = classify_document(DocumentMedia(1, 10, (ImageSizeAttr(1, 1), AnimatedAttr())))
        assert kind is MessageKind.GIF

    def test_sticker(self):
        msg = normalize_message(_raw("", media=DocumentMedia(1, 10, (StickerAttr(),))), {}, user_id=1)
        assert msg.kind is MessageKind.STICKER
        assert msg.body == "[Sticker]"

    def test_plain_file_is_document_with_name(self):
        doc = DocumentMedia(3, 99, (FilenameAttr("report.pdf"),))
        msg = normalize_message(_raw("", media=doc), {}, user_id=1)
        assert msg.kind is MessageKind.DOCUMENT
        assert msg.body == "[Document]\n📁 report.pdf"

    def test_document_without_attributes(self):
        kind, name = classify_document(DocumentMedia(3, 99))
        assert kind is MessageKind.DOCUMENT
        assert name == ""


# ---------------------------------------------------------------------------
# Senders, ids and dates
# ---------------------------------------------------------------------------


class TestSendersAndKeys:
    def test_user_sender_resolved_from_directory(self):
        directory = {9: SenderInfo(9, "alice", "Alice", "Smith")}
        msg = normalize_message(_raw("hi", sender=UserRef(9)), directory, user_id=1)
        assert msg.sender_id == 9
        assert msg.sender_username == "alice"
        assert msg.sender_first_name == "Alice"
        assert msg.sender_last_name == "Smith"

    def test_directory_miss_leaves_names_empty(self):
        msg = normalize_message(_raw("hi", sender=UserRef(9)), {}, user_id=1)
        assert msg.sender_id == 9
        assert msg.sender_username == ""

    def test_channel_sender_keeps_id_only(self):
        directory = {300: SenderInfo(300, "clash", "Not", "AUser")}
        msg = normalize_message(_raw("post", sender=ChannelRef(300)), directory, user_id=1)
        assert msg.sender_id == 300
        assert msg.sender_first_name == ""

    def test_conversation_from_peer(self):
        assert normalize_message(_raw(peer=UserRef(11)), {}, 1).conversation_id == 11
        assert normalize_message(_raw(peer=ChannelRef(12)), {}, 1).conversation_id == 12

    def test_explicit_conversation_wins(self):
        msg = normalize_message(_raw(peer=UserRef(11)), {}, 1, conversation_id=99)
        assert msg.conversation_id == 99
        assert msg.key == (1, 99, 7)

    def test_missing_id_is_malformed(self):
        with pytest.raises(MalformedDataError):
            normalize_message(_raw(message_id=None), {}, 1)

    def test_missing_conversation_is_malformed(self):
        with pytest.raises(MalformedDataError):
            normalize_message(_raw(peer=None), {}, 1)

    def test_naive_date_becomes_utc(self):
        msg = normalize_message(_raw(date=datetime(2024, 1, 1, 0, 0)), {}, 1)
        assert msg.timestamp.tzinfo is timezone.utc

    def test_missing_date_uses_epoch(self):
        msg = normalize_message(_raw(date=None), {}, 1)
        assert msg.timestamp == datetime.fromtimestamp(0, tz=timezone.utc)

    def test_broken_media_degrades_to_text(self):
        broken = DocumentMedia(1, 10, attributes=None)
        msg = normalize_message(_raw("still here", media=broken), {}, 1)
        assert msg.kind is MessageKind.TEXT
        assert msg.body == "still here"


class TestPreviewText:
    def test_collapses_whitespace(self):
        msg = normalize_message(_raw("line one\n\nline   two"), {}, 1)
        assert preview_text(msg) == "line one line two"

    def test_truncates(self):
        msg = normalize_message(_raw("x" * 150), {}, 1)
        preview = preview_text(msg, max_len=20)
        assert len(preview) == 20
        assert preview.endswith("...")
