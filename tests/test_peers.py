"""
Unit tests for peer resolution and the unknown-type probe fallback.
"""

import pytest

from conftest import raw_message
from mirror.errors import AuthorizationError, PeerResolutionError, TransientRemoteError
from mirror.models import Conversation, ConversationType
from mirror.peers import (
    ChannelPeer,
    ChatPeer,
    IndividualPeer,
    PeerResolver,
    UnknownPeer,
    probe_order,
    resolve_peer,
)
from mirror.raw import ChatRef


def _conversation(conv_id, conv_type, access_hash=None):
    return Conversation(id=conv_id, user_id=42, type=conv_type, title=f"c{conv_id}", access_hash=access_hash)


# ---------------------------------------------------------------------------
# Pure resolution
# ---------------------------------------------------------------------------


class TestResolvePeer:
    def test_user_and_bot_are_individual(self):
        assert resolve_peer(5, ConversationType.USER, "123") == IndividualPeer(5, 123)
        assert resolve_peer(6, ConversationType.BOT) == IndividualPeer(6, 0)

    def test_user_with_garbage_hash_falls_back_to_zero(self):
        assert resolve_peer(5, ConversationType.USER, "nope") == IndividualPeer(5, 0)

    def test_channel_requires_hash(self):
        assert resolve_peer(7, ConversationType.CHANNEL, "-99") == ChannelPeer(7, -99)
        with pytest.raises(PeerResolutionError):
            resolve_peer(7, ConversationType.CHANNEL, None)

    def test_supergroup_requires_valid_hash(self):
        with pytest.raises(PeerResolutionError):
            resolve_peer(8, ConversationType.SUPERGROUP, "not-a-number")

    def test_group_with_hash_is_channel_style(self):
        assert resolve_peer(9, ConversationType.GROUP, "77") == ChannelPeer(9, 77)

    def test_group_without_hash_is_chat(self):
        assert resolve_peer(9, ConversationType.GROUP) == ChatPeer(9)
        assert resolve_peer(9, ConversationType.GROUP, "") == ChatPeer(9)

    def test_unknown_type(self):
        assert resolve_peer(10, ConversationType.UNKNOWN) == UnknownPeer(10)
        assert resolve_peer(10, ConversationType.parse("")) == UnknownPeer(10)

    def test_probe_order(self):
        assert probe_order(3) == (IndividualPeer(3), ChannelPeer(3), ChatPeer(3))


# ---------------------------------------------------------------------------
# History fetch through the resolver
# ---------------------------------------------------------------------------


class TestPeerResolverFetch:
    @pytest.mark.asyncio
    async def test_known_type_fetches_directly(self, remote, session):
        remote.add_history("chat", 50, [raw_message(1, ChatRef(50))])
        resolver = PeerResolver(remote)

        batch = await resolver.fetch_history(session, _conversation(50, ConversationType.GROUP), 10)

        assert [m.id for m in batch.messages] == [1]
        assert remote.history_calls == [(ChatPeer(50), 10, 0)]

    @pytest.mark.asyncio
    async def test_unknown_type_probes_in_order(self, remote, session):
        remote.add_history("chat", 60, [raw_message(2, ChatRef(60))])
        resolver = PeerResolver(remote)

        batch = await resolver.fetch_history(session, _conversation(60, ConversationType.UNKNOWN), 5)

        assert [m.id for m in batch.messages] == [2]
        assert [call[0] for call in remote.history_calls] == [
            IndividualPeer(60),
            ChannelPeer(60),
            ChatPeer(60),
        ]

    @pytest.mark.asyncio
    async def test_first_successful_probe_wins(self, remote, session):
        remote.add_history("user", 61, [raw_message(3)])
        remote.add_history("chat", 61, [raw_message(4)])
        resolver = PeerResolver(remote)

        batch = await resolver.fetch_history(session, _conversation(61, ConversationType.UNKNOWN), 5)

        assert [m.id for m in batch.messages] == [3]
        assert len(remote.history_calls) == 1

    @pytest.mark.asyncio
    async def test_all_probes_failing_raises_transient(self, remote, session):
        resolver = PeerResolver(remote)
        with pytest.raises(TransientRemoteError):
            await resolver.fetch_history(session, _conversation(62, ConversationType.UNKNOWN), 5)
        assert len(remote.history_calls) == 3

    @pytest.mark.asyncio
    async def test_authorization_error_stops_probing(self, remote, session):
        remote.history_errors[("user", 63)] = AuthorizationError("AUTH_KEY_UNREGISTERED")
        remote.add_history("chat", 63, [raw_message(5)])
        resolver = PeerResolver(remote)

        with pytest.raises(AuthorizationError):
            await resolver.fetch_history(session, _conversation(63, ConversationType.UNKNOWN), 5)
        assert len(remote.history_calls) == 1

    @pytest.mark.asyncio
    async def test_channel_without_hash_never_calls_remote(self, remote, session):
        resolver = PeerResolver(remote)
        with pytest.raises(PeerResolutionError):
            await resolver.fetch_history(session, _conversation(64, ConversationType.CHANNEL), 5)
        assert remote.history_calls == []
