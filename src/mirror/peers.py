"""
Peer resolution — turns a stored conversation (id, type, access hash)
into something the remote API can address.

Telegram addresses three kinds of peers: users (including bots), basic
chats, and channels (broadcast channels and supergroups).  Channel-style
peers need the ``access_hash`` captured when the conversation was listed;
without it they cannot be addressed at all.

Conversations whose type is not known (rows written by older versions)
are resolved by probing: the history call is attempted as a user, then as
a channel, then as a chat, and the first one the server accepts wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Tuple, Union

from mirror.errors import AuthorizationError, PeerResolutionError, TransientRemoteError
from mirror.models import Conversation, ConversationType
from mirror.raw import RawBatch

if TYPE_CHECKING:
    from mirror.remote import RemoteClient, RemoteSession

logger = logging.getLogger("mirror.peers")


@dataclass(frozen=True, slots=True)
class IndividualPeer:
    user_id: int
    access_hash: int = 0


@dataclass(frozen=True, slots=True)
class ChatPeer:
    chat_id: int


@dataclass(frozen=True, slots=True)
class ChannelPeer:
    channel_id: int
    access_hash: int = 0


@dataclass(frozen=True, slots=True)
class UnknownPeer:
    peer_id: int


AddressablePeer = Union[IndividualPeer, ChatPeer, ChannelPeer]
PeerRef = Union[IndividualPeer, ChatPeer, ChannelPeer, UnknownPeer]


def _parse_access_hash(access_hash: Optional[str]) -> Optional[int]:
    if access_hash is None or access_hash == "":
        return None
    try:
        return int(access_hash)
    except (TypeError, ValueError):
        return None


def resolve_peer(
    conversation_id: int,
    conversation_type: ConversationType,
    access_hash: Optional[str] = None,
) -> PeerRef:
    """Map a conversation onto a peer reference without touching the network.

    Raises:
        PeerResolutionError: For channel-style conversations whose access
            hash is missing or unparseable.
    """
    parsed = _parse_access_hash(access_hash)

    match conversation_type:
        case ConversationType.USER | ConversationType.BOT:
            return IndividualPeer(conversation_id, parsed or 0)
        case ConversationType.CHANNEL | ConversationType.SUPERGROUP:
            if parsed is None:
                raise PeerResolutionError(
                    f"{conversation_type.value} {conversation_id} requires a valid access hash"
                )
            return ChannelPeer(conversation_id, parsed)
        case ConversationType.GROUP:
            # A group that carries an access hash is really a supergroup.
            if access_hash:
                if parsed is None:
                    raise PeerResolutionError(
                        f"supergroup {conversation_id} has an invalid access hash"
                    )
                return ChannelPeer(conversation_id, parsed)
            return ChatPeer(conversation_id)
        case ConversationType.UNKNOWN:
            return UnknownPeer(conversation_id)
    return UnknownPeer(conversation_id)


def probe_order(peer_id: int) -> Tuple[AddressablePeer, ...]:
    """Addressing attempts for a conversation of unknown type, in order."""
    return (IndividualPeer(peer_id), ChannelPeer(peer_id), ChatPeer(peer_id))


class PeerResolver:
    """Resolves conversations to peers and fetches their recent history.

    Args:
        remote: The remote client used for history calls (and probing).
    """

    def __init__(self, remote: "RemoteClient") -> None:
        self._remote = remote

    def resolve(self, conversation: Conversation) -> PeerRef:
        return resolve_peer(conversation.id, conversation.type, conversation.access_hash)

    async def fetch_history(
        self,
        session: "RemoteSession",
        conversation: Conversation,
        limit: int,
        offset_id: int = 0,
    ) -> RawBatch:
        """Fetch up to ``limit`` most recent messages for ``conversation``.

        Raises:
            PeerResolutionError: The conversation cannot be addressed.
            AuthorizationError: The session was rejected.
            TransientRemoteError: The call (or every probe) failed.
        """
        peer = self.resolve(conversation)
        match peer:
            case UnknownPeer(peer_id=peer_id):
                return await self._probe(session, peer_id, limit, offset_id)
            case _:
                return await self._remote.fetch_history(session, peer, limit, offset_id)

    async def _probe(
        self,
        session: "RemoteSession",
        peer_id: int,
        limit: int,
        offset_id: int,
    ) -> RawBatch:
        last_error: Optional[TransientRemoteError] = None
        for candidate in probe_order(peer_id):
            try:
                batch = await self._remote.fetch_history(session, candidate, limit, offset_id)
            except AuthorizationError:
                raise
            except TransientRemoteError as exc:
                logger.debug(
                    "Probe %s failed for peer %d: %s",
                    type(candidate).__name__,
                    peer_id,
                    exc,
                )
                last_error = exc
                continue
            logger.info(
                "Resolved peer %d of unknown type as %s",
                peer_id,
                type(candidate).__name__,
            )
            return batch

        raise TransientRemoteError(
            f"no addressing mode accepted for peer {peer_id}: {last_error}"
        ) from last_error
