# Generated by the protocol buffer compiler.  DO NOT EDIT!
# sources: huddle.proto
# plugin: python-betterproto
# This file has been @generated

from dataclasses import dataclass
from typing import List

import betterproto


@dataclass(eq=False, repr=False)
class PeerInfo(betterproto.Message):
    peer_id: str = betterproto.string_field(1)
    name: str = betterproto.string_field(2)


@dataclass(eq=False, repr=False)
class JoinRequest(betterproto.Message):
    """Participant -> host: ask to be admitted."""

    name: str = betterproto.string_field(1)
    participant_id: str = betterproto.string_field(2)


@dataclass(eq=False, repr=False)
class JoinAccepted(betterproto.Message):
    """Host -> participant: admitted."""

    host_name: str = betterproto.string_field(1)


@dataclass(eq=False, repr=False)
class JoinRejected(betterproto.Message):
    """Host -> participant: refused."""

    reason: str = betterproto.string_field(1)


@dataclass(eq=False, repr=False)
class ActivePeers(betterproto.Message):
    """Host -> newcomer: peers the newcomer should call."""

    peers: List["PeerInfo"] = betterproto.message_field(1)


@dataclass(eq=False, repr=False)
class PeerLeft(betterproto.Message):
    """Host -> everyone: a peer left the session."""

    peer_id: str = betterproto.string_field(1)


@dataclass(eq=False, repr=False)
class StatusUpdate(betterproto.Message):
    """Any peer: local mute or screen-share state changed."""

    has_audio: bool = betterproto.bool_field(1)
    has_video: bool = betterproto.bool_field(2)
    is_screen_sharing: bool = betterproto.bool_field(3)


@dataclass(eq=False, repr=False)
class ChatMessage(betterproto.Message):
    """Any peer: chat line. The host relays it to every other participant."""

    id: str = betterproto.string_field(1)
    sender_id: str = betterproto.string_field(2)
    sender_name: str = betterproto.string_field(3)
    text: str = betterproto.string_field(4)
    timestamp: float = betterproto.double_field(5)


@dataclass(eq=False, repr=False)
class VerificationRequest(betterproto.Message):
    """Pairwise verification."""

    session_id: str = betterproto.string_field(1)


@dataclass(eq=False, repr=False)
class VerificationResponse(betterproto.Message):
    code: str = betterproto.string_field(1)


@dataclass(eq=False, repr=False)
class VerificationResult(betterproto.Message):
    success: bool = betterproto.bool_field(1)
    attempts_left: int = betterproto.uint32_field(2)


@dataclass(eq=False, repr=False)
class Payload(betterproto.Message):
    """Pairwise transfer data."""

    data: bytes = betterproto.bytes_field(1)


@dataclass(eq=False, repr=False)
class SessionMessage(betterproto.Message):
    join_request: "JoinRequest" = betterproto.message_field(1, group="payload")
    join_accepted: "JoinAccepted" = betterproto.message_field(2, group="payload")
    join_rejected: "JoinRejected" = betterproto.message_field(3, group="payload")
    active_peers: "ActivePeers" = betterproto.message_field(4, group="payload")
    peer_left: "PeerLeft" = betterproto.message_field(5, group="payload")
    status_update: "StatusUpdate" = betterproto.message_field(6, group="payload")
    verification_request: "VerificationRequest" = betterproto.message_field(
        7, group="payload"
    )
    verification_response: "VerificationResponse" = betterproto.message_field(
        8, group="payload"
    )
    verification_result: "VerificationResult" = betterproto.message_field(
        9, group="payload"
    )
    data: "Payload" = betterproto.message_field(10, group="payload")
    chat_message: "ChatMessage" = betterproto.message_field(11, group="payload")
