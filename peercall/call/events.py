"""Events consumed by the call state machine.

Everything that can change a call (user actions, messages from the relay,
transport changes, and callbacks of the media and negotiation collaborators)
is turned into one of these events and placed on the single ordered queue of
the [`CallStateMachine`][peercall.call.machine.CallStateMachine].

Collaborator events carry the `call_id` of the session that produced them.
"""
from __future__ import annotations

import dataclasses
from typing import Any


@dataclasses.dataclass(frozen=True)
class CallEvent:
    """Base event."""

    pass


@dataclasses.dataclass(frozen=True)
class InitiateCall(CallEvent):
    """The local user calls `peer_id`."""

    peer_id: str
    display_name: str | None = None


@dataclasses.dataclass(frozen=True)
class AcceptCall(CallEvent):
    """The local user accepts the incoming call."""

    pass


@dataclasses.dataclass(frozen=True)
class DeclineCall(CallEvent):
    """The local user declines the incoming call."""

    pass


@dataclasses.dataclass(frozen=True)
class Hangup(CallEvent):
    """The local user ends the current call."""

    pass


@dataclasses.dataclass(frozen=True)
class OfferReceived(CallEvent):
    """The relay forwarded an offer from `sender`."""

    sender: str
    signal: Any
    display_name: str | None = None


@dataclasses.dataclass(frozen=True)
class AnswerReceived(CallEvent):
    """The relay forwarded an answer to our offer."""

    signal: Any
    sender: str | None = None


@dataclasses.dataclass(frozen=True)
class PeerGone(CallEvent):
    """A participant disconnected or sent a teardown notice."""

    disconnected_id: str
    reason: str | None = None


@dataclasses.dataclass(frozen=True)
class RelayError(CallEvent):
    """The relay rejected a message we sent."""

    reason: str
    message: str | None = None
    peer: str | None = None


@dataclasses.dataclass(frozen=True)
class TransportLost(CallEvent):
    """The connection to the relay closed."""

    pass


@dataclasses.dataclass(frozen=True)
class TransportReconnected(CallEvent):
    """The connection to the relay was re-established with a new id."""

    participant_id: str


@dataclasses.dataclass(frozen=True)
class LocalMediaReady(CallEvent):
    """Local media was acquired for a call."""

    call_id: int
    media: Any


@dataclasses.dataclass(frozen=True)
class LocalMediaFailed(CallEvent):
    """Local media could not be acquired for a call."""

    call_id: int
    message: str


@dataclasses.dataclass(frozen=True)
class SignalProduced(CallEvent):
    """The negotiation of a call produced a signal to relay."""

    call_id: int
    signal: Any


@dataclasses.dataclass(frozen=True)
class MediaReady(CallEvent):
    """The negotiation of a call yielded the remote media."""

    call_id: int
    media: Any


@dataclasses.dataclass(frozen=True)
class NegotiationConnected(CallEvent):
    """The direct connection of a call is established."""

    call_id: int


@dataclasses.dataclass(frozen=True)
class NegotiationFailed(CallEvent):
    """The negotiation of a call failed."""

    call_id: int
    reason: str
