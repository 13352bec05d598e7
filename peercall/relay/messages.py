"""Message types exchanged between participants and the relay server.

Every message is sent over the websocket as a JSON object. The `event` key
names the message type and the remaining keys are the payload, written in
camelCase (e.g., `displayName`, `disconnectedId`). Python attribute names
that collide with keywords carry a trailing underscore (`from_` is sent as
`from`).

Signal payloads are opaque to the relay: only the top-level keys of a
message are converted so a payload is never rewritten on its way through.
"""
from __future__ import annotations

import dataclasses
import enum
import json
import keyword
import re
from typing import Any


class RelayEvent(enum.Enum):
    """Wire names of the supported events."""

    assigned_id = 'assigned-id'
    """Identifier assigned to a participant by the relay."""
    call_offer = 'call-offer'
    """Offer from a caller, forwarded to the callee."""
    call_answer = 'call-answer'
    """Answer from a callee to the relay."""
    call_accepted = 'call-accepted'
    """Answer forwarded by the relay to the caller."""
    call_hangup = 'call-hangup'
    """Courtesy teardown notice from a participant to its peer."""
    call_gone = 'call-gone'
    """A participant disconnected or hung up."""
    call_error = 'call-error'
    """Relay could not handle a request of the participant."""


class SignalKind(enum.Enum):
    """Kind of negotiation blob carried by a signal envelope."""

    OFFER = 'offer'
    ANSWER = 'answer'


class CallErrorReason(str, enum.Enum):
    """Reasons reported in a `call-error` message."""

    PEER_UNAVAILABLE = 'PeerUnavailable'
    """The destination participant is not connected to the relay."""
    BAD_REQUEST = 'BadRequest'
    """The relay refused to handle the message."""


class HangupReason(str, enum.Enum):
    """Reasons carried by a courtesy teardown notice."""

    HANGUP = 'hangup'
    DECLINED = 'declined'
    BUSY = 'busy'
    ERROR = 'error'
    UNAVAILABLE = 'unavailable'


@dataclasses.dataclass(frozen=True)
class RelayMessage:
    """Base message."""

    pass


@dataclasses.dataclass(frozen=True)
class AssignedId(RelayMessage):
    """Identifier assigned to a newly connected participant.

    Attributes:
        id: Participant identifier, valid until the connection closes.
    """

    id: str
    event: str = dataclasses.field(
        default=RelayEvent.assigned_id.value,
        init=False,
        repr=False,
    )


@dataclasses.dataclass(frozen=True)
class CallOffer(RelayMessage):
    """Offer to start a call.

    Sent by the caller to the relay and forwarded unchanged to `to`, except
    that the relay sets `from_` to the identifier of the connection the
    offer arrived on.

    Attributes:
        to: Identifier of the callee.
        signal: Opaque offer produced by the caller's negotiation.
        from_: Identifier of the caller.
        display_name: Optional human readable name of the caller.
    """

    to: str
    signal: Any
    from_: str | None = None
    display_name: str | None = None
    event: str = dataclasses.field(
        default=RelayEvent.call_offer.value,
        init=False,
        repr=False,
    )


@dataclasses.dataclass(frozen=True)
class CallAnswer(RelayMessage):
    """Answer from the callee, addressed to the original caller.

    Attributes:
        to: Identifier of the caller.
        signal: Opaque answer produced by the callee's negotiation.
    """

    to: str
    signal: Any
    event: str = dataclasses.field(
        default=RelayEvent.call_answer.value,
        init=False,
        repr=False,
    )


@dataclasses.dataclass(frozen=True)
class CallAccepted(RelayMessage):
    """Answer forwarded by the relay to the caller.

    Attributes:
        signal: Opaque answer produced by the callee's negotiation.
        from_: Identifier of the callee.
    """

    signal: Any
    from_: str | None = None
    event: str = dataclasses.field(
        default=RelayEvent.call_accepted.value,
        init=False,
        repr=False,
    )


@dataclasses.dataclass(frozen=True)
class CallHangup(RelayMessage):
    """Courtesy notice that the sender is leaving the call with `to`.

    Attributes:
        to: Identifier of the peer.
        reason: Why the sender left (see
            [`HangupReason`][peercall.relay.messages.HangupReason]).
    """

    to: str
    reason: str = HangupReason.HANGUP.value
    event: str = dataclasses.field(
        default=RelayEvent.call_hangup.value,
        init=False,
        repr=False,
    )


@dataclasses.dataclass(frozen=True)
class CallGone(RelayMessage):
    """A participant is no longer available for its call.

    Broadcast to every live participant when a connection closes, and sent
    to a single peer when a participant hangs up.

    Attributes:
        disconnected_id: Identifier of the participant that left.
        reason: `None` for a closed connection, otherwise the hangup reason.
    """

    disconnected_id: str
    reason: str | None = None
    event: str = dataclasses.field(
        default=RelayEvent.call_gone.value,
        init=False,
        repr=False,
    )


@dataclasses.dataclass(frozen=True)
class CallError(RelayMessage):
    """Error reply from the relay to the participant that sent a request.

    Attributes:
        reason: One of
            [`CallErrorReason`][peercall.relay.messages.CallErrorReason].
        message: Human readable description.
        peer: Identifier of the peer the failed request was addressed to.
    """

    reason: str
    message: str | None = None
    peer: str | None = None
    event: str = dataclasses.field(
        default=RelayEvent.call_error.value,
        init=False,
        repr=False,
    )


@dataclasses.dataclass(frozen=True)
class SignalEnvelope:
    """Offer or answer in transit through the relay.

    Attributes:
        kind: Offer or answer.
        payload: Opaque negotiation blob.
        sender: Identifier of the connection the blob arrived on.
        to: Identifier of the destination participant.
        display_name: Optional name of the sender.
    """

    kind: SignalKind
    payload: Any
    sender: str
    to: str
    display_name: str | None = None


_EVENT_TYPES: dict[str, type[RelayMessage]] = {
    RelayEvent.assigned_id.value: AssignedId,
    RelayEvent.call_offer.value: CallOffer,
    RelayEvent.call_answer.value: CallAnswer,
    RelayEvent.call_accepted.value: CallAccepted,
    RelayEvent.call_hangup.value: CallHangup,
    RelayEvent.call_gone.value: CallGone,
    RelayEvent.call_error.value: CallError,
}

_IDENTIFIER_FIELDS = ('id', 'to', 'from_', 'disconnected_id', 'peer')

_CAMEL_BOUNDARY = re.compile(r'(?<!^)(?=[A-Z])')


class RelayMessageError(Exception):
    """Base exception type for relay messages."""

    pass


class RelayMessageDecodeError(RelayMessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class RelayMessageEncodeError(RelayMessageError):
    """Exception raised when an message cannot be encoded."""

    pass


def to_wire_key(name: str) -> str:
    """Convert an attribute name to its camelCase wire key."""
    head, *rest = name.rstrip('_').split('_')
    return head + ''.join(part.capitalize() for part in rest)


def from_wire_key(key: str) -> str:
    """Convert a camelCase wire key to its attribute name."""
    name = _CAMEL_BOUNDARY.sub('_', key).lower()
    return f'{name}_' if keyword.iskeyword(name) else name


def to_wire_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Rename the top-level keys of a message dictionary to wire keys.

    Returns:
        Shallow copy of the input dictionary. Nested values (i.e., signal
        payloads) are left untouched.
    """
    return {to_wire_key(key): value for key, value in data.items()}


def from_wire_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Rename the top-level wire keys of a message to attribute names."""
    return {from_wire_key(key): value for key, value in data.items()}


def decode_relay_message(message: str) -> RelayMessage:
    """Decode JSON string into correct relay message type.

    Args:
        message: JSON string to decode.

    Returns:
        Parsed message.

    Raises:
        RelayMessageDecodeError: If the message cannot be decoded.
    """
    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        raise RelayMessageDecodeError('Failed to load string as JSON.') from e

    if not isinstance(data, dict):
        raise RelayMessageDecodeError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )

    try:
        event = data.pop('event')
    except KeyError as e:
        raise RelayMessageDecodeError(
            'Message does not contain an event key.',
        ) from e

    try:
        message_type = _EVENT_TYPES[event]
    except (KeyError, TypeError) as e:
        raise RelayMessageDecodeError(
            f'The message is of an unknown event type: {event}.',
        ) from e

    try:
        decoded = message_type(**from_wire_keys(data))
    except TypeError as e:
        raise RelayMessageDecodeError(
            f'Failed to convert message to {message_type.__name__}: {e}',
        ) from e

    for field in dataclasses.fields(decoded):
        if field.name not in _IDENTIFIER_FIELDS:
            continue
        value = getattr(decoded, field.name)
        if value is None and field.default is None:
            continue
        if not isinstance(value, str):
            raise RelayMessageDecodeError(
                f'Field {to_wire_key(field.name)} of '
                f'{message_type.__name__} must be a string but got '
                f'{type(value).__name__}.',
            )

    return decoded


def encode_relay_message(message: RelayMessage) -> str:
    """Encode message as JSON string.

    Args:
        message: Message to JSON encode.

    Raises:
        RelayMessageEncodeError: If the message cannot be JSON encoded.
    """
    if not isinstance(message, RelayMessage):
        raise RelayMessageEncodeError(
            f'Message is not an instance of {RelayMessage.__name__}. '
            f'Got {type(message).__name__}.',
        )

    data = {
        field.name: getattr(message, field.name)
        for field in dataclasses.fields(message)
    }

    try:
        return json.dumps(to_wire_keys(data))
    except (TypeError, ValueError) as e:
        raise RelayMessageEncodeError('Error encoding message.') from e
