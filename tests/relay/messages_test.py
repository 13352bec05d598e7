from __future__ import annotations

import json

import pytest

from peercall.relay.messages import AssignedId
from peercall.relay.messages import CallAccepted
from peercall.relay.messages import CallAnswer
from peercall.relay.messages import CallError
from peercall.relay.messages import CallGone
from peercall.relay.messages import CallHangup
from peercall.relay.messages import CallOffer
from peercall.relay.messages import decode_relay_message
from peercall.relay.messages import encode_relay_message
from peercall.relay.messages import from_wire_key
from peercall.relay.messages import RelayMessage
from peercall.relay.messages import RelayMessageDecodeError
from peercall.relay.messages import RelayMessageEncodeError
from peercall.relay.messages import to_wire_key


@pytest.mark.parametrize(
    ('name', 'key'),
    (
        ('id', 'id'),
        ('to', 'to'),
        ('from_', 'from'),
        ('display_name', 'displayName'),
        ('disconnected_id', 'disconnectedId'),
    ),
)
def test_wire_keys(name: str, key: str) -> None:
    assert to_wire_key(name) == key
    assert from_wire_key(key) == name


@pytest.mark.parametrize(
    'message',
    (
        AssignedId('A1'),
        CallOffer('B2', 'OFFER-XYZ', from_='A1', display_name='Alice'),
        CallOffer('B2', {'type': 'offer', 'sdp': 'v=0'}),
        CallAnswer('A1', 'ANSWER-XYZ'),
        CallAccepted('ANSWER-XYZ', from_='B2'),
        CallHangup('B2', reason='declined'),
        CallGone('A1'),
        CallGone('A1', reason='busy'),
        CallError('PeerUnavailable', 'User not found.', peer='B2'),
    ),
)
def test_encode_decode(message: RelayMessage) -> None:
    message_str = encode_relay_message(message)
    assert decode_relay_message(message_str) == message


def test_encode_offer_wire_format() -> None:
    message = CallOffer('B2', 'OFFER-XYZ', from_='A1', display_name='Alice')
    assert json.loads(encode_relay_message(message)) == {
        'event': 'call-offer',
        'to': 'B2',
        'signal': 'OFFER-XYZ',
        'from': 'A1',
        'displayName': 'Alice',
    }


def test_decode_call_gone_wire_format() -> None:
    message = decode_relay_message(
        '{"event": "call-gone", "disconnectedId": "A1"}',
    )
    assert message == CallGone(disconnected_id='A1')


def test_signal_payload_keys_are_not_converted() -> None:
    signal = {'sdp_mid': 'audio', 'candidateIndex': 0}
    message = CallOffer('B2', signal, from_='A1')
    data = json.loads(encode_relay_message(message))
    assert data['signal'] == signal

    decoded = decode_relay_message(json.dumps(data))
    assert isinstance(decoded, CallOffer)
    assert decoded.signal == signal


@pytest.mark.parametrize(
    ('message', 'match'),
    (
        ('not json', 'Failed to load string as JSON'),
        ('["call-offer"]', 'Expected a JSON object'),
        ('{"to": "B2"}', 'does not contain an event key'),
        ('{"event": "call-ring"}', 'unknown event type'),
        ('{"event": ["call-offer"]}', 'unknown event type'),
        ('{"event": "call-offer"}', 'Failed to convert message'),
        ('{"event": "call-offer", "to": "B2", "extra": 1}', 'Failed'),
        ('{"event": "call-offer", "to": 2, "signal": "x"}', 'must be a str'),
        ('{"event": "call-gone", "disconnectedId": null}', 'must be a str'),
    ),
)
def test_decode_errors(message: str, match: str) -> None:
    with pytest.raises(RelayMessageDecodeError, match=match):
        decode_relay_message(message)


def test_encode_not_a_message() -> None:
    with pytest.raises(RelayMessageEncodeError, match='not an instance'):
        encode_relay_message(object())  # type: ignore[arg-type]


def test_encode_unserializable_signal() -> None:
    with pytest.raises(RelayMessageEncodeError, match='Error encoding'):
        encode_relay_message(CallOffer('B2', object()))
