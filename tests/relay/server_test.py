from __future__ import annotations

import asyncio
import json
import logging
from unittest import mock
from unittest.mock import AsyncMock

import pytest
import websockets
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect
from websockets.asyncio.server import serve

from peercall.relay.exceptions import BadRequestError
from peercall.relay.messages import AssignedId
from peercall.relay.messages import CallAccepted
from peercall.relay.messages import CallAnswer
from peercall.relay.messages import CallError
from peercall.relay.messages import CallGone
from peercall.relay.messages import CallHangup
from peercall.relay.messages import CallOffer
from peercall.relay.messages import decode_relay_message
from peercall.relay.messages import encode_relay_message
from peercall.relay.messages import RelayMessage
from peercall.relay.messages import SignalEnvelope
from peercall.relay.messages import SignalKind
from peercall.relay.server import RelayServer
from testing.relay_server import RelayServerInfo
from testing.relay_server import sequential_ids
from testing.utils import open_port

_WAIT_FOR = 1


def get_mock_websocket() -> mock.MagicMock:
    websocket = mock.MagicMock()
    websocket.send = AsyncMock()
    websocket.remote_address = ('127.0.0.1', 1234)
    return websocket


def sent_messages(websocket: mock.MagicMock) -> list[RelayMessage]:
    return [
        decode_relay_message(call.args[0])
        for call in websocket.send.await_args_list
    ]


def make_server(*names: str) -> tuple[RelayServer, list[mock.MagicMock]]:
    server = RelayServer(sequential_ids())
    websockets_ = []
    for _ in names:
        websocket = get_mock_websocket()
        server.registry.register(websocket)
        websockets_.append(websocket)
    return server, websockets_


async def recv_message(websocket: ClientConnection) -> RelayMessage:
    message_str = await asyncio.wait_for(websocket.recv(), _WAIT_FOR)
    assert isinstance(message_str, str)
    return decode_relay_message(message_str)


@pytest.mark.asyncio()
async def test_server_send() -> None:
    server, (websocket,) = make_server('P1')
    assert await server.send('P1', AssignedId('P1'))
    assert sent_messages(websocket) == [AssignedId('P1')]


@pytest.mark.asyncio()
async def test_server_send_unknown_participant() -> None:
    server = RelayServer()
    assert not await server.send('unknown', AssignedId('unknown'))


@pytest.mark.asyncio()
async def test_server_send_encoding_error(caplog) -> None:
    caplog.set_level(logging.ERROR)
    server, _ = make_server('P1')
    assert not await server.send('P1', object())  # type: ignore[arg-type]
    assert len(caplog.records) == 1
    assert 'Failed to encode message' in caplog.records[0].message


@pytest.mark.asyncio()
async def test_server_send_connection_closed(caplog) -> None:
    caplog.set_level(logging.ERROR)
    server, (websocket,) = make_server('P1')
    exception = websockets.exceptions.ConnectionClosedOK(None, None)
    websocket.send.side_effect = exception

    assert not await server.send('P1', AssignedId('P1'))
    websocket.send.assert_awaited_once()
    assert len(caplog.records) == 1
    assert 'closed while attempting' in caplog.records[0].message


@pytest.mark.asyncio()
async def test_server_connect_assigns_identifier() -> None:
    server = RelayServer(sequential_ids())
    websocket = get_mock_websocket()

    record = await server.connect(websocket)

    assert record.id == 'P1'
    assert record.connection is websocket
    assert server.registry.is_live('P1')
    assert sent_messages(websocket) == [AssignedId('P1')]


@pytest.mark.asyncio()
async def test_forward_offer() -> None:
    server, (caller, callee, bystander) = make_server('P1', 'P2', 'P3')
    envelope = SignalEnvelope(
        kind=SignalKind.OFFER,
        payload='OFFER-XYZ',
        sender='P1',
        to='P2',
        display_name='Alice',
    )

    await server.on_offer(envelope)

    caller.send.assert_not_awaited()
    bystander.send.assert_not_awaited()
    assert sent_messages(callee) == [
        CallOffer('P2', 'OFFER-XYZ', from_='P1', display_name='Alice'),
    ]


@pytest.mark.asyncio()
async def test_forward_offer_to_unknown_participant(caplog) -> None:
    caplog.set_level(logging.WARNING)
    server, (caller, bystander) = make_server('P1', 'P2')
    envelope = SignalEnvelope(SignalKind.OFFER, 'OFFER-XYZ', 'P1', 'P9')

    await server.on_offer(envelope)

    bystander.send.assert_not_awaited()
    (error,) = sent_messages(caller)
    assert isinstance(error, CallError)
    assert error.reason == 'PeerUnavailable'
    assert error.message == 'User not found or disconnected.'
    assert error.peer == 'P9'
    assert any('unknown participant P9' in r.message for r in caplog.records)


@pytest.mark.asyncio()
async def test_forward_offer_delivery_failure() -> None:
    server, (caller, callee) = make_server('P1', 'P2')
    callee.send.side_effect = websockets.exceptions.ConnectionClosedError(
        None,
        None,
    )
    envelope = SignalEnvelope(SignalKind.OFFER, 'OFFER-XYZ', 'P1', 'P2')

    await server.on_offer(envelope)

    (error,) = sent_messages(caller)
    assert isinstance(error, CallError)
    assert error.reason == 'PeerUnavailable'
    assert error.peer == 'P2'


@pytest.mark.asyncio()
async def test_forward_answer() -> None:
    server, (caller, callee, bystander) = make_server('P1', 'P2', 'P3')
    envelope = SignalEnvelope(SignalKind.ANSWER, 'ANSWER-XYZ', 'P2', 'P1')

    await server.on_answer(envelope)

    callee.send.assert_not_awaited()
    bystander.send.assert_not_awaited()
    assert sent_messages(caller) == [CallAccepted('ANSWER-XYZ', from_='P2')]


@pytest.mark.asyncio()
async def test_forward_answer_caller_gone() -> None:
    server, (callee,) = make_server('P2')
    envelope = SignalEnvelope(SignalKind.ANSWER, 'ANSWER-XYZ', 'P1', 'P9')

    await server.on_answer(envelope)

    (error,) = sent_messages(callee)
    assert isinstance(error, CallError)
    assert error.reason == 'PeerUnavailable'
    assert error.message == 'Caller disconnected.'


@pytest.mark.asyncio()
async def test_forward_hangup_to_peer_only() -> None:
    server, (first, second, third) = make_server('P1', 'P2', 'P3')

    await server.on_hangup('P1', CallHangup('P2', reason='declined'))

    first.send.assert_not_awaited()
    third.send.assert_not_awaited()
    assert sent_messages(second) == [CallGone('P1', reason='declined')]


@pytest.mark.asyncio()
async def test_forward_hangup_to_unknown_peer_is_dropped() -> None:
    server, (first,) = make_server('P1')
    await server.on_hangup('P1', CallHangup('P9'))
    first.send.assert_not_awaited()


@pytest.mark.asyncio()
async def test_disconnect_broadcasts_to_remaining() -> None:
    server, (first, second, third) = make_server('P1', 'P2', 'P3')

    await server.on_disconnect('P1')

    assert not server.registry.is_live('P1')
    first.send.assert_not_awaited()
    assert sent_messages(second) == [CallGone('P1')]
    assert sent_messages(third) == [CallGone('P1')]

    # A duplicate disconnect signal is a no-op
    await server.on_disconnect('P1')
    assert second.send.await_count == 1


@pytest.mark.asyncio()
async def test_process_message_signal_to_self() -> None:
    server, _ = make_server('P1')
    record = server.registry.get('P1')
    assert record is not None

    with pytest.raises(BadRequestError, match='themselves'):
        await server._process_message(record, CallOffer('P1', 'OFFER-XYZ'))
    with pytest.raises(BadRequestError, match='themselves'):
        await server._process_message(record, CallAnswer('P1', 'ANSWER-XYZ'))


@pytest.mark.asyncio()
async def test_process_message_unsupported_event() -> None:
    server, _ = make_server('P1')
    record = server.registry.get('P1')
    assert record is not None

    with pytest.raises(BadRequestError, match='cannot send assigned-id'):
        await server._process_message(record, AssignedId('P1'))


@pytest.mark.asyncio()
async def test_process_message_spoofed_sender(caplog) -> None:
    caplog.set_level(logging.WARNING)
    server, (_, callee) = make_server('P1', 'P2')
    record = server.registry.get('P1')
    assert record is not None

    offer = CallOffer('P2', 'OFFER-XYZ', from_='P7')
    await server._process_message(record, offer)

    (forwarded,) = sent_messages(callee)
    assert isinstance(forwarded, CallOffer)
    assert forwarded.from_ == 'P1'
    assert any('claiming to be P7' in r.message for r in caplog.records)


@pytest.mark.asyncio()
async def test_handler_offer_answer_and_disconnect(
    relay_server: RelayServerInfo,
) -> None:
    async with connect(relay_server.address) as first, connect(
        relay_server.address,
    ) as second:
        assert await recv_message(first) == AssignedId('P1')
        assert await recv_message(second) == AssignedId('P2')

        offer = CallOffer('P2', 'OFFER-XYZ', from_='P1', display_name='Alice')
        await first.send(encode_relay_message(offer))
        assert await recv_message(second) == offer

        await second.send(encode_relay_message(CallAnswer('P1', 'ANSWER-XYZ')))
        assert await recv_message(first) == CallAccepted(
            'ANSWER-XYZ',
            from_='P2',
        )

        await second.close()
        assert await recv_message(first) == CallGone('P2')

        await asyncio.sleep(0.01)
        assert relay_server.relay_server.registry.count() == 1


@pytest.mark.asyncio()
async def test_handler_offer_to_unknown_participant(
    relay_server: RelayServerInfo,
) -> None:
    async with connect(relay_server.address) as websocket:
        await recv_message(websocket)
        await websocket.send(encode_relay_message(CallOffer('P9', 'OFFER')))
        assert await recv_message(websocket) == CallError(
            'PeerUnavailable',
            'User not found or disconnected.',
            peer='P9',
        )


@pytest.mark.asyncio()
async def test_handler_bad_request_keeps_connection_open(
    relay_server: RelayServerInfo,
) -> None:
    async with connect(relay_server.address) as websocket:
        await recv_message(websocket)
        await websocket.send(encode_relay_message(CallOffer('P1', 'OFFER')))
        error = await recv_message(websocket)
        assert isinstance(error, CallError)
        assert error.reason == 'BadRequest'
        assert 'BadRequestError' in (error.message or '')

        pong_waiter = await websocket.ping()
        await asyncio.wait_for(pong_waiter, _WAIT_FOR)


@pytest.mark.parametrize(
    'message',
    ('not json', json.dumps({'event': 'call-ring'}), b'binary'),
)
@pytest.mark.asyncio()
async def test_handler_closes_on_undecodable_message(
    message: str | bytes,
    relay_server: RelayServerInfo,
) -> None:
    async with connect(relay_server.address) as websocket:
        await recv_message(websocket)
        await websocket.send(message)
        with pytest.raises(websockets.exceptions.ConnectionClosedError):
            await asyncio.wait_for(websocket.recv(), _WAIT_FOR)
        assert websocket.close_code == 4000
        assert websocket.close_reason == 'Unknown message type.'


@pytest.mark.asyncio()
async def test_handler_closes_on_oversized_message() -> None:
    server = RelayServer(sequential_ids(), max_message_bytes=64)
    port = open_port()
    async with serve(server.handler, 'localhost', port):
        async with connect(f'ws://localhost:{port}') as websocket:
            await recv_message(websocket)
            offer = CallOffer('P2', 'x' * 100)
            await websocket.send(encode_relay_message(offer))
            with pytest.raises(websockets.exceptions.ConnectionClosedError):
                await asyncio.wait_for(websocket.recv(), _WAIT_FOR)
            assert websocket.close_code == 4003
