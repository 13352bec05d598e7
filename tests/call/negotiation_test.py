from __future__ import annotations

import logging
from unittest import mock

from peercall.call.events import CallEvent
from peercall.call.events import MediaReady
from peercall.call.events import NegotiationConnected
from peercall.call.events import NegotiationFailed
from peercall.call.events import SignalProduced
from peercall.call.negotiation import NegotiationHandle
from peercall.call.session import CallRole
from testing.call import FakeNegotiation


def make_handle(
    call_id: int = 7,
) -> tuple[NegotiationHandle, FakeNegotiation, list[CallEvent]]:
    events: list[CallEvent] = []
    negotiation = FakeNegotiation(CallRole.ANSWERER, None, auto=False)
    handle = NegotiationHandle(negotiation, call_id, events.append)
    return handle, negotiation, events


def test_events_are_tagged_with_call_id() -> None:
    handle, negotiation, events = make_handle(call_id=7)

    negotiation.emit('signal', 'ANSWER-XYZ')
    negotiation.emit('media', 'remote')
    negotiation.emit('connect')
    negotiation.emit('error', RuntimeError('ICE failed'))

    assert handle.call_id == 7
    assert events == [
        SignalProduced(7, 'ANSWER-XYZ'),
        MediaReady(7, 'remote'),
        NegotiationConnected(7),
        NegotiationFailed(7, 'ICE failed'),
    ]


def test_feed_passes_signal() -> None:
    handle, negotiation, _ = make_handle()
    handle.feed('OFFER-XYZ')
    assert negotiation.fed == ['OFFER-XYZ']


def test_nothing_emitted_or_fed_after_destroy() -> None:
    handle, negotiation, events = make_handle()

    assert handle.destroy()
    assert handle.destroyed
    negotiation.emit('signal', 'ANSWER-XYZ')
    handle.feed('OFFER-XYZ')

    assert events == []
    assert negotiation.fed == []


def test_destroy_is_idempotent() -> None:
    handle, negotiation, _ = make_handle()
    assert handle.destroy()
    assert not handle.destroy()
    assert negotiation.destroyed == 1


def test_destroy_logs_collaborator_errors(caplog) -> None:
    caplog.set_level(logging.WARNING)
    handle, negotiation, _ = make_handle()

    with mock.patch.object(
        negotiation,
        'destroy',
        side_effect=RuntimeError('already closed'),
    ):
        assert handle.destroy()

    assert any('already closed' in r.message for r in caplog.records)
