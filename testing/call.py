"""In-memory collaborators of the call state machine for unit tests."""
from __future__ import annotations

import asyncio
import contextlib
import dataclasses
from typing import Any
from typing import AsyncGenerator
from typing import Callable

from peercall.call.exceptions import LocalMediaUnavailableError
from peercall.call.machine import CallStateMachine
from peercall.call.protocols import CallObserver
from peercall.call.session import CallPhase
from peercall.call.session import CallRole
from peercall.call.session import CallSession
from peercall.call.session import EndReason
from peercall.relay.exceptions import RelayNotConnectedError
from peercall.relay.messages import encode_relay_message
from peercall.relay.messages import RelayMessage
from peercall.utils.tasks import cancel_and_wait

OFFER = 'OFFER-XYZ'
ANSWER = 'ANSWER-XYZ'


@dataclasses.dataclass(eq=False)
class FakeMedia:
    """Media handle that records if it was stopped."""

    label: str
    stopped: int = 0


class FakeMediaProvider:
    """Media provider handing out `FakeMedia`.

    Args:
        available: Return media from `acquire_local_media()`. Otherwise
            raise `LocalMediaUnavailableError`.
        gate: Optional event every acquisition waits on before returning.
    """

    def __init__(
        self,
        available: bool = True,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.available = available
        self.gate = gate
        self.acquired: list[FakeMedia] = []
        self.released: list[Any] = []

    async def acquire_local_media(self) -> FakeMedia:
        if self.gate is not None:
            await self.gate.wait()
        if not self.available:
            raise LocalMediaUnavailableError('No camera or microphone.')
        media = FakeMedia(f'local-{len(self.acquired) + 1}')
        self.acquired.append(media)
        return media

    def release_media(self, media: Any) -> None:
        if isinstance(media, FakeMedia):
            media.stopped += 1
        self.released.append(media)


class FakeNegotiation:
    """Negotiation which immediately produces canned signals.

    The initiator emits `OFFER` when it is created. The answerer emits
    `ANSWER`, the remote media, and `connect` once it is fed the offer, and
    the initiator emits its remote media and `connect` once it is fed the
    answer. Set `auto=False` to drive the negotiation with `emit()`.
    """

    def __init__(
        self,
        role: CallRole,
        local_media: Any,
        *,
        auto: bool = True,
        offer: Any = OFFER,
        answer: Any = ANSWER,
    ) -> None:
        self.role = role
        self.local_media = local_media
        self.auto = auto
        self.offer = offer
        self.answer = answer
        self.callbacks: dict[str, list[Callable[..., Any]]] = {}
        self.fed: list[Any] = []
        self.destroyed = 0
        self.remote_media = FakeMedia(f'remote-{role.value}')
        self._started = False

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        self.callbacks.setdefault(event, []).append(callback)
        # Start once the handle registered every callback.
        if (
            self.auto
            and not self._started
            and self.role is CallRole.INITIATOR
            and event == 'error'
        ):
            self._started = True
            self.emit('signal', self.offer)

    def emit(self, event: str, *args: Any) -> None:
        for callback in self.callbacks.get(event, []):
            callback(*args)

    def feed_remote_signal(self, signal: Any) -> None:
        self.fed.append(signal)
        if not self.auto:
            return
        if self.role is CallRole.ANSWERER:
            self.emit('signal', self.answer)
        self.emit('media', self.remote_media)
        self.emit('connect')

    def destroy(self) -> None:
        self.destroyed += 1


class FakeNegotiationFactory:
    """Factory creating `FakeNegotiation` instances and keeping them."""

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.created: list[FakeNegotiation] = []

    def __call__(self, role: CallRole, local_media: Any) -> FakeNegotiation:
        negotiation = FakeNegotiation(role, local_media, **self.kwargs)
        self.created.append(negotiation)
        return negotiation

    @property
    def last(self) -> FakeNegotiation:
        return self.created[-1]


class FakeTransport:
    """Signal transport recording sent messages.

    Args:
        encode: Encode each message for the wire like
            [`RelayClient.send()`][peercall.relay.client.RelayClient.send]
            so unencodable messages raise `RelayMessageEncodeError`.
    """

    def __init__(self, encode: bool = False) -> None:
        self.encode = encode
        self.sent: list[RelayMessage] = []
        self.fail = False

    async def send(self, message: RelayMessage) -> None:
        if self.encode:
            encode_relay_message(message)
        if self.fail:
            raise RelayNotConnectedError('Transport is closed.')
        self.sent.append(message)


class RecordingObserver(CallObserver):
    """Observer recording every notification."""

    def __init__(self) -> None:
        self.phases: list[CallPhase] = []
        self.incoming: list[tuple[str, str | None]] = []
        self.remote_media: list[Any] = []
        self.errors: list[tuple[str, str | None]] = []
        self.ended: list[tuple[CallSession, EndReason]] = []

    def on_phase_change(
        self,
        session: CallSession,
        previous: CallPhase,
    ) -> None:
        self.phases.append(session.phase)

    def on_incoming_call(self, peer_id: str, display_name: str | None) -> None:
        self.incoming.append((peer_id, display_name))

    def on_remote_media(self, session: CallSession, media: Any) -> None:
        self.remote_media.append(media)

    def on_call_error(self, reason: str, message: str | None) -> None:
        self.errors.append((reason, message))

    def on_call_ended(self, session: CallSession, reason: EndReason) -> None:
        self.ended.append((session, reason))


async def settle(machine: CallStateMachine, rounds: int = 10) -> None:
    """Wait until the machine and its media tasks have nothing left to do."""
    for _ in range(rounds):
        await machine.join()
        await asyncio.sleep(0)


@contextlib.asynccontextmanager
async def running(
    machine: CallStateMachine,
) -> AsyncGenerator[CallStateMachine, None]:
    """Run the event loop of the machine for the duration of the context."""
    task = asyncio.create_task(machine.run())
    try:
        yield machine
    finally:
        await cancel_and_wait(task)
