"""Participant connected to a relay server."""
from __future__ import annotations

import asyncio
import logging
from types import TracebackType
from typing import Any
from typing import Generator

import websockets

from peercall.call.config import CallConfig
from peercall.call.config import ParticipantConfig
from peercall.call.events import AnswerReceived
from peercall.call.events import CallEvent
from peercall.call.events import OfferReceived
from peercall.call.events import PeerGone
from peercall.call.events import RelayError
from peercall.call.events import TransportLost
from peercall.call.events import TransportReconnected
from peercall.call.machine import CallStateMachine
from peercall.call.protocols import CallObserver
from peercall.call.protocols import MediaProvider
from peercall.call.protocols import NegotiationFactory
from peercall.call.session import CallPhase
from peercall.relay.client import RelayClient
from peercall.relay.exceptions import RelayConnectionError
from peercall.relay.exceptions import RelayNotConnectedError
from peercall.relay.exceptions import RelayRegistrationError
from peercall.relay.messages import CallAccepted
from peercall.relay.messages import CallError
from peercall.relay.messages import CallGone
from peercall.relay.messages import CallOffer
from peercall.relay.messages import RelayMessage
from peercall.relay.messages import RelayMessageDecodeError
from peercall.utils.tasks import cancel_and_wait
from peercall.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


def relay_message_to_event(message: RelayMessage) -> CallEvent | None:
    """Convert a message from the relay server into a call event.

    Returns:
        The call event or `None` if the message has no meaning to the call
        state machine.
    """
    if isinstance(message, CallOffer):
        if message.from_ is None:
            return None
        return OfferReceived(
            sender=message.from_,
            signal=message.signal,
            display_name=message.display_name,
        )
    elif isinstance(message, CallAccepted):
        return AnswerReceived(signal=message.signal, sender=message.from_)
    elif isinstance(message, CallGone):
        return PeerGone(
            disconnected_id=message.disconnected_id,
            reason=message.reason,
        )
    elif isinstance(message, CallError):
        return RelayError(
            reason=message.reason,
            message=message.message,
            peer=message.peer,
        )
    return None


class Participant:
    """Participant able to place and receive one call at a time.

    Connects to the relay server with a
    [`RelayClient`][peercall.relay.client.RelayClient], feeds every message
    the relay forwards into a
    [`CallStateMachine`][peercall.call.machine.CallStateMachine], and
    exposes the call actions of the local user.

    If the relay connection drops, the current call ends and the client
    reconnects. The relay assigns a new identifier on every connection so
    the participant must share its new
    [`id`][peercall.call.participant.Participant.id] with anyone wanting to
    call it.

    Example:
        ```python
        from peercall.call.participant import Participant
        from peercall.relay.client import RelayClient

        client = RelayClient('ws://localhost:3001')
        async with Participant(client, media, negotiation_factory) as alice:
            alice.call(bob_id)
            ...
            alice.hangup()
        ```

    Note:
        The participant can also be initialized with `await`.

        ```python
        alice = await Participant(client, media, negotiation_factory)
        ```

    Args:
        relay_client: Client of the relay server. The participant takes
            ownership and closes it on
            [`close()`][peercall.call.participant.Participant.close].
        media: Provider of local media handles.
        negotiation_factory: Factory creating the negotiation of each call.
        config: Call policy.
        observer: Receiver of call notifications.
    """

    def __init__(
        self,
        relay_client: RelayClient,
        media: MediaProvider,
        negotiation_factory: NegotiationFactory,
        *,
        config: CallConfig | None = None,
        observer: CallObserver | None = None,
    ) -> None:
        self._relay_client = relay_client
        self._media = media
        self._negotiation_factory = negotiation_factory
        self._config = CallConfig() if config is None else config
        self._observer = observer

        self._machine: CallStateMachine | None = None
        self._machine_task: asyncio.Task[None] | None = None
        self._reader_task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(
        cls,
        config: ParticipantConfig,
        media: MediaProvider,
        negotiation_factory: NegotiationFactory,
        *,
        observer: CallObserver | None = None,
    ) -> Participant:
        """Create a participant from its configuration."""
        client = RelayClient(
            config.relay_address,
            reconnect_delay=config.reconnect_delay,
            max_reconnect_attempts=config.max_reconnect_attempts,
            timeout=config.timeout,
            verify_certificate=config.verify_certificate,
        )
        return cls(
            client,
            media,
            negotiation_factory,
            config=config.call,
            observer=observer,
        )

    @property
    def _log_prefix(self) -> str:
        try:
            participant = self._relay_client.participant_id
        except RelayNotConnectedError:
            participant = 'unassigned'
        return f'{self.__class__.__name__}[{participant}]'

    @property
    def id(self) -> str:
        """Identifier currently assigned by the relay server.

        Raises:
            RelayNotConnectedError: if the participant has never connected.
        """
        return self._relay_client.participant_id

    @property
    def relay_client(self) -> RelayClient:
        """Relay client interface."""
        return self._relay_client

    @property
    def machine(self) -> CallStateMachine:
        """Call state machine of the participant.

        Raises:
            RuntimeError: if
                [`Participant.async_init()`][peercall.call.participant.Participant.async_init]
                has not been called.
        """
        if self._machine is not None:
            return self._machine
        raise RuntimeError(
            'The call state machine has not been created yet. '
            'This is likely because async_init() has not been called. '
            'Is the participant being initialized with await?',
        )

    @property
    def phase(self) -> CallPhase:
        """Phase of the current call or `IDLE`."""
        return self.machine.phase

    async def async_init(self) -> None:
        """Connect to the relay server and start handling calls."""
        await self._relay_client.connect()
        if self._machine is None:
            self._machine = CallStateMachine(
                self._relay_client,
                self._media,
                self._negotiation_factory,
                participant_id=self._relay_client.participant_id,
                config=self._config,
                observer=self._observer,
            )
        if self._machine_task is None:
            self._machine_task = spawn_guarded_background_task(
                self._machine.run,
                name='participant-call-state-machine',
            )
        if self._reader_task is None:
            self._reader_task = spawn_guarded_background_task(
                self._handle_server_messages,
                name='participant-relay-message-handler',
            )

    async def __aenter__(self) -> Participant:
        await self.async_init()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __await__(self) -> Generator[Any, None, Participant]:
        return self.__aenter__().__await__()

    async def _reconnect(self) -> bool:
        machine = self.machine
        machine.submit(TransportLost())
        logger.warning(
            f'{self._log_prefix}: lost connection to relay server, '
            'reconnecting',
        )
        try:
            await self._relay_client.connect()
        except (RelayConnectionError, RelayRegistrationError) as e:
            logger.error(
                f'{self._log_prefix}: giving up on relay server: {e}',
            )
            return False
        machine.submit(
            TransportReconnected(self._relay_client.participant_id),
        )
        return True

    async def _handle_server_messages(self) -> None:
        """Handle messages from the relay server.

        Converts each message into a call event for the state machine.
        """
        logger.info(
            f'{self._log_prefix}: listening for messages from relay server',
        )
        while True:
            try:
                message = await self._relay_client.recv()
            except (
                websockets.exceptions.ConnectionClosed,
                RelayNotConnectedError,
            ):
                if await self._reconnect():
                    continue
                break
            except RelayMessageDecodeError as e:
                logger.error(
                    f'{self._log_prefix}: error deserializing message from '
                    f'relay server: {e} ...skipping message',
                )
                continue

            event = relay_message_to_event(message)
            if event is None:
                logger.warning(
                    f'{self._log_prefix}: ignoring unexpected message from '
                    f'relay server: {message}',
                )
                continue
            logger.debug(
                f'{self._log_prefix}: relay server forwarded '
                f'{message.event}',
            )
            self.machine.submit(event)

    def call(self, peer_id: str, display_name: str | None = None) -> None:
        """Call another participant.

        Raises:
            ValueError: If `peer_id` is empty.
            SelfCallError: If `peer_id` is the identifier of this participant.
            CallInProgressError: If this participant is already in a call.
        """
        self.machine.initiate(peer_id, display_name)

    def accept(self) -> None:
        """Accept the incoming call."""
        self.machine.accept()

    def decline(self) -> None:
        """Decline the incoming call."""
        self.machine.decline()

    def hangup(self) -> None:
        """End the current call."""
        self.machine.hangup()

    async def close(self) -> None:
        """Hang up, stop handling calls, and close the relay connection."""
        await cancel_and_wait(self._reader_task)
        self._reader_task = None

        if self._machine is not None and self._machine_task is not None:
            if self._machine.session is not None:
                self._machine.hangup()
                await self._machine.join()
            await cancel_and_wait(self._machine_task)
            self._machine_task = None

        await self._relay_client.close()
        logger.info(f'{self._log_prefix}: closed')
