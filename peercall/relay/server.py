"""Relay server implementation for establishing peer calls.

The relay server (or signaling server) is a lightweight server accessible by
all participants that forwards the offers and answers two participants need
to negotiate a direct media session. The relay never looks inside these
negotiation blobs and keeps no record of who is calling whom: it only knows
which participants are connected.
"""
from __future__ import annotations

import logging

import websockets.exceptions
from websockets.asyncio.server import ServerConnection

from peercall.relay.exceptions import BadRequestError
from peercall.relay.exceptions import RelayServerError
from peercall.relay.messages import AssignedId
from peercall.relay.messages import CallAccepted
from peercall.relay.messages import CallAnswer
from peercall.relay.messages import CallError
from peercall.relay.messages import CallErrorReason
from peercall.relay.messages import CallGone
from peercall.relay.messages import CallHangup
from peercall.relay.messages import CallOffer
from peercall.relay.messages import decode_relay_message
from peercall.relay.messages import encode_relay_message
from peercall.relay.messages import RelayMessage
from peercall.relay.messages import RelayMessageDecodeError
from peercall.relay.messages import RelayMessageEncodeError
from peercall.relay.messages import SignalEnvelope
from peercall.relay.messages import SignalKind
from peercall.relay.registry import ConnectionRecord
from peercall.relay.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class RelayServer:
    """Signaling relay server.

    Each participant that connects is assigned an identifier which it
    shares out-of-band with the participants that want to call it. Offers
    and answers are forwarded to the participant they are addressed to if
    that participant is currently connected; otherwise the sender gets a
    `call-error` with reason `PeerUnavailable`. When a participant
    disconnects, every other participant is told so via a `call-gone`
    broadcast and filters the notice against its own call state.

    The relay server is built on websockets and designed to be served
    using [`serve()`][peercall.relay.run.serve].

    Args:
        registry: Registry of connected participants. A new registry is
            created if not provided.
        max_message_bytes: Optional maximum size of participant messages in
            bytes. Participants that send oversized messages will have their
            connections closed.
    """

    def __init__(
        self,
        registry: ConnectionRegistry[ServerConnection] | None = None,
        max_message_bytes: int | None = None,
    ) -> None:
        self._registry: ConnectionRegistry[ServerConnection] = (
            ConnectionRegistry() if registry is None else registry
        )
        self._max_message_bytes = max_message_bytes

    @property
    def registry(self) -> ConnectionRegistry[ServerConnection]:
        """Registry of connected participants."""
        return self._registry

    async def send(self, participant_id: str, message: RelayMessage) -> bool:
        """Send a message to a participant.

        Delivery is fire-and-forget: failures are logged and never retried.

        Args:
            participant_id: Identifier of the destination participant.
            message: Message to encode and send via the websocket connection
                of the participant.

        Returns:
            If the message was handed to the participant's connection.
        """
        record = self.registry.get(participant_id)
        if record is None:
            return False

        try:
            message_str = encode_relay_message(message)
        except RelayMessageEncodeError as e:
            logger.error(f'Failed to encode message: {e}')
            return False

        try:
            await record.connection.send(message_str)
        except websockets.exceptions.ConnectionClosed:
            logger.error(
                f'Connection of {participant_id} closed while attempting '
                'to send message',
            )
            return False
        return True

    async def connect(
        self,
        websocket: ServerConnection,
    ) -> ConnectionRecord[ServerConnection]:
        """Register a new connection and tell the participant its identifier.

        Args:
            websocket: Websocket connection of the new participant.

        Returns:
            Registry record of the participant.
        """
        participant_id = self.registry.register(websocket)
        record = self.registry.get(participant_id)
        assert record is not None
        logger.info(
            f'Registered participant {participant_id} from '
            f'{websocket.remote_address} '
            f'(connected participants: {self.registry.count()})',
        )
        await self.send(participant_id, AssignedId(id=participant_id))
        return record

    async def on_offer(self, envelope: SignalEnvelope) -> None:
        """Forward an offer to the participant it is addressed to.

        Args:
            envelope: Offer received from `envelope.sender`.
        """
        if not self.registry.is_live(envelope.to):
            logger.warning(
                f'Participant {envelope.sender} attempting to call unknown '
                f'participant {envelope.to}',
            )
            await self._reply_unavailable(
                envelope,
                'User not found or disconnected.',
            )
            return

        offer = CallOffer(
            to=envelope.to,
            signal=envelope.payload,
            from_=envelope.sender,
            display_name=envelope.display_name,
        )
        if await self.send(envelope.to, offer):
            logger.info(
                f'Forwarded call offer from {envelope.sender} to '
                f'{envelope.to}',
            )
        else:
            await self._reply_unavailable(
                envelope,
                'User disconnected before the call offer was delivered.',
            )

    async def on_answer(self, envelope: SignalEnvelope) -> None:
        """Forward an answer to the participant that made the offer.

        Args:
            envelope: Answer received from `envelope.sender`.
        """
        if not self.registry.is_live(envelope.to):
            logger.warning(
                f'Participant {envelope.sender} attempting to answer call '
                f'from unknown participant {envelope.to}',
            )
            await self._reply_unavailable(envelope, 'Caller disconnected.')
            return

        accepted = CallAccepted(signal=envelope.payload, from_=envelope.sender)
        if await self.send(envelope.to, accepted):
            logger.info(
                f'Forwarded call answer from {envelope.sender} to '
                f'{envelope.to}',
            )
        else:
            await self._reply_unavailable(
                envelope,
                'Caller disconnected before the answer was delivered.',
            )

    async def on_hangup(self, sender: str, request: CallHangup) -> None:
        """Forward a courtesy teardown notice as a `call-gone` to one peer.

        The notice is best-effort: nothing is reported back to the sender if
        the peer is not connected anymore.

        Args:
            sender: Identifier of the participant leaving the call.
            request: Hangup request naming the peer.
        """
        gone = CallGone(disconnected_id=sender, reason=request.reason)
        if await self.send(request.to, gone):
            logger.info(
                f'Forwarded {request.reason} notice from {sender} to '
                f'{request.to}',
            )
        else:
            logger.debug(
                f'Dropped {request.reason} notice from {sender} to '
                f'unavailable participant {request.to}',
            )

    async def on_disconnect(self, participant_id: str) -> None:
        """Unregister a participant and notify all others.

        The relay does not know which participant, if any, was in a call
        with `participant_id` so every remaining participant receives the
        `call-gone` notice and decides whether it applies.

        Args:
            participant_id: Identifier of the participant that disconnected.
        """
        if not self.registry.unregister(participant_id):
            return

        logger.info(
            f'Unregistered participant {participant_id} '
            f'(connected participants: {self.registry.count()})',
        )
        gone = CallGone(disconnected_id=participant_id)
        for record in self.registry.records():
            await self.send(record.id, gone)

    async def _reply_unavailable(
        self,
        envelope: SignalEnvelope,
        message: str,
    ) -> None:
        error = CallError(
            reason=CallErrorReason.PEER_UNAVAILABLE.value,
            message=message,
            peer=envelope.to,
        )
        await self.send(envelope.sender, error)

    async def _process_message(
        self,
        record: ConnectionRecord[ServerConnection],
        message: RelayMessage,
    ) -> None:
        # Dispatches the message to the correct method depending on the type
        if isinstance(message, (CallOffer, CallAnswer)):
            if message.to == record.id:
                raise BadRequestError(
                    'Participants cannot send call signals to themselves.',
                )
            if isinstance(message, CallOffer):
                if message.from_ is not None and message.from_ != record.id:
                    logger.warning(
                        f'Participant {record.id} sent offer claiming to be '
                        f'{message.from_}; using the assigned identifier',
                    )
                envelope = SignalEnvelope(
                    kind=SignalKind.OFFER,
                    payload=message.signal,
                    sender=record.id,
                    to=message.to,
                    display_name=message.display_name,
                )
                await self.on_offer(envelope)
            else:
                envelope = SignalEnvelope(
                    kind=SignalKind.ANSWER,
                    payload=message.signal,
                    sender=record.id,
                    to=message.to,
                )
                await self.on_answer(envelope)
        elif isinstance(message, CallHangup):
            await self.on_hangup(record.id, message)
        else:
            raise BadRequestError(
                f'Participants cannot send {message.event} messages.',
            )

    async def _serve_connection(
        self,
        record: ConnectionRecord[ServerConnection],
    ) -> None:
        websocket = record.connection
        while True:
            try:
                message_str = await websocket.recv()
            except websockets.exceptions.ConnectionClosedOK:
                logger.info(f'Participant {record.id} closed its connection')
                return
            except websockets.exceptions.ConnectionClosedError as e:
                logger.info(
                    f'Connection of participant {record.id} lost: {e}',
                )
                return

            if (
                self._max_message_bytes is not None
                and len(message_str) > self._max_message_bytes
            ):
                logger.warning(
                    f'Participant {record.id} sent message with size '
                    f'{len(message_str)} bytes which exceeds the max '
                    f'configured size of {self._max_message_bytes} bytes. '
                    'Connection closed with error code 4003',
                )
                await websocket.close(
                    4003,
                    reason='Message length exceeds limit.',
                )
                return

            try:
                if isinstance(message_str, bytes):
                    raise RelayMessageDecodeError(
                        'Got message as bytes but expected str.',
                    )
                message = decode_relay_message(message_str)
            except RelayMessageDecodeError as e:
                logger.error(
                    'Closing websocket because deserialization error was '
                    f'caught on message received from {record.id}. {e}',
                )
                await websocket.close(4000, reason='Unknown message type.')
                return

            try:
                await self._process_message(record, message)
            except RelayServerError as e:
                logger.warning(
                    f'Rejected message from participant {record.id}: {e}',
                )
                error = CallError(
                    reason=CallErrorReason.BAD_REQUEST.value,
                    message=f'{e.__class__.__name__}: {e}',
                )
                await self.send(record.id, error)

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server connection handler.

        Assigns the participant an identifier, serves its messages until the
        connection closes, and then broadcasts its departure.

        The handler will close the connection for the following reasons.

        - A message cannot be decoded (code 4000).
        - The participant sends a message larger than the allowed size
          (code 4003).

        Args:
            websocket: Websocket connection of the participant.
        """
        record = await self.connect(websocket)
        try:
            await self._serve_connection(record)
        finally:
            await self.on_disconnect(record.id)
