"""Participant-side call state machine."""
from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any
from typing import Awaitable
from typing import Callable

from peercall.call.config import BusyPolicy
from peercall.call.config import CallConfig
from peercall.call.events import AcceptCall
from peercall.call.events import AnswerReceived
from peercall.call.events import CallEvent
from peercall.call.events import DeclineCall
from peercall.call.events import Hangup
from peercall.call.events import InitiateCall
from peercall.call.events import LocalMediaFailed
from peercall.call.events import LocalMediaReady
from peercall.call.events import MediaReady
from peercall.call.events import NegotiationConnected
from peercall.call.events import NegotiationFailed
from peercall.call.events import OfferReceived
from peercall.call.events import PeerGone
from peercall.call.events import RelayError
from peercall.call.events import SignalProduced
from peercall.call.events import TransportLost
from peercall.call.events import TransportReconnected
from peercall.call.exceptions import CallInProgressError
from peercall.call.exceptions import LocalMediaUnavailableError
from peercall.call.exceptions import SelfCallError
from peercall.call.negotiation import NegotiationHandle
from peercall.call.protocols import CallObserver
from peercall.call.protocols import MediaProvider
from peercall.call.protocols import NegotiationFactory
from peercall.call.protocols import SignalTransport
from peercall.call.session import CallPhase
from peercall.call.session import CallRole
from peercall.call.session import CallSession
from peercall.call.session import EndReason
from peercall.relay.exceptions import RelayClientError
from peercall.relay.messages import CallAnswer
from peercall.relay.messages import CallErrorReason
from peercall.relay.messages import CallHangup
from peercall.relay.messages import CallOffer
from peercall.relay.messages import HangupReason
from peercall.relay.messages import RelayMessage
from peercall.relay.messages import RelayMessageError

logger = logging.getLogger(__name__)

_HANGUP_REASONS = {
    EndReason.HANGUP: HangupReason.HANGUP,
    EndReason.DECLINED: HangupReason.DECLINED,
    EndReason.REPLACED: HangupReason.HANGUP,
    EndReason.NEGOTIATION_ERROR: HangupReason.ERROR,
    EndReason.LOCAL_MEDIA_UNAVAILABLE: HangupReason.UNAVAILABLE,
    EndReason.ERROR: HangupReason.ERROR,
}


class CallStateMachine:
    """Tracks the one call a participant can be in.

    All inputs (user actions, relay messages, transport changes, and
    collaborator callbacks) are events handled one at a time in the order
    they were submitted, so two transitions never race on the same session.
    Handlers always read the current session when they run; nothing is
    captured when an event is submitted.

    Acquiring local media is the only long-running step. It runs in its own
    task which posts the result back to the queue, so events such as a
    `call-gone` for the peer are still handled (and cancel the acquisition)
    while it is pending.

    Events that do not apply to the current session (e.g., a `call-gone`
    for an unrelated participant, an answer that arrives after hanging up,
    or a callback of the negotiation of a previous call) are dropped. Each
    drop is logged and counted in
    [`stale_events`][peercall.call.machine.CallStateMachine.stale_events].

    Example:
        ```python
        machine = CallStateMachine(relay_client, media, negotiation_factory)
        task = asyncio.create_task(machine.run())

        machine.initiate('B2')
        ...
        machine.hangup()
        ```

    Args:
        transport: Transport used to send messages to the relay server.
        media: Provider of local media handles.
        negotiation_factory: Factory creating the negotiation of each call.
        participant_id: Identifier assigned to this participant by the relay.
        config: Call policy.
        observer: Receiver of call notifications.
    """

    def __init__(
        self,
        transport: SignalTransport,
        media: MediaProvider,
        negotiation_factory: NegotiationFactory,
        *,
        participant_id: str | None = None,
        config: CallConfig | None = None,
        observer: CallObserver | None = None,
    ) -> None:
        self._transport = transport
        self._media = media
        self._negotiation_factory = negotiation_factory
        self._participant_id = participant_id
        self._config = CallConfig() if config is None else config
        self._observer = CallObserver() if observer is None else observer

        self._queue: asyncio.Queue[CallEvent] = asyncio.Queue()
        self._session: CallSession | None = None
        self._call_ids = itertools.count(1)
        self._stale_events = 0

        self._handlers: dict[
            type[CallEvent],
            Callable[[Any], Awaitable[None]],
        ] = {
            InitiateCall: self._on_initiate,
            AcceptCall: self._on_accept,
            DeclineCall: self._on_decline,
            Hangup: self._on_hangup,
            OfferReceived: self._on_offer,
            AnswerReceived: self._on_answer,
            PeerGone: self._on_peer_gone,
            RelayError: self._on_relay_error,
            TransportLost: self._on_transport_lost,
            TransportReconnected: self._on_transport_reconnected,
            LocalMediaReady: self._on_local_media_ready,
            LocalMediaFailed: self._on_local_media_failed,
            SignalProduced: self._on_signal,
            MediaReady: self._on_media_ready,
            NegotiationConnected: self._on_connected,
            NegotiationFailed: self._on_negotiation_failed,
        }

    @property
    def _log_prefix(self) -> str:
        participant = (
            'unassigned'
            if self._participant_id is None
            else self._participant_id
        )
        return f'{self.__class__.__name__}[{participant}]'

    @property
    def participant_id(self) -> str | None:
        """Identifier currently assigned to this participant."""
        return self._participant_id

    @property
    def config(self) -> CallConfig:
        """Call policy."""
        return self._config

    @property
    def session(self) -> CallSession | None:
        """The current call session or `None` if idle."""
        return self._session

    @property
    def phase(self) -> CallPhase:
        """Phase of the current call session or `IDLE`."""
        return CallPhase.IDLE if self._session is None else self._session.phase

    @property
    def stale_events(self) -> int:
        """Number of events dropped because they no longer applied."""
        return self._stale_events

    def submit(self, event: CallEvent) -> None:
        """Place an event on the queue."""
        self._queue.put_nowait(event)

    def initiate(self, peer_id: str, display_name: str | None = None) -> None:
        """Call a participant.

        The request is validated against the current state before it is
        queued so invalid calls never cause any relay traffic.

        Args:
            peer_id: Identifier of the participant to call.
            display_name: Name sent with the offer. Defaults to
                `config.display_name`.

        Raises:
            ValueError: If `peer_id` is empty.
            SelfCallError: If `peer_id` is the identifier of this participant.
            CallInProgressError: If this participant is already in a call.
        """
        if not peer_id or not peer_id.strip():
            raise ValueError('Cannot call an empty participant identifier.')
        if peer_id == self._participant_id:
            raise SelfCallError('Participants cannot call themselves.')
        if self._session is not None:
            raise CallInProgressError(
                f'Already in a call with {self._session.peer_id}.',
            )
        name = (
            self._config.display_name
            if display_name is None
            else display_name
        )
        self.submit(InitiateCall(peer_id, name))

    def accept(self) -> None:
        """Accept the incoming call."""
        self.submit(AcceptCall())

    def decline(self) -> None:
        """Decline the incoming call."""
        self.submit(DeclineCall())

    def hangup(self) -> None:
        """End the current call."""
        self.submit(Hangup())

    async def run(self) -> None:
        """Handle queued events until cancelled.

        An exception raised while handling an event (e.g., by a
        collaborator or the observer) is logged and ends the current call
        with [`EndReason.ERROR`][peercall.call.session.EndReason]. The loop
        keeps running.
        """
        while True:
            event = await self._queue.get()
            try:
                await self.handle(event)
            except Exception as e:
                logger.exception(
                    f'{self._log_prefix}: unexpected error handling '
                    f'{type(event).__name__}: {e!r}',
                )
                await self._abort_current_call()
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    async def handle(self, event: CallEvent) -> None:
        """Handle a single event.

        Note:
            [`run()`][peercall.call.machine.CallStateMachine.run] calls this
            for every queued event. Only call this directly when nothing is
            running the queue.
        """
        handler = self._handlers[type(event)]
        await handler(event)

    def _stale(self, event: CallEvent, why: str) -> None:
        self._stale_events += 1
        logger.debug(f'{self._log_prefix}: dropping stale {event}: {why}')

    def _current(self, event: CallEvent, call_id: int) -> CallSession | None:
        session = self._session
        if session is None or session.call_id != call_id:
            self._stale(event, f'call {call_id} is not the current call')
            return None
        return session

    def _transition(self, session: CallSession, phase: CallPhase) -> None:
        previous = session.transition(phase)
        self._observer.on_phase_change(session, previous)

    def _new_session(
        self,
        role: CallRole,
        peer_id: str,
        display_name: str | None,
    ) -> CallSession:
        session = CallSession(
            next(self._call_ids),
            role,
            peer_id,
            display_name=display_name,
        )
        self._session = session
        logger.info(
            f'{self._log_prefix}: starting call {session.call_id} as '
            f'{role.value} with {peer_id}',
        )
        return session

    async def _send(self, message: RelayMessage) -> bool:
        try:
            await self._transport.send(message)
        except RelayMessageError as e:
            logger.error(
                f'{self._log_prefix}: failed to encode {message.event} for '
                f'relay server: {e}',
            )
            return False
        except RelayClientError as e:
            logger.warning(
                f'{self._log_prefix}: failed to send {message.event} to '
                f'relay server: {e}',
            )
            return False
        return True

    def _acquire_local_media(self, session: CallSession) -> None:
        self._transition(session, CallPhase.AWAITING_LOCAL_MEDIA)
        session.media_task = asyncio.create_task(
            self._request_local_media(session.call_id),
            name=f'call-{session.call_id}-local-media',
        )

    async def _request_local_media(self, call_id: int) -> None:
        try:
            media = await self._media.acquire_local_media()
        except LocalMediaUnavailableError as e:
            self.submit(LocalMediaFailed(call_id, str(e)))
            return
        if media is None:
            self.submit(LocalMediaFailed(call_id, 'No local media available.'))
        else:
            self.submit(LocalMediaReady(call_id, media))

    def _start_negotiation(self, session: CallSession) -> bool:
        """Create the negotiation of the session.

        Returns:
            If the negotiation was created (and, as answerer, fed the
            offer) without the collaborator raising.
        """
        try:
            negotiation = self._negotiation_factory(
                session.role,
                session.local_media,
            )
            session.negotiation = NegotiationHandle(
                negotiation,
                session.call_id,
                self.submit,
            )
            if session.role is CallRole.ANSWERER:
                session.negotiation.feed(session.remote_signal)
        except Exception as e:
            logger.error(
                f'{self._log_prefix}: failed to start negotiation of call '
                f'{session.call_id}: {e!r}',
            )
            return False
        return True

    def _activate_if_ready(self, session: CallSession) -> None:
        if session.remote_media is not None and session.phase in (
            CallPhase.ANSWER_SENT,
            CallPhase.NEGOTIATING,
        ):
            self._transition(session, CallPhase.ACTIVE)
            logger.info(
                f'{self._log_prefix}: call {session.call_id} with '
                f'{session.peer_id} is active',
            )

    async def _end(
        self,
        session: CallSession,
        reason: EndReason,
        *,
        notify_peer: bool,
    ) -> None:
        """Tear down a session and return to idle.

        Args:
            session: Session to end.
            reason: Why the session ends.
            notify_peer: Send a courtesy teardown notice to the peer.
        """
        if session.phase in (CallPhase.ENDING, CallPhase.ENDED):
            return

        self._transition(session, CallPhase.ENDING)
        session.end_reason = reason

        if session.media_task is not None:
            session.media_task.cancel()
            session.media_task = None
        session.destroy_negotiation()
        session.release_media(self._media.release_media)

        if notify_peer:
            hangup_reason = _HANGUP_REASONS.get(reason, HangupReason.HANGUP)
            await self._send(
                CallHangup(to=session.peer_id, reason=hangup_reason.value),
            )

        self._transition(session, CallPhase.ENDED)
        if self._session is session:
            self._session = None
        logger.info(
            f'{self._log_prefix}: call {session.call_id} with '
            f'{session.peer_id} ended ({reason.value})',
        )
        self._observer.on_call_ended(session, reason)

    async def _abort_current_call(self) -> None:
        """End the current call after a handler raised.

        The session is always released and cleared, even if ending it
        cleanly raises again (e.g., the observer fails on every callback).
        """
        session = self._session
        if session is None:
            return
        try:
            await self._end(
                session,
                EndReason.ERROR,
                notify_peer=session.live,
            )
        except Exception as e:
            logger.error(
                f'{self._log_prefix}: failed to end call {session.call_id} '
                f'cleanly: {e!r}',
            )
        if self._session is session:
            if session.media_task is not None:
                session.media_task.cancel()
                session.media_task = None
            session.destroy_negotiation()
            session.release_media(self._media.release_media)
            self._session = None
            logger.info(
                f'{self._log_prefix}: discarded call {session.call_id} with '
                f'{session.peer_id}',
            )

    async def _on_initiate(self, event: InitiateCall) -> None:
        if self._session is not None:
            logger.warning(
                f'{self._log_prefix}: cannot call {event.peer_id} while in a '
                f'call with {self._session.peer_id}',
            )
            self._observer.on_call_error(
                'CallInProgress',
                f'Already in a call with {self._session.peer_id}.',
            )
            return
        if event.peer_id == self._participant_id:
            logger.warning(f'{self._log_prefix}: refusing to call self')
            self._observer.on_call_error(
                'SelfCall',
                'Participants cannot call themselves.',
            )
            return

        session = self._new_session(
            CallRole.INITIATOR,
            event.peer_id,
            event.display_name,
        )
        self._acquire_local_media(session)

    async def _on_accept(self, event: AcceptCall) -> None:
        session = self._session
        incoming = CallPhase.INCOMING_OFFER_RECEIVED
        if session is None or session.phase is not incoming:
            self._stale(event, 'no incoming call to accept')
            return
        logger.info(
            f'{self._log_prefix}: accepted call {session.call_id} from '
            f'{session.peer_id}',
        )
        self._acquire_local_media(session)

    async def _on_decline(self, event: DeclineCall) -> None:
        session = self._session
        incoming = CallPhase.INCOMING_OFFER_RECEIVED
        if session is None or session.phase is not incoming:
            self._stale(event, 'no incoming call to decline')
            return
        await self._end(
            session,
            EndReason.DECLINED,
            notify_peer=self._config.notify_on_decline,
        )

    async def _on_hangup(self, event: Hangup) -> None:
        session = self._session
        if session is None:
            logger.debug(f'{self._log_prefix}: hangup while idle is a no-op')
            return
        await self._end(session, EndReason.HANGUP, notify_peer=True)

    async def _on_offer(self, event: OfferReceived) -> None:
        if event.sender == self._participant_id:
            self._stale(event, 'offer from self')
            return

        session = self._session
        if session is not None:
            if session.peer_id == event.sender:
                if session.role is CallRole.ANSWERER:
                    self._stale(event, 'repeated offer from current peer')
                    return
                # Both sides called each other so the busy policy applies
                logger.info(
                    f'{self._log_prefix}: {event.sender} called while our '
                    f'offer to them is pending',
                )
            if self._config.busy_policy is BusyPolicy.REJECT:
                logger.info(
                    f'{self._log_prefix}: rejecting call from '
                    f'{event.sender} while in a call with {session.peer_id}',
                )
                await self._send(
                    CallHangup(
                        to=event.sender,
                        reason=HangupReason.BUSY.value,
                    ),
                )
                return
            await self._end(session, EndReason.REPLACED, notify_peer=True)

        session = self._new_session(
            CallRole.ANSWERER,
            event.sender,
            event.display_name,
        )
        session.remote_signal = event.signal
        self._transition(session, CallPhase.INCOMING_OFFER_RECEIVED)
        self._observer.on_incoming_call(event.sender, event.display_name)

    async def _on_answer(self, event: AnswerReceived) -> None:
        session = self._session
        if session is None or session.phase is not CallPhase.OFFER_SENT:
            self._stale(event, 'no offer awaiting an answer')
            return
        if event.sender is not None and event.sender != session.peer_id:
            self._stale(event, f'answer from {event.sender} is not our peer')
            return
        assert session.negotiation is not None

        try:
            session.negotiation.feed(event.signal)
        except Exception as e:
            logger.error(
                f'{self._log_prefix}: negotiation of call {session.call_id} '
                f'rejected the answer: {e!r}',
            )
            self._observer.on_call_error('NegotiationError', str(e))
            await self._end(
                session,
                EndReason.NEGOTIATION_ERROR,
                notify_peer=True,
            )
            return
        self._transition(session, CallPhase.NEGOTIATING)
        self._activate_if_ready(session)

    async def _on_peer_gone(self, event: PeerGone) -> None:
        session = self._session
        if session is None or not session.live:
            self._stale(event, 'not in a call')
            return
        if session.peer_id != event.disconnected_id:
            self._stale(event, f'{event.disconnected_id} is not our peer')
            return
        logger.info(
            f'{self._log_prefix}: peer {event.disconnected_id} left call '
            f'{session.call_id} ({event.reason or "disconnected"})',
        )
        await self._end(session, EndReason.PEER_GONE, notify_peer=False)

    async def _on_relay_error(self, event: RelayError) -> None:
        session = self._session
        if session is None or not session.live:
            logger.warning(
                f'{self._log_prefix}: relay server error while idle: '
                f'{event.reason} ({event.message})',
            )
            self._stale(event, 'not in a call')
            return
        if event.peer is not None and event.peer != session.peer_id:
            self._stale(event, f'error concerns {event.peer}, not our peer')
            return

        logger.warning(
            f'{self._log_prefix}: relay server error for call '
            f'{session.call_id}: {event.reason} ({event.message})',
        )
        self._observer.on_call_error(event.reason, event.message)
        reason = (
            EndReason.PEER_UNAVAILABLE
            if event.reason == CallErrorReason.PEER_UNAVAILABLE
            else EndReason.BAD_REQUEST
        )
        await self._end(session, reason, notify_peer=False)

    async def _on_transport_lost(self, event: TransportLost) -> None:
        session = self._session
        if session is None:
            logger.info(
                f'{self._log_prefix}: relay connection lost while idle',
            )
            return
        await self._end(session, EndReason.TRANSPORT_LOST, notify_peer=False)

    async def _on_transport_reconnected(
        self,
        event: TransportReconnected,
    ) -> None:
        previous = self._participant_id
        self._participant_id = event.participant_id
        logger.info(
            f'{self._log_prefix}: reconnected to relay server '
            f'(previous id {previous})',
        )
        session = self._session
        if session is not None:
            await self._end(
                session,
                EndReason.TRANSPORT_LOST,
                notify_peer=False,
            )

    async def _on_local_media_ready(self, event: LocalMediaReady) -> None:
        session = self._current(event, event.call_id)
        if session is None:
            self._media.release_media(event.media)
            return
        if session.phase is not CallPhase.AWAITING_LOCAL_MEDIA:
            self._stale(event, f'call is {session.phase.value}')
            self._media.release_media(event.media)
            return

        session.media_task = None
        session.local_media = event.media
        if not self._start_negotiation(session):
            self._observer.on_call_error(
                'NegotiationError',
                'Failed to start the negotiation.',
            )
            await self._end(
                session,
                EndReason.NEGOTIATION_ERROR,
                notify_peer=session.role is CallRole.ANSWERER,
            )

    async def _on_local_media_failed(self, event: LocalMediaFailed) -> None:
        session = self._current(event, event.call_id)
        if session is None:
            return
        if session.phase is not CallPhase.AWAITING_LOCAL_MEDIA:
            self._stale(event, f'call is {session.phase.value}')
            return

        logger.warning(
            f'{self._log_prefix}: local media unavailable for call '
            f'{session.call_id}: {event.message}',
        )
        session.media_task = None
        self._observer.on_call_error('LocalMediaUnavailable', event.message)
        # The caller has not sent anything yet but a callee has an offer
        # pending on the other side.
        await self._end(
            session,
            EndReason.LOCAL_MEDIA_UNAVAILABLE,
            notify_peer=session.role is CallRole.ANSWERER,
        )

    async def _on_signal(self, event: SignalProduced) -> None:
        session = self._current(event, event.call_id)
        if session is None:
            return
        if session.phase is not CallPhase.AWAITING_LOCAL_MEDIA:
            logger.debug(
                f'{self._log_prefix}: ignoring additional signal of call '
                f'{session.call_id} in phase {session.phase.value}',
            )
            return

        message: RelayMessage
        if session.role is CallRole.INITIATOR:
            message = CallOffer(
                to=session.peer_id,
                signal=event.signal,
                from_=self._participant_id,
                display_name=session.display_name,
            )
            next_phase = CallPhase.OFFER_SENT
        else:
            message = CallAnswer(to=session.peer_id, signal=event.signal)
            next_phase = CallPhase.ANSWER_SENT

        if not await self._send(message):
            await self._end(
                session,
                EndReason.TRANSPORT_LOST,
                notify_peer=False,
            )
            return
        self._transition(session, next_phase)
        self._activate_if_ready(session)

    async def _on_media_ready(self, event: MediaReady) -> None:
        session = self._current(event, event.call_id)
        if session is None:
            self._media.release_media(event.media)
            return
        session.remote_media = event.media
        self._observer.on_remote_media(session, event.media)
        self._activate_if_ready(session)

    async def _on_connected(self, event: NegotiationConnected) -> None:
        session = self._current(event, event.call_id)
        if session is None:
            return
        session.connected = True
        logger.info(
            f'{self._log_prefix}: direct connection of call '
            f'{session.call_id} with {session.peer_id} established',
        )

    async def _on_negotiation_failed(self, event: NegotiationFailed) -> None:
        session = self._current(event, event.call_id)
        if session is None:
            return
        logger.error(
            f'{self._log_prefix}: negotiation of call {session.call_id} '
            f'failed: {event.reason}',
        )
        self._observer.on_call_error('NegotiationError', event.reason)
        # Nothing has reached the peer yet if we are still preparing an offer.
        offer_pending = (
            session.role is CallRole.INITIATOR
            and session.phase is CallPhase.AWAITING_LOCAL_MEDIA
        )
        await self._end(
            session,
            EndReason.NEGOTIATION_ERROR,
            notify_peer=not offer_pending,
        )
