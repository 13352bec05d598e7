"""Participant-side state of a single call."""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any
from typing import Callable
from typing import TYPE_CHECKING

from peercall.call.exceptions import InvalidTransitionError

if TYPE_CHECKING:
    from peercall.call.negotiation import NegotiationHandle

logger = logging.getLogger(__name__)


class CallRole(enum.Enum):
    """Role of the local participant in a call."""

    NONE = 'none'
    INITIATOR = 'initiator'
    ANSWERER = 'answerer'


class CallPhase(enum.Enum):
    """Lifecycle phases of a call session."""

    IDLE = 'idle'
    AWAITING_LOCAL_MEDIA = 'awaiting-local-media'
    OFFER_SENT = 'offer-sent'
    INCOMING_OFFER_RECEIVED = 'incoming-offer-received'
    ANSWER_SENT = 'answer-sent'
    NEGOTIATING = 'negotiating'
    ACTIVE = 'active'
    ENDING = 'ending'
    ENDED = 'ended'


class EndReason(enum.Enum):
    """Why a call session ended."""

    HANGUP = 'hangup'
    """The local participant hung up."""
    DECLINED = 'declined'
    """The local participant declined an incoming call."""
    PEER_GONE = 'peer-gone'
    """The peer disconnected, hung up, declined, or was busy."""
    PEER_UNAVAILABLE = 'peer-unavailable'
    """The relay could not deliver a signal to the peer."""
    LOCAL_MEDIA_UNAVAILABLE = 'local-media-unavailable'
    """No local media handle could be acquired."""
    NEGOTIATION_ERROR = 'negotiation-error'
    """The peer negotiation failed."""
    TRANSPORT_LOST = 'transport-lost'
    """The connection to the relay was lost or replaced."""
    REPLACED = 'replaced'
    """The call was dropped in favour of a new incoming call."""
    BAD_REQUEST = 'bad-request'
    """The relay refused a message of the call."""
    ERROR = 'error'
    """Handling an event of the call raised an unexpected exception."""


_TRANSITIONS: dict[CallPhase, frozenset[CallPhase]] = {
    CallPhase.IDLE: frozenset(
        {CallPhase.AWAITING_LOCAL_MEDIA, CallPhase.INCOMING_OFFER_RECEIVED},
    ),
    CallPhase.AWAITING_LOCAL_MEDIA: frozenset(
        {CallPhase.OFFER_SENT, CallPhase.ANSWER_SENT, CallPhase.ENDING},
    ),
    CallPhase.INCOMING_OFFER_RECEIVED: frozenset(
        {CallPhase.AWAITING_LOCAL_MEDIA, CallPhase.ENDING},
    ),
    CallPhase.OFFER_SENT: frozenset(
        {CallPhase.NEGOTIATING, CallPhase.ENDING},
    ),
    CallPhase.ANSWER_SENT: frozenset({CallPhase.ACTIVE, CallPhase.ENDING}),
    CallPhase.NEGOTIATING: frozenset({CallPhase.ACTIVE, CallPhase.ENDING}),
    CallPhase.ACTIVE: frozenset({CallPhase.ENDING}),
    CallPhase.ENDING: frozenset({CallPhase.ENDED}),
    CallPhase.ENDED: frozenset(),
}

INACTIVE_PHASES = frozenset(
    {CallPhase.IDLE, CallPhase.ENDING, CallPhase.ENDED},
)


class CallSession:
    """State of one call from the perspective of the local participant.

    A session is created for every call and discarded once it reaches
    [`ENDED`][peercall.call.session.CallPhase]; phases are never reused
    across calls. The session exclusively owns the negotiation handle and
    the media handles of the call and releases each of them at most once.

    Args:
        call_id: Identifier of the call, unique within one state machine.
            Events produced by collaborators carry it so events of an old
            call can be told apart from events of the current one.
        role: Role of the local participant.
        peer_id: Identifier of the other participant.
        display_name: Name of the caller shown with the offer.
    """

    def __init__(
        self,
        call_id: int,
        role: CallRole,
        peer_id: str,
        *,
        display_name: str | None = None,
    ) -> None:
        self.call_id = call_id
        self.role = role
        self.peer_id = peer_id
        self.display_name = display_name
        self.phase = CallPhase.IDLE

        self.remote_signal: Any = None
        self.local_media: Any = None
        self.remote_media: Any = None
        self.connected = False
        self.end_reason: EndReason | None = None

        self.negotiation: NegotiationHandle | None = None
        self.media_task: asyncio.Task[None] | None = None
        self.history: list[CallPhase] = [self.phase]

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(call_id={self.call_id}, '
            f'role={self.role.value}, peer_id={self.peer_id}, '
            f'phase={self.phase.value})'
        )

    @property
    def live(self) -> bool:
        """If the call has started and is not being torn down."""
        return self.phase not in INACTIVE_PHASES

    def transition(self, phase: CallPhase) -> CallPhase:
        """Move the session to a new phase.

        Args:
            phase: Phase to move to.

        Returns:
            The previous phase.

        Raises:
            InvalidTransitionError: If `phase` is not reachable from the
                current phase.
        """
        if phase not in _TRANSITIONS[self.phase]:
            raise InvalidTransitionError(
                f'Call {self.call_id} cannot move from {self.phase.value} '
                f'to {phase.value}.',
            )
        previous = self.phase
        self.phase = phase
        self.history.append(phase)
        logger.debug(
            f'Call {self.call_id} with {self.peer_id}: '
            f'{previous.value} -> {phase.value}',
        )
        return previous

    def destroy_negotiation(self) -> bool:
        """Destroy the negotiation of this call if there is one.

        Returns:
            If a negotiation was destroyed by this call.
        """
        negotiation, self.negotiation = self.negotiation, None
        if negotiation is None:
            return False
        return negotiation.destroy()

    def release_media(self, release: Callable[[Any], None]) -> None:
        """Release the local and remote media handles of the call once.

        Args:
            release: Callable that releases a media handle.
        """
        local, self.local_media = self.local_media, None
        remote, self.remote_media = self.remote_media, None
        for media in (local, remote):
            if media is not None:
                release(media)
