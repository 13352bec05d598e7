"""Interfaces of the collaborators used by the call state machine.

The call core never captures or renders media and never touches the media
transport. It consumes three capabilities of the participant process:

* a [`MediaProvider`][peercall.call.protocols.MediaProvider] which
  produces and releases local media handles,
* a [`NegotiationFactory`][peercall.call.protocols.NegotiationFactory]
  which creates a [`PeerNegotiation`][peercall.call.protocols.PeerNegotiation]
  for each call, and
* a [`SignalTransport`][peercall.call.protocols.SignalTransport] which
  delivers messages to the relay (e.g., a
  [`RelayClient`][peercall.relay.client.RelayClient]).

State changes are reported to a
[`CallObserver`][peercall.call.protocols.CallObserver].
"""
from __future__ import annotations

from typing import Any
from typing import Callable
from typing import Protocol
from typing import runtime_checkable
from typing import TYPE_CHECKING

from peercall.relay.messages import RelayMessage

if TYPE_CHECKING:
    from peercall.call.session import CallPhase
    from peercall.call.session import CallRole
    from peercall.call.session import CallSession
    from peercall.call.session import EndReason


@runtime_checkable
class MediaProvider(Protocol):
    """Produces and releases media handles."""

    async def acquire_local_media(self) -> Any:
        """Acquire a local media handle.

        Returns:
            The media handle or `None` if no local media is available.

        Raises:
            LocalMediaUnavailableError: If no local media is available.
        """
        ...

    def release_media(self, media: Any) -> None:
        """Stop a local or remote media handle."""
        ...


@runtime_checkable
class PeerNegotiation(Protocol):
    """One peer negotiation producing and consuming opaque signals.

    A negotiation emits the following events to callbacks registered with
    `on()`:

    * `signal`: a signal (offer or answer) to relay to the peer.
    * `media`: the remote media handle.
    * `connect`: the direct connection is established.
    * `error`: the negotiation failed; the callback receives a reason.
    """

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """Register a callback for a negotiation event."""
        ...

    def feed_remote_signal(self, signal: Any) -> None:
        """Provide a signal received from the peer."""
        ...

    def destroy(self) -> None:
        """Tear the negotiation down."""
        ...


@runtime_checkable
class NegotiationFactory(Protocol):
    """Creates the negotiation of one call."""

    def __call__(self, role: CallRole, local_media: Any) -> PeerNegotiation:
        """Create a negotiation for `role` sending `local_media`."""
        ...


@runtime_checkable
class SignalTransport(Protocol):
    """Sends messages to the relay server."""

    async def send(self, message: RelayMessage) -> None:
        """Send a message to the relay server.

        Raises:
            RelayClientError: If the message cannot be sent.
        """
        ...


class CallObserver:
    """Receives notifications about calls.

    The default implementation ignores every notification. Subclasses
    override the methods they are interested in, e.g., to show an incoming
    call or to render remote media.
    """

    def on_phase_change(
        self,
        session: CallSession,
        previous: CallPhase,
    ) -> None:
        """The phase of `session` changed from `previous`."""
        pass

    def on_incoming_call(self, peer_id: str, display_name: str | None) -> None:
        """An incoming call from `peer_id` awaits accept or decline."""
        pass

    def on_remote_media(self, session: CallSession, media: Any) -> None:
        """The remote media of `session` is ready to be rendered."""
        pass

    def on_call_error(self, reason: str, message: str | None) -> None:
        """A call could not be set up or failed."""
        pass

    def on_call_ended(self, session: CallSession, reason: EndReason) -> None:
        """`session` ended and the participant is idle again."""
        pass
