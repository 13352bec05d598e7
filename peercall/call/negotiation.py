"""Ownership of the peer negotiation of one call."""
from __future__ import annotations

import logging
from typing import Any
from typing import Callable

from peercall.call.events import CallEvent
from peercall.call.events import MediaReady
from peercall.call.events import NegotiationConnected
from peercall.call.events import NegotiationFailed
from peercall.call.events import SignalProduced
from peercall.call.protocols import PeerNegotiation

logger = logging.getLogger(__name__)


class NegotiationHandle:
    """Handle owning the live peer negotiation of a call.

    The handle registers callbacks on the negotiation which turn its
    `signal`, `media`, `connect`, and `error` events into call events tagged
    with `call_id` and passes them to `submit`. Nothing is submitted once the
    handle is destroyed, and events of a destroyed negotiation that are
    already queued are recognised as stale by their `call_id`.

    Args:
        negotiation: Negotiation created for the call.
        call_id: Identifier of the call owning the negotiation.
        submit: Callable placing an event on the state machine queue.
    """

    def __init__(
        self,
        negotiation: PeerNegotiation,
        call_id: int,
        submit: Callable[[CallEvent], None],
    ) -> None:
        self._negotiation = negotiation
        self._call_id = call_id
        self._submit = submit
        self._destroyed = False

        negotiation.on('signal', self._on_signal)
        negotiation.on('media', self._on_media)
        negotiation.on('connect', self._on_connect)
        negotiation.on('error', self._on_error)

    @property
    def call_id(self) -> int:
        """Identifier of the call owning the negotiation."""
        return self._call_id

    @property
    def destroyed(self) -> bool:
        """If the negotiation has been destroyed."""
        return self._destroyed

    def _emit(self, event: CallEvent) -> None:
        if self._destroyed:
            logger.debug(
                f'Ignoring {type(event).__name__} from destroyed negotiation '
                f'of call {self._call_id}',
            )
            return
        self._submit(event)

    def _on_signal(self, signal: Any) -> None:
        self._emit(SignalProduced(self._call_id, signal))

    def _on_media(self, media: Any) -> None:
        self._emit(MediaReady(self._call_id, media))

    def _on_connect(self, *args: Any) -> None:
        self._emit(NegotiationConnected(self._call_id))

    def _on_error(self, reason: Any = None) -> None:
        self._emit(NegotiationFailed(self._call_id, str(reason)))

    def feed(self, signal: Any) -> None:
        """Provide a signal received from the peer to the negotiation."""
        if self._destroyed:
            logger.debug(
                f'Not feeding signal to destroyed negotiation of call '
                f'{self._call_id}',
            )
            return
        self._negotiation.feed_remote_signal(signal)

    def destroy(self) -> bool:
        """Destroy the negotiation.

        Calling this more than once is a no-op. Exceptions raised by the
        negotiation while being destroyed are logged, not propagated, so
        teardown always completes.

        Returns:
            `True` if this call destroyed the negotiation.
        """
        if self._destroyed:
            return False
        self._destroyed = True
        try:
            self._negotiation.destroy()
        except Exception as e:
            logger.warning(
                f'Error destroying negotiation of call {self._call_id}: '
                f'{e!r}',
            )
        return True
