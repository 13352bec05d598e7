"""WebRTC media and negotiation backed by aiortc.

Warning:
    This module requires the `rtc` extras
    (`#!bash pip install peercall[rtc]`).
"""
from __future__ import annotations

import asyncio
import logging
import warnings
from typing import Any
from typing import Coroutine

try:
    from aiortc import MediaStreamTrack
    from aiortc import RTCConfiguration
    from aiortc import RTCPeerConnection
    from aiortc import RTCSessionDescription
    from aiortc.contrib.media import MediaPlayer
    from pyee.asyncio import AsyncIOEventEmitter
except ImportError as e:  # pragma: no cover
    warnings.warn(
        f'{e}. To enable WebRTC calls, install peercall with '
        '"pip install peercall[rtc]".',
        stacklevel=2,
    )

from peercall.call.exceptions import LocalMediaUnavailableError
from peercall.call.exceptions import NegotiationError
from peercall.call.session import CallRole

logger = logging.getLogger(__name__)


def description_to_signal(
    description: RTCSessionDescription,
) -> dict[str, str]:
    """Convert a session description into a JSON-compatible signal."""
    return {'type': description.type, 'sdp': description.sdp}


def signal_to_description(signal: Any) -> RTCSessionDescription:
    """Convert a signal received from the peer into a session description.

    Raises:
        NegotiationError: If the signal is not an offer or answer.
    """
    if (
        not isinstance(signal, dict)
        or signal.get('type') not in ('offer', 'answer')
        or not isinstance(signal.get('sdp'), str)
    ):
        raise NegotiationError(
            f'Signal is not a session description: {signal!r}.',
        )
    return RTCSessionDescription(sdp=signal['sdp'], type=signal['type'])


class PlayerMediaProvider:
    """Local media read from a file or capture device.

    Each acquisition opens a new
    [`MediaPlayer`](https://aiortc.readthedocs.io/en/latest/helpers.html){target=_blank}
    and returns its audio and video tracks. Stopping every track of a player
    stops the player.

    Example:
        ```python
        # Webcam and microphone on Linux
        media = PlayerMediaProvider('/dev/video0', format='v4l2')
        ```

    Args:
        file: Path, URL, or device passed to the player.
        format: Container or device format.
        options: Extra options passed to FFmpeg.
    """

    def __init__(
        self,
        file: str,
        *,
        format: str | None = None,  # noqa: A002
        options: dict[str, str] | None = None,
    ) -> None:
        self.file = file
        self.format = format
        self.options = options

    async def acquire_local_media(self) -> list[MediaStreamTrack]:
        """Open the player and return its tracks.

        Raises:
            LocalMediaUnavailableError: If the player cannot be opened or has
                no audio or video.
        """
        try:
            player = MediaPlayer(
                self.file,
                format=self.format,
                options=self.options,
            )
        except Exception as e:
            raise LocalMediaUnavailableError(
                f'Failed to open local media from {self.file}: {e}',
            ) from e

        tracks = [t for t in (player.audio, player.video) if t is not None]
        if len(tracks) == 0:
            raise LocalMediaUnavailableError(
                f'Local media from {self.file} has no audio or video.',
            )
        logger.debug(
            f'Acquired {len(tracks)} local track(s) from {self.file}',
        )
        return tracks

    def release_media(self, media: list[MediaStreamTrack]) -> None:
        """Stop every track of a local or remote media handle."""
        for track in media:
            track.stop()


class AiortcNegotiation(AsyncIOEventEmitter):
    """Peer negotiation over an aiortc `RTCPeerConnection`.

    Signals are complete session descriptions (`{'type', 'sdp'}`) which
    aiortc only produces once ICE gathering finished, so each side emits
    exactly one `signal` event: the initiator its offer right away and the
    answerer its answer once the offer was fed.

    Once the connection is established the negotiation emits `media` with
    the list of remote tracks followed by `connect`. Any failure emits
    `error` with a reason. Nothing is emitted after
    [`destroy()`][peercall.call.rtc.AiortcNegotiation.destroy].

    The class itself is a
    [`NegotiationFactory`][peercall.call.protocols.NegotiationFactory].

    Args:
        role: Role of the local participant.
        local_media: Local tracks to send or `None`.
        configuration: Configuration of the peer connection (e.g., STUN and
            TURN servers).
    """

    def __init__(
        self,
        role: CallRole,
        local_media: list[MediaStreamTrack] | None,
        *,
        configuration: RTCConfiguration | None = None,
    ) -> None:
        super().__init__()
        self._role = role
        self._pc = RTCPeerConnection(configuration)
        self._remote_tracks: list[MediaStreamTrack] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._close_task: asyncio.Task[None] | None = None
        self._destroyed = False

        for track in local_media or []:
            self._pc.addTrack(track)
        self._pc.on('track', self._on_track)
        self._pc.on('connectionstatechange', self._on_connection_state_change)

        if role is CallRole.INITIATOR:
            # A data channel keeps the offer valid when there are no tracks.
            self._pc.createDataChannel('peercall', ordered=True)
            self._spawn(self._send_offer())

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self._role.value}]'

    @property
    def state(self) -> str:
        """Get the current connection state.

        Returns:
            One of 'connected', 'connecting', 'closed', 'failed', or 'new'.
        """
        return self._pc.connectionState

    @property
    def destroyed(self) -> bool:
        """If the negotiation has been destroyed."""
        return self._destroyed

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(self._report_errors(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _report_errors(self, coro: Coroutine[Any, Any, None]) -> None:
        try:
            await coro
        except Exception as e:
            logger.error(f'{self._log_prefix}: negotiation failed: {e!r}')
            self._emit_unless_destroyed('error', str(e))

    def _emit_unless_destroyed(self, event: str, *args: Any) -> None:
        if not self._destroyed:
            self.emit(event, *args)

    def _on_track(self, track: MediaStreamTrack) -> None:
        logger.info(f'{self._log_prefix}: received remote {track.kind} track')
        self._remote_tracks.append(track)

    async def _on_connection_state_change(self) -> None:
        state = self._pc.connectionState
        logger.debug(f'{self._log_prefix}: connection state is {state}')
        if state == 'connected':
            self._emit_unless_destroyed('media', list(self._remote_tracks))
            self._emit_unless_destroyed('connect')
        elif state == 'failed':
            self._emit_unless_destroyed('error', 'Peer connection failed.')

    async def _send_offer(self) -> None:
        await self._pc.setLocalDescription(await self._pc.createOffer())
        logger.info(f'{self._log_prefix}: created offer')
        self._emit_unless_destroyed(
            'signal',
            description_to_signal(self._pc.localDescription),
        )

    async def _apply_remote(self, description: RTCSessionDescription) -> None:
        await self._pc.setRemoteDescription(description)
        logger.info(f'{self._log_prefix}: applied remote {description.type}')
        if description.type == 'offer':
            await self._pc.setLocalDescription(await self._pc.createAnswer())
            logger.info(f'{self._log_prefix}: created answer')
            self._emit_unless_destroyed(
                'signal',
                description_to_signal(self._pc.localDescription),
            )

    def feed_remote_signal(self, signal: Any) -> None:
        """Apply a signal received from the peer.

        Raises:
            NegotiationError: If the signal is not a session description.
        """
        if self._destroyed:
            return
        self._spawn(self._apply_remote(signal_to_description(signal)))

    def destroy(self) -> None:
        """Stop negotiating and close the peer connection.

        Calling this more than once is a no-op.
        """
        if self._destroyed:
            return
        self._destroyed = True
        for task in self._tasks:
            task.cancel()
        self.remove_all_listeners()
        self._close_task = asyncio.create_task(self._pc.close())
        logger.info(f'{self._log_prefix}: closing peer connection')

    async def wait_closed(self) -> None:
        """Wait until the peer connection is closed after destroy."""
        if self._close_task is not None:
            await self._close_task
