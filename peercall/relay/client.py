"""Client interface to a relay server used by participants."""
from __future__ import annotations

import asyncio
import logging
import ssl
import sys
from types import TracebackType

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as websockets_connect
from websockets.protocol import State

from peercall.relay.exceptions import RelayConnectionError
from peercall.relay.exceptions import RelayNotConnectedError
from peercall.relay.exceptions import RelayRegistrationError
from peercall.relay.messages import AssignedId
from peercall.relay.messages import decode_relay_message
from peercall.relay.messages import encode_relay_message
from peercall.relay.messages import RelayMessage
from peercall.relay.messages import RelayMessageDecodeError

logger = logging.getLogger(__name__)


class RelayClient:
    """Client interface to a relay server.

    This interface abstracts the low-level WebSocket connection to a
    relay server. On connect, the relay assigns the client an identifier
    which other participants use to call it. The identifier is only valid
    for the lifetime of one connection so reconnecting yields a new one.

    Reconnection is never implicit: [`send()`][peercall.relay.client.RelayClient.send]
    and [`recv()`][peercall.relay.client.RelayClient.recv] raise
    [`RelayNotConnectedError`][peercall.relay.exceptions.RelayNotConnectedError]
    when the connection is down and the owner calls
    [`connect()`][peercall.relay.client.RelayClient.connect] so that it can
    react to the loss of any in-flight call.

    Tip:
        This class can be used as an async context manager!
        ```python
        from peercall.relay.client import RelayClient

        async with RelayClient('ws://localhost:3001') as client:
            print(client.participant_id)
            message = await client.recv()
        ```

    Args:
        address: Address of the relay server. Should start with `ws://` or
            `wss://`.
        reconnect_delay: Seconds to wait before the first connection retry.
            The delay doubles after each failed attempt up to one minute.
        max_reconnect_attempts: Number of retries after a failed connection
            attempt before giving up. `None` retries forever.
        ssl_context: Custom SSL context to pass to
            [`websockets.asyncio.client.connect()`][websockets.asyncio.client.connect].
            A TLS context is created with
            [`ssl.create_default_context()`][ssl.create_default_context]
            when connecting to a `wss://` URI and `ssl_context` is not
            provided.
        timeout: Time to wait in seconds on relay server connection.
        verify_certificate: Verify the relay server's SSL certificate. Only
            used if `ssl_context` is `None` and connecting to a `wss://` URI.

    Raises:
        ValueError: If address does not start with `ws://` or `wss://`.
    """

    def __init__(
        self,
        address: str,
        *,
        reconnect_delay: float = 1.0,
        max_reconnect_attempts: int | None = 5,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not (address.startswith('ws://') or address.startswith('wss://')):
            raise ValueError(
                'Relay server address must start with ws:// or wss://. '
                f'Got {address}.',
            )

        self._address = address
        self._timeout = timeout
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_attempts = max_reconnect_attempts

        if self._address.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE
        self._ssl_context = ssl_context

        self._connect_lock = asyncio.Lock()
        self._websocket: ClientConnection | None = None
        self._participant_id: str | None = None
        self._connections = 0

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    async def _register(self, timeout: float) -> tuple[ClientConnection, str]:
        """Open a websocket connection and wait for the assigned identifier.

        Args:
            timeout: Timeout to wait on opening the initial connection and
                waiting for a server response.

        Returns:
            Open websocket connection with the relay server and the assigned
            identifier.

        Raises:
            OSError: If the server could not be connected to.
            asyncio.TimeoutError: If the server did not reply within the
                timeout.
            websockets.exceptions.ConnectionClosed: If the websocket connection
                was closed while registering.
            RelayRegistrationError: If the server replied with anything but
                an identifier.
        """
        websocket = await websockets_connect(
            self._address,
            open_timeout=timeout,
            ssl=self._ssl_context,
        )

        try:
            message_str = await asyncio.wait_for(websocket.recv(), timeout)
            if not isinstance(message_str, str):
                raise RelayRegistrationError(
                    'Received non-string type on websocket.',
                )
            message = decode_relay_message(message_str)
        except RelayMessageDecodeError as e:
            await websocket.close()
            raise RelayRegistrationError(
                'Unable to decode response message from relay server.',
            ) from e
        except BaseException:
            await websocket.close()
            raise

        if not isinstance(message, AssignedId):
            await websocket.close()
            raise RelayRegistrationError(
                'Relay server replied with unexpected message type: '
                f'{type(message).__name__}.',
            )

        logger.info(
            'Established client connection to relay server at '
            f'{self._address} with participant id {message.id}',
        )
        return websocket, message.id

    @property
    def address(self) -> str:
        """Address of the relay server."""
        return self._address

    @property
    def connected(self) -> bool:
        """If the connection to the relay server is open."""
        return (
            self._websocket is not None
            and self._websocket.state is State.OPEN
        )

    @property
    def participant_id(self) -> str:
        """Identifier assigned by the relay server to the current connection.

        Raises:
            RelayNotConnectedError: if the client has never connected.
        """
        if self._participant_id is None:
            raise RelayNotConnectedError(
                'The relay server has not assigned an identifier yet. '
                'Try calling connect() first.',
            )
        return self._participant_id

    @property
    def reconnects(self) -> int:
        """Number of connections established after the first one."""
        return max(self._connections - 1, 0)

    @property
    def websocket(self) -> ClientConnection:
        """Websocket connection to the relay server.

        Raises:
            RelayNotConnectedError: if the websocket connection to the relay
                server is not open. This usually indicates that
                [`connect()`][peercall.relay.client.RelayClient.connect]
                needs to be called.
        """
        if self._websocket is not None and self.connected:
            return self._websocket
        raise RelayNotConnectedError(
            'Websocket connection to the relay server is not open. '
            'Try calling connect() first.',
        )

    async def connect(self, retry: bool = True) -> None:
        """Connect to the relay server.

        Note:
            This method is a no-op if a connection is already established.
            Otherwise, a new connection will be attempted with
            exponential backoff when `retry` is True for connection failures.

        Args:
            retry: Retry the connection with exponential backoff starting at
                `reconnect_delay` seconds and increasing to a max of 60
                seconds.

        Raises:
            RelayConnectionError: If every allowed attempt failed.
            RelayRegistrationError: If the relay server did not assign an
                identifier.
        """
        async with self._connect_lock:
            if self.connected:
                return

            backoff_seconds = self._reconnect_delay
            attempts = 0
            while True:
                try:
                    websocket, participant_id = await self._register(
                        timeout=self._timeout,
                    )
                except (
                    # Exceptions that we should wait and retry again for
                    OSError,
                    asyncio.TimeoutError,
                    websockets.exceptions.ConnectionClosed,
                    websockets.exceptions.InvalidHandshake,
                ) as e:
                    if not retry:
                        raise RelayConnectionError(
                            f'Failed to connect to relay server at '
                            f'{self._address}: {e}',
                        ) from e
                    if (
                        self._max_reconnect_attempts is not None
                        and attempts >= self._max_reconnect_attempts
                    ):
                        raise RelayConnectionError(
                            f'Failed to connect to relay server at '
                            f'{self._address} after {attempts + 1} '
                            f'attempts: {e}',
                        ) from e

                    attempts += 1
                    logger.warning(
                        f'Connection to relay server at {self._address} '
                        f'failed because of {e}. Retrying connection in '
                        f'{backoff_seconds} seconds',
                    )
                    await asyncio.sleep(backoff_seconds)
                    backoff_seconds = min(backoff_seconds * 2, 60)
                else:
                    self._websocket = websocket
                    self._participant_id = participant_id
                    self._connections += 1
                    return

    async def close(self) -> None:
        """Close the connection to the relay server."""
        if self._websocket is not None:
            await self._websocket.close()

    async def recv(self) -> RelayMessage:
        """Receive the next message.

        Returns:
            The message received from the relay server.

        Raises:
            RelayNotConnectedError: If the connection is not open.
            RelayMessageDecodeError: If the message received cannot
                be decoded into the appropriate message type.
            websockets.exceptions.ConnectionClosed: If the connection closes
                while waiting for a message.
        """
        message_str = await self.websocket.recv()
        if not isinstance(message_str, str):
            raise RelayMessageDecodeError(
                'Received non-string from websocket.',
            )
        return decode_relay_message(message_str)

    async def send(self, message: RelayMessage) -> None:
        """Send a message.

        Args:
            message: The message to send to the relay server.

        Raises:
            RelayNotConnectedError: If the connection is not open or closes
                while sending.
        """
        message_str = encode_relay_message(message)
        try:
            await self.websocket.send(message_str)
        except websockets.exceptions.ConnectionClosed as e:
            raise RelayNotConnectedError(
                f'Connection to the relay server closed while sending: {e}',
            ) from e
