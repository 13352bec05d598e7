"""Exception types raised by relay clients and servers."""
from __future__ import annotations


class RelayClientError(Exception):
    """Base exception type for exceptions raised by relay clients."""

    pass


class RelayNotConnectedError(RelayClientError):
    """Exception raised if a client is not connected to a relay server."""

    pass


class RelayRegistrationError(RelayClientError):
    """Relay server did not assign the client an identifier."""

    pass


class RelayConnectionError(RelayClientError):
    """All attempts to (re)connect to the relay server failed."""

    pass


class RelayServerError(Exception):
    """Base exception type for exceptions raised by relay server."""

    pass


class BadRequestError(RelayServerError):
    """A participant sent a message the relay will not forward."""

    pass
