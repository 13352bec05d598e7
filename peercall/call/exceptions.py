"""Exception types for participant call errors."""
from __future__ import annotations


class CallSetupError(Exception):
    """Base exception type for calls that cannot be started."""

    pass


class SelfCallError(CallSetupError):
    """A participant attempted to call its own identifier."""

    pass


class CallInProgressError(CallSetupError):
    """A participant attempted to start a call while in another one."""

    pass


class LocalMediaUnavailableError(CallSetupError):
    """The media provider could not produce a local media handle."""

    pass


class NegotiationError(Exception):
    """The peer negotiation failed."""

    pass


class InvalidTransitionError(Exception):
    """A call session was moved to a phase it cannot reach."""

    pass
