"""Participant configuration."""
from __future__ import annotations

import enum
import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from peercall.utils.config import load


class BusyPolicy(enum.Enum):
    """What to do with an offer that arrives during another call."""

    REJECT = 'reject'
    """Keep the current call and tell the new caller we are busy."""
    REPLACE = 'replace'
    """End the current call and take the new one."""


class CallConfig(BaseModel):
    """Call policy of a participant.

    Attributes:
        display_name: Name sent with outgoing offers.
        busy_policy: Handling of offers received during another call.
        notify_on_decline: Send a courtesy notice to the caller when an
            incoming call is declined. Otherwise the caller keeps waiting
            until it hangs up.
    """

    model_config = ConfigDict(extra='forbid')

    display_name: str = 'Anonymous'
    busy_policy: BusyPolicy = BusyPolicy.REJECT
    notify_on_decline: bool = True


class ParticipantConfig(BaseModel):
    """Participant configuration.

    Attributes:
        relay_address: Address of the relay server (`ws://` or `wss://`).
        reconnect_delay: Seconds before the first reconnection attempt.
        max_reconnect_attempts: Reconnection attempts before giving up.
            `None` retries forever.
        timeout: Seconds to wait on the relay server when connecting.
        verify_certificate: Verify the relay server's SSL certificate.
        call: Call policy.
    """

    model_config = ConfigDict(extra='forbid')

    relay_address: str = 'ws://localhost:3001'
    reconnect_delay: float = 1.0
    max_reconnect_attempts: int | None = 5
    timeout: float = 10
    verify_certificate: bool = True
    call: CallConfig = Field(default_factory=CallConfig)

    @classmethod
    def from_toml(
        cls,
        filepath: str | pathlib.Path,
        table: str | None = None,
    ) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="participant.toml"
            relay_address = "wss://relay.example.com:3001"
            max_reconnect_attempts = 5

            [call]
            display_name = "Alice"
            busy_policy = "reject"
            notify_on_decline = true
            ```

        Args:
            filepath: Path of the TOML file.
            table: Name of the table holding the participant options when
                they share a file with relay options (e.g.,
                `'participant'`).

        Returns:
            Participant configuration.
        """
        with open(filepath, 'rb') as f:
            return load(cls, f, table=table)
