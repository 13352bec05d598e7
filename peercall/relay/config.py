"""Relay server configuration file parsing.

A relay is configured from a single TOML file whose top-level keys are the
fields of [`RelayServingConfig`][peercall.relay.config.RelayServingConfig]
and whose optional `[logging]` table holds the fields of
[`RelayLoggingConfig`][peercall.relay.config.RelayLoggingConfig]. Options
given on the `peercall-relay` command line take precedence over the file.
"""

from __future__ import annotations

import logging
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


class RelayLoggingConfig(BaseModel):
    """Relay logging configuration.

    Attributes:
        log_dir: Directory for the weekly rotated `relay.log` file. Logs
            are only written to stdout when unset.
        default_level: Default logging level for the root logger. Signals
            addressed to unknown participants and oversized or rejected
            messages are logged at `WARNING`. Connects, disconnects, and
            forwarded signals are logged at `INFO`.
        websockets_level: Log level for the `websockets` logger. Websockets
            logs every frame and keepalive ping at `DEBUG` so it is
            suggested to set this to `WARNING` or higher.
        current_client_interval: Optional seconds between logging the
            number of connected participants and the `call-gone` fan-out
            of the next disconnect.
        current_client_limit: Max threshold for enumerating the
            identifier and address of each connected participant. If
            `None`, no detailed list will be logged.
    """

    model_config = ConfigDict(extra='forbid')

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    current_client_interval: int | None = 30
    current_client_limit: int | None = 32


class RelayServingConfig(BaseModel):
    """Relay serving configuration.

    Attributes:
        host: Network interface the server binds to.
        port: Network port the server binds to.
        certfile: Certificate file (PEM format) used to enable TLS. Browsers
            and most deployments require `wss://` for signaling.
        keyfile: Private key file. If not specified, the key will be
            taken from the certfile.
        logging: Logging configuration.
        max_message_bytes: Maximum size in bytes of messages received by
            the relay server. Offers and answers carry full session
            descriptions which can reach tens of kilobytes, so a small
            limit will reject calls. Participants sending a larger message
            are disconnected with close code 4003. If `None`, only the
            `websockets` default of 1 MiB applies.
    """

    model_config = ConfigDict(extra='forbid')

    host: str | None = None
    port: int = 3001
    certfile: str | None = None
    keyfile: str | None = None
    logging: RelayLoggingConfig = Field(default_factory=RelayLoggingConfig)
    max_message_bytes: int | None = None

    @classmethod
    def from_toml(
        cls,
        filepath: str | pathlib.Path,
        table: str | None = None,
    ) -> Self:
        """Parse a TOML config file.

        Example:
            A relay serving TLS on all interfaces which logs the number of
            connected participants every minute and only enumerates them
            while fewer than ten are connected.

            ```toml title="relay.toml"
            host = "0.0.0.0"
            port = 3001
            certfile = "/etc/peercall/fullchain.pem"
            keyfile = "/etc/peercall/privkey.pem"
            max_message_bytes = 262144

            [logging]
            log_dir = "/var/log/peercall"
            default_level = "INFO"
            websockets_level = "WARNING"
            current_client_interval = 60
            current_client_limit = 10
            ```

            ```python
            from peercall.relay.config import RelayServingConfig

            config = RelayServingConfig.from_toml('relay.toml')
            assert config.logging.current_client_interval == 60
            ```

        Note:
            Omitted values will be set to their defaults. Unknown keys,
            such as a misspelled option, raise a `ValidationError` rather
            than being ignored.

        Args:
            filepath: Path of the TOML file.
            table: Name of the table holding the relay options when they
                share a file with participant options (e.g., `'relay'`).

        Returns:
            Relay serving configuration.
        """
        with open(filepath, 'rb') as f:
            return load(cls, f, table=table)
