"""CLI and serving functions for running a relay server."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import signal
import ssl
import sys

import click
from websockets.asyncio.server import serve as websockets_serve

from peercall.relay.config import RelayServingConfig
from peercall.relay.server import RelayServer
from peercall.utils.tasks import cancel_and_wait
from peercall.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


def periodic_client_logger(
    server: RelayServer,
    interval: float = 30,
    limit: float | None = 32,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs currently connected participants.

    Each line reports the number of connected participants and the number
    of `call-gone` notices the next disconnect will broadcast. The relay
    does not track which participants are in a call together so every
    disconnect is announced to all remaining participants, and this count
    is the best indicator of relay load.

    Example:
        ```
        Connected participants: 3 (call-gone fan-out per disconnect: 2)
        ConnectionRecord(id=Q2r..., address=('10.0.0.7', 51234), ...)
        ...
        ```

    Args:
        server: Relay server instance to log connected participants of.
        interval: Seconds between logging connected participants.
        limit: Only log detailed participant list if the number of
            participants is less than this number. Useful for debugging or
            avoiding clobbering the logs with thousands of participants.
        level: Logging level.

    Returns:
        Asyncio task.
    """

    async def _log() -> None:
        while True:
            await asyncio.sleep(interval)
            records = sorted(
                server.registry.records(),
                key=lambda record: record.connected_at,
            )
            fan_out = max(len(records) - 1, 0)
            message = (
                f'Connected participants: {len(records)} '
                f'(call-gone fan-out per disconnect: {fan_out})'
            )
            if limit is not None and 0 < len(records) < limit:
                details = '\n'.join(repr(record) for record in records)
                message = f'{message}\n{details}'
            logger.log(level, message)

    return spawn_guarded_background_task(
        _log,
        name='relay-server-client-logger',
    )


async def serve(config: RelayServingConfig) -> None:
    """Run the relay server.

    Initializes a [`RelayServer`][peercall.relay.server.RelayServer]
    and starts a websocket server listening for new connections
    and incoming messages until SIGINT or SIGTERM is received.

    Note:
        This function will not configure any logging. Configuring logging
        according to
        [`RelayServingConfig.logging`][peercall.relay.config.RelayServingConfig]
        is the responsibility of the caller.

    Args:
        config: Serving configuration.
    """
    server = RelayServer(max_message_bytes=config.max_message_bytes)

    # Set the stop condition when receiving SIGINT (ctrl-C) and SIGTERM.
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    ssl_context: ssl.SSLContext | None = None
    if config.certfile is not None:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.certfile, keyfile=config.keyfile)

    client_logger_task: asyncio.Task[None] | None = None
    if config.logging.current_client_interval is not None:  # pragma: no branch
        level = (
            config.logging.default_level
            if isinstance(config.logging.default_level, int)
            else logging.getLevelName(config.logging.default_level)
        )
        client_logger_task = periodic_client_logger(
            server,
            config.logging.current_client_interval,
            config.logging.current_client_limit,
            level=level,
        )

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Relay serving configuration:\n{config_repr}')

    async with websockets_serve(
        server.handler,
        config.host,
        config.port,
        ssl=ssl_context,
    ):
        logger.info(f'Relay server listening on port {config.port}')
        logger.info('Use ctrl-C to stop')
        await stop

    await cancel_and_wait(client_logger_task)

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)

    logger.info('Relay server shutdown')


def configure_logging(config: RelayServingConfig) -> None:
    """Configure the root logger according to the serving configuration.

    Logs are written to stdout and, if `config.logging.log_dir` is set, to
    `relay.log` in that directory which is rotated weekly. The relay logs
    one line per connect, disconnect, and dropped or undeliverable signal
    so a busy relay is expected to produce large files.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.logging.log_dir is not None:
        os.makedirs(config.logging.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.logging.log_dir, 'relay.log'),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=config.logging.default_level,
        handlers=handlers,
    )

    logging.getLogger('websockets').setLevel(config.logging.websockets_level)


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option(
    '--table',
    metavar='NAME',
    help='Table of the configuration file holding the relay options.',
)
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    table: str | None,
    host: str | None,
    port: int | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a signaling relay server.

    Participants connect to the relay server to be assigned an identifier
    and to exchange call offers and answers. If no configuration file is
    provided, a default configuration will be created from
    [`RelayServingConfig()`][peercall.relay.config.RelayServingConfig].
    Use `--table relay` when the file also holds participant options. The
    remaining CLI options will override the options provided in the
    configuration object.
    """
    config = (
        RelayServingConfig()
        if config_path is None
        else RelayServingConfig.from_toml(config_path, table=table)
    )

    # Override config with CLI options if given
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = logging.getLevelName(log_level.upper())

    configure_logging(config)

    asyncio.run(serve(config))
