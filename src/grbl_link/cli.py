"""
Command-line interface for GRBL Link.

This module provides an interactive terminal using Click, supporting
configuration via:
1. Environment variables (highest precedence)
2. CLI arguments
3. Config file
4. Default values (lowest precedence)
"""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Any

import click

from grbl_link.core.config import (
    Config,
    ConnectionConfig,
    DEFAULT_CONFIG_PATH,
    ENV_CONFIG_FILE,
    ENV_SERIAL_BAUD_RATE,
    ENV_SERIAL_PORT,
    ENV_SERIAL_USB_ID,
    ENV_SOCKET_URL,
    ENV_TRANSPORT_KIND,
    TransportKind,
)
from grbl_link.core.connection_manager import ConnectionManager
from grbl_link.core.event_log import LogEntry
from grbl_link.core.logging import get_logger, setup_logging
from grbl_link.core.utils import TransportOpenError
from grbl_link.device.grbl_device_status import MachineState

QUIT_COMMAND = ":quit"
RESET_COMMAND = ":reset"
STATUS_COMMAND = ":status"


def format_state(state: MachineState) -> str:
    """Render a machine state snapshot on one line."""
    wpos = state.work_position
    mpos = state.machine_position
    return (
        f"<{state.status}> "
        f"WPos:{wpos.x:.3f},{wpos.y:.3f},{wpos.z:.3f} "
        f"MPos:{mpos.x:.3f},{mpos.y:.3f},{mpos.z:.3f} "
        f"F:{state.feed_rate:g} S:{state.spindle_speed:g}"
    )


@click.command()
@click.option(
    "-c", "--config",
    "config_file",
    type=click.Path(exists=False, path_type=Path),
    envvar=ENV_CONFIG_FILE,
    default=None,
    help=f"Path to configuration file. [default: {DEFAULT_CONFIG_PATH}] [env: {ENV_CONFIG_FILE}]",
)
@click.option(
    "-t", "--transport",
    type=click.Choice([kind.value for kind in TransportKind]),
    default=None,
    help=f"Transport to connect over. [env: {ENV_TRANSPORT_KIND}]",
)
@click.option(
    "-p", "--port",
    type=str,
    default=None,
    help=f"Serial device path (e.g., /dev/ttyUSB0). [env: {ENV_SERIAL_PORT}]",
)
@click.option(
    "-d", "--usb-id",
    type=str,
    default=None,
    help=f"USB device ID in vendor:product format (e.g., 1a86:7523). [env: {ENV_SERIAL_USB_ID}]",
)
@click.option(
    "-b", "--baud-rate",
    type=int,
    default=None,
    help=f"Serial baud rate. [env: {ENV_SERIAL_BAUD_RATE}]",
)
@click.option(
    "-u", "--url",
    type=str,
    default=None,
    help=f"WebSocket endpoint URL (e.g., ws://192.168.1.1/ws). [env: {ENV_SOCKET_URL}]",
)
@click.option("--ble-address", type=str, default=None, help="Bluetooth device address.")
@click.option("--ble-name", type=str, default=None, help="Bluetooth device name to look for.")
@click.option("--scan-timeout", type=float, default=None, help="Bluetooth discovery timeout in ms.")
@click.option("--open-timeout", type=float, default=None, help="WebSocket handshake timeout in ms.")
@click.option(
    "--binary-frames",
    is_flag=True,
    default=False,
    help="Send WebSocket binary frames instead of text frames.",
)
@click.option(
    "--poll-period",
    type=float,
    default=None,
    help="Status query period in ms, 0 disables polling.",
)
@click.option(
    "--comm-log-file",
    type=str,
    default=None,
    help="Append all sent/received traffic to this file.",
)
@click.option(
    "-v", "--verbose",
    count=True,
    help="Increase logging verbosity (-v debug, -vv raw traffic).",
)
@click.option(
    "-q", "--quiet",
    is_flag=True,
    default=False,
    help="Suppress all output except errors.",
)
@click.option(
    "--generate-config",
    is_flag=True,
    default=False,
    help="Generate a default configuration file and exit.",
)
@click.version_option(package_name="grbl-link")
def main(
    config_file: Path | None,
    transport: str | None,
    port: str | None,
    usb_id: str | None,
    baud_rate: int | None,
    url: str | None,
    ble_address: str | None,
    ble_name: str | None,
    scan_timeout: float | None,
    open_timeout: float | None,
    binary_frames: bool,
    poll_period: float | None,
    comm_log_file: str | None,
    verbose: int,
    quiet: bool,
    generate_config: bool,
) -> None:
    """
    GRBL Link - Interactive terminal for GRBL motion controllers.

    Connects to the controller over a serial port, Bluetooth LE or a
    WebSocket, shows the traffic and status changes, and sends every line
    typed on stdin as a command.

    \b
    Meta commands:
        :status   print the current machine state
        :reset    send a soft reset (Ctrl-X)
        :quit     disconnect and exit

    Example usage:

    \b
        # First USB serial port at 115200 baud
        grbl-link

        # Specific device, different baud rate
        grbl-link --port /dev/ttyACM0 --baud-rate 250000

        # Networked controller
        grbl-link --transport socket --url ws://192.168.1.1/ws

        # Generate a default config file
        grbl-link --generate-config
    """
    cli_args: dict[str, Any] = {
        "transport": transport,
        "port": port,
        "usb_id": usb_id,
        "baud_rate": baud_rate,
        "url": url,
        "ble_address": ble_address,
        "ble_name": ble_name,
        "scan_timeout": scan_timeout,
        "open_timeout": open_timeout,
        "poll_period": poll_period,
        "comm_log_file": comm_log_file,
    }
    if binary_frames:
        cli_args["binary_frames"] = True

    try:
        config = Config.load(config_file=config_file, cli_args=cli_args)
    except ValueError as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(1)

    setup_logging(verbosity_level=verbose, quiet=quiet, comm_log_file=config.comm_log_file)
    logger = get_logger(__name__)

    if generate_config:
        target_path = config_file if config_file else DEFAULT_CONFIG_PATH
        try:
            config.save(target_path)
            click.echo(f"Configuration file generated: {target_path}")
        except OSError as e:
            click.echo(f"Error generating config file: {e}", err=True)
            sys.exit(1)
        return

    connection_config = config.connection_config()
    try:
        connection_config.validate()
    except ValueError as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(1)

    logger.info("Starting GRBL Link")
    logger.info(f"  Transport: {connection_config.kind}")

    manager = ConnectionManager(poll_period=config.poll_period)

    try:
        exit_code = asyncio.run(run_terminal(manager, connection_config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        exit_code = 0

    sys.exit(exit_code)


async def run_terminal(manager: ConnectionManager, connection_config: ConnectionConfig) -> int:
    """
    Connect and run the interactive session until quit, EOF, a signal, or
    connection loss.

    Returns:
        Process exit code.
    """
    logger = get_logger(__name__)
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

    def echo_entry(entry: LogEntry) -> None:
        click.echo(entry.render())

    last_status: list[str] = []

    def echo_status(state: MachineState) -> None:
        if manager.is_connected and last_status != [state.status]:
            last_status[:] = [state.status]
            click.echo(f"[{state.status}]")

    remove_log_listener = manager.event_log.add_listener(echo_entry)
    remove_state_listener = manager.store.add_listener(echo_status)

    try:
        try:
            await manager.connect(connection_config)
        except TransportOpenError as e:
            click.echo(f"Connection failed: {e}", err=True)
            return 1

        waiters = {
            asyncio.create_task(read_commands(manager)),
            asyncio.create_task(stop_event.wait()),
            asyncio.create_task(manager.wait_disconnected()),
        }
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

        return 0 if manager.is_connected or stop_event.is_set() else 1

    finally:
        await manager.disconnect()
        remove_log_listener()
        remove_state_listener()


async def read_commands(manager: ConnectionManager) -> None:
    """Send each stdin line as a command until EOF or :quit."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

    while True:
        raw = await reader.readline()
        if not raw:
            return

        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            continue

        if line == QUIT_COMMAND:
            return
        elif line == RESET_COMMAND:
            await manager.reset()
        elif line == STATUS_COMMAND:
            click.echo(format_state(manager.machine_state))
        elif not await manager.send_command(line):
            click.echo(f"Command not sent: {line}", err=True)


if __name__ == "__main__":
    main()
