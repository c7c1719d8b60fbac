"""
Serial Transport - point-to-point serial link to a USB GRBL controller.

Uses pyserial-asyncio to drive the port from the event loop. The port is
resolved from a device path, a USB vendor:product ID, or the first USB serial
port on the host.
"""

import asyncio
from typing import cast

import serial
import serial_asyncio

from grbl_link.core.config import ConnectionConfig, TransportKind
from grbl_link.core.logging import get_logger
from grbl_link.core.utils import TransportOpenError, TransportWriteError, resolve_serial_port
from grbl_link.transport.interface import Transport

logger = get_logger()


class SerialProtocol(asyncio.Protocol):
    """
    asyncio.Protocol bridging pyserial-asyncio callbacks to a SerialTransport.

    Received bytes are handed over untouched; write flow control from the
    serial transport is exposed through the `writable` event.
    """

    def __init__(self, owner: "SerialTransport"):
        self.owner = owner
        self.transport: asyncio.Transport | None = None
        self.writable = asyncio.Event()
        self.writable.set()

    def connection_made(self, transport) -> None:
        """Called when the connection is established."""
        self.transport = cast(asyncio.Transport, transport)
        logger.debug("Serial connection established")

    def connection_lost(self, exc: Exception | None) -> None:
        """Called when the connection is lost or closed."""
        logger.debug(f"Serial connection lost: {exc}")
        self.transport = None
        # Unblock any writer waiting on flow control
        self.writable.set()
        self.owner._end_stream(str(exc) if exc else "serial port closed")

    def data_received(self, data: bytes) -> None:
        self.owner._feed(data)

    def pause_writing(self) -> None:
        logger.verbose("Serial write buffer full, pausing writes")
        self.writable.clear()

    def resume_writing(self) -> None:
        logger.verbose("Serial write buffer drained, resuming writes")
        self.writable.set()


class SerialTransport(Transport):
    """Transport over a USB/UART serial port."""

    kind = TransportKind.SERIAL

    def __init__(self) -> None:
        super().__init__()
        self._protocol: SerialProtocol | None = None
        self.port: str | None = None

    async def open(self, config: ConnectionConfig) -> None:
        """
        Open the serial port at the configured baud rate.

        Raises:
            TransportOpenError: If no port is found or it cannot be opened.
        """
        try:
            self.port = resolve_serial_port(port=config.port, usb_id=config.usb_id)
        except ValueError as e:
            raise TransportOpenError(str(e)) from e

        loop = asyncio.get_running_loop()

        try:
            _, protocol = await serial_asyncio.create_serial_connection(
                loop,
                lambda: SerialProtocol(self),
                self.port,
                baudrate=config.baud_rate,
            )
        except (serial.SerialException, OSError, ValueError) as e:
            raise TransportOpenError(f"Failed to open serial port {self.port}: {e}") from e

        self._protocol = cast(SerialProtocol, protocol)
        self._open = True
        logger.info(f"Opened {self.port} at {config.baud_rate} baud")

    async def close(self) -> None:
        self._open = False
        protocol, self._protocol = self._protocol, None

        if protocol and protocol.transport:
            protocol.transport.close()
            logger.debug(f"Serial port {self.port} closed")

    async def write_frame(self, data: bytes) -> None:
        """
        Write bytes to the serial port, waiting out flow control first.

        Raises:
            TransportWriteError: If the port is closed or the write fails.
        """
        protocol = self._protocol
        if not protocol:
            raise TransportWriteError("Serial port is not open")

        await protocol.writable.wait()
        if not protocol.transport:
            raise TransportWriteError("Serial port closed")

        try:
            protocol.transport.write(data)
        except (serial.SerialException, OSError) as e:
            raise TransportWriteError(f"Serial write failed: {e}") from e

        logger.verbose(f"Raw serial data sent: {data!r}")
