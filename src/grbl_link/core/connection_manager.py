"""
Connection Manager for GRBL Link.

This module provides the ConnectionManager class which owns the lifecycle of
a controller connection: it opens the configured transport, runs the read
loop and the status poll loop, routes incoming lines to the machine state or
the event log, and tears everything down in a fixed order.
"""

from __future__ import annotations

import asyncio
import codecs
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from grbl_link.core.config import DEFAULT_POLL_PERIOD, ConnectionConfig, TransportKind
from grbl_link.core.dispatcher import SOFT_RESET, STATUS_QUERY, CommandDispatcher
from grbl_link.core.event_log import EventLog, LogDirection
from grbl_link.core.logging import get_logger
from grbl_link.core.utils import AlreadyConnectedError, TransportError, TransportOpenError
from grbl_link.device.grbl_device_status import MachineState, MachineStateStore, parse_status_line
from grbl_link.transport import Transport, create_transport

logger = get_logger()


class ConnectionState(str, Enum):
    """Lifecycle states of the connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"

    def __str__(self) -> str:
        return self.value


@dataclass
class ConnectionSession:
    """
    Everything owned by one live connection, created and destroyed as a unit.

    Attributes:
        transport: The open transport.
        config: The parameters the transport was opened with.
        read_task: Task draining the transport's incoming stream.
        poll_task: Task sending the periodic status query.
    """
    transport: Transport
    config: ConnectionConfig
    read_task: asyncio.Task | None = None
    poll_task: asyncio.Task | None = None


class ConnectionManager:
    """
    Manages the single connection to a GRBL controller.

    Only one session can be connecting or connected at a time; connect()
    while a session exists raises AlreadyConnectedError instead of replacing
    it. A lost connection is not re-established automatically.
    """

    def __init__(
        self,
        poll_period: float = DEFAULT_POLL_PERIOD,  # ms
        event_log: EventLog | None = None,
        transport_factory: Callable[[TransportKind], Transport] = create_transport,
    ):
        """
        Initialize the connection manager.

        Args:
            poll_period: Period in ms between status queries (`?`).
                Set to 0 to disable polling.
            event_log: Log shared with display surfaces. A new one is created
                if not provided.
            transport_factory: Builds the transport for a TransportKind.
        """
        self.poll_period = poll_period / 1000
        self.event_log = event_log if event_log is not None else EventLog()
        self.store = MachineStateStore()
        self.dispatcher = CommandDispatcher(self.event_log)
        self._transport_factory = transport_factory

        self._state = ConnectionState.DISCONNECTED
        self._session: ConnectionSession | None = None
        self._disconnected = asyncio.Event()
        self._disconnected.set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def connection_kind(self) -> TransportKind | None:
        """The transport kind of the active session, if any."""
        return self._session.config.kind if self._session else None

    @property
    def machine_state(self) -> MachineState:
        """The current machine state snapshot."""
        return self.store.current()

    async def connect(self, config: ConnectionConfig) -> None:
        """
        Open a transport and start the session.

        Args:
            config: Which transport to open and its parameters.

        Raises:
            AlreadyConnectedError: If a session is connecting or connected.
            ValueError: If the configuration is incomplete.
            TransportOpenError: If the transport could not be opened. No
                session is created and nothing is left running.
        """
        if self._state is not ConnectionState.DISCONNECTED:
            raise AlreadyConnectedError(f"Connection is already {self._state}")

        config.validate()

        self._state = ConnectionState.CONNECTING
        logger.info(f"Connecting over {config.kind}")

        transport = self._transport_factory(config.kind)
        opened = False
        try:
            await transport.open(config)
            opened = True
        except TransportOpenError as e:
            logger.error(f"Failed to open {config.kind} transport: {e}")
            raise
        finally:
            if not opened:
                self._state = ConnectionState.DISCONNECTED

        self.store.reset()
        session = ConnectionSession(transport=transport, config=config)
        self._session = session
        self.dispatcher.attach(transport)
        self._state = ConnectionState.CONNECTED
        self._disconnected.clear()

        session.read_task = asyncio.create_task(self._read_loop(session))
        session.poll_task = asyncio.create_task(self._poll_loop(session))

        logger.info(f"Connected over {config.kind}")

    async def disconnect(self) -> None:
        """
        Tear down the active session. Does nothing when not connected.

        If the session is already being torn down (e.g. after the stream
        ended), waits for that teardown to finish before returning.
        """
        session = self._session
        if session is None:
            if self._state is not ConnectionState.DISCONNECTED:
                await self._disconnected.wait()
            return

        await self._teardown(session)
        logger.info("Disconnected from device")

    async def reset(self) -> bool:
        """
        Send a soft reset (Ctrl-X) to the controller.

        The connection stays up; the controller's reboot is only visible
        through the status reports that follow.

        Returns:
            True if the reset byte was written.
        """
        if not self.is_connected:
            return False

        logger.info("Real-time command: Soft reset (0x18)")
        sent = await self.dispatcher.send(SOFT_RESET, log=False)
        if sent:
            self.event_log.add(LogDirection.ERROR, "Soft reset sent")
        return sent

    async def send_command(self, command: str) -> bool:
        """
        Send a command to the controller.

        Returns:
            True if written, False when not connected or the write failed.
        """
        return await self.dispatcher.send(command)

    async def _teardown(self, session: ConnectionSession) -> None:
        """
        Stop the session: poll loop, then read loop, then the transport.

        The poll loop goes first so nothing writes to a closing transport.
        """
        if self._session is not session:
            return
        self._session = None

        current = asyncio.current_task()
        for task_ref in (session.poll_task, session.read_task):
            if task_ref and task_ref is not current:
                task_ref.cancel()
                try:
                    await task_ref
                except asyncio.CancelledError:
                    pass
        session.poll_task = None
        session.read_task = None

        await self.dispatcher.detach()

        try:
            await session.transport.close()
        except (TransportError, OSError) as e:
            logger.warning(f"Error closing {session.config.kind} transport: {e}")

        self.store.reset()
        self._state = ConnectionState.DISCONNECTED
        self._disconnected.set()

    async def wait_disconnected(self) -> None:
        """Wait until the current session, if any, has been torn down."""
        await self._disconnected.wait()

    async def _read_loop(self, session: ConnectionSession) -> None:
        """
        Drain the transport's stream and route each complete line.

        Ends the session when the stream ends.
        """
        logger.debug("Read loop started")

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""

        while True:
            chunk = await session.transport.read()
            if chunk is None:
                break

            buffer += decoder.decode(chunk)
            *lines, buffer = buffer.split("\n")

            for line in lines:
                line = line.strip()
                if not line:
                    continue
                try:
                    self._handle_line(line)
                except Exception as e:
                    logger.error(f"Error handling line {line!r}: {e}")

        reason = session.transport.end_reason or "stream closed"
        logger.warning(f"Connection lost: {reason}")
        self.event_log.add(LogDirection.ERROR, f"Connection lost: {reason}")
        await self._teardown(session)

    def _handle_line(self, line: str) -> None:
        """Apply a status report to the machine state, log anything else."""
        delta = parse_status_line(line)
        if delta is not None:
            self.store.apply_delta(delta)
            return

        if line.startswith("ALARM:"):
            logger.warning(f"Received device alarm: {line}")
        elif line.startswith("Grbl "):
            logger.info(f"Device initialization message: {line}")

        self.event_log.add(LogDirection.RECEIVED, line)

    async def _poll_loop(self, session: ConnectionSession) -> None:
        """Send a status query immediately and then every poll period."""
        if self.poll_period == 0:
            logger.info("Status polling disabled (poll_period is 0)")
            return

        logger.debug(f"Status polling started (period: {self.poll_period * 1000}ms)")

        while True:
            try:
                await self.dispatcher.send(STATUS_QUERY)
            except Exception as e:
                logger.error(f"Error in status poll: {e}")
            await asyncio.sleep(self.poll_period)

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()
