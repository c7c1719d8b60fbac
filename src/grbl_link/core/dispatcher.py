"""
Command Dispatcher - frames and writes outbound commands.

GRBL treats a few single characters as realtime commands that are acted on
the moment they arrive and must not be followed by a line terminator. Every
other command is a line.
"""

import asyncio
from typing import TYPE_CHECKING

from grbl_link.core.event_log import EventLog, LogDirection
from grbl_link.core.logging import get_logger
from grbl_link.core.utils import TransportWriteError

if TYPE_CHECKING:
    from grbl_link.transport.interface import Transport

logger = get_logger()

STATUS_QUERY = "?"
SOFT_RESET = "\x18"
REALTIME_COMMANDS = frozenset({STATUS_QUERY, SOFT_RESET})
LINE_TERMINATOR = "\n"


def frame_command(command: str) -> bytes:
    """
    Encode a command into its wire form.

    Realtime commands are sent as-is; anything else has trailing line
    terminators stripped and exactly one newline appended.

    Raises:
        UnicodeEncodeError: If the command is not ASCII.
    """
    if command in REALTIME_COMMANDS:
        return command.encode("ascii")
    return (command.rstrip("\r\n") + LINE_TERMINATOR).encode("ascii")


class CommandDispatcher:
    """
    Writes commands through the attached transport, one whole frame at a time.

    Writes are serialized by a lock, so frames reach the transport in the
    order send() was called and never interleave.
    """

    def __init__(self, event_log: EventLog):
        self.event_log = event_log
        self._transport: "Transport | None" = None
        self._lock = asyncio.Lock()

    @property
    def is_attached(self) -> bool:
        return self._transport is not None

    def attach(self, transport: "Transport") -> None:
        self._transport = transport

    async def detach(self) -> None:
        """Stop writing to the transport, after any in-flight write completes."""
        async with self._lock:
            self._transport = None

    async def send(self, command: str, *, log: bool = True) -> bool:
        """
        Send one command.

        Status queries are never written to the event log. Other commands are
        logged as sent unless `log` is False.

        Args:
            command: The command text, e.g. "$H", "?" or "\\x18".
            log: Whether to add a sent entry for this command.

        Returns:
            True if the frame was written, False if there is no connection or
            the write failed. Failures never raise.
        """
        async with self._lock:
            transport = self._transport
            if transport is None:
                logger.debug(f"Not connected, dropping command {command!r}")
                return False

            text = command if command in REALTIME_COMMANDS else command.rstrip("\r\n")

            try:
                await transport.write_frame(frame_command(command))
            except (TransportWriteError, UnicodeEncodeError) as e:
                logger.error(f"Failed to send {text!r}: {e}")
                self.event_log.add(LogDirection.ERROR, f"Failed to send: {text}")
                return False

        if command == STATUS_QUERY:
            logger.verbose("Sent status request (?)")
        elif log:
            self.event_log.add(LogDirection.SENT, text)

        return True
