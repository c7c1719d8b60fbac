"""
Event Log - Bounded trace of device I/O for display surfaces.

Keeps the most recent entries of sent commands, received text and errors.
Entries are never modified once appended; the oldest entry is dropped when
the log is full.
"""

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from grbl_link.core.config import DEFAULT_EVENT_LOG_SIZE
from grbl_link.core.logging import get_logger, log_comm_error, log_comm_recv, log_comm_sent

logger = get_logger()


class LogDirection(str, Enum):
    """Direction of a logged event relative to the controller."""

    SENT = "sent"
    RECEIVED = "received"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


ENTRY_PREFIXES = {
    LogDirection.SENT: "→",
    LogDirection.RECEIVED: "←",
    LogDirection.ERROR: "!!",
}


@dataclass(frozen=True)
class LogEntry:
    """
    A single I/O trace entry.

    Attributes:
        direction: Whether the text was sent, received, or reports an error.
        text: The human-readable content, without line terminators.
        timestamp: When the entry was created.
    """
    direction: LogDirection
    text: str
    timestamp: datetime = field(default_factory=datetime.now)

    def render(self) -> str:
        """Render the entry with its direction prefix, as shown in a terminal."""
        return f"{ENTRY_PREFIXES[self.direction]} {self.text}"


LogListener = Callable[[LogEntry], None]


class EventLog:
    """
    Append-only ring buffer of LogEntry items.

    The log outlives connection sessions; it is only emptied by clear().
    """

    def __init__(self, maxlen: int = DEFAULT_EVENT_LOG_SIZE):
        if maxlen <= 0:
            raise ValueError("Event log size must be positive")
        self._entries: deque[LogEntry] = deque(maxlen=maxlen)
        self._listeners: list[LogListener] = []

    @property
    def maxlen(self) -> int:
        return self._entries.maxlen  # type: ignore[return-value]

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: LogEntry) -> None:
        """
        Append an entry, evicting the oldest one when the log is full.

        The entry is mirrored to the communication trace logger and handed to
        every registered listener.
        """
        self._entries.append(entry)

        if entry.direction is LogDirection.SENT:
            log_comm_sent(entry.text)
        elif entry.direction is LogDirection.RECEIVED:
            log_comm_recv(entry.text)
        else:
            log_comm_error(entry.text)

        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as e:
                logger.error(f"Event log listener failed: {e}")

    def add(self, direction: LogDirection, text: str) -> LogEntry:
        """Create and append an entry in one step."""
        entry = LogEntry(direction=direction, text=text)
        self.append(entry)
        return entry

    def snapshot(self) -> tuple[LogEntry, ...]:
        """Return the current entries, oldest first."""
        return tuple(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def add_listener(self, listener: LogListener) -> Callable[[], None]:
        """
        Register a callback invoked with each appended entry.

        Returns:
            A function that removes the listener again.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove
