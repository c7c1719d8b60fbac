"""
Transport Interface - the capability set shared by every physical medium.

Each transport pushes received chunks into a single asyncio.Queue, whatever
callback shape its underlying library uses, so the connection's read loop
consumes serial, BLE and WebSocket traffic the same way.
"""

import asyncio
from abc import ABC, abstractmethod

from grbl_link.core.config import ConnectionConfig, TransportKind
from grbl_link.core.logging import get_logger

logger = get_logger()

# Marks the end of the incoming stream in the queue
END_OF_STREAM = None


class Transport(ABC):
    """
    Raw byte link to a controller.

    Implementations must:
    - raise TransportOpenError from open() and release anything partially opened
    - raise TransportWriteError from write_frame() when the medium rejects a write
    - call _feed() for every received chunk and _end_stream() when the medium
      goes away

    Content is never buffered into lines or interpreted here.
    """

    kind: TransportKind

    def __init__(self) -> None:
        self._incoming: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._open = False
        self.end_reason: str | None = None

    @property
    def is_open(self) -> bool:
        return self._open

    @abstractmethod
    async def open(self, config: ConnectionConfig) -> None:
        """Open the medium. Raises TransportOpenError on failure."""

    @abstractmethod
    async def close(self) -> None:
        """Release the medium. Safe to call more than once."""

    @abstractmethod
    async def write_frame(self, data: bytes) -> None:
        """Write one frame as-is. Raises TransportWriteError on failure."""

    async def read(self) -> bytes | None:
        """
        Wait for the next chunk of incoming data.

        Returns:
            The raw bytes received, or None once the stream has ended.
        """
        chunk = await self._incoming.get()
        if chunk is END_OF_STREAM:
            # Keep reporting the end to any later reader
            self._incoming.put_nowait(END_OF_STREAM)
        return chunk

    def _feed(self, data: bytes) -> None:
        if not self._open:
            logger.verbose(f"Dropping {len(data)} bytes received on closed {self.kind} transport")
            return
        logger.verbose(f"Raw {self.kind} data received: {data!r}")
        self._incoming.put_nowait(bytes(data))

    def _end_stream(self, reason: str | None = None) -> None:
        """Signal that the medium stopped delivering data."""
        if self.end_reason is None:
            self.end_reason = reason or "stream closed"
        self._incoming.put_nowait(END_OF_STREAM)
