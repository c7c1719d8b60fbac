"""Shared fixtures: an in-memory transport and a connection manager wired to it."""

import asyncio

import pytest

from grbl_link.core.config import ConnectionConfig, TransportKind
from grbl_link.core.connection_manager import ConnectionManager
from grbl_link.core.utils import TransportOpenError, TransportWriteError
from grbl_link.transport.interface import Transport


class FakeTransport(Transport):
    """Transport double recording writes and letting tests inject incoming data."""

    kind = TransportKind.SERIAL

    def __init__(self, fail_open: bool = False, fail_write: bool = False):
        super().__init__()
        self.fail_open = fail_open
        self.fail_write = fail_write
        self.writes: list[bytes] = []
        self.open_config: ConnectionConfig | None = None
        self.open_count = 0
        self.closed = False
        self.on_close = None

    async def open(self, config: ConnectionConfig) -> None:
        if self.fail_open:
            raise TransportOpenError("port busy")
        self.open_config = config
        self.open_count += 1
        self.closed = False
        self._open = True

    async def close(self) -> None:
        if self.on_close:
            self.on_close()
        self._open = False
        self.closed = True

    async def write_frame(self, data: bytes) -> None:
        if self.fail_write:
            raise TransportWriteError("write rejected")
        self.writes.append(data)

    def receive(self, data: str | bytes) -> None:
        """Simulate data arriving from the controller."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._feed(data)

    def drop(self, reason: str = "device unplugged") -> None:
        """Simulate the medium going away."""
        self._end_stream(reason)


async def settle(iterations: int = 10) -> None:
    """Let background tasks process everything already queued."""
    for _ in range(iterations):
        await asyncio.sleep(0)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def manager(transport):
    """Connection manager with polling disabled, always opening `transport`."""
    return ConnectionManager(poll_period=0, transport_factory=lambda kind: transport)


@pytest.fixture
def serial_config():
    return ConnectionConfig(kind=TransportKind.SERIAL, baud_rate=115200)


@pytest.fixture
def settled():
    return settle
