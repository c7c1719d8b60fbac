"""
Transport package - Interchangeable physical links to a GRBL controller.

This package provides:
- Transport: Base class with the shared open/close/write_frame/read surface
- SerialTransport: USB/UART serial port (pyserial-asyncio)
- BleTransport: Bluetooth Low Energy UART service (bleak)
- SocketTransport: WebSocket stream (websockets)
- create_transport: Factory selecting the implementation for a TransportKind
"""

from grbl_link.core.config import TransportKind

from .ble_transport import BleTransport
from .interface import Transport
from .serial_transport import SerialTransport
from .socket_transport import SocketTransport

TRANSPORTS: dict[TransportKind, type[Transport]] = {
    TransportKind.SERIAL: SerialTransport,
    TransportKind.BLE: BleTransport,
    TransportKind.SOCKET: SocketTransport,
}


def create_transport(kind: TransportKind | str) -> Transport:
    """
    Instantiate the transport registered for a kind.

    Raises:
        ValueError: If the kind is unknown.
    """
    return TRANSPORTS[TransportKind(kind)]()


__all__ = [
    "Transport",
    "SerialTransport",
    "BleTransport",
    "SocketTransport",
    "TRANSPORTS",
    "create_transport",
]
