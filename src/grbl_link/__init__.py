"""GRBL Link - A live connection to GRBL motion controllers over serial, BLE or WebSocket."""

__version__ = "0.1.0"

from .core import (
    AlreadyConnectedError,
    Config,
    ConnectionConfig,
    ConnectionManager,
    ConnectionState,
    EventLog,
    GrblLinkError,
    LogDirection,
    LogEntry,
    TransportError,
    TransportKind,
    TransportOpenError,
    TransportWriteError,
)
from .device import MachineState, MachineStateStore, Position, parse_status_line
from .transport import create_transport

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "ConnectionConfig",
    "Config",
    "TransportKind",
    "EventLog",
    "LogEntry",
    "LogDirection",
    "MachineState",
    "MachineStateStore",
    "Position",
    "parse_status_line",
    "create_transport",
    "GrblLinkError",
    "TransportError",
    "TransportOpenError",
    "TransportWriteError",
    "AlreadyConnectedError",
    "__version__",
]
