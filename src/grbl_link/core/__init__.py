"""
Core package - Connection lifecycle and infrastructure.

This package provides:
- ConnectionManager: Connection state machine, read loop and status polling
- CommandDispatcher: Realtime vs. line framing and serialized writes
- EventLog: Bounded I/O trace for display surfaces
- Config: Configuration loading and management
- Utils: Error hierarchy and serial port discovery
- Logging: Logging utilities
"""

from .config import Config, ConnectionConfig, TransportKind
from .connection_manager import ConnectionManager, ConnectionSession, ConnectionState
from .dispatcher import SOFT_RESET, STATUS_QUERY, CommandDispatcher, frame_command
from .event_log import EventLog, LogDirection, LogEntry
from .utils import (
    AlreadyConnectedError,
    GrblLinkError,
    SerialDeviceNotFoundError,
    TransportError,
    TransportOpenError,
    TransportWriteError,
    find_serial_port_by_usb_id,
)

__all__ = [
    "Config",
    "ConnectionConfig",
    "TransportKind",
    "ConnectionManager",
    "ConnectionSession",
    "ConnectionState",
    "CommandDispatcher",
    "frame_command",
    "SOFT_RESET",
    "STATUS_QUERY",
    "EventLog",
    "LogDirection",
    "LogEntry",
    "GrblLinkError",
    "TransportError",
    "TransportOpenError",
    "TransportWriteError",
    "SerialDeviceNotFoundError",
    "AlreadyConnectedError",
    "find_serial_port_by_usb_id",
]
