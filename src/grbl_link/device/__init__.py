"""
Device package - GRBL status protocol and machine state.

This package provides:
- parse_status_line: Decoder for `<...>` status report lines
- MachineState: Immutable snapshot of the machine
- MachineStateStore: Holder of the current snapshot
- GrblDeviceStatus: Enum of GRBL device states
"""

from .grbl_device_status import (
    GrblDeviceStatus,
    MachineState,
    MachineStateStore,
    Position,
    StatusDelta,
    parse_status_line,
)

__all__ = [
    "GrblDeviceStatus",
    "MachineState",
    "MachineStateStore",
    "Position",
    "StatusDelta",
    "parse_status_line",
]
