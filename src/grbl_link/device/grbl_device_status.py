"""
GRBL status reports - parsing and the machine state snapshot.

Status reports are the `<...>` lines GRBL sends in reply to the realtime `?`
query:

    <Idle|WPos:1.000,2.000,-0.500|FS:800,0>
    <Run|MPos:3.000,3.000,0.000|FS:500,12000|WCO:1.000,1.000,0.000>
    <Idle,MPos:0.000,0.000,0.000,WPos:0.000,0.000,0.000>   (GRBL 0.9)
"""

import re
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum

from grbl_link.core.logging import get_logger

logger = get_logger()


class GrblDeviceStatus(str, Enum):
    """
    Enum of known GRBL device status states.

    The status word of a report is kept verbatim in MachineState (it may carry
    a substate such as "Hold:0"), these values are only used for comparisons.
    """
    IDLE = "Idle"
    RUN = "Run"
    HOLD = "Hold"
    JOG = "Jog"
    DOOR = "Door"
    HOME = "Home"
    ALARM = "Alarm"
    CHECK = "Check"
    SLEEP = "Sleep"
    UNKNOWN = "Unknown"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Position:
    """Cartesian tool position in mm or inches."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def __sub__(self, other: "Position") -> "Position":
        return Position(self.x - other.x, self.y - other.y, self.z - other.z)


@dataclass(frozen=True)
class MachineState:
    """
    Snapshot of the machine as last reported by the controller.

    Instances are immutable; every applied status report produces a new one.

    Attributes:
        status: Status word copied verbatim from the report (Idle, Run, Alarm, ...)
        work_position: Tool position relative to the active work coordinate offset
        machine_position: Tool position relative to machine home
        feed_rate: Current feed rate
        spindle_speed: Current spindle speed
        work_offset: Last reported work coordinate offset (WCO), if any
    """
    status: str = GrblDeviceStatus.UNKNOWN.value
    work_position: Position = field(default_factory=Position)
    machine_position: Position = field(default_factory=Position)
    feed_rate: float = 0.0
    spindle_speed: float = 0.0
    work_offset: Position | None = None


@dataclass(frozen=True)
class StatusDelta:
    """
    Fields carried by one status report. None means "not present in this report".
    """
    status: str
    work_position: Position | None = None
    machine_position: Position | None = None
    feed_rate: float | None = None
    spindle_speed: float | None = None
    work_offset: Position | None = None

    def apply(self, state: MachineState) -> MachineState:
        """
        Return a new MachineState with this report's fields applied to `state`.

        GRBL 1.1 reports either MPos or WPos. When only MPos is present and a
        work offset is known, the work position is derived as MPos - WCO.
        """
        changes: dict = {"status": self.status}

        if self.work_offset is not None:
            changes["work_offset"] = self.work_offset
        if self.machine_position is not None:
            changes["machine_position"] = self.machine_position
        if self.work_position is not None:
            changes["work_position"] = self.work_position
        elif self.machine_position is not None:
            offset = changes.get("work_offset", state.work_offset)
            if offset is not None:
                changes["work_position"] = self.machine_position - offset
        if self.feed_rate is not None:
            changes["feed_rate"] = self.feed_rate
        if self.spindle_speed is not None:
            changes["spindle_speed"] = self.spindle_speed

        return replace(state, **changes)


# GRBL 0.9 separates fields with commas; a comma followed by KEY: starts a new field
LEGACY_FIELD_SEPARATOR_RE = re.compile(r",(?=[A-Za-z]+:)")

# Plain decimal numbers only; float() alone would also take nan, inf and 1_000
NUMBER_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)")


def _parse_floats(payload: str, count: int) -> list[float] | None:
    """Parse at least `count` comma separated numbers, returning the first `count`."""
    tokens = payload.split(",")
    if len(tokens) < count or not all(NUMBER_RE.fullmatch(token) for token in tokens):
        return None
    return [float(token) for token in tokens[:count]]


def _parse_position(payload: str) -> Position | None:
    values = _parse_floats(payload, 3)
    if values is None:
        return None
    return Position(*values)


def parse_status_line(line: str) -> StatusDelta | None:
    """
    Parse a GRBL status report line.

    Args:
        line: One line received from the controller.

    Returns:
        The fields present in the report, or None if the line is not a status
        report. Malformed numeric fields are treated as absent; this function
        never raises on bad input.
    """
    line = line.strip()

    # Status report must be enclosed in angle brackets
    if len(line) < 2 or not line.startswith("<") or not line.endswith(">"):
        return None

    content = line[1:-1]
    if not content:
        return None

    if "|" not in content:
        content = LEGACY_FIELD_SEPARATOR_RE.sub("|", content)

    parts = content.split("|")
    status = parts[0]

    work_position = None
    machine_position = None
    work_offset = None
    feed_rate = None
    spindle_speed = None

    for part in parts[1:]:
        key, sep, payload = part.partition(":")
        if not sep:
            continue

        if key == "WPos":
            work_position = _parse_position(payload)
        elif key == "MPos":
            machine_position = _parse_position(payload)
        elif key == "WCO":
            work_offset = _parse_position(payload)
        elif key == "FS":
            values = _parse_floats(payload, 2)
            if values is not None:
                feed_rate, spindle_speed = values
        elif key == "F":
            values = _parse_floats(payload, 1)
            if values is not None:
                feed_rate = values[0]

    return StatusDelta(
        status=status,
        work_position=work_position,
        machine_position=machine_position,
        feed_rate=feed_rate,
        spindle_speed=spindle_speed,
        work_offset=work_offset,
    )


StateListener = Callable[[MachineState], None]


class MachineStateStore:
    """
    Holds the current MachineState snapshot.

    Only the connection's read loop applies deltas. Readers get the snapshot
    object itself, which is never mutated, so a read can not observe a
    half-applied report.
    """

    def __init__(self) -> None:
        self._state = MachineState()
        self._listeners: list[StateListener] = []

    def current(self) -> MachineState:
        return self._state

    def apply_delta(self, delta: StatusDelta) -> MachineState:
        old_status = self._state.status
        self._state = delta.apply(self._state)

        if self._state.status != old_status:
            logger.debug(f"Device changed state from {old_status} to {self._state.status}")

        self._notify()
        return self._state

    def reset(self) -> None:
        """Return to the default snapshot (used at session start and teardown)."""
        self._state = MachineState()
        self._notify()

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """
        Register a callback invoked with every new snapshot.

        Returns:
            A function that removes the listener again.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception as e:
                logger.error(f"Machine state listener failed: {e}")
