"""
Utility functions and errors for GRBL Link.

This module provides the package exception hierarchy and serial port discovery.
"""

import serial.tools.list_ports

from grbl_link.core.logging import get_logger

logger = get_logger()


class GrblLinkError(Exception):
    """Base class for all errors raised by GRBL Link."""

    pass


class TransportError(GrblLinkError):
    """Raised when a transport fails to open, write or stay connected."""

    pass


class TransportOpenError(TransportError):
    """Raised when a transport cannot be opened (medium missing, denied, not found)."""

    pass


class TransportWriteError(TransportError):
    """Raised when a transport rejects an outgoing frame."""

    pass


class SerialDeviceNotFoundError(TransportOpenError):
    """Raised when the specified USB device cannot be found."""

    pass


class AlreadyConnectedError(GrblLinkError):
    """Raised when connect() is called while a session is connecting or connected."""

    pass


def parse_usb_id(usb_id: str) -> tuple[int, int]:
    """
    Split a USB ID in vendor:product format into integers.

    Raises:
        ValueError: If the ID is not in 'vvvv:pppp' hexadecimal form.
    """
    try:
        vendor_id, product_id = usb_id.lower().split(":")
        return int(vendor_id, 16), int(product_id, 16)
    except (ValueError, AttributeError) as e:
        raise ValueError(
            f"Invalid USB ID format '{usb_id}'. "
            "Expected format: 'vendor:product' (e.g., '1a86:7523')"
        ) from e


def describe_available_ports() -> list[str]:
    """List the USB serial ports present on the host, for error messages."""
    return [
        f"{p.device} (VID:PID={p.vid:04x}:{p.pid:04x})"
        for p in serial.tools.list_ports.comports()
        if p.vid is not None and p.pid is not None
    ]


def find_serial_port_by_usb_id(usb_id: str) -> str:
    """
    Find the serial port path for a given USB device ID.

    Args:
        usb_id: USB device ID in vendor:product format (e.g., "1a86:7523").

    Returns:
        The serial port path (e.g., "/dev/ttyUSB0" or "COM3").

    Raises:
        ValueError: If the USB ID is malformed.
        SerialDeviceNotFoundError: If no matching device is found.
    """
    vendor_id, product_id = parse_usb_id(usb_id)

    for port in serial.tools.list_ports.comports():
        if port.vid == vendor_id and port.pid == product_id:
            logger.debug(f"Found device {usb_id} at {port.device}")
            return port.device

    available = describe_available_ports()
    logger.debug(f"Device {usb_id} not found. Available devices: {available}")

    raise SerialDeviceNotFoundError(
        f"USB device with ID '{usb_id}' not found. "
        f"Available USB serial devices: {available or 'none'}"
    )


def find_first_serial_port() -> str:
    """
    Pick the first USB serial port on the host.

    Used when neither a device path nor a USB ID is configured.

    Raises:
        SerialDeviceNotFoundError: If the host has no USB serial port.
    """
    for port in serial.tools.list_ports.comports():
        if port.vid is not None:
            logger.debug(f"Selected first USB serial port {port.device}")
            return port.device

    raise SerialDeviceNotFoundError("No USB serial devices found")


def resolve_serial_port(port: str | None = None, usb_id: str | None = None) -> str:
    """
    Resolve the serial port to open.

    An explicit device path wins, then a USB ID lookup, then the first USB
    serial port found on the host.
    """
    if port:
        return port
    if usb_id:
        return find_serial_port_by_usb_id(usb_id)
    return find_first_serial_port()
