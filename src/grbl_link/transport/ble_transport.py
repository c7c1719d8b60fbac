"""
BLE Transport - wireless link through a UART-over-GATT service.

Controllers with a Bluetooth bridge (ESP32 boards, HM-10 style adapters
running a Nordic UART firmware) expose one characteristic for writes and one
for notifications. Each notification payload is one incoming chunk; each
write is a characteristic write without response.
"""

import asyncio

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from grbl_link.core.config import ConnectionConfig, TransportKind
from grbl_link.core.logging import get_logger
from grbl_link.core.utils import TransportOpenError, TransportWriteError
from grbl_link.transport.interface import Transport

logger = get_logger()

# Nordic UART Service
UART_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
UART_WRITE_CHAR_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"
UART_NOTIFY_CHAR_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"

# Smallest ATT payload every BLE link supports
DEFAULT_WRITE_CHUNK_SIZE = 20


class BleTransport(Transport):
    """Transport over a Bluetooth Low Energy UART service."""

    kind = TransportKind.BLE

    def __init__(self) -> None:
        super().__init__()
        self._client: BleakClient | None = None
        self._write_char: BleakGATTCharacteristic | None = None
        self._notify_char: BleakGATTCharacteristic | None = None
        self.device: BLEDevice | None = None

    async def open(self, config: ConnectionConfig) -> None:
        """
        Discover a UART device, connect and subscribe to notifications.

        Raises:
            TransportOpenError: If no device is found, the connection fails,
                or the device lacks the UART characteristics.
        """
        timeout = config.scan_timeout / 1000

        try:
            self.device = await self._discover(config, timeout)
        except (BleakError, OSError) as e:
            raise TransportOpenError(f"Bluetooth discovery failed: {e}") from e

        if self.device is None:
            target = config.ble_address or config.ble_name or "UART service"
            raise TransportOpenError(f"No Bluetooth device found advertising {target}")

        client = BleakClient(self.device, disconnected_callback=self._on_disconnected)

        try:
            await client.connect(timeout=timeout)
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            await self._safe_disconnect(client)
            raise TransportOpenError(
                f"Failed to connect to Bluetooth device {self.device.address}: {e}"
            ) from e

        self._write_char = client.services.get_characteristic(UART_WRITE_CHAR_UUID)
        self._notify_char = client.services.get_characteristic(UART_NOTIFY_CHAR_UUID)
        if self._write_char is None or self._notify_char is None:
            await self._safe_disconnect(client)
            raise TransportOpenError(
                f"Device {self.device.address} does not expose the UART characteristics"
            )

        self._client = client
        self._open = True

        try:
            await client.start_notify(self._notify_char, self._on_notification)
        except (BleakError, OSError) as e:
            self._open = False
            self._client = None
            await self._safe_disconnect(client)
            raise TransportOpenError(f"Failed to subscribe to UART notifications: {e}") from e

        logger.info(f"Connected to Bluetooth device {self.device.name or self.device.address}")

    async def _discover(self, config: ConnectionConfig, timeout: float) -> BLEDevice | None:
        if config.ble_address:
            return await BleakScanner.find_device_by_address(config.ble_address, timeout=timeout)

        def matches(device: BLEDevice, adv: AdvertisementData) -> bool:
            if UART_SERVICE_UUID not in [uuid.lower() for uuid in adv.service_uuids]:
                return False
            return not config.ble_name or adv.local_name == config.ble_name

        return await BleakScanner.find_device_by_filter(matches, timeout=timeout)

    async def close(self) -> None:
        self._open = False
        client, self._client = self._client, None
        if client is None:
            return

        if self._notify_char is not None and client.is_connected:
            try:
                await client.stop_notify(self._notify_char)
            except (BleakError, OSError) as e:
                logger.warning(f"Error unsubscribing from notifications: {e}")

        await self._safe_disconnect(client)
        logger.debug("Bluetooth connection closed")

    async def write_frame(self, data: bytes) -> None:
        """
        Write bytes to the UART write characteristic.

        Frames longer than the link allows are split into consecutive writes.

        Raises:
            TransportWriteError: If not connected or the write fails.
        """
        client = self._client
        if client is None or self._write_char is None:
            raise TransportWriteError("Bluetooth device is not connected")

        chunk_size = (
            getattr(self._write_char, "max_write_without_response_size", None)
            or DEFAULT_WRITE_CHUNK_SIZE
        )

        try:
            for start in range(0, len(data), chunk_size):
                await client.write_gatt_char(
                    self._write_char, data[start:start + chunk_size], response=False
                )
        except (BleakError, OSError) as e:
            raise TransportWriteError(f"Bluetooth write failed: {e}") from e

        logger.verbose(f"Raw BLE data sent: {data!r}")

    def _on_notification(self, sender: BleakGATTCharacteristic, data: bytearray) -> None:
        self._feed(bytes(data))

    def _on_disconnected(self, client: BleakClient) -> None:
        logger.debug("Bluetooth device disconnected")
        self._end_stream("Bluetooth device disconnected")

    @staticmethod
    async def _safe_disconnect(client: BleakClient) -> None:
        try:
            await client.disconnect()
        except (BleakError, OSError) as e:
            logger.warning(f"Error disconnecting Bluetooth device: {e}")
