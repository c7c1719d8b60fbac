"""Configuration management for GRBL Link.

Handles configuration loading with the following precedence (highest to lowest):
1. Environment variables
2. CLI arguments
3. Config file
4. Default values
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml


DEFAULT_CONFIG_PATH = Path.home() / ".config" / "grbl-link" / "config.yaml"

DEFAULT_BAUD_RATE = 115200
DEFAULT_POLL_PERIOD = 250.0  # ms
DEFAULT_SCAN_TIMEOUT = 10000.0  # ms
DEFAULT_OPEN_TIMEOUT = 10000.0  # ms
DEFAULT_EVENT_LOG_SIZE = 500

# Environment variable names
ENV_TRANSPORT_KIND = "TRANSPORT_KIND"
ENV_SERIAL_PORT = "SERIAL_PORT"
ENV_SERIAL_USB_ID = "SERIAL_USB_ID"
ENV_SERIAL_BAUD_RATE = "SERIAL_BAUD_RATE"
ENV_BLE_ADDRESS = "BLE_ADDRESS"
ENV_BLE_NAME = "BLE_NAME"
ENV_BLE_SCAN_TIMEOUT = "BLE_SCAN_TIMEOUT"
ENV_SOCKET_URL = "SOCKET_URL"
ENV_SOCKET_OPEN_TIMEOUT = "SOCKET_OPEN_TIMEOUT"
ENV_POLL_PERIOD = "POLL_PERIOD"
ENV_COMM_LOG_FILE = "COMM_LOG_FILE"
ENV_CONFIG_FILE = "GRBL_LINK_CONFIG"


class TransportKind(str, Enum):
    """The physical medium a connection runs over."""

    SERIAL = "serial"
    BLE = "ble"
    SOCKET = "socket"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ConnectionConfig:
    """
    Parameters for a single connection attempt.

    Only the options belonging to `kind` are used by the transport; the rest
    keep their defaults.

    Attributes:
        kind: Which transport to open.
        baud_rate: Serial baud rate.
        port: Serial device path (e.g. /dev/ttyUSB0). Takes precedence over usb_id.
        usb_id: Serial USB ID in vendor:product format.
        url: WebSocket endpoint, e.g. ws://192.168.1.1/ws.
        open_timeout: WebSocket handshake timeout in ms.
        binary_frames: Send WebSocket binary frames instead of text frames.
        ble_address: Connect to this BLE address instead of the first UART device.
        ble_name: Only accept BLE devices advertising this name.
        scan_timeout: BLE discovery timeout in ms.
    """

    kind: TransportKind = TransportKind.SERIAL
    baud_rate: int = DEFAULT_BAUD_RATE
    port: str | None = None
    usb_id: str | None = None
    url: str | None = None
    open_timeout: float = DEFAULT_OPEN_TIMEOUT
    binary_frames: bool = False
    ble_address: str | None = None
    ble_name: str | None = None
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT

    def __post_init__(self) -> None:
        if not isinstance(self.kind, TransportKind):
            object.__setattr__(self, "kind", TransportKind(self.kind))

    def validate(self) -> None:
        """Raise ValueError when the options required by `kind` are missing."""
        if self.kind is TransportKind.SERIAL and self.baud_rate <= 0:
            raise ValueError(f"Invalid baud rate: {self.baud_rate}")
        if self.kind is TransportKind.SOCKET and not (self.url and self.url.strip()):
            raise ValueError(
                "A socket connection requires an endpoint URL. Please provide one via:\n"
                f"    - Environment variable: {ENV_SOCKET_URL}\n"
                "    - CLI argument: --url\n"
                "    - Config file: socket.url"
            )


@dataclass
class SerialConfig:
    """Serial transport settings."""

    port: str | None = None
    usb_id: str | None = None
    baud_rate: int = DEFAULT_BAUD_RATE


@dataclass
class BleConfig:
    """BLE transport settings."""

    address: str | None = None
    name: str | None = None
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT  # ms


@dataclass
class SocketConfig:
    """WebSocket transport settings."""

    url: str | None = None
    open_timeout: float = DEFAULT_OPEN_TIMEOUT  # ms
    binary_frames: bool = False


def _lookup(data: dict[str, Any], key: str) -> Any:
    """Read a key in either hyphenated or underscored spelling."""
    if key in data:
        return data[key]
    return data.get(key.replace("-", "_"))


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes")
    return bool(value)


@dataclass
class Config:
    """Main configuration container."""

    transport: TransportKind = TransportKind.SERIAL
    serial: SerialConfig = field(default_factory=SerialConfig)
    ble: BleConfig = field(default_factory=BleConfig)
    socket: SocketConfig = field(default_factory=SocketConfig)
    poll_period: float = DEFAULT_POLL_PERIOD  # ms
    comm_log_file: str | None = None

    @classmethod
    def load(
        cls,
        config_file: Path | str | None = None,
        cli_args: dict[str, Any] | None = None,
    ) -> "Config":
        """Load configuration from all sources with proper precedence.

        Precedence (highest to lowest):
        1. Environment variables
        2. CLI arguments
        3. Config file
        4. Default values

        Args:
            config_file: Path to configuration file. If None, uses default or env var.
            cli_args: Dictionary of CLI arguments.

        Returns:
            Loaded and merged configuration.

        Raises:
            ValueError: If a value cannot be converted (e.g. unknown transport kind).
        """
        config = cls()

        if config_file is None:
            config_file = os.environ.get(ENV_CONFIG_FILE, str(DEFAULT_CONFIG_PATH))

        config_path = Path(config_file).expanduser()

        if config_path.exists():
            config = cls._load_from_file(config_path)

        if cli_args:
            config = cls._apply_cli_args(config, cli_args)

        config = cls._apply_env_vars(config)

        return config

    @classmethod
    def _load_from_file(cls, path: Path) -> "Config":
        """Load configuration from YAML file.

        Args:
            path: Path to the YAML config file.

        Returns:
            Configuration loaded from file.
        """
        config = cls()

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            print(f"Warning: Failed to load config file {path}: {e}")
            return config

        if _lookup(data, "transport") is not None:
            config.transport = TransportKind(str(data["transport"]))

        serial_data = _lookup(data, "serial") or {}
        if _lookup(serial_data, "port") is not None:
            config.serial.port = str(serial_data["port"])
        if _lookup(serial_data, "usb-id") is not None:
            config.serial.usb_id = str(_lookup(serial_data, "usb-id"))
        if _lookup(serial_data, "baud-rate") is not None:
            config.serial.baud_rate = int(_lookup(serial_data, "baud-rate"))

        ble_data = _lookup(data, "ble") or {}
        if _lookup(ble_data, "address") is not None:
            config.ble.address = str(ble_data["address"])
        if _lookup(ble_data, "name") is not None:
            config.ble.name = str(ble_data["name"])
        if _lookup(ble_data, "scan-timeout") is not None:
            config.ble.scan_timeout = float(_lookup(ble_data, "scan-timeout"))

        socket_data = _lookup(data, "socket") or {}
        if _lookup(socket_data, "url") is not None:
            config.socket.url = str(socket_data["url"])
        if _lookup(socket_data, "open-timeout") is not None:
            config.socket.open_timeout = float(_lookup(socket_data, "open-timeout"))
        if _lookup(socket_data, "binary-frames") is not None:
            config.socket.binary_frames = _to_bool(_lookup(socket_data, "binary-frames"))

        if _lookup(data, "poll-period") is not None:
            config.poll_period = float(_lookup(data, "poll-period"))

        if _lookup(data, "comm-log-file") is not None:
            config.comm_log_file = str(_lookup(data, "comm-log-file"))

        return config

    @classmethod
    def _apply_cli_args(cls, config: "Config", cli_args: dict[str, Any]) -> "Config":
        """Apply CLI arguments to configuration.

        Args:
            config: Existing configuration to modify.
            cli_args: Dictionary of CLI arguments.

        Returns:
            Modified configuration.
        """
        if cli_args.get("transport") is not None:
            config.transport = TransportKind(str(cli_args["transport"]))

        if cli_args.get("port") is not None:
            config.serial.port = str(cli_args["port"])

        if cli_args.get("usb_id") is not None:
            config.serial.usb_id = str(cli_args["usb_id"])

        if cli_args.get("baud_rate") is not None:
            config.serial.baud_rate = int(cli_args["baud_rate"])

        if cli_args.get("ble_address") is not None:
            config.ble.address = str(cli_args["ble_address"])

        if cli_args.get("ble_name") is not None:
            config.ble.name = str(cli_args["ble_name"])

        if cli_args.get("scan_timeout") is not None:
            config.ble.scan_timeout = float(cli_args["scan_timeout"])

        if cli_args.get("url") is not None:
            config.socket.url = str(cli_args["url"])

        if cli_args.get("open_timeout") is not None:
            config.socket.open_timeout = float(cli_args["open_timeout"])

        if cli_args.get("binary_frames") is not None:
            config.socket.binary_frames = bool(cli_args["binary_frames"])

        if cli_args.get("poll_period") is not None:
            config.poll_period = float(cli_args["poll_period"])

        if cli_args.get("comm_log_file") is not None:
            config.comm_log_file = str(cli_args["comm_log_file"])

        return config

    @classmethod
    def _apply_env_vars(cls, config: "Config") -> "Config":
        """Apply environment variables to configuration.

        Args:
            config: Existing configuration to modify.

        Returns:
            Modified configuration.
        """
        if ENV_TRANSPORT_KIND in os.environ:
            config.transport = TransportKind(os.environ[ENV_TRANSPORT_KIND].lower())

        if ENV_SERIAL_PORT in os.environ:
            config.serial.port = os.environ[ENV_SERIAL_PORT]

        if ENV_SERIAL_USB_ID in os.environ:
            config.serial.usb_id = os.environ[ENV_SERIAL_USB_ID]

        if ENV_SERIAL_BAUD_RATE in os.environ:
            config.serial.baud_rate = int(os.environ[ENV_SERIAL_BAUD_RATE])

        if ENV_BLE_ADDRESS in os.environ:
            config.ble.address = os.environ[ENV_BLE_ADDRESS]

        if ENV_BLE_NAME in os.environ:
            config.ble.name = os.environ[ENV_BLE_NAME]

        if ENV_BLE_SCAN_TIMEOUT in os.environ:
            config.ble.scan_timeout = float(os.environ[ENV_BLE_SCAN_TIMEOUT])

        if ENV_SOCKET_URL in os.environ:
            config.socket.url = os.environ[ENV_SOCKET_URL]

        if ENV_SOCKET_OPEN_TIMEOUT in os.environ:
            config.socket.open_timeout = float(os.environ[ENV_SOCKET_OPEN_TIMEOUT])

        if ENV_POLL_PERIOD in os.environ:
            config.poll_period = float(os.environ[ENV_POLL_PERIOD])

        if ENV_COMM_LOG_FILE in os.environ:
            config.comm_log_file = os.environ[ENV_COMM_LOG_FILE]

        return config

    def connection_config(self) -> ConnectionConfig:
        """Build the immutable connection parameters for the configured transport."""
        return ConnectionConfig(
            kind=self.transport,
            baud_rate=self.serial.baud_rate,
            port=self.serial.port,
            usb_id=self.serial.usb_id,
            url=self.socket.url,
            open_timeout=self.socket.open_timeout,
            binary_frames=self.socket.binary_frames,
            ble_address=self.ble.address,
            ble_name=self.ble.name,
            scan_timeout=self.ble.scan_timeout,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation of configuration.
        """
        result: dict[str, Any] = {
            "transport": self.transport.value,
            "serial": {
                "port": self.serial.port,
                "usb_id": self.serial.usb_id,
                "baud_rate": self.serial.baud_rate,
            },
            "ble": {
                "address": self.ble.address,
                "name": self.ble.name,
                "scan_timeout": self.ble.scan_timeout,
            },
            "socket": {
                "url": self.socket.url,
                "open_timeout": self.socket.open_timeout,
                "binary_frames": self.socket.binary_frames,
            },
            "poll_period": self.poll_period,
        }
        if self.comm_log_file is not None:
            result["comm_log_file"] = self.comm_log_file
        return result

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file.

        Args:
            path: Path to save to. If None, uses default config path.
        """
        if path is None:
            path = DEFAULT_CONFIG_PATH

        save_path = Path(path).expanduser()
        save_path.parent.mkdir(parents=True, exist_ok=True)

        serial_data: dict[str, Any] = {"baud-rate": self.serial.baud_rate}
        if self.serial.port is not None:
            serial_data["port"] = self.serial.port
        if self.serial.usb_id is not None:
            serial_data["usb-id"] = self.serial.usb_id

        ble_data: dict[str, Any] = {"scan-timeout": self.ble.scan_timeout}
        if self.ble.address is not None:
            ble_data["address"] = self.ble.address
        if self.ble.name is not None:
            ble_data["name"] = self.ble.name

        socket_data: dict[str, Any] = {
            "open-timeout": self.socket.open_timeout,
            "binary-frames": self.socket.binary_frames,
        }
        if self.socket.url is not None:
            socket_data["url"] = self.socket.url

        data: dict[str, Any] = {
            "transport": self.transport.value,
            "serial": serial_data,
            "ble": ble_data,
            "socket": socket_data,
            "poll-period": self.poll_period,
        }

        if self.comm_log_file is not None:
            data["comm-log-file"] = self.comm_log_file

        with open(save_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False)
