"""
Socket Transport - WebSocket stream to a networked controller.

Network-enabled GRBL firmwares (FluidNC, ESP3D, grblHAL web builds) expose
the controller's serial stream over a WebSocket. Every incoming message is
one raw chunk of the stream; every write is one message.
"""

import asyncio

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from grbl_link.core.config import ConnectionConfig, TransportKind
from grbl_link.core.logging import get_logger
from grbl_link.core.utils import TransportOpenError, TransportWriteError
from grbl_link.transport.interface import Transport

logger = get_logger()


class SocketTransport(Transport):
    """Transport over a client WebSocket connection."""

    kind = TransportKind.SOCKET

    def __init__(self) -> None:
        super().__init__()
        self._ws: ClientConnection | None = None
        self._pump_task: asyncio.Task | None = None
        self._binary_frames = False
        self.url: str | None = None

    async def open(self, config: ConnectionConfig) -> None:
        """
        Connect to the configured endpoint and start receiving messages.

        Completes once the handshake succeeded; failure is reported once.

        Raises:
            TransportOpenError: If the URL is missing or invalid, the endpoint
                refuses the connection, or the handshake times out.
        """
        if not config.url:
            raise TransportOpenError("No WebSocket URL configured")

        self.url = config.url
        self._binary_frames = config.binary_frames

        try:
            self._ws = await connect(config.url, open_timeout=config.open_timeout / 1000)
        except (WebSocketException, OSError, asyncio.TimeoutError) as e:
            raise TransportOpenError(f"Failed to connect to {config.url}: {e}") from e

        self._open = True
        self._pump_task = asyncio.create_task(self._pump(self._ws))
        logger.info(f"Connected to {config.url}")

    async def _pump(self, ws: ClientConnection) -> None:
        """Forward every incoming message to the read queue until the socket closes."""
        reason = "WebSocket closed"
        try:
            async for message in ws:
                if isinstance(message, str):
                    message = message.encode("utf-8")
                self._feed(message)
            reason = "connection closed by peer"
        except ConnectionClosed as e:
            reason = f"connection closed: {e}"
        except Exception as e:
            logger.warning(f"WebSocket receive failed: {e}")
            reason = f"receive failed: {e}"
        finally:
            # The read loop only stops on the end-of-stream marker
            self._end_stream(reason)

    async def close(self) -> None:
        self._open = False

        pump_task, self._pump_task = self._pump_task, None
        if pump_task:
            pump_task.cancel()
            try:
                await pump_task
            except asyncio.CancelledError:
                pass

        ws, self._ws = self._ws, None
        if ws:
            try:
                await ws.close()
            except (WebSocketException, OSError) as e:
                logger.warning(f"Error closing WebSocket connection: {e}")
            logger.debug(f"WebSocket connection to {self.url} closed")

    async def write_frame(self, data: bytes) -> None:
        """
        Send bytes as one WebSocket message.

        Raises:
            TransportWriteError: If not connected or the send fails.
        """
        ws = self._ws
        if ws is None:
            raise TransportWriteError("WebSocket is not connected")

        try:
            await ws.send(data if self._binary_frames else data.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise TransportWriteError(f"Frame is not valid text: {e}") from e
        except (WebSocketException, OSError) as e:
            raise TransportWriteError(f"WebSocket send failed: {e}") from e

        logger.verbose(f"Raw WebSocket data sent: {data!r}")
