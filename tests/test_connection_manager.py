"""Tests for the ConnectionManager lifecycle, read loop and polling."""

import asyncio

import pytest

from grbl_link.core.config import ConnectionConfig, TransportKind
from grbl_link.core.connection_manager import ConnectionManager, ConnectionState
from grbl_link.core.event_log import EventLog, LogDirection
from grbl_link.core.utils import AlreadyConnectedError, TransportOpenError
from grbl_link.device.grbl_device_status import MachineState, Position, parse_status_line

from conftest import FakeTransport

STATUS_LINE = "<Idle|WPos:1.000,2.000,-0.500|FS:800,0>\n"


class TestConnect:
    """Tests for opening a session."""

    @pytest.mark.asyncio
    async def test_connect_opens_transport(self, manager, transport, serial_config):
        """Test that connect opens the transport with the given config."""
        assert manager.state is ConnectionState.DISCONNECTED

        await manager.connect(serial_config)

        assert manager.state is ConnectionState.CONNECTED
        assert manager.is_connected
        assert manager.connection_kind is TransportKind.SERIAL
        assert transport.open_config is serial_config
        assert transport.open_config.baud_rate == 115200

        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_connect_failure_leaves_no_session(self, serial_config):
        """Test that a failed open reports to the caller and changes nothing."""
        transport = FakeTransport(fail_open=True)
        manager = ConnectionManager(poll_period=10, transport_factory=lambda kind: transport)

        with pytest.raises(TransportOpenError, match="port busy"):
            await manager.connect(serial_config)

        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.connection_kind is None
        assert not manager.dispatcher.is_attached
        assert len(manager.event_log) == 0

        await asyncio.sleep(0.03)
        assert transport.writes == []

    @pytest.mark.asyncio
    async def test_connect_while_connected_is_rejected(self, manager, transport, serial_config):
        """Test that a second connect raises instead of replacing the session."""
        await manager.connect(serial_config)

        with pytest.raises(AlreadyConnectedError):
            await manager.connect(serial_config)

        assert manager.is_connected
        assert transport.open_count == 1

        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_connect_validates_config(self, transport):
        """Test that an incomplete config is rejected before any transport is built."""
        created = []

        def factory(kind):
            created.append(kind)
            return transport

        manager = ConnectionManager(poll_period=0, transport_factory=factory)

        with pytest.raises(ValueError, match="URL"):
            await manager.connect(ConnectionConfig(kind=TransportKind.SOCKET))

        assert created == []
        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_factory_receives_configured_kind(self, transport):
        """Test that the transport is selected from the configured kind."""
        created = []

        def factory(kind):
            created.append(kind)
            return transport

        manager = ConnectionManager(poll_period=0, transport_factory=factory)
        await manager.connect(ConnectionConfig(kind=TransportKind.SOCKET, url="ws://cnc.local/ws"))

        assert created == [TransportKind.SOCKET]
        assert manager.connection_kind is TransportKind.SOCKET

        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_machine_state_reset_at_session_start(self, manager, transport, serial_config):
        """Test that each session starts from the default machine state."""
        manager.store.apply_delta(parse_status_line("<Alarm|MPos:1,2,3>"))
        assert manager.machine_state.status == "Alarm"

        await manager.connect(serial_config)
        assert manager.machine_state == MachineState()
        await manager.disconnect()


class TestReadLoop:
    """Tests for routing incoming lines."""

    @pytest.mark.asyncio
    async def test_status_report_updates_machine_state(self, manager, transport, serial_config, settled):
        """Test the end-to-end path from a status line to the snapshot."""
        await manager.connect(serial_config)

        transport.receive(STATUS_LINE)
        await settled()

        state = manager.machine_state
        assert state.status == "Idle"
        assert state.work_position == Position(1.0, 2.0, -0.5)
        assert state.feed_rate == 800
        assert state.spindle_speed == 0
        assert len(manager.event_log) == 0

        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_line_split_across_chunks(self, manager, transport, serial_config, settled):
        """Test that a line is only handled once its terminator arrives."""
        await manager.connect(serial_config)

        transport.receive("<Run|WPos:5.0")
        await settled()
        assert manager.machine_state.status == "Unknown"

        transport.receive("00,0.000,0.000|FS:1200,10000>\r\n")
        await settled()
        assert manager.machine_state.status == "Run"
        assert manager.machine_state.work_position == Position(5.0, 0.0, 0.0)
        assert manager.machine_state.spindle_speed == 10000

        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_multibyte_character_split_across_chunks(self, manager, transport, serial_config, settled):
        """Test that UTF-8 sequences split between chunks decode correctly."""
        await manager.connect(serial_config)

        encoded = "[MSG:Température]\n".encode("utf-8")
        split = encoded.index(b"\xc3") + 1
        transport.receive(encoded[:split])
        transport.receive(encoded[split:])
        await settled()

        assert manager.event_log.snapshot()[-1].text == "[MSG:Température]"

        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_other_lines_go_to_event_log(self, manager, transport, serial_config, settled):
        """Test that acknowledgements, alarms and banners are logged as received."""
        await manager.connect(serial_config)

        transport.receive("Grbl 1.1h ['$' for help]\nok\n\nALARM:1\n")
        await settled()

        entries = manager.event_log.snapshot()
        assert [e.text for e in entries] == ["Grbl 1.1h ['$' for help]", "ok", "ALARM:1"]
        assert all(e.direction is LogDirection.RECEIVED for e in entries)

        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_unterminated_envelope_is_logged(self, manager, transport, serial_config, settled):
        """Test that a line missing the closing bracket is treated as plain text."""
        await manager.connect(serial_config)

        transport.receive("<Idle|WPos:1.000,2.000,3.000\n")
        await settled()

        assert manager.machine_state == MachineState()
        assert manager.event_log.snapshot()[-1].text == "<Idle|WPos:1.000,2.000,3.000"

        await manager.disconnect()


class TestCommands:
    """Tests for sending commands and soft reset."""

    @pytest.mark.asyncio
    async def test_send_command_writes_line_and_logs(self, manager, transport, serial_config):
        """Test that an ordinary command is newline terminated and logged as sent."""
        await manager.connect(serial_config)

        assert await manager.send_command("$H") is True

        assert transport.writes == [b"$H\n"]
        last = manager.event_log.snapshot()[-1]
        assert last.direction is LogDirection.SENT
        assert last.text == "$H"

        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_reset_sends_single_byte(self, manager, transport, serial_config):
        """Test that reset writes exactly 0x18 with no terminator."""
        await manager.connect(serial_config)

        assert await manager.reset() is True

        assert transport.writes == [b"\x18"]
        entries = manager.event_log.snapshot()
        assert len(entries) == 1
        assert entries[0].direction is LogDirection.ERROR
        assert entries[0].text == "Soft reset sent"
        assert manager.is_connected

        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_send_while_disconnected_reports_failure(self, manager, transport):
        """Test that sending without a session returns False and does nothing."""
        assert await manager.send_command("G0 X10") is False
        assert await manager.reset() is False
        assert transport.writes == []
        assert len(manager.event_log) == 0

    @pytest.mark.asyncio
    async def test_write_failure_keeps_connection(self, serial_config):
        """Test that a rejected write is logged and the session stays up."""
        transport = FakeTransport(fail_write=True)
        manager = ConnectionManager(poll_period=0, transport_factory=lambda kind: transport)
        await manager.connect(serial_config)

        assert await manager.send_command("G0 X1") is False

        last = manager.event_log.snapshot()[-1]
        assert last.direction is LogDirection.ERROR
        assert last.text == "Failed to send: G0 X1"
        assert manager.is_connected

        await manager.disconnect()


class TestPolling:
    """Tests for the periodic status query."""

    @pytest.mark.asyncio
    async def test_polls_are_sent_and_not_logged(self, transport, serial_config):
        """Test that `?` is written repeatedly without event log entries."""
        manager = ConnectionManager(poll_period=10, transport_factory=lambda kind: transport)
        await manager.connect(serial_config)

        await asyncio.sleep(0.05)
        await manager.disconnect()

        assert len(transport.writes) >= 2
        assert set(transport.writes) == {b"?"}
        assert len(manager.event_log) == 0

    @pytest.mark.asyncio
    async def test_first_poll_is_immediate(self, transport, serial_config, settled):
        """Test that a status query goes out as soon as the session starts."""
        manager = ConnectionManager(poll_period=60000, transport_factory=lambda kind: transport)
        await manager.connect(serial_config)
        await settled()

        assert transport.writes == [b"?"]

        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_no_polls_after_disconnect(self, transport, serial_config):
        """Test that the poll timer stops with the session."""
        manager = ConnectionManager(poll_period=10, transport_factory=lambda kind: transport)
        await manager.connect(serial_config)
        await asyncio.sleep(0.03)
        await manager.disconnect()

        count = len(transport.writes)
        await asyncio.sleep(0.05)
        assert len(transport.writes) == count


class TestDisconnect:
    """Tests for explicit and implicit teardown."""

    @pytest.mark.asyncio
    async def test_disconnect_clears_session(self, manager, transport, serial_config, settled):
        """Test that disconnect closes the transport and clears the machine state."""
        await manager.connect(serial_config)
        transport.receive(STATUS_LINE)
        await settled()
        assert manager.machine_state.status == "Idle"

        await manager.disconnect()

        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.connection_kind is None
        assert transport.closed
        assert manager.machine_state == MachineState()

    @pytest.mark.asyncio
    async def test_data_after_disconnect_has_no_effect(self, manager, transport, serial_config, settled):
        """Test that incoming data after disconnect changes nothing."""
        await manager.connect(serial_config)
        await manager.disconnect()
        log_size = len(manager.event_log)

        transport.receive(STATUS_LINE)
        transport.receive("ok\n")
        await settled()

        assert manager.machine_state == MachineState()
        assert len(manager.event_log) == log_size

    @pytest.mark.asyncio
    async def test_dispatcher_detached_before_transport_close(self, manager, transport, serial_config):
        """Test that nothing can write to the transport while it closes."""
        attached_at_close = []
        transport.on_close = lambda: attached_at_close.append(manager.dispatcher.is_attached)

        await manager.connect(serial_config)
        await manager.disconnect()

        assert attached_at_close == [False]

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, manager, transport, serial_config):
        """Test that disconnecting twice, or without a session, is harmless."""
        await manager.disconnect()

        await manager.connect(serial_config)
        await manager.disconnect()
        await manager.disconnect()

        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_stream_end_is_implicit_disconnect(self, manager, transport, serial_config, settled):
        """Test that losing the medium tears the session down and logs an error."""
        await manager.connect(serial_config)
        transport.receive(STATUS_LINE)
        await settled()

        transport.drop("device unplugged")
        await asyncio.wait_for(manager.wait_disconnected(), timeout=1)

        assert manager.state is ConnectionState.DISCONNECTED
        assert transport.closed
        assert manager.machine_state == MachineState()
        last = manager.event_log.snapshot()[-1]
        assert last.direction is LogDirection.ERROR
        assert last.text == "Connection lost: device unplugged"

    @pytest.mark.asyncio
    async def test_reconnect_after_disconnect(self, manager, transport, serial_config):
        """Test that a new session can start once the previous one is gone."""
        await manager.connect(serial_config)
        await manager.disconnect()
        await manager.connect(serial_config)

        assert manager.is_connected
        assert transport.open_count == 2

        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_event_log_survives_disconnect(self, transport, serial_config):
        """Test that the event log is shared and kept across sessions."""
        event_log = EventLog()
        manager = ConnectionManager(
            poll_period=0, event_log=event_log, transport_factory=lambda kind: transport
        )
        await manager.connect(serial_config)
        await manager.send_command("$X")
        await manager.disconnect()

        assert manager.event_log is event_log
        assert [e.text for e in event_log.snapshot()] == ["$X"]

    @pytest.mark.asyncio
    async def test_context_manager_disconnects(self, manager, transport, serial_config):
        """Test that leaving the async context ends the session."""
        async with manager:
            await manager.connect(serial_config)
            assert manager.is_connected

        assert manager.state is ConnectionState.DISCONNECTED
        assert transport.closed

    @pytest.mark.asyncio
    async def test_poll_stops_before_read_loop(self, transport, serial_config, settled):
        """Test that teardown cancels the poll task before the read task."""
        manager = ConnectionManager(poll_period=10, transport_factory=lambda kind: transport)
        await manager.connect(serial_config)
        session = manager._session
        finished = []
        session.poll_task.add_done_callback(lambda task: finished.append("poll"))
        session.read_task.add_done_callback(lambda task: finished.append("read"))
        poll_task, read_task = session.poll_task, session.read_task

        await manager.disconnect()
        await settled()

        assert finished == ["poll", "read"]
        assert poll_task.cancelled()
        assert read_task.cancelled()


class SlowCloseTransport(FakeTransport):
    """Transport whose close() blocks until released."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def close(self) -> None:
        await self.release.wait()
        await super().close()


class TestConcurrentTeardown:
    """Tests for disconnect() racing a teardown already in progress."""

    @pytest.mark.asyncio
    async def test_disconnect_waits_for_stream_end_teardown(self, serial_config, settled):
        """Test that disconnect returns only once the lost session is fully closed."""
        transport = SlowCloseTransport()
        manager = ConnectionManager(poll_period=0, transport_factory=lambda kind: transport)
        await manager.connect(serial_config)

        transport.drop("device unplugged")
        await settled()
        assert manager.state is ConnectionState.CONNECTED

        disconnecting = asyncio.create_task(manager.disconnect())
        await settled()
        assert not disconnecting.done()

        transport.release.set()
        await asyncio.wait_for(disconnecting, timeout=1)

        assert manager.state is ConnectionState.DISCONNECTED
        assert transport.closed

    @pytest.mark.asyncio
    async def test_connect_right_after_disconnect(self, serial_config, settled):
        """Test that a new session can start as soon as disconnect returns."""
        lost, replacement = SlowCloseTransport(), FakeTransport()
        transports = iter([lost, replacement])
        manager = ConnectionManager(poll_period=0, transport_factory=lambda kind: next(transports))
        await manager.connect(serial_config)

        lost.drop("device unplugged")
        await settled()
        disconnecting = asyncio.create_task(manager.disconnect())
        await settled()
        lost.release.set()
        await asyncio.wait_for(disconnecting, timeout=1)

        await manager.connect(serial_config)

        assert manager.is_connected
        assert replacement.open_count == 1
        await manager.disconnect()
