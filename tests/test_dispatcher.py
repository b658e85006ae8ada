"""Tests for CommandDispatcher (no network, transport stubbed)."""

import asyncio
import logging
from unittest.mock import MagicMock, patch

import cbor2
import pytest

from pwtclient import codec
from pwtclient.commands import Connect, Disconnect, GetProfileList
from pwtclient.constants import CommandTag
from pwtclient.dispatcher import CommandDispatcher
from pwtclient.errors import (
    ApplicationError,
    CodecError,
    CommandTimeoutError,
    DaemonError,
    FrameError,
    MessageDecodeError,
    PacketError,
    ProtocolError,
    TransportError,
    TransportErrorKind,
)
from pwtclient.events import (
    ApplyTimerTick,
    BatteryStatusChanged,
    CommandFailed,
    Connected,
    DaemonPacketReceived,
    DaemonSettingsApplied,
    DaemonSettingsReceived,
    DeviceInfoReceived,
    Disconnected,
    LogMessage,
    ProfileApplied,
    ProfileDeleted,
    ProfileListReceived,
    ProfilesExported,
    ProfilesImported,
    ProfileWritten,
    ServiceError,
    SettingsApplied,
    WakeFromSleep,
)
from pwtclient.packets import ClientPacket, DaemonPacket, DeviceInfoPacket
from pwtclient.transport import ConnectionState

ADDR = "127.0.0.1"


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def _make_dispatcher(sink: list, *, connected: bool = True, **kwargs) -> CommandDispatcher:
    """Create a dispatcher with a fake socket, bypassing real connect."""
    d = CommandDispatcher(sink.append, **kwargs)
    d._address = ADDR
    d._port = 56000
    if connected:
        d.transport._state = ConnectionState.CONNECTED
        d.transport._transport = MagicMock()
        d.transport._transport.is_closing.return_value = True
    return d


def _written(d: CommandDispatcher) -> list:
    """Decode every frame written to the fake socket."""
    messages = []
    for call in d.transport._transport.write.call_args_list:
        buffer = bytearray(call[0][0])
        while buffer:
            messages.append(codec.try_extract(buffer))
    return messages


def _blob(*errors) -> bytes:
    return codec.pack_error_set(errors)


# ─────────────────────────────────────────────────────────────────────────────
# Outbound
# ─────────────────────────────────────────────────────────────────────────────


class TestSend:
    def test_send_writes_message_and_arms_timer(self, sink):
        async def main():
            d = _make_dispatcher(sink)
            d.send_get_profile_list()
            assert _written(d) == [[5]]
            assert d.timers.is_active(ADDR, CommandTag.GET_PROFILE_LIST)
            d.shutdown()

        _run(main())
        assert sink == []

    def test_write_profile_carries_name_and_packet(self, sink):
        packet = ClientPacket({"cpu.pl1": 28})

        async def main():
            d = _make_dispatcher(sink)
            d.send_write_profile("quiet", packet)
            assert _written(d) == [[7, "quiet", packet]]
            d.shutdown()

        _run(main())

    def test_import_profiles_packs_map(self, sink):
        async def main():
            d = _make_dispatcher(sink)
            d.send_import_profiles({"quiet": b"\x01"})
            (message,) = _written(d)
            assert message[0] == CommandTag.IMPORT_PROFILES
            assert codec.unpack_profiles(message[1]) == {"quiet": b"\x01"}
            d.shutdown()

        _run(main())

    def test_send_while_disconnected_fails_command(self, sink):
        async def main():
            d = _make_dispatcher(sink, connected=False)
            d.send_get_profile_list()
            assert d.timers.active_count == 0

        _run(main())
        assert sink == [
            LogMessage(f"[{ADDR}]: Failed to send cmd 5: not connected to daemon"),
            CommandFailed(CommandTag.GET_PROFILE_LIST),
        ]
        error = sink[1].error
        assert isinstance(error, TransportError)
        assert error.kind is TransportErrorKind.NOT_CONNECTED

    @pytest.mark.parametrize(
        "method,args,tag",
        [
            ("send_get_device_info", (), CommandTag.GET_DEVICE_INFO),
            ("send_get_daemon_packet", (), CommandTag.GET_DAEMON_PACKET),
            ("send_apply_settings", (ClientPacket(),), CommandTag.APPLY_CLIENT_SETTINGS),
            ("send_get_daemon_settings", (), CommandTag.GET_DAEMON_SETTINGS),
            ("send_apply_daemon_settings", (b"\x01",), CommandTag.APPLY_DAEMON_SETTINGS),
            ("send_get_profile_list", (), CommandTag.GET_PROFILE_LIST),
            ("send_delete_profile", ("p1",), CommandTag.DELETE_PROFILE),
            ("send_write_profile", ("p1", ClientPacket()), CommandTag.WRITE_PROFILE),
            ("send_load_profile", ("p1",), CommandTag.LOAD_PROFILE),
            ("send_apply_profile", ("p1",), CommandTag.APPLY_PROFILE),
            ("send_export_profiles", ("p1",), CommandTag.EXPORT_PROFILES),
            ("send_import_profiles", ({"p1": b""},), CommandTag.IMPORT_PROFILES),
        ],
    )
    def test_every_command_fails_while_disconnected(self, sink, method, args, tag):
        async def main():
            d = _make_dispatcher(sink, connected=False)
            getattr(d, method)(*args)
            assert d.timers.active_count == 0

        _run(main())
        assert [type(e) for e in sink] == [LogMessage, CommandFailed]
        assert sink[1].command == tag
        assert sink[1].error.kind is TransportErrorKind.NOT_CONNECTED

    def test_unpackable_import_fails_before_write(self, sink):
        async def main():
            d = _make_dispatcher(sink)
            d.send_import_profiles({"quiet": "not bytes"})
            d.transport._transport.write.assert_not_called()
            assert d.timers.active_count == 0

        _run(main())
        assert sink == [
            LogMessage(f"[{ADDR}]: Import profiles: failed to pack profiles data for send"),
            CommandFailed(CommandTag.IMPORT_PROFILES),
        ]
        assert isinstance(sink[1].error, CodecError)

    def test_non_bytes_daemon_settings_fail(self, sink):
        async def main():
            d = _make_dispatcher(sink)
            d.send_apply_daemon_settings("not bytes")
            d.transport._transport.write.assert_not_called()

        _run(main())
        assert sink[0] == LogMessage(f"[{ADDR}]: Failed to send cmd 4")
        assert sink[1] == CommandFailed(CommandTag.APPLY_DAEMON_SETTINGS)

    def test_unencodable_value_fails_command(self, sink):
        async def main():
            d = _make_dispatcher(sink)
            d.send_cmd(CommandTag.APPLY_CLIENT_SETTINGS, [CommandTag.APPLY_CLIENT_SETTINGS, object()])

        _run(main())
        assert sink[0] == LogMessage(f"[{ADDR}]: Failed to send cmd 2")
        assert isinstance(sink[1].error, CodecError)

    def test_trace_logs_outbound(self, sink, caplog):
        async def main():
            d = _make_dispatcher(sink, trace=True)
            d.send_get_device_info()
            d.shutdown()

        with caplog.at_level(logging.INFO, logger="pwtclient.dispatcher"):
            _run(main())
        assert "TRACE> GET_DEVICE_INFO" in caplog.text


# ─────────────────────────────────────────────────────────────────────────────
# Validation
# ─────────────────────────────────────────────────────────────────────────────


class TestValidate:
    @pytest.mark.parametrize(
        "values",
        [
            [CommandTag.GET_DEVICE_INFO],
            [CommandTag.COMMAND_FAILED],
            [CommandTag.GET_PROFILE_LIST, []],
            [CommandTag.LOAD_PROFILE, None, "quiet"],
            [99],
        ],
    )
    def test_valid(self, values):
        assert CommandDispatcher.validate(values) is None

    @pytest.mark.parametrize(
        "values",
        [
            [],
            ["5"],
            [True, 1],
            [CommandTag.PRINT_ERROR],
            [CommandTag.DELETE_PROFILE],
            [CommandTag.APPLY_PROFILE, b""],
            [CommandTag.BATTERY_STATUS_CHANGED, b""],
            [CommandTag.LOAD_PROFILE, None],
        ],
    )
    def test_invalid(self, values):
        assert CommandDispatcher.validate(values) is not None

    def test_short_message_fails_command(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.APPLY_PROFILE, b""])

        assert sink == [
            LogMessage(f"[{ADDR}]: Invalid message from daemon: APPLY_PROFILE needs 3 values, got 2"),
            CommandFailed(None),
        ]
        assert isinstance(sink[1].error, ProtocolError)

    def test_empty_message(self, sink):
        d = _make_dispatcher(sink)
        d.on_message([])
        assert sink == [LogMessage(f"[{ADDR}]: Failed to get data from daemon"), CommandFailed(None)]

    def test_undecodable_message(self, sink):
        d = _make_dispatcher(sink)
        d.on_bad_message(MessageDecodeError("bad"))
        assert sink == [LogMessage(f"[{ADDR}]: Failed to decode message from daemon"), CommandFailed(None)]

    def test_unknown_command_stops_its_timer(self, sink):
        async def main():
            d = _make_dispatcher(sink)
            d.timers.start(ADDR, 99)
            d.parse_cmd([99, "x"])
            assert not d.timers.is_active(ADDR, 99)

        _run(main())
        assert sink == [LogMessage(f"[{ADDR}]: unknown cmd 99"), CommandFailed(99)]


# ─────────────────────────────────────────────────────────────────────────────
# Inbound results
# ─────────────────────────────────────────────────────────────────────────────


class TestResults:
    def test_profile_list_stops_timer(self, sink):
        async def main():
            d = _make_dispatcher(sink)
            d.send_get_profile_list()
            d.on_message([CommandTag.GET_PROFILE_LIST, ["quiet", "turbo"]])
            assert d.timers.active_count == 0

        _run(main())
        assert sink == [ProfileListReceived(["quiet", "turbo"])]

    @pytest.mark.parametrize(
        "tag,event_type",
        [
            (CommandTag.DELETE_PROFILE, ProfileDeleted),
            (CommandTag.WRITE_PROFILE, ProfileWritten),
            (CommandTag.IMPORT_PROFILES, ProfilesImported),
            (CommandTag.APPLY_DAEMON_SETTINGS, DaemonSettingsApplied),
        ],
    )
    def test_bool_results(self, sink, tag, event_type):
        d = _make_dispatcher(sink)
        d.parse_cmd([tag, True])
        d.parse_cmd([tag, False])
        assert sink == [event_type(True), event_type(False)]

    def test_write_profile_round_trip(self, sink):
        async def main():
            d = _make_dispatcher(sink)
            d.send_write_profile("quiet", ClientPacket({"fan.mode": 1}))
            assert d.timers.is_active(ADDR, CommandTag.WRITE_PROFILE)
            d.parse_cmd([CommandTag.WRITE_PROFILE, True])
            assert not d.timers.is_active(ADDR, CommandTag.WRITE_PROFILE)

        _run(main())
        assert sink == [ProfileWritten(True)]

    def test_device_info(self, sink):
        packet = DeviceInfoPacket(features={"undervolt": True})
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.GET_DEVICE_INFO, packet])
        assert sink == [DeviceInfoReceived(packet)]

    def test_device_info_missing_packet(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.GET_DEVICE_INFO])
        assert sink == [
            LogMessage(f"[{ADDR}]: Unable to unpack device info packet"),
            CommandFailed(CommandTag.GET_DEVICE_INFO),
        ]

    def test_device_info_embedded_error(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.GET_DEVICE_INFO, DeviceInfoPacket(error=PacketError.UNSUPPORTED_CPU)])
        assert sink == [LogMessage("Unsupported CPU"), CommandFailed(CommandTag.GET_DEVICE_INFO)]
        assert sink[1].error.packet_error is PacketError.UNSUPPORTED_CPU

    def test_daemon_packet(self, sink):
        packet = DaemonPacket(settings={"cpu.pl1": 15})
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.GET_DAEMON_PACKET, packet])
        assert sink == [DaemonPacketReceived(packet)]

    def test_daemon_packet_wrong_type(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.GET_DAEMON_PACKET, {"error": 0}])
        assert sink[0] == LogMessage(f"[{ADDR}]: Unable to unpack daemon packet")

    def test_daemon_settings(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.GET_DAEMON_SETTINGS, b"\x01\x02"])
        assert sink == [DaemonSettingsReceived(b"\x01\x02")]

    def test_daemon_settings_empty(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.GET_DAEMON_SETTINGS, b""])
        assert sink == [
            LogMessage(f"[{ADDR}]: Unable to get daemon settings"),
            CommandFailed(CommandTag.GET_DAEMON_SETTINGS),
        ]

    def test_settings_applied_with_errors(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.APPLY_CLIENT_SETTINGS, _blob(DaemonError.FAN_MODE, DaemonError.GPU_CLOCKS)])
        assert sink == [SettingsApplied(frozenset({DaemonError.FAN_MODE, DaemonError.GPU_CLOCKS}))]

    def test_settings_applied_bad_blob(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.APPLY_CLIENT_SETTINGS, cbor2.dumps("nope")])
        assert sink == [
            LogMessage(f"[{ADDR}]: Unable to get apply settings result"),
            CommandFailed(CommandTag.APPLY_CLIENT_SETTINGS),
        ]

    def test_profile_applied(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.APPLY_PROFILE, _blob(), "quiet"])
        assert sink == [ProfileApplied(frozenset(), "quiet")]

    def test_load_profile(self, sink):
        packet = DaemonPacket(settings={"fan.mode": 2})
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.LOAD_PROFILE, packet, "quiet"])
        assert sink == [LogMessage("Loaded profile: quiet"), DaemonPacketReceived(packet)]

    def test_export_profiles(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.EXPORT_PROFILES, codec.pack_profiles({"quiet": b"\x01"})])
        assert sink == [ProfilesExported({"quiet": b"\x01"})]

    def test_export_profiles_bad_blob(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.EXPORT_PROFILES, b""])
        assert sink == [
            LogMessage(f"[{ADDR}]: Failed to get exported profiles data"),
            CommandFailed(CommandTag.EXPORT_PROFILES),
        ]


class TestDaemonPushes:
    def test_battery_status_changed(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.BATTERY_STATUS_CHANGED, _blob(DaemonError.CPU_UNDERVOLT), "battery"])
        assert sink == [BatteryStatusChanged(frozenset({DaemonError.CPU_UNDERVOLT}), "battery")]

    def test_wake_from_sleep(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.WAKE_FROM_SLEEP, _blob()])
        assert sink == [WakeFromSleep(frozenset())]

    def test_apply_timer_tick(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.APPLY_TIMER_TICK, _blob()])
        assert sink == [ApplyTimerTick(frozenset())]

    def test_push_bad_blob(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.WAKE_FROM_SLEEP, b""])
        assert sink[0] == LogMessage(f"[{ADDR}]: Unable to get wake from sleep event result")


class TestDaemonFailures:
    def test_command_failed_stops_timer_silently(self, sink):
        async def main():
            d = _make_dispatcher(sink)
            d.send_delete_profile("quiet")
            d.parse_cmd([CommandTag.COMMAND_FAILED, CommandTag.DELETE_PROFILE])
            assert d.timers.active_count == 0

        _run(main())
        assert sink == []

    def test_command_failed_without_tag(self, sink):
        async def main():
            d = _make_dispatcher(sink)
            d.send_delete_profile("quiet")
            d.parse_cmd([CommandTag.COMMAND_FAILED])
            assert d.timers.is_active(ADDR, CommandTag.DELETE_PROFILE)
            d.shutdown()

        _run(main())
        assert sink == []

    def test_print_error(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.PRINT_ERROR, DaemonError.PROFILE_NOT_FOUND])
        assert sink == [LogMessage(f"[{ADDR}]: Profile not found"), CommandFailed(None)]
        assert sink[1].command is None
        assert isinstance(sink[1].error, ApplicationError)

    def test_print_error_unknown_code(self, sink):
        d = _make_dispatcher(sink)
        d.parse_cmd([CommandTag.PRINT_ERROR, 999])
        assert sink[0] == LogMessage(f"[{ADDR}]: Unknown error (999)")


# ─────────────────────────────────────────────────────────────────────────────
# Timeouts
# ─────────────────────────────────────────────────────────────────────────────


class TestTimeouts:
    def test_unanswered_request_times_out(self, sink):
        async def main():
            d = _make_dispatcher(sink, request_timeout=0.05)
            d.send_get_device_info()
            await asyncio.sleep(0.2)

        _run(main())
        assert sink == [
            LogMessage(f"[{ADDR}]: request timeout for command: 0"),
            CommandFailed(CommandTag.GET_DEVICE_INFO),
        ]
        error = sink[1].error
        assert isinstance(error, CommandTimeoutError)
        assert error.timeout == 0.05

    def test_expired_slot_is_reused(self, sink):
        async def main():
            d = _make_dispatcher(sink, request_timeout=0.05)
            d.send_get_device_info()
            await asyncio.sleep(0.2)
            assert d.timers.active_count == 0

            d.send_get_daemon_packet()
            assert d.timers.size == 1
            assert d.timers.is_active(ADDR, CommandTag.GET_DAEMON_PACKET)
            d.shutdown()

        _run(main())
        assert len([e for e in sink if isinstance(e, CommandFailed)]) == 1

    def test_answered_request_does_not_time_out(self, sink):
        async def main():
            d = _make_dispatcher(sink, request_timeout=0.05)
            d.send_delete_profile("quiet")
            d.parse_cmd([CommandTag.DELETE_PROFILE, True])
            await asyncio.sleep(0.2)

        _run(main())
        assert sink == [ProfileDeleted(True)]

    def test_disconnect_silences_pending_requests(self, sink):
        async def main():
            d = _make_dispatcher(sink, request_timeout=0.05)
            d.send_get_profile_list()
            d.send_export_profiles("quiet")
            d.disconnect()
            await asyncio.sleep(0.2)

        _run(main())
        assert sink == [Disconnected()]


# ─────────────────────────────────────────────────────────────────────────────
# Connection lifecycle
# ─────────────────────────────────────────────────────────────────────────────


class TestLifecycle:
    def test_on_connected(self, sink):
        d = _make_dispatcher(sink)
        d.on_connected()
        assert sink == [Connected(ADDR, 56000)]

    def test_disconnect_clears_address(self, sink):
        d = _make_dispatcher(sink)
        d.disconnect()
        assert d.address == ""
        assert d.port is None
        assert d.state is ConnectionState.DISCONNECTED
        assert sink == [Disconnected()]

    def test_disconnect_reports_incomplete_close(self, sink):
        d = _make_dispatcher(sink)
        d.transport._transport.is_closing.return_value = False
        d.disconnect()
        assert sink == [LogMessage("Failed to close daemon socket"), Disconnected()]

    def test_connect_tears_down_first(self, sink):
        d = _make_dispatcher(sink)
        old_socket = d.transport._transport
        with patch.object(d.transport, "connect") as connect:
            d.connect("10.0.0.5", 56001)
        old_socket.abort.assert_called_once()
        connect.assert_called_once_with("10.0.0.5", 56001)
        assert d.address == "10.0.0.5"
        assert d.port == 56001
        assert sink == []

    def test_connect_to_unresolvable_name_fails(self, sink):
        host = "a" * 70 + ".local"

        async def main():
            d = _make_dispatcher(sink, connected=False)
            d.connect(host, 56000)
            for _ in range(200):
                if sink:
                    break
                await asyncio.sleep(0.01)
            assert d.state is ConnectionState.DISCONNECTED

        _run(main())
        assert sink == [LogMessage(f"[{host}]: Host not found"), ServiceError()]
        assert sink[1].error.kind is TransportErrorKind.HOST_NOT_FOUND

    @pytest.mark.parametrize(
        "kind,text",
        [
            (TransportErrorKind.REMOTE_CLOSED, f"[{ADDR}]: Remote host connection closed"),
            (TransportErrorKind.HOST_NOT_FOUND, f"[{ADDR}]: Host not found"),
            (
                TransportErrorKind.CONNECTION_REFUSED,
                f"[{ADDR}]: Connection refused, make sure server is running at given address and port",
            ),
            (
                TransportErrorKind.RESOURCE_EXHAUSTED,
                "No more available sockets in your system, please retry later or manually close some of them",
            ),
            (TransportErrorKind.OTHER, f"[{ADDR}]: boom"),
        ],
    )
    def test_connection_error_texts(self, sink, kind, text):
        d = _make_dispatcher(sink)
        d.on_connection_error(TransportError(kind, "boom"))
        assert sink == [LogMessage(text), ServiceError()]
        assert sink[1].error.kind is kind
        assert d.address == ""
        assert d.state is ConnectionState.DISCONNECTED

    def test_frame_error_is_service_error(self, sink):
        d = _make_dispatcher(sink)
        d.on_connection_error(FrameError("Invalid frame length: 0"))
        assert sink == [LogMessage(f"[{ADDR}]: Invalid frame length: 0"), ServiceError()]

    def test_connection_error_stops_timers(self, sink):
        async def main():
            d = _make_dispatcher(sink, request_timeout=0.05)
            d.send_get_profile_list()
            d.on_connection_error(TransportError(TransportErrorKind.REMOTE_CLOSED))
            assert d.timers.active_count == 0
            await asyncio.sleep(0.2)

        _run(main())
        assert [type(e) for e in sink] == [LogMessage, ServiceError]


class TestHandle:
    def test_connect_request(self, sink):
        d = _make_dispatcher(sink)
        with patch.object(d, "connect") as connect:
            d.handle(Connect("10.0.0.5", 56000))
        connect.assert_called_once_with("10.0.0.5", 56000)

    def test_disconnect_request(self, sink):
        d = _make_dispatcher(sink)
        d.handle(Disconnect())
        assert sink == [Disconnected()]

    def test_command_request(self, sink):
        async def main():
            d = _make_dispatcher(sink)
            d.handle(GetProfileList())
            assert _written(d) == [[5]]
            d.shutdown()

        _run(main())

    def test_unsupported_request(self, sink):
        d = _make_dispatcher(sink)
        with pytest.raises(TypeError):
            d.handle("bogus")

    def test_sink_exception_is_logged(self, caplog):
        def sink(event):
            raise RuntimeError("sink broke")

        d = CommandDispatcher(sink)
        with caplog.at_level(logging.WARNING, logger="pwtclient.dispatcher"):
            d.disconnect()
        assert "sink broke" in caplog.text
