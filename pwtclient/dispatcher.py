"""
Command dispatch and request/response correlation.

CommandDispatcher is the protocol engine behind ClientService. It runs
entirely on one event loop:

- outbound: encode a request, write it, arm the (address, command) timer
- inbound: validate each message against its tag, decode the payload,
  stop the matching timer and emit one notification
- lifecycle: connect / disconnect / transport faults, each leaving the
  connection in a well-defined state with every timer stopped

Failures never propagate to the caller. Each is logged and turned into one
notification: a typed result where the daemon sent one, CommandFailed for
request-level failures, ServiceError for connection-level failures.

Example (inside a running loop):
    dispatcher = CommandDispatcher(events.append)
    dispatcher.connect("127.0.0.1", 56000)
    ...
    dispatcher.send_get_profile_list()
"""

import logging
from typing import Any, Callable, Optional

from . import codec
from .commands import (
    ApplyDaemonSettings,
    ApplyProfile,
    ApplySettings,
    CommandRequest,
    Connect,
    DeleteProfile,
    Disconnect,
    ExportProfiles,
    GetDaemonPacket,
    GetDaemonSettings,
    GetDeviceInfo,
    GetProfileList,
    ImportProfiles,
    LoadProfile,
    WriteProfile,
)
from .constants import (
    DEFAULT_CONNECT_TIMEOUT,
    MIN_MESSAGE_LENGTH,
    REQUEST_TIMEOUT,
    CommandTag,
)
from .errors import (
    ApplicationError,
    CodecError,
    CommandTimeoutError,
    MessageDecodeError,
    PacketError,
    ProtocolError,
    PwtClientError,
    TransportError,
    TransportErrorKind,
    daemon_error_message,
    packet_error_message,
)
from .events import (
    ApplyTimerTick,
    BatteryStatusChanged,
    CommandFailed,
    Connected,
    DaemonPacketReceived,
    DaemonSettingsApplied,
    DaemonSettingsReceived,
    DeviceInfoReceived,
    Disconnected,
    Event,
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
from .packets import ClientPacket, DaemonPacket, DeviceInfoPacket
from .timers import RequestTimerPool
from .transport import ConnectionState, TransportConnection

logger = logging.getLogger(__name__)

EventSink = Callable[[Event], None]

_TRANSPORT_MESSAGES = {
    TransportErrorKind.REMOTE_CLOSED: "Remote host connection closed",
    TransportErrorKind.HOST_NOT_FOUND: "Host not found",
    TransportErrorKind.CONNECTION_REFUSED: (
        "Connection refused, make sure server is running at given address and port"
    ),
}

_RESOURCE_EXHAUSTED_MESSAGE = (
    "No more available sockets in your system, please retry later or manually close some of them"
)


def _command_name(value: Any) -> str:
    try:
        return CommandTag(value).name
    except (ValueError, TypeError):
        return f"?{value}"


class CommandDispatcher:
    """Protocol engine for one daemon connection at a time."""

    def __init__(
        self,
        emit: EventSink,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        request_timeout: float = REQUEST_TIMEOUT,
        trace: bool = False,
    ):
        self._sink = emit
        self._trace = trace
        self._address = ""
        self._port: Optional[int] = None

        self._transport = TransportConnection(self, connect_timeout=connect_timeout)
        self._timers = RequestTimerPool(self._on_command_timeout, timeout=request_timeout)

        self._handlers: dict[CommandTag, Callable[[CommandTag, list], None]] = {
            CommandTag.COMMAND_FAILED: self._on_command_failed,
            CommandTag.PRINT_ERROR: self._on_print_error,
            CommandTag.GET_DEVICE_INFO: self._on_device_info,
            CommandTag.GET_DAEMON_PACKET: self._on_daemon_packet,
            CommandTag.GET_DAEMON_SETTINGS: self._on_daemon_settings,
            CommandTag.APPLY_CLIENT_SETTINGS: self._on_settings_applied,
            CommandTag.APPLY_PROFILE: self._on_profile_applied,
            CommandTag.BATTERY_STATUS_CHANGED: self._on_battery_status_changed,
            CommandTag.WAKE_FROM_SLEEP: self._on_wake_from_sleep,
            CommandTag.APPLY_TIMER_TICK: self._on_apply_timer_tick,
            CommandTag.DELETE_PROFILE: self._on_result,
            CommandTag.WRITE_PROFILE: self._on_result,
            CommandTag.IMPORT_PROFILES: self._on_result,
            CommandTag.APPLY_DAEMON_SETTINGS: self._on_result,
            CommandTag.GET_PROFILE_LIST: self._on_profile_list,
            CommandTag.LOAD_PROFILE: self._on_profile_loaded,
            CommandTag.EXPORT_PROFILES: self._on_profiles_exported,
        }

    @property
    def state(self) -> ConnectionState:
        return self._transport.state

    @property
    def connected(self) -> bool:
        return self._transport.connected

    @property
    def address(self) -> str:
        return self._address

    @property
    def port(self) -> Optional[int]:
        return self._port

    @property
    def timers(self) -> RequestTimerPool:
        return self._timers

    @property
    def transport(self) -> TransportConnection:
        return self._transport

    # ------------------------------------------------------------------
    # Notification helpers
    # ------------------------------------------------------------------

    def _emit(self, event: Event):
        try:
            self._sink(event)
        except Exception as e:
            logger.warning(f"Event sink exception: {e}")

    def _error_msg(self, msg: str) -> str:
        return f"[{self._address}]: {msg}"

    def _log(self, text: str, level: int = logging.WARNING):
        logger.log(level, text)
        self._emit(LogMessage(text))

    def _fail_command(self, text: str, command: Optional[int] = None, error: Optional[PwtClientError] = None):
        self._log(text)
        self._emit(CommandFailed(command, error))

    def _trace_message(self, direction: str, values: list):
        if self._trace:
            name = _command_name(values[0]) if values else "EMPTY"
            logger.info(f"TRACE{direction} {name} values={len(values)}")

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def handle(self, request):
        """Run one request posted by the caller."""
        if isinstance(request, Connect):
            self.connect(request.address, request.port)
        elif isinstance(request, Disconnect):
            self.disconnect()
        elif isinstance(request, CommandRequest):
            self._send_request(request)
        else:
            raise TypeError(f"Unsupported request: {request!r}")

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self, address: str, port: int):
        """Drop any current connection and connect to address:port."""
        self._abort_socket()

        self._address = address
        self._port = port
        logger.info(f"Connecting to daemon at {address}:{port}")
        self._transport.connect(address, port)

    def disconnect(self):
        """Close the connection. Pending requests are dropped silently."""
        if not self._abort_socket():
            self._log("Failed to close daemon socket")

        self._clear_address()
        self._emit(Disconnected())

    def shutdown(self):
        """Abort everything without notifications (owner teardown)."""
        self._abort_socket()
        self._clear_address()

    def _abort_socket(self) -> bool:
        self._timers.stop_all()
        return self._transport.abort()

    def _clear_address(self):
        self._address = ""
        self._port = None

    # TransportListener

    def on_connected(self):
        logger.info(f"Connected to daemon at {self._address}:{self._port}")
        self._emit(Connected(self._address, self._port))

    def on_connection_error(self, error: PwtClientError):
        self._log(self._describe_connection_error(error))

        if not self._abort_socket():
            self._log(self._error_msg("Failed to close connection on error"))

        self._clear_address()
        self._emit(ServiceError(error))

    def on_message(self, values: list):
        self._trace_message("<", values)

        if not values:
            self._fail_command(
                self._error_msg("Failed to get data from daemon"),
                error=ProtocolError("empty message"),
            )
            return

        self.parse_cmd(values)

    def on_bad_message(self, error: MessageDecodeError):
        logger.debug(f"Undecodable message: {error}")
        self._fail_command(self._error_msg("Failed to decode message from daemon"), error=error)

    def _describe_connection_error(self, error: PwtClientError) -> str:
        if isinstance(error, TransportError):
            if error.kind is TransportErrorKind.RESOURCE_EXHAUSTED:
                return _RESOURCE_EXHAUSTED_MESSAGE
            text = _TRANSPORT_MESSAGES.get(error.kind)
            if text is not None:
                return self._error_msg(text)
        return self._error_msg(str(error))

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send_cmd(self, cmd: int, args: list):
        """Encode and write one message, then arm its timeout.

        ``args`` starts with the command tag itself.
        """
        try:
            data = codec.encode_message(args)
        except CodecError as e:
            logger.debug(f"Encoding {_command_name(cmd)} failed: {e}")
            self._fail_command(self._error_msg(f"Failed to send cmd {int(cmd)}"), cmd, e)
            return

        try:
            self._transport.write(data)
        except TransportError as e:
            self._fail_command(self._error_msg(f"Failed to send cmd {int(cmd)}: {e}"), cmd, e)
            return

        self._trace_message(">", args)
        self._timers.start(self._address, cmd)

    def _send_request(self, request: CommandRequest):
        try:
            args = request.args()
        except CodecError as e:
            if isinstance(request, ImportProfiles):
                text = "Import profiles: failed to pack profiles data for send"
            else:
                text = f"Failed to send cmd {int(request.command)}"
            self._fail_command(self._error_msg(text), request.command, e)
            return

        self.send_cmd(request.command, args)

    def send_get_device_info(self):
        self._send_request(GetDeviceInfo())

    def send_get_daemon_packet(self):
        self._send_request(GetDaemonPacket())

    def send_apply_settings(self, packet: ClientPacket):
        self._send_request(ApplySettings(packet))

    def send_get_daemon_settings(self):
        self._send_request(GetDaemonSettings())

    def send_apply_daemon_settings(self, data: bytes):
        self._send_request(ApplyDaemonSettings(data))

    def send_get_profile_list(self):
        self._send_request(GetProfileList())

    def send_delete_profile(self, name: str):
        self._send_request(DeleteProfile(name))

    def send_write_profile(self, name: str, packet: ClientPacket):
        self._send_request(WriteProfile(name, packet))

    def send_load_profile(self, name: str):
        self._send_request(LoadProfile(name))

    def send_apply_profile(self, name: str):
        self._send_request(ApplyProfile(name))

    def send_export_profiles(self, name: str):
        self._send_request(ExportProfiles(name))

    def send_import_profiles(self, profiles: dict[str, bytes]):
        self._send_request(ImportProfiles(profiles))

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    @staticmethod
    def validate(values: list) -> Optional[str]:
        """Return why a message is unusable, or None if it may be parsed."""
        if not values:
            return "message is empty"

        tag = values[0]
        if isinstance(tag, bool) or not isinstance(tag, int):
            return f"command tag must be an integer, got {tag!r}"

        try:
            cmd = CommandTag(tag)
        except ValueError:
            return None

        need = MIN_MESSAGE_LENGTH.get(cmd, 1)
        if len(values) < need:
            return f"{cmd.name} needs {need} values, got {len(values)}"
        return None

    def parse_cmd(self, values: list):
        """Validate one inbound message and emit its notification."""
        problem = self.validate(values)
        if problem is not None:
            self._fail_command(
                self._error_msg(f"Invalid message from daemon: {problem}"),
                error=ProtocolError(problem),
            )
            return

        raw = values[0]
        try:
            cmd = CommandTag(raw)
        except ValueError:
            self._timers.stop_for(self._address, raw)
            self._fail_command(self._error_msg(f"unknown cmd {raw}"), raw, ProtocolError(f"unknown command {raw}"))
            return

        self._handlers[cmd](cmd, values)

    def _stop_timer(self, cmd: int):
        self._timers.stop_for(self._address, cmd)

    def _on_command_failed(self, cmd: CommandTag, values: list):
        failed = values[1] if len(values) > 1 else None
        if isinstance(failed, int) and not isinstance(failed, bool):
            logger.debug(f"Daemon could not run {_command_name(failed)}")
            self._stop_timer(failed)
        else:
            logger.debug(f"Daemon command failure without command tag: {failed!r}")

    def _on_print_error(self, cmd: CommandTag, values: list):
        code = values[1]
        if isinstance(code, int) and not isinstance(code, bool):
            text = daemon_error_message(code)
        else:
            text = f"Unknown error ({code!r})"
        # not correlated with any request
        self._fail_command(self._error_msg(text), error=ApplicationError(text))

    def _receive_packet(self, cmd: CommandTag, values: list, packet_type: type, what: str) -> Optional[Any]:
        """Stop the timer and return a packet of the given type, or None after reporting."""
        self._stop_timer(cmd)

        packet = values[1] if len(values) > 1 else None
        if not isinstance(packet, packet_type):
            error = ProtocolError(f"value is not a {packet_type.__name__}")
            self._fail_command(self._error_msg(f"Unable to unpack {what}"), cmd, error)
            return None

        if packet.error != PacketError.NO_ERROR:
            text = packet_error_message(packet.error)
            self._fail_command(text, cmd, ApplicationError(text, packet_error=packet.error))
            return None

        return packet

    def _on_device_info(self, cmd: CommandTag, values: list):
        packet = self._receive_packet(cmd, values, DeviceInfoPacket, "device info packet")
        if packet is not None:
            self._emit(DeviceInfoReceived(packet))

    def _on_daemon_packet(self, cmd: CommandTag, values: list):
        packet = self._receive_packet(cmd, values, DaemonPacket, "daemon packet")
        if packet is not None:
            self._emit(DaemonPacketReceived(packet))

    def _on_daemon_settings(self, cmd: CommandTag, values: list):
        self._stop_timer(cmd)

        data = codec.to_bytes(values[1])
        if not data:
            self._fail_command(
                self._error_msg("Unable to get daemon settings"),
                cmd,
                ApplicationError("daemon returned no settings"),
            )
            return

        self._emit(DaemonSettingsReceived(data))

    def _decode_errors(self, cmd: CommandTag, value: Any, failure: str) -> Optional[frozenset]:
        try:
            return codec.unpack_error_set(codec.to_bytes(value))
        except MessageDecodeError as e:
            self._fail_command(self._error_msg(failure), cmd, e)
            return None

    def _on_settings_applied(self, cmd: CommandTag, values: list):
        self._stop_timer(cmd)
        errors = self._decode_errors(cmd, values[1], "Unable to get apply settings result")
        if errors is not None:
            self._emit(SettingsApplied(errors))

    def _on_profile_applied(self, cmd: CommandTag, values: list):
        self._stop_timer(cmd)
        errors = self._decode_errors(cmd, values[1], "Unable to get apply profile result")
        if errors is not None:
            self._emit(ProfileApplied(errors, codec.to_str(values[2])))

    # Daemon pushes below answer no request, so no timer is stopped.

    def _on_battery_status_changed(self, cmd: CommandTag, values: list):
        errors = self._decode_errors(cmd, values[1], "Unable to get battery status change event result")
        if errors is not None:
            self._emit(BatteryStatusChanged(errors, codec.to_str(values[2])))

    def _on_wake_from_sleep(self, cmd: CommandTag, values: list):
        errors = self._decode_errors(cmd, values[1], "Unable to get wake from sleep event result")
        if errors is not None:
            self._emit(WakeFromSleep(errors))

    def _on_apply_timer_tick(self, cmd: CommandTag, values: list):
        errors = self._decode_errors(cmd, values[1], "Unable to get apply timer result")
        if errors is not None:
            self._emit(ApplyTimerTick(errors))

    _RESULT_EVENTS = {
        CommandTag.DELETE_PROFILE: ProfileDeleted,
        CommandTag.WRITE_PROFILE: ProfileWritten,
        CommandTag.IMPORT_PROFILES: ProfilesImported,
        CommandTag.APPLY_DAEMON_SETTINGS: DaemonSettingsApplied,
    }

    def _on_result(self, cmd: CommandTag, values: list):
        self._stop_timer(cmd)
        self._emit(self._RESULT_EVENTS[cmd](codec.to_bool(values[1])))

    def _on_profile_list(self, cmd: CommandTag, values: list):
        self._stop_timer(cmd)
        self._emit(ProfileListReceived(codec.to_str_list(values[1])))

    def _on_profile_loaded(self, cmd: CommandTag, values: list):
        self._stop_timer(cmd)

        packet = values[1]
        if not isinstance(packet, DaemonPacket):
            error = ProtocolError("value is not a DaemonPacket")
            self._fail_command(self._error_msg("Unable to unpack daemon packet"), cmd, error)
            return

        self._log(f"Loaded profile: {codec.to_str(values[2])}", logging.INFO)
        self._emit(DaemonPacketReceived(packet))

    def _on_profiles_exported(self, cmd: CommandTag, values: list):
        self._stop_timer(cmd)

        try:
            profiles = codec.unpack_profiles(codec.to_bytes(values[1]))
        except MessageDecodeError as e:
            self._fail_command(self._error_msg("Failed to get exported profiles data"), cmd, e)
            return

        self._emit(ProfilesExported(profiles))

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------

    def _on_command_timeout(self, address: str, command: int):
        error = CommandTimeoutError(address, command, self._timers.timeout)
        try:
            command = CommandTag(command)
        except ValueError:
            pass
        self._fail_command(str(error), command, error)

    def __repr__(self):
        return f"CommandDispatcher({self._address}:{self._port}, {self.state.value})"
