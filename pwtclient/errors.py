"""
Client error taxonomy and daemon status codes.

Every failure the client can observe falls into one of four families:

- TransportError: socket-level faults (refused, unknown host, resource
  exhaustion, remote close, anything else the OS reports)
- ProtocolError: bytes that do not form a valid message for their tag
- ApplicationError: the daemon ran the command and reported failure
- CommandTimeoutError: no answer within the request timeout

None of these ever reaches the caller as a raised exception; the dispatcher
turns each one into a single notification. They exist so that outcome can
carry a classified error.
"""

import errno
import socket
from enum import Enum, IntEnum
from typing import Optional


class DaemonError(IntEnum):
    """Granular failure reasons reported by the daemon (members of an ErrorSet)."""

    CLIENT_PACKET_INVALID = 1
    PROFILE_NOT_FOUND = 2
    PROFILE_LOAD_FAILED = 3
    PROFILE_WRITE_FAILED = 4
    PROFILE_DELETE_FAILED = 5
    PROFILES_EXPORT_FAILED = 6
    PROFILES_IMPORT_FAILED = 7
    DAEMON_SETTINGS_INVALID = 8
    CPU_POWER_LIMITS = 9
    CPU_UNDERVOLT = 10
    CPU_FREQUENCY_LIMITS = 11
    CPU_GOVERNOR = 12
    CPU_ENERGY_PERF_PREF = 13
    CPU_CORE_STATE = 14
    GPU_POWER_LIMITS = 15
    GPU_CLOCKS = 16
    FAN_MODE = 17
    BATTERY_CHARGE_THRESHOLD = 18
    MSR_ACCESS = 19
    SYSFS_ACCESS = 20


class PacketError(IntEnum):
    """Status embedded in packets sent by the daemon."""

    NO_ERROR = 0
    UNSUPPORTED_CPU = 1
    UNSUPPORTED_OS = 2
    DEVICE_INFO_UNAVAILABLE = 3
    SETTINGS_READ_FAILED = 4


_DAEMON_ERROR_MESSAGES = {
    DaemonError.CLIENT_PACKET_INVALID: "Invalid client packet",
    DaemonError.PROFILE_NOT_FOUND: "Profile not found",
    DaemonError.PROFILE_LOAD_FAILED: "Failed to load profile",
    DaemonError.PROFILE_WRITE_FAILED: "Failed to write profile",
    DaemonError.PROFILE_DELETE_FAILED: "Failed to delete profile",
    DaemonError.PROFILES_EXPORT_FAILED: "Failed to export profiles",
    DaemonError.PROFILES_IMPORT_FAILED: "Failed to import profiles",
    DaemonError.DAEMON_SETTINGS_INVALID: "Invalid daemon settings",
    DaemonError.CPU_POWER_LIMITS: "Failed to apply CPU power limits",
    DaemonError.CPU_UNDERVOLT: "Failed to apply CPU undervolt",
    DaemonError.CPU_FREQUENCY_LIMITS: "Failed to apply CPU frequency limits",
    DaemonError.CPU_GOVERNOR: "Failed to apply CPU scaling governor",
    DaemonError.CPU_ENERGY_PERF_PREF: "Failed to apply CPU energy performance preference",
    DaemonError.CPU_CORE_STATE: "Failed to change CPU core state",
    DaemonError.GPU_POWER_LIMITS: "Failed to apply GPU power limits",
    DaemonError.GPU_CLOCKS: "Failed to apply GPU clocks",
    DaemonError.FAN_MODE: "Failed to apply fan mode",
    DaemonError.BATTERY_CHARGE_THRESHOLD: "Failed to apply battery charge threshold",
    DaemonError.MSR_ACCESS: "Unable to access model specific registers",
    DaemonError.SYSFS_ACCESS: "Unable to access sysfs",
}

_PACKET_ERROR_MESSAGES = {
    PacketError.NO_ERROR: "No error",
    PacketError.UNSUPPORTED_CPU: "Unsupported CPU",
    PacketError.UNSUPPORTED_OS: "Unsupported operating system",
    PacketError.DEVICE_INFO_UNAVAILABLE: "Device information is not available",
    PacketError.SETTINGS_READ_FAILED: "Failed to read current settings",
}


def daemon_error_message(code: int) -> str:
    """Human-readable text for a daemon error code."""
    try:
        return _DAEMON_ERROR_MESSAGES[DaemonError(code)]
    except ValueError:
        return f"Unknown error ({code})"


def packet_error_message(code: int) -> str:
    """Human-readable text for a packet status code."""
    try:
        return _PACKET_ERROR_MESSAGES[PacketError(code)]
    except ValueError:
        return f"Unknown error ({code})"


class TransportErrorKind(Enum):
    """Categories of socket failure."""

    REMOTE_CLOSED = "remote-closed"
    HOST_NOT_FOUND = "host-not-found"
    CONNECTION_REFUSED = "connection-refused"
    RESOURCE_EXHAUSTED = "resource-exhausted"
    NOT_CONNECTED = "not-connected"
    OTHER = "other"


_RESOURCE_ERRNOS = frozenset(
    code for code in (getattr(errno, name, None) for name in ("EMFILE", "ENFILE", "ENOBUFS", "ENOMEM")) if code
)


def classify_os_error(exc: BaseException) -> TransportErrorKind:
    """Map a socket-layer exception to a TransportErrorKind."""
    # UnicodeError: host name cannot be IDNA-encoded (empty or over-long label)
    if isinstance(exc, (socket.gaierror, UnicodeError)):
        return TransportErrorKind.HOST_NOT_FOUND
    if isinstance(exc, ConnectionRefusedError):
        return TransportErrorKind.CONNECTION_REFUSED
    if isinstance(exc, (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)):
        return TransportErrorKind.REMOTE_CLOSED
    if isinstance(exc, OSError) and exc.errno in _RESOURCE_ERRNOS:
        return TransportErrorKind.RESOURCE_EXHAUSTED
    return TransportErrorKind.OTHER


class PwtClientError(Exception):
    """Base class for all client errors."""


class TransportError(PwtClientError):
    """Socket-level failure."""

    def __init__(self, kind: TransportErrorKind, message: Optional[str] = None):
        self.kind = kind
        super().__init__(message or kind.value)

    @classmethod
    def from_os_error(cls, exc: BaseException) -> "TransportError":
        return cls(classify_os_error(exc), str(exc) or type(exc).__name__)

    def __repr__(self):
        return f"TransportError(kind={self.kind.value}, message={self.args[0]!r})"


class ProtocolError(PwtClientError):
    """Message does not match the protocol."""


class FrameError(ProtocolError):
    """The byte stream can no longer be split into frames."""


class MessageDecodeError(ProtocolError):
    """A complete frame was read but its content is malformed."""


class CodecError(PwtClientError):
    """Outbound values could not be encoded."""


class ApplicationError(PwtClientError):
    """The daemon executed a command and reported failure.

    Attributes:
        errors: granular daemon failure reasons (may be empty)
        packet_error: status embedded in a returned packet, if any
    """

    def __init__(
        self,
        message: str,
        errors: frozenset = frozenset(),
        packet_error: Optional[PacketError] = None,
    ):
        self.errors = errors
        self.packet_error = packet_error
        super().__init__(message)


class CommandTimeoutError(PwtClientError):
    """No response for a command within the request timeout."""

    def __init__(self, address: str, command: int, timeout: float):
        self.address = address
        self.command = command
        self.timeout = timeout
        super().__init__(f"[{address}]: request timeout for command: {int(command)}")
