"""
Notifications delivered to the caller.

Every outcome of a request (or a daemon push) reaches the caller as exactly
one of these objects, queued from the worker thread.
"""

from dataclasses import dataclass, field
from typing import Optional

from .errors import DaemonError, PwtClientError
from .packets import DaemonPacket, DeviceInfoPacket


@dataclass(frozen=True)
class Event:
    """Base class for all notifications."""


@dataclass(frozen=True)
class LogMessage(Event):
    text: str


@dataclass(frozen=True)
class Connected(Event):
    address: str
    port: int


@dataclass(frozen=True)
class Disconnected(Event):
    pass


@dataclass(frozen=True)
class ServiceError(Event):
    """The connection failed and is now closed."""

    error: Optional[PwtClientError] = field(default=None, compare=False)


@dataclass(frozen=True)
class CommandFailed(Event):
    """Generic failure of a request (or of an inbound message).

    ``command`` is the tag involved when one is known; ``error`` the
    classified cause.
    """

    command: Optional[int] = None
    error: Optional[PwtClientError] = field(default=None, compare=False)


@dataclass(frozen=True)
class DeviceInfoReceived(Event):
    packet: DeviceInfoPacket


@dataclass(frozen=True)
class DaemonPacketReceived(Event):
    packet: DaemonPacket


@dataclass(frozen=True)
class SettingsApplied(Event):
    errors: frozenset[DaemonError]


@dataclass(frozen=True)
class DaemonSettingsApplied(Event):
    success: bool


@dataclass(frozen=True)
class DaemonSettingsReceived(Event):
    data: bytes


@dataclass(frozen=True)
class BatteryStatusChanged(Event):
    errors: frozenset[DaemonError]
    name: str


@dataclass(frozen=True)
class WakeFromSleep(Event):
    errors: frozenset[DaemonError]


@dataclass(frozen=True)
class ApplyTimerTick(Event):
    errors: frozenset[DaemonError]


@dataclass(frozen=True)
class ProfileApplied(Event):
    errors: frozenset[DaemonError]
    name: str


@dataclass(frozen=True)
class ProfileListReceived(Event):
    names: list[str]


@dataclass(frozen=True)
class ProfileDeleted(Event):
    success: bool


@dataclass(frozen=True)
class ProfileWritten(Event):
    success: bool


@dataclass(frozen=True)
class ProfilesExported(Event):
    profiles: dict[str, bytes]


@dataclass(frozen=True)
class ProfilesImported(Event):
    success: bool
