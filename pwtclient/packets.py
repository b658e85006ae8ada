"""
Structured payloads exchanged with the daemon.

The client treats packet contents as opaque settings maps; it only needs to
move them across the wire and check the status a daemon packet carries.
Each packet converts to and from a plain map for the codec.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from .errors import PacketError


class CPUVendor(IntEnum):
    UNKNOWN = 0
    INTEL = 1
    AMD = 2


class OSType(IntEnum):
    UNKNOWN = 0
    LINUX = 1
    WINDOWS = 2


def _require_map(value: Any, what: str) -> dict:
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be a map, got {type(value).__name__}")
    return value


def _settings_map(value: Any, what: str) -> dict[str, Any]:
    settings = _require_map(value, what)
    for key in settings:
        if not isinstance(key, str):
            raise ValueError(f"{what} keys must be strings, got {key!r}")
    return dict(settings)


@dataclass(frozen=True)
class ClientPacket:
    """Settings the client asks the daemon to apply or store."""

    settings: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict:
        return {"settings": dict(self.settings)}

    @classmethod
    def from_wire(cls, value: Any) -> "ClientPacket":
        data = _require_map(value, "ClientPacket")
        return cls(settings=_settings_map(data.get("settings", {}), "ClientPacket.settings"))


@dataclass(frozen=True)
class DeviceInfoPacket:
    """Hardware description and supported features of the daemon host."""

    error: PacketError = PacketError.NO_ERROR
    cpu_vendor: CPUVendor = CPUVendor.UNKNOWN
    os_type: OSType = OSType.UNKNOWN
    features: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict:
        return {
            "error": int(self.error),
            "cpu_vendor": int(self.cpu_vendor),
            "os_type": int(self.os_type),
            "features": dict(self.features),
        }

    @classmethod
    def from_wire(cls, value: Any) -> "DeviceInfoPacket":
        data = _require_map(value, "DeviceInfoPacket")
        return cls(
            error=PacketError(data["error"]),
            cpu_vendor=CPUVendor(data.get("cpu_vendor", CPUVendor.UNKNOWN)),
            os_type=OSType(data.get("os_type", OSType.UNKNOWN)),
            features=_settings_map(data.get("features", {}), "DeviceInfoPacket.features"),
        )


@dataclass(frozen=True)
class DaemonPacket:
    """Current (or stored profile) settings as read by the daemon."""

    error: PacketError = PacketError.NO_ERROR
    settings: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict:
        return {"error": int(self.error), "settings": dict(self.settings)}

    @classmethod
    def from_wire(cls, value: Any) -> "DaemonPacket":
        data = _require_map(value, "DaemonPacket")
        return cls(
            error=PacketError(data["error"]),
            settings=_settings_map(data.get("settings", {}), "DaemonPacket.settings"),
        )
