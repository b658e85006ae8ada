"""
Requests a caller can post to the dispatcher.

One frozen dataclass per request kind, each carrying exactly the fields its
command needs. ``args()`` builds the outbound message (tag first) in the
shape the daemon expects.
"""

from dataclasses import dataclass, field
from typing import ClassVar, Optional

from . import codec
from .constants import CommandTag
from .errors import CodecError
from .packets import ClientPacket


@dataclass(frozen=True)
class Connect:
    address: str
    port: int


@dataclass(frozen=True)
class Disconnect:
    pass


@dataclass(frozen=True)
class CommandRequest:
    """Base for requests that become a message to the daemon."""

    command: ClassVar[CommandTag]

    def args(self) -> list:
        return [int(self.command)]


@dataclass(frozen=True)
class GetDeviceInfo(CommandRequest):
    command: ClassVar[CommandTag] = CommandTag.GET_DEVICE_INFO


@dataclass(frozen=True)
class GetDaemonPacket(CommandRequest):
    command: ClassVar[CommandTag] = CommandTag.GET_DAEMON_PACKET


@dataclass(frozen=True)
class ApplySettings(CommandRequest):
    command: ClassVar[CommandTag] = CommandTag.APPLY_CLIENT_SETTINGS
    packet: ClientPacket = field(default_factory=ClientPacket)

    def args(self) -> list:
        return [int(self.command), self.packet]


@dataclass(frozen=True)
class GetDaemonSettings(CommandRequest):
    command: ClassVar[CommandTag] = CommandTag.GET_DAEMON_SETTINGS


@dataclass(frozen=True)
class ApplyDaemonSettings(CommandRequest):
    command: ClassVar[CommandTag] = CommandTag.APPLY_DAEMON_SETTINGS
    data: bytes = b""

    def args(self) -> list:
        if not isinstance(self.data, (bytes, bytearray, memoryview)):
            raise CodecError(f"daemon settings must be bytes, got {type(self.data).__name__}")
        return [int(self.command), bytes(self.data)]


@dataclass(frozen=True)
class GetProfileList(CommandRequest):
    command: ClassVar[CommandTag] = CommandTag.GET_PROFILE_LIST


@dataclass(frozen=True)
class _NamedRequest(CommandRequest):
    name: str = ""

    def args(self) -> list:
        return [int(self.command), self.name]


@dataclass(frozen=True)
class DeleteProfile(_NamedRequest):
    command: ClassVar[CommandTag] = CommandTag.DELETE_PROFILE


@dataclass(frozen=True)
class LoadProfile(_NamedRequest):
    command: ClassVar[CommandTag] = CommandTag.LOAD_PROFILE


@dataclass(frozen=True)
class ApplyProfile(_NamedRequest):
    command: ClassVar[CommandTag] = CommandTag.APPLY_PROFILE


@dataclass(frozen=True)
class ExportProfiles(_NamedRequest):
    command: ClassVar[CommandTag] = CommandTag.EXPORT_PROFILES


@dataclass(frozen=True)
class WriteProfile(CommandRequest):
    command: ClassVar[CommandTag] = CommandTag.WRITE_PROFILE
    name: str = ""
    packet: ClientPacket = field(default_factory=ClientPacket)

    def args(self) -> list:
        return [int(self.command), self.name, self.packet]


@dataclass(frozen=True)
class ImportProfiles(CommandRequest):
    """Profiles are packed into one blob on the client side.

    ``args()`` raises CodecError if the map cannot be packed.
    """

    command: ClassVar[CommandTag] = CommandTag.IMPORT_PROFILES
    profiles: Optional[dict] = None

    def args(self) -> list:
        return [int(self.command), codec.pack_profiles(self.profiles if self.profiles is not None else {})]


Request = Connect | Disconnect | CommandRequest
