"""
Wire codec for client/daemon messages.

A message is an ordered list of values (integer command tag first) carried
as one CBOR array inside a length-prefixed frame:

Offset  Size  Field     Description
------  ----  -----     -----------
0       4     length    Payload size, big-endian unsigned
4       var   payload   CBOR array: [tag, value1, value2, ...]

Packets travel as CBOR semantic tags wrapping a plain map. Result blobs
(ErrorSets, exported profile maps) are themselves CBOR documents nested
inside a byte string, so the daemon can hand them over without the client
knowing their layout up front.
"""

import logging
import struct
from typing import Any, Iterable, Optional

import cbor2

from .constants import FRAME_HEADER_SIZE, MAX_FRAME_SIZE
from .errors import CodecError, DaemonError, FrameError, MessageDecodeError
from .packets import ClientPacket, DaemonPacket, DeviceInfoPacket

logger = logging.getLogger(__name__)

# CBOR semantic tags for packets (first-come-first-served private range)
TAG_CLIENT_PACKET = 40100
TAG_DEVICE_INFO_PACKET = 40101
TAG_DAEMON_PACKET = 40102

_PACKET_TAGS = {
    ClientPacket: TAG_CLIENT_PACKET,
    DeviceInfoPacket: TAG_DEVICE_INFO_PACKET,
    DaemonPacket: TAG_DAEMON_PACKET,
}
_TAG_PACKETS = {tag: cls for cls, tag in _PACKET_TAGS.items()}

_FRAME_HEADER = struct.Struct(">I")


def _encode_default(encoder, value):
    tag = _PACKET_TAGS.get(type(value))
    if tag is None:
        raise cbor2.CBOREncodeError(f"cannot serialize type {type(value).__name__}")
    encoder.encode(cbor2.CBORTag(tag, value.to_wire()))


def _decode_tag(decoder, tag):
    cls = _TAG_PACKETS.get(tag.tag)
    if cls is None:
        return tag
    try:
        return cls.from_wire(tag.value)
    except (KeyError, ValueError, TypeError) as e:
        # Left as a raw tag; the consumer sees "not a packet".
        logger.debug(f"Undecodable {cls.__name__}: {e}")
        return tag


def dumps(value: Any) -> bytes:
    """Serialize a single value (packets included) to CBOR."""
    try:
        return cbor2.dumps(value, default=_encode_default)
    except (cbor2.CBOREncodeError, TypeError, ValueError) as e:
        raise CodecError(str(e)) from e


def loads(data: bytes) -> Any:
    """Deserialize a single CBOR value, turning packet tags into packets."""
    try:
        return cbor2.loads(data, tag_hook=_decode_tag)
    except (cbor2.CBORDecodeError, ValueError, TypeError, EOFError) as e:
        raise MessageDecodeError(f"invalid CBOR payload: {e}") from e


# ----------------------------------------------------------------------
# Framing
# ----------------------------------------------------------------------


def encode_message(values: list) -> bytes:
    """Encode one message (tag first) into a complete frame."""
    if not values:
        raise CodecError("message has no command tag")
    payload = dumps(list(values))
    if len(payload) > MAX_FRAME_SIZE:
        raise CodecError(f"message too large: {len(payload)} > {MAX_FRAME_SIZE}")
    return _FRAME_HEADER.pack(len(payload)) + payload


def try_extract(buffer: bytearray) -> Optional[list]:
    """Take one complete message off the front of ``buffer``.

    Returns None, leaving ``buffer`` untouched, while the next frame is not
    fully buffered yet. Raises FrameError (buffer untouched) if the length
    prefix is unusable; the stream cannot be resynchronized after that.
    Raises MessageDecodeError if the frame was complete but its payload is
    not a message; that frame has been consumed.
    """
    if len(buffer) < FRAME_HEADER_SIZE:
        return None

    (length,) = _FRAME_HEADER.unpack_from(buffer, 0)
    if length == 0 or length > MAX_FRAME_SIZE:
        raise FrameError(f"Invalid frame length: {length}")

    end = FRAME_HEADER_SIZE + length
    if len(buffer) < end:
        return None

    payload = bytes(buffer[FRAME_HEADER_SIZE:end])
    del buffer[:end]

    values = loads(payload)
    if not isinstance(values, list):
        raise MessageDecodeError(f"message must be an array, got {type(values).__name__}")
    return values


# ----------------------------------------------------------------------
# Result blobs
# ----------------------------------------------------------------------


def pack_error_set(errors: Iterable[DaemonError]) -> bytes:
    return dumps(sorted(int(e) for e in errors))


def unpack_error_set(blob: bytes) -> frozenset[DaemonError]:
    """Decode an ErrorSet blob. Raises MessageDecodeError on any bad member."""
    value = loads(blob)
    if not isinstance(value, list):
        raise MessageDecodeError("error set must be an array")
    errors = set()
    for code in value:
        if isinstance(code, bool) or not isinstance(code, int):
            raise MessageDecodeError(f"invalid error code {code!r}")
        try:
            errors.add(DaemonError(code))
        except ValueError:
            raise MessageDecodeError(f"unknown error code {code}")
    return frozenset(errors)


def pack_profiles(profiles: dict[str, bytes]) -> bytes:
    """Pack a profile name -> data map into a single blob."""
    if not isinstance(profiles, dict):
        raise CodecError(f"profiles must be a map, got {type(profiles).__name__}")
    for name, data in profiles.items():
        if not isinstance(name, str):
            raise CodecError(f"profile name must be a string, got {name!r}")
        if not isinstance(data, (bytes, bytearray)):
            raise CodecError(f"profile '{name}' data must be bytes, got {type(data).__name__}")
    return dumps({name: bytes(data) for name, data in profiles.items()})


def unpack_profiles(blob: bytes) -> dict[str, bytes]:
    value = loads(blob)
    if not isinstance(value, dict):
        raise MessageDecodeError("profiles must be a map")
    for name, data in value.items():
        if not isinstance(name, str) or not isinstance(data, bytes):
            raise MessageDecodeError(f"invalid profile entry {name!r}")
    return value


# ----------------------------------------------------------------------
# Loose value conversions for inbound message fields
# ----------------------------------------------------------------------


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false")
    return False


def to_str(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    return b""


def to_str_list(value: Any) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [to_str(v) for v in value]
    if isinstance(value, str):
        return [value]
    return []
