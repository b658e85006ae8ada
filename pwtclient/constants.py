"""
Client/daemon protocol constants.

Command tags, per-command minimum message lengths, framing limits,
and the timing parameters shared by the transport and the timer pool.
"""

from enum import IntEnum


class CommandTag(IntEnum):
    """Request/response kinds understood by the daemon.

    Value 0 of every message on the wire is one of these.
    """

    GET_DEVICE_INFO = 0
    GET_DAEMON_PACKET = 1
    APPLY_CLIENT_SETTINGS = 2
    GET_DAEMON_SETTINGS = 3
    APPLY_DAEMON_SETTINGS = 4
    GET_PROFILE_LIST = 5
    DELETE_PROFILE = 6
    WRITE_PROFILE = 7
    LOAD_PROFILE = 8
    APPLY_PROFILE = 9
    EXPORT_PROFILES = 10
    IMPORT_PROFILES = 11
    APPLY_TIMER_TICK = 12  # daemon push, periodic re-apply
    BATTERY_STATUS_CHANGED = 13  # daemon push
    WAKE_FROM_SLEEP = 14  # daemon push
    COMMAND_FAILED = 15  # daemon could not run the command in value 1
    PRINT_ERROR = 16


# Minimum number of values (tag included) an inbound message must carry.
# Tags not listed only need the tag itself.
MIN_MESSAGE_LENGTH = {
    CommandTag.COMMAND_FAILED: 1,
    CommandTag.PRINT_ERROR: 2,
    CommandTag.GET_DAEMON_SETTINGS: 2,
    CommandTag.APPLY_CLIENT_SETTINGS: 2,
    CommandTag.DELETE_PROFILE: 2,
    CommandTag.WRITE_PROFILE: 2,
    CommandTag.GET_PROFILE_LIST: 2,
    CommandTag.EXPORT_PROFILES: 2,
    CommandTag.IMPORT_PROFILES: 2,
    CommandTag.APPLY_TIMER_TICK: 2,
    CommandTag.APPLY_DAEMON_SETTINGS: 2,
    CommandTag.WAKE_FROM_SLEEP: 2,
    CommandTag.APPLY_PROFILE: 3,
    CommandTag.LOAD_PROFILE: 3,
    CommandTag.BATTERY_STATUS_CHANGED: 3,
}

# Network defaults
DEFAULT_DAEMON_HOST = "127.0.0.1"
DEFAULT_DAEMON_PORT = 56000

# Framing
FRAME_HEADER_SIZE = 4  # big-endian payload length
MAX_FRAME_SIZE = 16 * 1024 * 1024

# Timeouts (seconds)
REQUEST_TIMEOUT = 120.0  # fixed, process-wide, not per command
DEFAULT_CONNECT_TIMEOUT = 5.0
SHUTDOWN_TIMEOUT = 5.0
