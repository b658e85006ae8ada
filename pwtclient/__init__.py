"""
pwtclient - client side of the power-tuning daemon protocol.

Quick start:
    import pwtclient
    from pwtclient import events

    service = pwtclient.create_service()
    service.connect_to_daemon()
    event = service.get_event(timeout=5.0)
    if isinstance(event, events.Connected):
        service.send_get_device_info_packet_request()

Configuration is read from the environment at import time and can be
overridden once with configure() before the first service is created:

    PWTCLIENT_HOST             default daemon address (127.0.0.1)
    PWTCLIENT_PORT             default daemon port (56000)
    PWTCLIENT_CONNECT_TIMEOUT  seconds allowed for connecting (5.0)
    PWTCLIENT_TRACE            log every message sent and received (off)
"""

import atexit
import logging
import os
import threading
import weakref
from typing import Optional

from pwtclient import events
from pwtclient.constants import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_DAEMON_HOST,
    DEFAULT_DAEMON_PORT,
    REQUEST_TIMEOUT,
    CommandTag,
)
from pwtclient.errors import (
    ApplicationError,
    CodecError,
    CommandTimeoutError,
    DaemonError,
    PacketError,
    ProtocolError,
    PwtClientError,
    TransportError,
    TransportErrorKind,
)
from pwtclient.packets import ClientPacket, CPUVendor, DaemonPacket, DeviceInfoPacket, OSType
from pwtclient.dispatcher import CommandDispatcher
from pwtclient.service import ClientService
from pwtclient.transport import ConnectionState

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Environment Variables (read at import)
# ─────────────────────────────────────────────────────────────────────────────


def _get_env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    """Get environment variable as int."""
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {val!r}")


def _get_env_float(name: str, default: Optional[float] = None) -> Optional[float]:
    """Get environment variable as float."""
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {val!r}")


def _get_env_bool(name: str) -> Optional[bool]:
    val = os.environ.get(name)
    if val is None:
        return None
    return val.strip().lower() in ("1", "true", "yes", "on")


def _read_env():
    global _env_host, _env_port, _env_connect_timeout, _env_trace
    _env_host = os.environ.get("PWTCLIENT_HOST")
    _env_port = _get_env_int("PWTCLIENT_PORT")
    _env_connect_timeout = _get_env_float("PWTCLIENT_CONNECT_TIMEOUT")
    _env_trace = _get_env_bool("PWTCLIENT_TRACE")


_env_host: Optional[str] = None
_env_port: Optional[int] = None
_env_connect_timeout: Optional[float] = None
_env_trace: Optional[bool] = None
_read_env()


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

_global_lock = threading.Lock()

# Set once the first service exists; configure() is refused afterwards
_service_created = False

# User-configured settings (set via configure())
_config_host: Optional[str] = None
_config_port: Optional[int] = None
_config_connect_timeout: Optional[float] = None
_config_trace: Optional[bool] = None

# Services created via create_service(), closed at interpreter exit.
_live_services: weakref.WeakSet = weakref.WeakSet()


def configure(
    host: Optional[str] = None,
    port: Optional[int] = None,
    connect_timeout: Optional[float] = None,
    trace: Optional[bool] = None,
) -> None:
    """Configure pwtclient defaults.

    Must be called BEFORE the first create_service().

    Args:
        host: Daemon address (default: from PWTCLIENT_HOST or 127.0.0.1)
        port: Daemon port (default: from PWTCLIENT_PORT or 56000)
        connect_timeout: Seconds allowed for the TCP connect (default: from
            PWTCLIENT_CONNECT_TIMEOUT or 5.0)
        trace: Log every message sent and received (default: from PWTCLIENT_TRACE)

    Raises:
        RuntimeError: If called after a service has been created
        ValueError: If port or connect_timeout is out of range
    """
    global _config_host, _config_port, _config_connect_timeout, _config_trace

    with _global_lock:
        if _service_created:
            raise RuntimeError(
                "configure() must be called before create_service(). "
                "Call shutdown() first to close existing services, then configure() to change settings."
            )

        if port is not None and not 0 < port < 65536:
            raise ValueError(f"port must be in 1..65535, got {port}")
        if connect_timeout is not None and connect_timeout <= 0:
            raise ValueError(f"connect_timeout must be positive, got {connect_timeout}")

        if host is not None:
            _config_host = host
        if port is not None:
            _config_port = port
        if connect_timeout is not None:
            _config_connect_timeout = connect_timeout
        if trace is not None:
            _config_trace = trace


def reset_config() -> None:
    """Forget configure() overrides and re-read the environment."""
    global _config_host, _config_port, _config_connect_timeout, _config_trace, _service_created

    with _global_lock:
        _config_host = None
        _config_port = None
        _config_connect_timeout = None
        _config_trace = None
        _service_created = False
        _read_env()


def _first(*values, default):
    for value in values:
        if value is not None:
            return value
    return default


def create_service(
    address: Optional[str] = None,
    port: Optional[int] = None,
    *,
    connect_timeout: Optional[float] = None,
    trace: Optional[bool] = None,
    request_timeout: float = REQUEST_TIMEOUT,
) -> ClientService:
    """Create a ClientService with configured defaults.

    Explicit arguments win over configure(), which wins over the
    environment, which wins over built-in defaults.
    """
    global _service_created

    with _global_lock:
        service = ClientService(
            _first(address, _config_host, _env_host, default=DEFAULT_DAEMON_HOST),
            _first(port, _config_port, _env_port, default=DEFAULT_DAEMON_PORT),
            connect_timeout=_first(
                connect_timeout, _config_connect_timeout, _env_connect_timeout, default=DEFAULT_CONNECT_TIMEOUT
            ),
            request_timeout=request_timeout,
            trace=_first(trace, _config_trace, _env_trace, default=False),
        )
        _service_created = True
        _live_services.add(service)
    return service


def shutdown() -> None:
    """Close every service created by create_service()."""
    global _service_created

    with _global_lock:
        services = list(_live_services)
        _live_services.clear()
        _service_created = False
    for service in services:
        try:
            service.close()
        except Exception:
            logger.debug("Error closing service during shutdown", exc_info=True)


atexit.register(shutdown)


__all__ = [
    "ApplicationError",
    "ClientPacket",
    "ClientService",
    "CodecError",
    "CommandDispatcher",
    "CommandTag",
    "CommandTimeoutError",
    "ConnectionState",
    "CPUVendor",
    "DaemonError",
    "DaemonPacket",
    "DeviceInfoPacket",
    "OSType",
    "PacketError",
    "ProtocolError",
    "PwtClientError",
    "TransportError",
    "TransportErrorKind",
    "configure",
    "create_service",
    "events",
    "reset_config",
    "shutdown",
]
