"""
TCP transport to the daemon.

TransportConnection owns the socket and the incremental frame reader. It is
driven by asyncio protocol callbacks and forwards complete messages to a
listener (the dispatcher). Each connection attempt gets its own protocol
object; callbacks from a protocol that is no longer current are dropped,
which is how an abort silences data and errors still in flight for the old
socket.
"""

import asyncio
import logging
import socket
from enum import Enum
from typing import Optional, Protocol

from . import codec
from .constants import DEFAULT_CONNECT_TIMEOUT
from .errors import (
    FrameError,
    MessageDecodeError,
    PwtClientError,
    TransportError,
    TransportErrorKind,
)

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class TransportListener(Protocol):
    def on_connected(self) -> None: ...

    def on_message(self, values: list) -> None: ...

    def on_bad_message(self, error: MessageDecodeError) -> None: ...

    def on_connection_error(self, error: PwtClientError) -> None: ...


class _DaemonProtocol(asyncio.Protocol):
    """asyncio Protocol that forwards socket events to a TransportConnection."""

    def __init__(self, connection: "TransportConnection"):
        self._conn = connection

    def connection_made(self, transport):
        self._conn._on_connection_made(self, transport)

    def data_received(self, data: bytes):
        self._conn._on_data(self, data)

    def connection_lost(self, exc):
        self._conn._on_connection_lost(self, exc)


class TransportConnection:
    """Single TCP connection with message framing."""

    def __init__(self, listener: TransportListener, *, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT):
        self._listener = listener
        self._connect_timeout = connect_timeout

        self._state = ConnectionState.DISCONNECTED
        self._protocol: Optional[_DaemonProtocol] = None
        self._transport: Optional[asyncio.Transport] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._buffer = bytearray()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def buffered(self) -> int:
        """Bytes received but not yet forming a complete message."""
        return len(self._buffer)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self, host: str, port: int):
        """Drop any current connection and start connecting to host:port.

        Must be called from the event loop. The outcome arrives later via
        on_connected() or on_connection_error().
        """
        self.abort()

        protocol = _DaemonProtocol(self)
        self._protocol = protocol
        self._state = ConnectionState.CONNECTING
        self._connect_task = asyncio.get_running_loop().create_task(self._open(protocol, host, port))

    async def _open(self, protocol: _DaemonProtocol, host: str, port: int):
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.create_connection(lambda: protocol, host, port),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError:
            if protocol is self._protocol:
                self._fail(TransportError(TransportErrorKind.OTHER, "Connection timed out"))
        except Exception as e:
            # OSError, plus bad input rejected before any socket call
            # (UnicodeError for the host, OverflowError for the port)
            if protocol is self._protocol:
                logger.debug(f"Connect to {host}:{port} failed: {e!r}")
                self._fail(TransportError.from_os_error(e))
        finally:
            if self._connect_task is asyncio.current_task():
                self._connect_task = None

    def abort(self) -> bool:
        """Tear down the connection (or connection attempt) immediately.

        Returns True when the socket ended up closed.
        """
        self._protocol = None

        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        self._connect_task = None

        closed = True
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.abort()
            closed = transport.is_closing()

        self._buffer.clear()
        self._state = ConnectionState.DISCONNECTED
        return closed

    def write(self, data: bytes):
        """Queue bytes for sending. Raises TransportError unless connected."""
        if self._state is not ConnectionState.CONNECTED or self._transport is None:
            raise TransportError(TransportErrorKind.NOT_CONNECTED, "not connected to daemon")
        try:
            self._transport.write(data)
        except (OSError, RuntimeError) as e:
            raise TransportError.from_os_error(e) from e

    # ------------------------------------------------------------------
    # Protocol callbacks
    # ------------------------------------------------------------------

    def _on_connection_made(self, protocol: _DaemonProtocol, transport: asyncio.Transport):
        if protocol is not self._protocol:
            transport.abort()
            return

        sock = transport.get_extra_info("socket")
        if sock is not None:
            try:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            except OSError:
                pass

        self._transport = transport
        self._state = ConnectionState.CONNECTED
        self._listener.on_connected()

    def _on_data(self, protocol: _DaemonProtocol, data: bytes):
        if protocol is not self._protocol:
            return

        self._buffer.extend(data)

        # Drain every complete message; the listener may abort us mid-loop.
        while protocol is self._protocol:
            try:
                values = codec.try_extract(self._buffer)
            except FrameError as e:
                self._fail(e)
                return
            except MessageDecodeError as e:
                self._listener.on_bad_message(e)
                continue

            if values is None:
                break

            self._listener.on_message(values)

    def _on_connection_lost(self, protocol: _DaemonProtocol, exc: Optional[Exception]):
        if protocol is not self._protocol:
            return

        if exc is None:
            error = TransportError(TransportErrorKind.REMOTE_CLOSED, "Remote host connection closed")
        else:
            error = TransportError.from_os_error(exc)
        self._fail(error)

    def _fail(self, error: PwtClientError):
        self._listener.on_connection_error(error)

    def __repr__(self):
        return f"TransportConnection({self._state.value})"
