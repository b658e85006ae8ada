"""
Testing utilities - FakeDaemon for tests without a real daemon.

FakeDaemon is a loopback TCP server speaking the client protocol. It runs on
its own asyncio thread, records every message it receives, answers commands
from scripted responders and can push messages or raw bytes to clients.

Example:
    with FakeDaemon() as daemon:
        daemon.respond(CommandTag.GET_PROFILE_LIST, [CommandTag.GET_PROFILE_LIST, ["a", "b"]])
        service.connect_to_daemon(daemon.host, daemon.port)
"""

import asyncio
import logging
import threading
import time
from typing import Callable, Optional, Union

from pwtclient import codec
from pwtclient.errors import FrameError, MessageDecodeError

logger = logging.getLogger(__name__)

Responder = Callable[[list], Optional[list]]


class FakeDaemon:
    """Scripted stand-in for the daemon."""

    def __init__(self, host: str = "127.0.0.1", port: int = 0):
        self._host = host
        self._requested_port = port
        self._port: Optional[int] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: list[asyncio.StreamWriter] = []

        self._cond = threading.Condition()
        self._received: list[list] = []
        self._connections = 0
        self._responders: dict[int, Responder] = {}

    # -- Lifecycle -------------------------------------------------------------

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        assert self._port is not None, "daemon not started"
        return self._port

    def start(self) -> "FakeDaemon":
        ready = threading.Event()

        def _run():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            self._loop = loop
            loop.run_until_complete(self._listen())
            ready.set()
            loop.run_forever()
            loop.run_until_complete(self._close_server())
            pending = asyncio.all_tasks(loop)
            for t in pending:
                t.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()

        self._thread = threading.Thread(target=_run, name="FakeDaemon", daemon=True)
        self._thread.start()
        if not ready.wait(timeout=5.0):
            raise RuntimeError("FakeDaemon failed to start")
        return self

    def stop(self):
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=5.0)
        self._loop = None
        self._thread = None

    async def _listen(self):
        self._server = await asyncio.start_server(self._handle_client, self._host, self._requested_port)
        self._port = self._server.sockets[0].getsockname()[1]

    async def _close_server(self):
        for writer in list(self._writers):
            writer.close()
        self._writers.clear()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    # -- Scripting -------------------------------------------------------------

    def respond(self, command: int, reply: Union[list, Responder, None]):
        """Answer every ``command`` message with ``reply``.

        ``reply`` is either a fixed message or a callable receiving the
        inbound message and returning a message (or None for no answer).
        Passing None removes the responder.
        """
        if reply is None:
            self._responders.pop(int(command), None)
        elif callable(reply):
            self._responders[int(command)] = reply
        else:
            fixed = list(reply)
            self._responders[int(command)] = lambda _values: fixed

    def push(self, values: list):
        """Send one message to every connected client."""
        self.send_raw(codec.encode_message(values))

    def send_raw(self, data: bytes):
        """Write raw bytes to every connected client."""
        assert self._loop is not None, "daemon not started"

        def _write():
            for writer in self._writers:
                writer.write(data)

        self._loop.call_soon_threadsafe(_write)

    def drop_clients(self):
        """Close every client connection from the daemon side."""
        assert self._loop is not None, "daemon not started"

        def _close():
            for writer in self._writers:
                writer.close()
            self._writers.clear()

        self._loop.call_soon_threadsafe(_close)

    # -- Inspection ------------------------------------------------------------

    @property
    def received(self) -> list[list]:
        with self._cond:
            return list(self._received)

    @property
    def connections(self) -> int:
        """Number of client connections accepted so far."""
        with self._cond:
            return self._connections

    def wait_for_messages(self, count: int, timeout: float = 5.0) -> list[list]:
        """Block until at least ``count`` messages were received."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while len(self._received) < count:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(timeout=remaining)
            return list(self._received)

    def wait_for_connections(self, count: int = 1, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._connections < count:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(timeout=remaining)
            return True

    def reset(self):
        with self._cond:
            self._received.clear()
        self._responders.clear()

    # -- Server side -----------------------------------------------------------

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._writers.append(writer)
        with self._cond:
            self._connections += 1
            self._cond.notify_all()

        buffer = bytearray()
        try:
            while True:
                chunk = await reader.read(8192)
                if not chunk:
                    break
                buffer.extend(chunk)

                while True:
                    try:
                        values = codec.try_extract(buffer)
                    except MessageDecodeError as e:
                        logger.warning(f"FakeDaemon dropped bad message: {e}")
                        continue
                    if values is None:
                        break
                    self._on_message(values, writer)
        except FrameError as e:
            logger.warning(f"FakeDaemon closing client: {e}")
        except (ConnectionError, OSError) as e:
            logger.debug(f"FakeDaemon client gone: {e}")
        finally:
            if writer in self._writers:
                self._writers.remove(writer)
            writer.close()

    def _on_message(self, values: list, writer: asyncio.StreamWriter):
        with self._cond:
            self._received.append(values)
            self._cond.notify_all()

        responder = self._responders.get(values[0]) if values else None
        if responder is None:
            return
        reply = responder(values)
        if reply is not None:
            writer.write(codec.encode_message(reply))


# ─────────────────────────────────────────────────────────────────────────────
# Optional pytest integration
# ─────────────────────────────────────────────────────────────────────────────

try:
    import pytest

    @pytest.fixture
    def fake_daemon():
        """Pytest fixture providing a started FakeDaemon.

        Usage:
            def test_something(fake_daemon):
                fake_daemon.respond(CommandTag.DELETE_PROFILE, [CommandTag.DELETE_PROFILE, True])
        """
        daemon = FakeDaemon().start()
        yield daemon
        daemon.stop()

except ImportError:
    # pytest not installed, fixtures not available
    pass


__all__ = ["FakeDaemon"]
