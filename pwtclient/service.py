"""
Caller-facing client service.

ClientService runs a CommandDispatcher on a dedicated asyncio reactor thread
and never touches its state directly. Every call (connect, disconnect, each
send) is posted to the reactor's request queue and returns at once; every
outcome comes back as an ``events.Event`` through a thread-safe queue and to
registered listeners.

Example:
    from pwtclient import ClientService, events

    with ClientService() as service:
        service.connect_to_daemon("127.0.0.1", 56000)
        for event in service.events(timeout=5.0):
            if isinstance(event, events.Connected):
                service.send_get_profile_list_request()
            elif isinstance(event, events.ProfileListReceived):
                print(event.names)
                break
"""

import asyncio
import logging
import queue
import threading
import time
from typing import Callable, Iterator, Optional

from .commands import (
    ApplyDaemonSettings,
    ApplyProfile,
    ApplySettings,
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
    Request,
    WriteProfile,
)
from .constants import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_DAEMON_HOST,
    DEFAULT_DAEMON_PORT,
    REQUEST_TIMEOUT,
    SHUTDOWN_TIMEOUT,
)
from .dispatcher import CommandDispatcher
from .events import Connected, Disconnected, Event, ServiceError
from .packets import ClientPacket

logger = logging.getLogger(__name__)

EventListener = Callable[[Event], None]

_DEFAULT_EVENT_BUFFER = 10_000


class ClientService:
    """Non-blocking client for the power-tuning daemon.

    Listeners run on the reactor thread and must not block.
    """

    def __init__(
        self,
        address: str = DEFAULT_DAEMON_HOST,
        port: int = DEFAULT_DAEMON_PORT,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        request_timeout: float = REQUEST_TIMEOUT,
        trace: bool = False,
        max_events: int = _DEFAULT_EVENT_BUFFER,
    ):
        self._default_address = address
        self._default_port = port
        self._connect_timeout = connect_timeout
        self._request_timeout = request_timeout
        self._trace = trace

        # Accessor state, updated from the reactor thread
        self._state_lock = threading.Lock()
        self._connected = False
        self._address = ""
        self._port: Optional[int] = None

        self._events: queue.Queue[Event] = queue.Queue(maxsize=max_events)
        self._dropped_events = 0
        self._listeners: list[EventListener] = []
        self._listeners_lock = threading.Lock()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reactor_thread: Optional[threading.Thread] = None
        self._dispatcher: Optional[CommandDispatcher] = None
        self._requests: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

        self._start_reactor()
        self._run_sync(self._setup())

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        with self._state_lock:
            return self._connected

    @property
    def daemon_address(self) -> str:
        with self._state_lock:
            return self._address

    @property
    def daemon_port(self) -> Optional[int]:
        with self._state_lock:
            return self._port

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Reactor management
    # ------------------------------------------------------------------

    def _start_reactor(self):
        """Start the reactor thread and wait until its loop is processing callbacks."""
        loop = asyncio.new_event_loop()
        running = threading.Event()
        # first callback the loop runs; set only once run_forever() is live
        loop.call_soon(running.set)

        thread = threading.Thread(
            target=self._reactor_main,
            args=(loop,),
            name="PWT-Client-Reactor",
            daemon=True,
        )
        thread.start()

        if not running.wait(timeout=SHUTDOWN_TIMEOUT):
            if not thread.is_alive():
                loop.close()
            raise RuntimeError("Client reactor did not start")

        self._loop = loop
        self._reactor_thread = thread

    @staticmethod
    def _reactor_main(loop: asyncio.AbstractEventLoop):
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()
        finally:
            # requests still queued or in flight when close() stopped the loop
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()

    def _run_sync(self, coro, timeout=SHUTDOWN_TIMEOUT):
        """Schedule a coroutine on the reactor and block for its result."""
        assert self._loop is not None, "reactor not started"
        fut = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return fut.result(timeout=timeout)

    async def _setup(self):
        self._dispatcher = CommandDispatcher(
            self._deliver,
            connect_timeout=self._connect_timeout,
            request_timeout=self._request_timeout,
            trace=self._trace,
        )
        self._requests = asyncio.Queue()
        self._worker = asyncio.ensure_future(self._serve())

    async def _serve(self):
        assert self._requests is not None and self._dispatcher is not None
        while True:
            request = await self._requests.get()
            if request is None:
                break
            try:
                self._dispatcher.handle(request)
            except Exception as e:
                logger.exception(f"Error handling request {request!r}: {e}")

    async def _shutdown(self):
        assert self._requests is not None and self._dispatcher is not None
        self._requests.put_nowait(None)
        if self._worker is not None:
            await self._worker
        self._dispatcher.shutdown()

    def _post(self, request: Optional[Request]):
        if self._closed:
            raise RuntimeError("ClientService is closed")
        assert self._loop is not None and self._requests is not None
        self._loop.call_soon_threadsafe(self._requests.put_nowait, request)

    # ------------------------------------------------------------------
    # Event delivery (reactor thread)
    # ------------------------------------------------------------------

    def _deliver(self, event: Event):
        self._update_state(event)

        try:
            self._events.put_nowait(event)
        except queue.Full:
            self._dropped_events += 1
            logger.warning(f"Event queue full ({self._events.maxsize}), dropped {type(event).__name__}")

        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Event listener exception: {e}")

    def _update_state(self, event: Event):
        with self._state_lock:
            if isinstance(event, Connected):
                self._connected = True
                self._address = event.address
                self._port = event.port
            elif isinstance(event, Disconnected):
                self._connected = False
                self._address = ""
                self._port = None
            elif isinstance(event, ServiceError):
                self._connected = False

    # ------------------------------------------------------------------
    # Event consumption (caller threads)
    # ------------------------------------------------------------------

    def add_listener(self, listener: EventListener):
        """Call ``listener(event)`` on the reactor thread for every event."""
        with self._listeners_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: EventListener):
        with self._listeners_lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def get_event(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next queued event, or None if none arrives within ``timeout``.

        timeout=0 polls; timeout=None waits indefinitely.
        """
        try:
            if timeout == 0:
                return self._events.get_nowait()
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def events(self, timeout: Optional[float] = None) -> Iterator[Event]:
        """Yield queued events until ``timeout`` seconds have elapsed in total."""
        start = time.monotonic()
        while True:
            if timeout is None:
                remaining = None
            else:
                remaining = timeout - (time.monotonic() - start)
                if remaining <= 0:
                    return
            event = self.get_event(timeout=remaining)
            if event is None:
                return
            yield event

    def drain_events(self) -> list[Event]:
        """Return every event queued so far without waiting."""
        drained = []
        while True:
            try:
                drained.append(self._events.get_nowait())
            except queue.Empty:
                return drained

    @property
    def dropped_events(self) -> int:
        return self._dropped_events

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect_to_daemon(self, address: Optional[str] = None, port: Optional[int] = None):
        """Connect (or reconnect) to the daemon. Outcome: Connected or ServiceError."""
        self._post(
            Connect(
                address if address is not None else self._default_address,
                port if port is not None else self._default_port,
            )
        )

    def disconnect_from_daemon(self):
        """Close the connection. Outcome: Disconnected."""
        self._post(Disconnect())

    def close(self):
        """Abort the connection, stop the reactor thread and release resources."""
        if self._closed:
            return
        self._closed = True

        if self._loop is not None and self._dispatcher is not None:
            try:
                self._run_sync(self._shutdown())
            except Exception:
                logger.debug("Error shutting down dispatcher", exc_info=True)

        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)

        if self._reactor_thread and self._reactor_thread.is_alive():
            self._reactor_thread.join(timeout=2.0)

        with self._state_lock:
            self._connected = False

        self._dispatcher = None
        self._loop = None
        self._reactor_thread = None

    # ------------------------------------------------------------------
    # Requests (fire-and-forget)
    # ------------------------------------------------------------------

    def send_get_device_info_packet_request(self):
        self._post(GetDeviceInfo())

    def send_get_daemon_packet_request(self):
        self._post(GetDaemonPacket())

    def send_apply_settings_request(self, packet: ClientPacket):
        self._post(ApplySettings(packet))

    def send_get_daemon_settings_request(self):
        self._post(GetDaemonSettings())

    def send_apply_daemon_settings_request(self, data: bytes):
        self._post(ApplyDaemonSettings(data))

    def send_get_profile_list_request(self):
        self._post(GetProfileList())

    def send_delete_profile_request(self, name: str):
        self._post(DeleteProfile(name))

    def send_write_profile_request(self, name: str, packet: ClientPacket):
        self._post(WriteProfile(name, packet))

    def send_load_profile_request(self, name: str):
        self._post(LoadProfile(name))

    def send_apply_profile_request(self, name: str):
        self._post(ApplyProfile(name))

    def send_export_profiles_request(self, name: str):
        self._post(ExportProfiles(name))

    def send_import_profiles_request(self, profiles: dict[str, bytes]):
        self._post(ImportProfiles(dict(profiles) if isinstance(profiles, dict) else profiles))

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self):
        state = "connected" if self.connected else "disconnected"
        return f"ClientService({self.daemon_address}:{self.daemon_port}, {state})"
