from __future__ import annotations

import asyncio
import functools
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Protocol

from .auth.state import AuthState, AuthStateProvider
from .config import ConnectionSettings
from .exceptions import LoggedOutError, NotConnectedError
from .store import InMemoryStore
from .util.asyncio import ensure_task
from .util.events import AsyncEventEmitter, Listener

logger = logging.getLogger(__name__)


class DisconnectReason(IntEnum):
    """Status codes carried by a closed connection (values as in Baileys)."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    TIMED_OUT = 408
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    SHUTTING_DOWN = "shutting_down"


@dataclass(slots=True)
class ConnectionUpdate:
    connection: str | None = None  # "connecting" | "open" | "close"
    qr: str | None = None
    status_code: int | None = None
    error: Exception | None = None
    is_new_login: bool | None = None


class WASocket(Protocol):
    """What the manager needs from a protocol socket."""

    events: AsyncEventEmitter

    @property
    def user_jid(self) -> str | None: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def send_message(self, jid: str, content: Mapping[str, Any]) -> str: ...

    async def send_presence(self, available: bool = True) -> None: ...


SocketFactory = Callable[[AuthState], WASocket]
OpenCallback = Callable[[], Awaitable[None]]


def describe_reason(status_code: int | None) -> str:
    if status_code is None:
        return "unknown"
    try:
        return DisconnectReason(status_code).name.lower()
    except ValueError:
        return str(status_code)


class ConnectionManager:
    """
    Owns the lifecycle of the single WhatsApp connection.

    DISCONNECTED -> CONNECTING -> OPEN; any close moves to CLOSED. A logged-out
    close clears the auth state and stops for good. Every other close, a failed
    connect, or a connect that does not open within `connect_timeout_s`
    schedules exactly one reconnect after `reconnect_delay_s`. `shutdown()`
    cancels a pending reconnect and tears everything down.
    """

    def __init__(
        self,
        settings: ConnectionSettings,
        *,
        auth: AuthStateProvider,
        store: InMemoryStore,
        socket_factory: SocketFactory,
    ) -> None:
        self.settings = settings
        self._auth = auth
        self._store = store
        self._factory = socket_factory

        self.state = ConnectionState.DISCONNECTED
        self.sock: WASocket | None = None
        self.user_jid: str | None = None
        self.reconnects = 0

        self._listeners: list[tuple[str, Listener]] = []
        self._on_open: list[OpenCallback] = []
        self._outbox: deque[tuple[str, Mapping[str, Any]]] = deque()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._open_timeout_task: asyncio.Task[None] | None = None
        self._closed: asyncio.Future[None] | None = None
        self._logged_out = False

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN and self.sock is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def on(self, event: str, listener: Listener) -> None:
        """Subscribe to socket events; re-applied to every new socket."""

        self._listeners.append((event, listener))
        if self.sock is not None:
            self.sock.events.on(event, listener)

    def on_open(self, callback: OpenCallback) -> None:
        self._on_open.append(callback)

    async def start(self) -> None:
        if self._closed is None:
            self._closed = asyncio.get_running_loop().create_future()
        await self._connect()

    async def wait_closed(self) -> None:
        """
        Wait until the manager stops for good.

        Raises `LoggedOutError` when the stop was caused by a logout.
        """

        if self._closed is None:
            self._closed = asyncio.get_running_loop().create_future()
        await asyncio.shield(self._closed)

    async def send_message(self, jid: str, content: Mapping[str, Any]) -> str:
        if not self.is_open or self.sock is None:
            raise NotConnectedError(f"cannot send to {jid}: connection is {self.state.value}")
        return await self.sock.send_message(jid, content)

    async def enqueue_message(self, jid: str, content: Mapping[str, Any]) -> str | None:
        """Send now when open, otherwise hold the message until the next open."""

        if self.is_open:
            return await self.send_message(jid, content)
        self._outbox.append((jid, content))
        return None

    async def shutdown(self) -> None:
        if self.state is ConnectionState.SHUTTING_DOWN:
            return
        logger.info("shutting down connection")
        self._set_state(ConnectionState.SHUTTING_DOWN)
        self._cancel_reconnect()
        self._cancel_open_timeout()
        await self._teardown_socket()
        self._store.cleanup()
        await self._auth.close()
        self._resolve_closed(None)

    # -- internals -----------------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self.state:
            logger.debug("connection state %s -> %s", self.state.value, state.value)
            self.state = state

    def _stopped(self) -> bool:
        return self._logged_out or self.state is ConnectionState.SHUTTING_DOWN

    def _resolve_closed(self, error: BaseException | None) -> None:
        if self._closed is None:
            self._closed = asyncio.get_running_loop().create_future()
        if self._closed.done():
            return
        if error is None:
            self._closed.set_result(None)
        else:
            self._closed.set_exception(error)

    async def _connect(self) -> None:
        if self._stopped():
            return
        self._set_state(ConnectionState.CONNECTING)
        await self._teardown_socket()

        try:
            # Pending credential writes land before every (re)connect.
            await self._auth.flush()
            auth_state = await self._auth.load()
            if self._stopped():
                # shutdown() or a logout ran while the auth state was loading.
                logger.debug("connect abandoned, connection is %s", self.state.value)
                return
            sock = self._factory(auth_state)
        except Exception:
            logger.exception("failed to prepare connection")
            self._set_state(ConnectionState.CLOSED)
            self._schedule_reconnect()
            return

        self.sock = sock
        self._store.bind(sock.events)
        sock.events.on("connection.update", functools.partial(self._on_connection_update, sock))
        sock.events.on("creds.update", self._on_creds_update)
        for event, listener in self._listeners:
            sock.events.on(event, listener)

        self._arm_open_timeout(sock)
        logger.info("connecting to WhatsApp")
        try:
            await sock.connect()
        except Exception as e:
            logger.warning("connect failed: %s", e)
            await self._handle_close(sock, getattr(e, "status_code", None), e)

    async def _teardown_socket(self) -> None:
        sock, self.sock = self.sock, None
        if sock is None:
            return
        self._store.unbind()
        sock.events.remove_all_listeners()
        try:
            await sock.close()
        except Exception as e:
            logger.warning("error while closing socket: %s", e)

    async def _watch_open_timeout(self, sock: WASocket) -> None:
        await asyncio.sleep(self.settings.connect_timeout_s)
        if sock is self.sock and self.state is ConnectionState.CONNECTING:
            logger.warning(
                "connection did not open within %ss", self.settings.connect_timeout_s
            )
            await self._handle_close(sock, int(DisconnectReason.TIMED_OUT), None)

    def _arm_open_timeout(self, sock: WASocket) -> None:
        self._cancel_open_timeout()
        self._open_timeout_task = ensure_task(
            self._watch_open_timeout(sock), name="hyperwa.connect_timeout"
        )

    def _cancel_open_timeout(self) -> None:
        task, self._open_timeout_task = self._open_timeout_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _schedule_reconnect(self) -> None:
        if self._stopped():
            return
        self._cancel_reconnect()
        delay = self.settings.reconnect_delay_s
        logger.info("reconnecting in %ss", delay)
        self._reconnect_task = ensure_task(self._reconnect_after(delay), name="hyperwa.reconnect")

    async def _reconnect_after(self, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        self.reconnects += 1
        await self._connect()

    async def _on_creds_update(self, creds: Any = None) -> None:
        await self._auth.save_creds(creds)

    async def _on_connection_update(self, sock: WASocket, update: ConnectionUpdate) -> None:
        if sock is not self.sock:
            return
        if update.qr:
            logger.info("QR code received, scan it with WhatsApp > Linked devices")
        if update.connection == "connecting" and self.state is ConnectionState.CONNECTING:
            # A client-side restart (after pairing) gets a fresh open window.
            self._arm_open_timeout(sock)
        elif update.connection == "open":
            await self._handle_open(sock)
        elif update.connection == "close":
            await self._handle_close(sock, update.status_code, update.error)

    async def _handle_open(self, sock: WASocket) -> None:
        if self._stopped():
            return
        self._cancel_open_timeout()
        self._set_state(ConnectionState.OPEN)
        self.user_jid = sock.user_jid
        logger.info("connected to WhatsApp as %s", self.user_jid or "unknown")

        if self.settings.mark_online_on_connect:
            try:
                await sock.send_presence(True)
            except Exception as e:
                logger.warning("failed to announce presence: %s", e)

        while self._outbox and self.is_open:
            jid, content = self._outbox.popleft()
            try:
                await self.send_message(jid, content)
            except Exception:
                logger.exception("failed to deliver queued message to %s", jid)

        for callback in list(self._on_open):
            try:
                await callback()
            except Exception:
                logger.exception("on-open callback failed")

    async def _handle_close(
        self, sock: WASocket, status_code: int | None, error: Exception | None
    ) -> None:
        if sock is not self.sock or self._stopped():
            return
        self._cancel_open_timeout()

        if status_code == DisconnectReason.LOGGED_OUT:
            await self._handle_logged_out()
            return

        self._set_state(ConnectionState.CLOSED)
        logger.warning(
            "connection closed (%s%s)",
            describe_reason(status_code),
            f": {error}" if error else "",
        )
        self._store.save_to_file()
        self._schedule_reconnect()

    async def _handle_logged_out(self) -> None:
        if self._logged_out:
            return
        self._logged_out = True
        self._set_state(ConnectionState.CLOSED)
        self._cancel_reconnect()
        logger.error("logged out from WhatsApp; clearing credentials, a new QR pairing is needed")
        await self._auth.clear()
        self._store.save_to_file()
        self._resolve_closed(LoggedOutError("session logged out; re-authentication required"))
