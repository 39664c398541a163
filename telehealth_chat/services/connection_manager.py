"""
Socket.IO connection lifecycle for one chat surface.

One `socketio.AsyncClient` per manager. The reconnection policy (fixed delay,
bounded attempts) is driven here rather than by the client library so that running
out of attempts is observable: dependents switch to REST-only operation when
`exhausted` is set.
"""
import asyncio
import inspect
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError, SocketIOError

from telehealth_chat.config import Settings, get_settings
from telehealth_chat.constants import (
    ConnectionState,
    EMIT_AUTHENTICATE,
    EVENT_AUTHENTICATED,
    EVENT_CHAT_ERROR,
    EVENT_CHAT_ROOM_JOINED,
    EVENT_CONNECT,
    EVENT_DISCONNECT,
    EVENT_PHARMACY_ROOM_JOINED,
    MESSAGE_EVENTS,
)
from telehealth_chat.errors import ChatTransportError
from telehealth_chat.utils.endpoints import EndpointResolver
from telehealth_chat.utils.logger import get_logger
from telehealth_chat.utils.token_store import TokenStore

logger = get_logger("connection_manager")

Callback = Callable[..., Any]

# events whose listeners must exist before any room join is attempted
DOMAIN_EVENTS = (*MESSAGE_EVENTS, EVENT_PHARMACY_ROOM_JOINED, EVENT_CHAT_ROOM_JOINED, EVENT_CHAT_ERROR)


async def _invoke(callback: Callback, *args) -> None:
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"❌ Socket callback {getattr(callback, '__name__', callback)} failed: {e}", exc_info=True)


def _default_socket_factory() -> socketio.AsyncClient:
    return socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)


class ConnectionManager:
    def __init__(
        self,
        settings: Settings | None = None,
        token_store: TokenStore | None = None,
        socket_factory: Callable[[], Any] = _default_socket_factory,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.token_store = token_store
        self._socket_factory = socket_factory
        self._sleep = sleep

        self.sio: Any = None
        self.state = ConnectionState.DISCONNECTED
        self.exhausted = False
        self.user_id: str | None = None
        self.url: str | None = None
        self._resolver: EndpointResolver | None = None
        self._closing = False
        self._reconnect_task: asyncio.Task | None = None
        self._authenticated = asyncio.Event()

        self._subscribers: Dict[str, List[Callback]] = defaultdict(list)
        self._registered: set[str] = set()
        self._on_authenticated: List[Callback] = []
        self._on_disconnected: List[Callback] = []
        self._on_exhausted: List[Callback] = []
        self._on_state_change: List[Callback] = []

    # -------------------------------------------------------------- observers

    @property
    def connected(self) -> bool:
        return self.state in (ConnectionState.CONNECTED, ConnectionState.AUTHENTICATED)

    @property
    def is_authenticated(self) -> bool:
        return self.state == ConnectionState.AUTHENTICATED

    def on_authenticated(self, callback: Callback) -> None:
        self._on_authenticated.append(callback)

    def on_disconnected(self, callback: Callback) -> None:
        self._on_disconnected.append(callback)

    def on_exhausted(self, callback: Callback) -> None:
        self._on_exhausted.append(callback)

    def on_state_change(self, callback: Callback) -> None:
        self._on_state_change.append(callback)

    def subscribe(self, event: str, handler: Callback) -> None:
        """Add a handler for a server event; safe before or after connect."""
        self._subscribers[event].append(handler)
        if self.sio is not None:
            self._register(event)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        previous, self.state = self.state, state
        logger.debug(f"Socket state {previous.value} -> {state.value}")
        for callback in list(self._on_state_change):
            try:
                callback(previous, state)
            except Exception as e:
                logger.error(f"❌ State listener failed: {e}")

    # -------------------------------------------------------------- handlers

    def _register(self, event: str) -> None:
        if event in self._registered or event in (EVENT_CONNECT, EVENT_DISCONNECT, EVENT_AUTHENTICATED):
            return

        async def _dispatch(*args):
            for handler in list(self._subscribers.get(event, [])):
                await _invoke(handler, *args)

        self.sio.on(event, _dispatch)
        self._registered.add(event)

    def _register_handlers(self) -> None:
        self.sio.on(EVENT_CONNECT, self._handle_connect)
        self.sio.on(EVENT_DISCONNECT, self._handle_disconnect)
        self.sio.on(EVENT_AUTHENTICATED, self._handle_authenticated)
        for event in (*DOMAIN_EVENTS, *self._subscribers.keys()):
            self._register(event)

    async def _handle_connect(self) -> None:
        await self._mark_connected()

    async def _mark_connected(self) -> None:
        if self.connected:
            return
        self._set_state(ConnectionState.CONNECTED)
        logger.info(f"🔌 Socket connected to {self.url}")
        if self.user_id:
            await self._emit_authenticate()

    async def _handle_disconnect(self, *args) -> None:
        # newer python-socketio passes a reason argument
        was_connected = self.connected
        self._authenticated.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        if was_connected:
            logger.info(f"❌ Socket disconnected{f' ({args[0]})' if args else ''}")
            for callback in list(self._on_disconnected):
                await _invoke(callback)
        if not self._closing and was_connected:
            self._schedule_reconnect()

    async def _handle_authenticated(self, data: Optional[dict] = None) -> None:
        self._set_state(ConnectionState.AUTHENTICATED)
        self._authenticated.set()
        logger.info(f"✅ Socket authenticated as {self.user_id}")
        for callback in list(self._on_authenticated):
            await _invoke(callback, data)

    # ------------------------------------------------------------- lifecycle

    def _auth_payload(self) -> dict | None:
        token = self.token_store.get() if self.token_store else None
        return {"token": token} if token else None

    async def connect(self, endpoint_resolver: EndpointResolver) -> bool:
        """Open the socket. Returns False once the attempt budget is spent."""
        self._resolver = endpoint_resolver
        self._closing = False
        self.exhausted = False
        if self.sio is None:
            self.sio = self._socket_factory()
            self._registered.clear()
            self._register_handlers()
        return await self._connect_with_retry()

    async def _connect_with_retry(self) -> bool:
        attempts = max(1, self.settings.RECONNECTION_ATTEMPTS)
        delay = self.settings.RECONNECTION_DELAY_SECONDS
        for attempt in range(1, attempts + 1):
            if self._closing:
                return False
            self.url = self._resolver()
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self.sio.connect(
                    self.url,
                    transports=self.settings.socket_transports,
                    auth=self._auth_payload(),
                )
            except (SocketConnectionError, OSError) as e:
                self._set_state(ConnectionState.DISCONNECTED)
                logger.warning(f"⚠️ Socket connect attempt {attempt}/{attempts} to {self.url} failed: {e}")
                if attempt < attempts and not self._closing:
                    await self._sleep(delay)
                continue
            await self._mark_connected()
            return True

        self.exhausted = True
        self._set_state(ConnectionState.DISCONNECTED)
        logger.error(f"❌ Giving up on socket after {attempts} attempts; falling back to REST")
        for callback in list(self._on_exhausted):
            await _invoke(callback)
        return False

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        await self._sleep(self.settings.RECONNECTION_DELAY_SECONDS)
        if self._closing or self.sio is None:
            return
        logger.info("🔄 Reconnecting socket...")
        await self._connect_with_retry()

    async def authenticate(self, user_id: str) -> None:
        """Identify the current user; room joins wait for the server's `authenticated` reply."""
        self.user_id = str(user_id)
        if self.connected:
            await self._emit_authenticate()

    async def _emit_authenticate(self) -> None:
        try:
            await self.sio.emit(EMIT_AUTHENTICATE, self.user_id)
        except SocketIOError as e:
            logger.warning(f"⚠️ Could not send authenticate: {e}")

    async def wait_authenticated(self, timeout: float | None = None) -> bool:
        timeout = self.settings.AUTHENTICATION_TIMEOUT_SECONDS if timeout is None else timeout
        try:
            await asyncio.wait_for(self._authenticated.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def emit(self, event: str, payload: Any = None) -> None:
        if not self.connected or self.sio is None:
            raise ChatTransportError(f"Cannot emit {event}: socket is {self.state.value}")
        try:
            await self.sio.emit(event, payload)
        except SocketIOError as e:
            raise ChatTransportError(f"Emit {event} failed: {e}") from e

    async def disconnect(self) -> None:
        """Release the transport. Safe to call more than once and from error paths."""
        self._closing = True
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        sio, self.sio = self.sio, None
        if sio is not None:
            try:
                await sio.disconnect()
            except Exception as e:
                logger.warning(f"⚠️ Error while closing socket: {e}")
        self._authenticated.clear()
        self._registered.clear()
        self._set_state(ConnectionState.DISCONNECTED)

    @asynccontextmanager
    async def session(self, endpoint_resolver: EndpointResolver, user_id: str | None = None) -> AsyncIterator["ConnectionManager"]:
        """Connect (and authenticate) for the duration of the block; always released on exit."""
        try:
            if await self.connect(endpoint_resolver) and user_id:
                await self.authenticate(user_id)
            yield self
        finally:
            await self.disconnect()
