"""
Gateway client.

WHAT: Reconnecting client for the /api/v1/ws gateway
WHY: Apps need live events plus a predictable story when the network drops
HOW: Explicit state machine {disconnected, connecting, connected, backoff_wait}
     driven by one asyncio task; linear backoff with a bounded number of
     retries, then a persistent TransportException until resume()

The connector and sleep function are injectable so the state machine can be
driven without a network.
"""

import asyncio
import inspect
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

from ..core.config import settings
from ..utils.exceptions import TransportException
from ..utils.logger import get_logger
from . import protocol
from .protocol import GatewayEvent

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKOFF_WAIT = "backoff_wait"


TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset({
        ConnectionState.CONNECTED, ConnectionState.BACKOFF_WAIT, ConnectionState.DISCONNECTED,
    }),
    ConnectionState.CONNECTED: frozenset({ConnectionState.BACKOFF_WAIT, ConnectionState.DISCONNECTED}),
    ConnectionState.BACKOFF_WAIT: frozenset({ConnectionState.CONNECTING, ConnectionState.DISCONNECTED}),
}


async def websocket_connector(url: str):
    """Default connector: a `websockets` client connection."""
    return await websockets.connect(url)


class GatewayClient:
    """
    Client side of the delivery gateway.

    Usage:
        client = GatewayClient("ws://localhost:8000/api/v1/ws", token, on_event=handle)
        await client.start()
        await client.join("conv-1")
        ...
        await client.close()
    """

    def __init__(
        self,
        url: str,
        token: str,
        on_event: Optional[Callable[[GatewayEvent], Any]] = None,
        on_reconnect: Optional[Callable[[], Any]] = None,
        on_state_change: Optional[Callable[[ConnectionState, ConnectionState], Any]] = None,
        connector: Callable[[str], Awaitable[Any]] = websocket_connector,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ):
        self.url = url
        self.token = token
        self.on_event = on_event
        self.on_reconnect = on_reconnect
        self.on_state_change = on_state_change
        self.max_attempts = max_attempts if max_attempts is not None else settings.CLIENT_MAX_RECONNECT_ATTEMPTS
        self.base_delay = base_delay if base_delay is not None else settings.CLIENT_RECONNECT_DELAY

        self._connector = connector
        self._sleep = sleep
        self._socket = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False

        self.state = ConnectionState.DISCONNECTED
        self.rooms: Set[str] = set()
        self.last_error: Optional[TransportException] = None
        self.attempts = 0
        self.history: List[ConnectionState] = [self.state]

    # ========== Lifecycle ==========

    async def start(self):
        """Begin connecting; returns immediately, the connection runs in a task."""
        if self._task is not None and not self._task.done():
            return
        self._closing = False
        self._task = asyncio.create_task(self._run())

    async def resume(self):
        """Manual retry after the client gave up (e.g. app back in foreground)."""
        if self.state != ConnectionState.DISCONNECTED:
            return
        self.last_error = None
        await self.start()

    async def close(self):
        """Close for good; no reconnect follows."""
        self._closing = True
        if self._socket is not None:
            try:
                await self._socket.close()
            except Exception as e:
                logger.debug(f"Error closing gateway socket: {e}")
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._socket = None
        if self.state != ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED)

    async def wait(self):
        """Wait until the connection task ends (gave up or closed)."""
        if self._task is not None:
            await self._task

    def _transition(self, new_state: ConnectionState):
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid gateway state transition {self.state.value} -> {new_state.value}")
        old_state, self.state = self.state, new_state
        self.history.append(new_state)
        logger.debug(f"Gateway client {old_state.value} -> {new_state.value}")
        if self.on_state_change is not None:
            self.on_state_change(old_state, new_state)

    def _connect_url(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode({'token': self.token})}"

    async def _run(self):
        failures = 0
        connected_before = False
        while not self._closing:
            self._transition(ConnectionState.CONNECTING)
            self.attempts += 1
            try:
                self._socket = await self._connector(self._connect_url())
            except Exception as e:
                failures += 1
                logger.warning(f"Gateway connect attempt {failures} failed: {e}")
                if not await self._backoff(failures, f"No se pudo conectar: {e}"):
                    return
                continue

            failures = 0
            self.last_error = None
            self._transition(ConnectionState.CONNECTED)
            if connected_before:
                await self._rejoin()
                await self._call(self.on_reconnect)
            connected_before = True

            close_code = await self._receive_loop()
            self._socket = None
            if self._closing:
                break
            if close_code == protocol.CLOSE_UNAUTHORIZED:
                self.last_error = TransportException("Token inválido", attempts=self.attempts)
                self._transition(ConnectionState.DISCONNECTED)
                return

            failures += 1
            if not await self._backoff(failures, "Conexión perdida"):
                return

        if self.state != ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED)

    async def _backoff(self, failures: int, reason: str) -> bool:
        """
        Wait before the next attempt.

        Returns:
            False when the retry budget is spent (client is now disconnected)
        """
        if failures > self.max_attempts:
            self.last_error = TransportException(
                f"{reason}. Reintentos agotados tras {failures} intentos", attempts=failures
            )
            logger.error(f"Gateway client giving up: {self.last_error.message}")
            self._transition(ConnectionState.DISCONNECTED)
            return False
        self._transition(ConnectionState.BACKOFF_WAIT)
        await self._sleep(self.base_delay * failures)
        return True

    async def _receive_loop(self) -> Optional[int]:
        """Read events until the socket closes; returns the close code if known."""
        while True:
            try:
                raw = await self._socket.recv()
            except ConnectionClosed as e:
                return e.rcvd.code if e.rcvd is not None else None
            except (OSError, asyncio.IncompleteReadError) as e:
                logger.warning(f"Gateway connection dropped: {e}")
                return None

            try:
                event = GatewayEvent.from_wire(json.loads(raw))
            except ValueError as e:
                logger.warning(f"Ignoring malformed gateway event: {e}")
                continue
            await self._call(self.on_event, event)

    async def _call(self, callback: Optional[Callable], *args):
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Gateway client callback failed: {e}", exc_info=True)

    # ========== Client -> server events ==========

    async def _rejoin(self):
        for conversation_id in sorted(self.rooms):
            await self._emit(protocol.CONVERSATION_JOIN, conversation_id)

    async def join(self, conversation_id: str) -> bool:
        """Join a room; remembered and re-joined after reconnects."""
        self.rooms.add(conversation_id)
        return await self._emit(protocol.CONVERSATION_JOIN, conversation_id)

    async def leave(self, conversation_id: str) -> bool:
        self.rooms.discard(conversation_id)
        return await self._emit(protocol.CONVERSATION_LEAVE, conversation_id)

    async def typing(self, conversation_id: str, active: bool = True) -> bool:
        event_type = protocol.TYPING_START if active else protocol.TYPING_STOP
        return await self._emit(event_type, conversation_id)

    async def ack_read(self, conversation_id: str) -> bool:
        return await self._emit(protocol.READ_ACK, conversation_id)

    async def set_presence(self, status: str) -> bool:
        return await self._emit(protocol.PRESENCE_UPDATE, None, {"status": status})

    async def _emit(self, event_type: str, conversation_id: Optional[str], payload: Optional[dict] = None) -> bool:
        """Send if connected; ephemeral events are dropped while offline."""
        if self.state != ConnectionState.CONNECTED or self._socket is None:
            return False
        event = GatewayEvent(type=event_type, conversation_id=conversation_id, payload=payload or {})
        try:
            await self._socket.send(json.dumps(event.to_wire()))
            return True
        except (ConnectionClosed, OSError) as e:
            logger.warning(f"Could not send {event_type}: {e}")
            return False
