"""Websocket transport to the room relay.

A SignalingChannel owns exactly one websocket at a time. It is the ONLY place
that reads from the socket: every inbound envelope is parsed and handed to the
handlers subscribed to its event name, in delivery order.

When the socket drops unexpectedly the channel emits ``disconnected``, then
retries up to ``max_reconnect_attempts`` times. Each successful reconnect
emits ``connected``. Nothing is replayed; callers decide whether to re-join.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

import websockets
from websockets.exceptions import ConnectionClosed

from chatroom_rtc.exceptions import NotConnectedError, ProtocolError
from chatroom_rtc.protocol import (
    EVT_CONNECTED,
    EVT_DISCONNECTED,
    build_envelope,
    parse_envelope,
)

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]


class SignalingChannel:
    """Ordered, named-event channel to the relay.

    Attributes:
        url: Websocket URL of the relay.
        max_reconnect_attempts: Reconnect attempts after an unexpected drop.
        reconnect_delay: Seconds to wait before each reconnect attempt.
        websocket: The live connection, or None while disconnected.
    """

    def __init__(
        self,
        url: str,
        max_reconnect_attempts: int = 5,
        reconnect_delay: float = 1.0,
        connect_fn: Optional[Callable[[str], Awaitable["ClientConnection"]]] = None,
    ):
        """Initialize the channel without connecting.

        Args:
            url: Websocket URL of the relay.
            max_reconnect_attempts: Reconnect attempts after an unexpected drop.
            reconnect_delay: Seconds between reconnect attempts.
            connect_fn: Coroutine function opening a connection to ``url``.
                Defaults to ``websockets.connect``.
        """
        self.url = url
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self._connect_fn = connect_fn or websockets.connect

        self.websocket: Optional["ClientConnection"] = None
        self._handlers: Dict[str, List[Handler]] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self.websocket is not None

    def subscribe(self, event: str, handler: Handler) -> None:
        """Register ``handler`` for ``event``. Handlers may be async."""
        self._handlers.setdefault(event, []).append(handler)

    def unsubscribe(self, event: str, handler: Handler) -> None:
        """Remove a handler registered with subscribe(). Unknown handlers are ignored."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._handlers.pop(event, None)

    async def connect(self) -> None:
        """Open the websocket and start routing inbound events.

        Raises:
            OSError, websockets.exceptions.InvalidHandshake: If the relay is
                unreachable on the first attempt.
        """
        if self.websocket is not None:
            logger.debug("Signaling channel already connected")
            return

        self._closing = False
        self.websocket = await self._connect_fn(self.url)
        logger.info(f"Connected to relay at {self.url}")

        self._reader_task = asyncio.create_task(self._read_loop())
        await self._emit(EVT_CONNECTED, {})

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        """Send one event to the relay.

        Raises:
            NotConnectedError: If there is no live websocket.
        """
        websocket = self.websocket
        if websocket is None:
            raise NotConnectedError(f"Cannot send {event}: not connected to relay")

        try:
            await websocket.send(build_envelope(event, payload))
        except ConnectionClosed as e:
            raise NotConnectedError(f"Cannot send {event}: connection closed") from e
        logger.debug(f"Sent {event}")

    async def close(self) -> None:
        """Close the websocket for good. No reconnect is attempted."""
        self._closing = True
        websocket, self.websocket = self.websocket, None

        if websocket is not None:
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error while closing websocket: {e}")

        task, self._reader_task = self._reader_task, None
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        logger.info("Signaling channel closed")

    async def _read_loop(self) -> None:
        """Route every inbound envelope; reconnect on unexpected loss."""
        while True:
            websocket = self.websocket
            if websocket is None:
                return

            try:
                async for raw in websocket:
                    await self._handle_raw(raw)
            except ConnectionClosed as e:
                logger.warning(f"Relay connection closed: {e}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Relay connection error: {e}")

            if self._closing:
                return

            self.websocket = None
            await self._emit(EVT_DISCONNECTED, {})

            if not await self._reconnect():
                return

    async def _reconnect(self) -> bool:
        """Attempt to re-open the websocket with bounded retries.

        Returns:
            True once a connection is re-established, False when attempts are exhausted.
        """
        attempts = 0
        while attempts < self.max_reconnect_attempts and not self._closing:
            attempts += 1
            logger.info(
                f"Reconnection attempt {attempts}/{self.max_reconnect_attempts}..."
            )
            await asyncio.sleep(self.reconnect_delay)
            if self._closing:
                return False

            try:
                self.websocket = await self._connect_fn(self.url)
            except Exception as e:
                logger.warning(f"Reconnection failed: {e}")
                continue

            logger.info("Reconnected to relay")
            await self._emit(EVT_CONNECTED, {})
            return True

        if not self._closing:
            logger.error("Maximum reconnection attempts reached; staying disconnected")
        return False

    async def _handle_raw(self, raw) -> None:
        try:
            event, payload = parse_envelope(raw)
        except ProtocolError as e:
            logger.error(f"Dropping malformed relay frame: {e}")
            return

        logger.debug(f"Received {event}")
        await self._emit(event, payload)

    async def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        handlers = list(self._handlers.get(event, []))
        if not handlers:
            logger.debug(f"Unhandled event type: {event}")
            return

        for handler in handlers:
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error handling {event}: {e}")
