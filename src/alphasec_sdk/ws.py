"""
ws.py – Async websocket stream hub for AlphaSec with reconnect logic.

One StreamHub owns exactly one physical websocket and multiplexes any
number of logical subscriptions over it (see messages.py for the framing).

This hub:
1. Connects in a background task started by start().
2. Deduplicates subscriptions per channel via SubscriptionRegistry and
   sends one subscribe frame per new channel.
3. On any disconnect it moves to RECONNECTING, backs off exponentially
   and reconnects, then re-subscribes every live channel.
4. Decodes each frame into a typed message and puts it on ONE bounded
   delivery queue.  When the queue is full the read loop waits: a slow
   consumer delays reading from the socket, but no message is dropped.
5. Gives up after ``max_reconnect_attempts`` consecutive failed connects;
   the hub is then STOPPED and subscribe/unsubscribe raise ConnectionLost
   until start() is called again.

Connection lifecycle
--------------------
    DISCONNECTED ─start()─▶ CONNECTING ─▶ CONNECTED ─drop─▶ RECONNECTING ─┐
                                             ▲                            │
                                             └───────────reconnect────────┘
    any state ─stop() / attempts exhausted─▶ STOPPED ─start()─▶ CONNECTING

Usage
-----
    hub = StreamHub(StreamConfig(url=config.ws_url))
    await hub.start()
    handle   = await hub.subscribe("trade@1_2")
    receiver = hub.take_message_receiver()
    async for msg in receiver:
        print(msg.channel, msg)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum, unique
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import ConnectionLost, ReceiverAlreadyTaken
from .messages import (
    StreamMessage,
    SubscriptionAck,
    decode_frame,
    subscribe_frame,
    unsubscribe_frame,
)
from .registry import SubscriptionRegistry, SubscriptionState

logger = logging.getLogger(__name__)

# Opens a websocket for a URL; returns an object with send(), close() and
# async iteration over incoming frames.
Connector = Callable[[str], Awaitable[Any]]

# Errors that mean "the socket is gone", as opposed to a bug in the hub.
_TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


# ---------------------------------------------------------------------------
# Configuration and state
# ---------------------------------------------------------------------------

@dataclass
class StreamConfig:
    """
    Parameters
    ----------
    url                    : Websocket URL (Config.ws_url)
    reconnect_delay        : First back-off delay in seconds
    max_reconnect_delay    : Back-off ceiling in seconds
    max_reconnect_attempts : Consecutive failed connects tolerated before the
                             hub stops; None retries forever
    ping_interval          : Keepalive ping interval in seconds
    ping_timeout           : Seconds to wait for a pong before dropping
    queue_size             : Capacity of the delivery queue
    """
    url:                    str
    reconnect_delay:        float         = 1.0
    max_reconnect_delay:    float         = 30.0
    max_reconnect_attempts: Optional[int] = 10
    ping_interval:          float         = 10.0
    ping_timeout:           float         = 10.0
    queue_size:             int           = 1000

    def __post_init__(self) -> None:
        if self.queue_size <= 0:
            raise ValueError("queue_size must be positive")
        if self.reconnect_delay < 0 or self.max_reconnect_delay < self.reconnect_delay:
            raise ValueError("reconnect delays must satisfy 0 <= reconnect_delay <= max_reconnect_delay")


@dataclass
class ConnectionStats:
    connects:           int             = 0
    reconnects:         int             = 0
    failed_connects:    int             = 0
    frames_sent:        int             = 0
    frames_received:    int             = 0
    messages_delivered: int             = 0
    decode_errors:      int             = 0
    last_message_at:    Optional[float] = None   # time.monotonic()


@unique
class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING   = "connecting"
    CONNECTED    = "connected"
    RECONNECTING = "reconnecting"
    STOPPED      = "stopped"


# ---------------------------------------------------------------------------
# Delivery channel
# ---------------------------------------------------------------------------

# Queued only to wake a blocked receiver; never handed to the consumer.
_WAKE = object()


class _DeliveryChannel:
    def __init__(self, size: int) -> None:
        self.queue:  asyncio.Queue[Any] = asyncio.Queue(maxsize=size)
        self.taken  = False
        self.closed = False
        self.lost   = False

    def _wake(self) -> None:
        with suppress(asyncio.QueueFull):
            self.queue.put_nowait(_WAKE)

    def close(self) -> None:
        self.closed = True
        self._wake()

    def reopen(self) -> None:
        self.closed = False
        self.lost   = False

    def mark_lost(self) -> None:
        self.lost = True
        self._wake()


class MessageReceiver:
    """
    Consuming end of the hub's delivery queue.

    recv() returns the next StreamMessage, or None once the hub has been
    stopped and every buffered message has been read.  If the hub gives up
    reconnecting, recv() raises ConnectionLost once the buffer is drained.
    The hub hands out a single receiver for its whole lifetime; after
    start() (following either stop() or a give-up) the same receiver keeps
    working.
    """

    def __init__(self, channel: _DeliveryChannel) -> None:
        self._channel = channel

    async def recv(self) -> Optional[StreamMessage]:
        while True:
            if self._channel.queue.empty():
                if self._channel.closed:
                    return None
                if self._channel.lost:
                    self._channel.lost = False
                    raise ConnectionLost("stream stopped after exhausting reconnect attempts")
            item = await self._channel.queue.get()
            if item is _WAKE:
                continue
            return item

    def __aiter__(self) -> "MessageReceiver":
        return self

    async def __anext__(self) -> StreamMessage:
        msg = await self.recv()
        if msg is None:
            raise StopAsyncIteration
        return msg

    def qsize(self) -> int:
        return self._channel.queue.qsize()


# ---------------------------------------------------------------------------
# Stream hub
# ---------------------------------------------------------------------------

class StreamHub:
    """
    Single-connection subscription multiplexer.

    Parameters
    ----------
    config    : StreamConfig
    connector : Optional coroutine function ``url -> connection``; defaults
                to websockets.connect with the configured keepalive.
    """

    def __init__(self, config: StreamConfig, connector: Optional[Connector] = None) -> None:
        self._config     = config
        self._connector  = connector or self._connect
        self.registry    = SubscriptionRegistry()
        self.stats       = ConnectionStats()
        self._state      = ConnectionState.DISCONNECTED
        self._ws:        Optional[Any]           = None
        self._task:      Optional[asyncio.Task]  = None
        self._channel    = _DeliveryChannel(config.queue_size)
        self._connected  = asyncio.Event()
        self._lost       = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            logger.debug("Stream state %s -> %s", self._state.value, state.value)
            self._state = state

    async def wait_connected(self, timeout: Optional[float] = None) -> None:
        """Block until the hub is CONNECTED (asyncio.TimeoutError on timeout)."""
        await asyncio.wait_for(self._connected.wait(), timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the connection task.  No-op while already running."""
        if self._state in (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
        ):
            return
        self._channel.reopen()
        self._lost = False
        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.create_task(self._run(), name="alphasec-stream")
        logger.info("Starting AlphaSec stream to %s", self._config.url)

    async def stop(self) -> None:
        """
        Cancel the read loop and any pending back-off, close the socket,
        clear the registry and signal end-of-stream to the receiver.
        """
        self._set_state(ConnectionState.STOPPED)
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await self.registry.clear()
        self._connected.clear()
        self._channel.close()
        logger.info("AlphaSec stream stopped")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _check_available(self) -> None:
        if self._lost:
            raise ConnectionLost("stream stopped after exhausting reconnect attempts; call start()")

    async def subscribe(self, channel: str) -> int:
        """
        Subscribe to ``channel`` and return its handle.

        A channel that is already live returns the existing handle and sends
        nothing.  If the hub is not connected yet the frame goes out on the
        next (re)connect.
        """
        self._check_available()
        async with self.registry.lock:
            sub, created = self.registry.register_locked(channel)
            if created and self.is_connected:
                await self._send(subscribe_frame(channel, sub.handle))
        if created:
            logger.info("Subscribed to %s (handle %d)", channel, sub.handle)
        return sub.handle

    async def unsubscribe(self, handle: int) -> bool:
        """
        Drop the subscription behind ``handle``.

        Returns False (and sends nothing) for unknown or already closed
        handles.
        """
        self._check_available()
        async with self.registry.lock:
            sub = self.registry.begin_unsubscribe_locked(handle)
            if sub is None:
                return False
            if self.is_connected:
                await self._send(unsubscribe_frame(sub.channel, handle))
            self.registry.remove_locked(handle)
        logger.info("Unsubscribed from %s (handle %d)", sub.channel, handle)
        return True

    def take_message_receiver(self) -> MessageReceiver:
        """Hand out the consuming end of the delivery queue, exactly once."""
        if self._channel.taken:
            raise ReceiverAlreadyTaken()
        self._channel.taken = True
        return MessageReceiver(self._channel)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _connect(self, url: str) -> Any:
        return await websockets.connect(
            url,
            ping_interval=self._config.ping_interval,
            ping_timeout=self._config.ping_timeout,
        )

    async def _send(self, frame: str) -> None:
        """Send on the current socket; a dead socket is left to the read loop."""
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(frame)
            self.stats.frames_sent += 1
            logger.debug("Sent frame %s", frame)
        except (ConnectionClosed, OSError) as exc:
            logger.debug("Send failed, frame will be replayed on reconnect: %s", exc)

    async def _run(self) -> None:
        """Connect, read and reconnect until stopped or out of attempts."""
        back_off = self._config.reconnect_delay
        failures = 0
        ever_connected = False

        while True:
            try:
                ws = await self._connector(self._config.url)
            except _TRANSPORT_ERRORS as exc:
                failures += 1
                self.stats.failed_connects += 1
                limit = self._config.max_reconnect_attempts
                if limit is not None and failures > limit:
                    logger.error(
                        "Giving up on AlphaSec stream after %d failed connects: %s",
                        failures, exc,
                    )
                    self._give_up()
                    return
                logger.warning(
                    "WebSocket connect failed – retrying in %.1f s: %s", back_off, exc,
                )
                self._set_state(ConnectionState.RECONNECTING)
                await asyncio.sleep(back_off)
                back_off = min(back_off * 2, self._config.max_reconnect_delay)
                continue

            failures = 0
            back_off = self._config.reconnect_delay
            self._ws = ws
            try:
                await self._on_connected(ws, ever_connected)
                ever_connected = True
                await self._read_loop(ws)
                reason: Any = "closed by server"
            except (ConnectionClosed, OSError) as exc:
                reason = exc
            finally:
                self._ws = None
                self._connected.clear()
                with suppress(ConnectionClosed, OSError):
                    await ws.close()

            self._set_state(ConnectionState.RECONNECTING)
            logger.warning("WebSocket dropped – reconnecting in %.1f s: %s", back_off, reason)
            await asyncio.sleep(back_off)
            back_off = min(back_off * 2, self._config.max_reconnect_delay)

    def _give_up(self) -> None:
        self._lost = True
        self._set_state(ConnectionState.STOPPED)
        self._channel.mark_lost()

    async def _on_connected(self, ws: Any, reconnect: bool) -> None:
        """Replay one subscribe frame per live channel, then go CONNECTED."""
        async with self.registry.lock:
            live = self.registry.live()
            for sub in live:
                sub.state = SubscriptionState.REQUESTED
                await ws.send(subscribe_frame(sub.channel, sub.handle))
                self.stats.frames_sent += 1
            self._set_state(ConnectionState.CONNECTED)
            self._connected.set()

        self.stats.connects += 1
        if reconnect:
            self.stats.reconnects += 1
            logger.info("WebSocket reconnected, resubscribed %d channel(s)", len(live))
        else:
            logger.info("WebSocket connected")

    async def _read_loop(self, ws: Any) -> None:
        """Decode frames and deliver them; waits when the queue is full."""
        async for raw in ws:
            self.stats.frames_received += 1
            self.stats.last_message_at = time.monotonic()
            try:
                frame = decode_frame(raw)
            except ValueError:
                self.stats.decode_errors += 1
                logger.warning("Received non-JSON WebSocket message: %r", raw)
                continue

            if frame is None:
                continue
            if isinstance(frame, SubscriptionAck):
                if frame.ok:
                    self.registry.mark_active(frame.id)
                else:
                    logger.warning("Server rejected request %d: %s", frame.id, frame.error)
                continue

            self.registry.mark_channel_active(frame.channel)
            await self._channel.queue.put(frame)
            self.stats.messages_delivered += 1
