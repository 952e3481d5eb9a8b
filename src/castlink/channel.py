"""WebSocket signaling channel to a receiver.

One SignalingChannel owns at most one socket at a time. Every connect
attempt gets a new generation number; callbacks and borrowed references
carry the generation they were created for, and anything tagged with an
old generation is dropped instead of being applied to the new socket.

Usage:
    channel = SignalingChannel()
    channel.subscribe(handle_message)      # (envelope, generation)
    channel.on_close(handle_close)         # (generation)
    generation = await channel.connect(AccessCode.parse("0A0A0A01"))
    await channel.send(Auth(pin="123456"), generation)
    ...
    await channel.shutdown()
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

import aiohttp

from castlink.access_code import SERVICE_PORT, AccessCode, ResolvedAddress, resolve
from castlink.config import ChannelConfig
from castlink.errors import ChannelError, MessageError
from castlink.message import Envelope, ErrorReport, Ping, decode_message, encode_message
from castlink.protocols import ChannelState

logger = logging.getLogger(__name__)

# url -> connected websocket (aiohttp.ClientWebSocketResponse or compatible)
Connector = Callable[[str], Awaitable[Any]]
MessageHandler = Callable[[Envelope, int], Any]
LifecycleHandler = Callable[[int], Any]

Target = AccessCode | ResolvedAddress


async def invoke_handler(handler: Callable[..., Any], *args: Any) -> None:
    """Call a sync or async handler."""
    result = handler(*args)
    if asyncio.iscoroutine(result):
        await result


class SignalingChannel:
    """Bidirectional JSON message channel with keep-alive and reconnection."""

    def __init__(
        self,
        config: ChannelConfig | None = None,
        connector: Connector | None = None,
        port: int = SERVICE_PORT,
    ):
        """Initialize channel.

        Args:
            config: Keep-alive, reconnect and timeout settings.
            connector: Opens a websocket for a URL (for testing).
            port: Receiver port used when resolving access codes.
        """
        self._config = config or ChannelConfig()
        self._connector = connector or self._default_connector
        self._port = port
        self._http: aiohttp.ClientSession | None = None

        self._state = ChannelState.IDLE
        self._generation = 0
        self._target: Target | None = None
        self._address: ResolvedAddress | None = None
        self._ws: Any = None

        self._subscriber: MessageHandler | None = None
        self._connecting_handler: LifecycleHandler | None = None
        self._open_handler: LifecycleHandler | None = None
        self._close_handler: LifecycleHandler | None = None

        self._receive_task: asyncio.Task | None = None
        self._keepalive_task: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._reconnect_task: asyncio.Task | None = None

        self._reconnect_enabled = False
        self._has_opened = False
        self._shutting_down = False

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> ChannelState:
        """Current channel state."""
        return self._state

    @property
    def generation(self) -> int:
        """Token of the most recent connect attempt."""
        return self._generation

    @property
    def address(self) -> ResolvedAddress | None:
        """Address of the most recent connect attempt."""
        return self._address

    @property
    def reconnect_enabled(self) -> bool:
        return self._reconnect_enabled and not self._shutting_down

    @property
    def reconnect_pending(self) -> bool:
        """True while a delayed reconnect is scheduled."""
        return self._reconnect_handle is not None

    def is_current(self, generation: int | None) -> bool:
        """Check whether a generation still refers to the open socket."""
        return generation == self._generation and self._state is ChannelState.OPEN

    # =========================================================================
    # Handlers
    # =========================================================================

    def subscribe(self, handler: MessageHandler | None) -> None:
        """Set the single receiver of inbound envelopes.

        Args:
            handler: Called with (envelope, generation), sync or async.
        """
        self._subscriber = handler

    def on_connecting(self, handler: LifecycleHandler) -> None:
        """Register callback for the start of a connect attempt, including retries."""
        self._connecting_handler = handler

    def on_open(self, handler: LifecycleHandler) -> None:
        """Register callback for a successful open, called with the generation."""
        self._open_handler = handler

    def on_close(self, handler: LifecycleHandler) -> None:
        """Register callback for close, called with the closed generation."""
        self._close_handler = handler

    # =========================================================================
    # Operations
    # =========================================================================

    async def connect(self, target: Target | str | None = None) -> int:
        """Open the channel.

        Access codes are resolved here, before any network action. A call
        while a connect is in flight or the channel is open returns the
        current generation without opening a second socket.

        Args:
            target: AccessCode, raw code or ResolvedAddress. None reuses the
                previous target.

        Returns:
            Generation of the open socket.

        Raises:
            FormatError, RangeError: Invalid access code.
            ChannelError: Socket could not be opened.
        """
        if self._state in (ChannelState.CONNECTING, ChannelState.OPEN):
            logger.debug(f"connect() ignored, channel is {self._state.value}")
            return self._generation

        if self._shutting_down:
            raise ChannelError("Channel is shut down")

        if target is None:
            target = self._target
        if target is None:
            raise ChannelError("No receiver to connect to")
        if isinstance(target, str):
            target = AccessCode.parse(target)
        address = self._resolve(target)

        self._cancel_reconnect()
        self._target = target
        self._address = address
        self._generation += 1
        generation = self._generation
        self._set_state(ChannelState.CONNECTING)
        logger.info(f"Connecting to receiver at {address}")

        if self._connecting_handler:
            try:
                await invoke_handler(self._connecting_handler, generation)
            except Exception as e:
                logger.error(f"Error in connecting handler: {e}")
            if generation != self._generation or self._state is not ChannelState.CONNECTING:
                raise ChannelError("Connection attempt was cancelled")

        try:
            ws = await asyncio.wait_for(
                self._connector(address.ws_url),
                timeout=self._config.connect_timeout,
            )
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            reason = str(e) or type(e).__name__
            if generation == self._generation and self._state is ChannelState.CONNECTING:
                logger.warning(f"Connection to {address} failed: {reason}")
                await self._handle_closed(generation)
            raise ChannelError(f"Could not connect to {address}: {reason}") from e

        if generation != self._generation or self._state is not ChannelState.CONNECTING:
            logger.debug(f"Connect attempt {generation} superseded, discarding socket")
            await self._close_socket(ws)
            raise ChannelError("Connection attempt was cancelled")

        self._ws = ws
        self._has_opened = True
        if not self._shutting_down:
            self._reconnect_enabled = True
        self._set_state(ChannelState.OPEN)
        logger.info(f"Signaling channel open ({address}, generation {generation})")

        self._keepalive_task = asyncio.create_task(self._keepalive_loop(generation))
        self._receive_task = asyncio.create_task(self._receive_loop(ws, generation))

        if self._open_handler:
            try:
                await invoke_handler(self._open_handler, generation)
            except Exception as e:
                logger.error(f"Error in open handler: {e}")

        return generation

    async def send(self, message: Envelope, generation: int | None = None) -> None:
        """Send an envelope.

        Args:
            message: Envelope to send.
            generation: If given, the send fails unless it is still current.

        Raises:
            ChannelError: Channel not open, stale generation, or send failure.
        """
        if self._state is not ChannelState.OPEN or self._ws is None:
            raise ChannelError("Signaling channel is not open")
        if generation is not None and generation != self._generation:
            raise ChannelError(f"Channel generation {generation} is no longer current")

        try:
            await self._ws.send_str(encode_message(message))
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise ChannelError(f"Send failed: {e}") from e

        if message.type != "ping":
            logger.debug(f"-> {message.type}")

    async def close(self) -> None:
        """Close the channel on operator request.

        Reconnection is disabled and any pending retry is cancelled. The
        state is CLOSED when this returns control for the first time.
        """
        self._reconnect_enabled = False
        self._cancel_reconnect()

        if self._state in (ChannelState.IDLE, ChannelState.CLOSED):
            return

        generation = self._generation
        ws = self._ws
        self._ws = None
        self._stop_tasks()
        self._set_state(ChannelState.CLOSED)
        logger.info("Signaling channel closed")

        if ws is not None:
            await self._close_socket(ws)
        await self._notify_closed(generation)

    async def shutdown(self) -> None:
        """Close the channel for good and release the HTTP session."""
        self._shutting_down = True
        await self.close()

        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._http is not None:
            await self._http.close()
            self._http = None

    # =========================================================================
    # Internal methods
    # =========================================================================

    async def _default_connector(self, url: str) -> aiohttp.ClientWebSocketResponse:
        """Open a websocket with an owned aiohttp session."""
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return await self._http.ws_connect(url, autoping=True)

    def _resolve(self, target: Target) -> ResolvedAddress:
        if isinstance(target, ResolvedAddress):
            return target
        return resolve(target, port=self._port)

    def _set_state(self, state: ChannelState) -> None:
        if state is not self._state:
            logger.debug(f"Channel state: {self._state.value} -> {state.value}")
            self._state = state

    def _stop_tasks(self) -> None:
        """Cancel keep-alive and receive tasks, except the calling task."""
        current = asyncio.current_task()
        for task in (self._keepalive_task, self._receive_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._keepalive_task = None
        self._receive_task = None

    async def _close_socket(self, ws: Any) -> None:
        if ws.closed:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Error closing socket: {e}")

    async def _notify_closed(self, generation: int) -> None:
        if self._close_handler:
            try:
                await invoke_handler(self._close_handler, generation)
            except Exception as e:
                logger.error(f"Error in close handler: {e}")

    async def _handle_closed(self, generation: int) -> None:
        """Close path for remote close, transport errors and failed connects."""
        if generation != self._generation or self._state is ChannelState.CLOSED:
            return

        ws = self._ws
        self._ws = None
        self._stop_tasks()
        self._set_state(ChannelState.CLOSED)

        if self.reconnect_enabled and self._has_opened:
            self._schedule_reconnect()

        if ws is not None:
            await self._close_socket(ws)
        await self._notify_closed(generation)

    def _schedule_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            return
        delay = self._config.reconnect_delay
        logger.info(f"Reconnecting in {delay:.1f}s")
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._fire_reconnect)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
            logger.debug("Pending reconnect cancelled")

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if not self.reconnect_enabled:
            return
        if self._state in (ChannelState.CONNECTING, ChannelState.OPEN):
            logger.debug("Reconnect skipped, connection already in flight")
            return
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        logger.info("Attempting to reconnect...")
        try:
            await self.connect(self._target)
        except ChannelError as e:
            logger.warning(f"Reconnect failed: {e}")

    async def _keepalive_loop(self, generation: int) -> None:
        """Send a ping every keepalive_interval while the socket is current."""
        interval = self._config.keepalive_interval
        while True:
            await asyncio.sleep(interval)
            if not self.is_current(generation):
                return
            try:
                await self.send(Ping(), generation)
            except ChannelError as e:
                logger.debug(f"Keep-alive ping failed: {e}")

    async def _receive_loop(self, ws: Any, generation: int) -> None:
        """Dispatch inbound messages in arrival order until the socket ends."""
        try:
            async for msg in ws:
                if not self.is_current(generation):
                    break
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await self._dispatch(msg.data, generation)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(f"Signaling socket error: {ws.exception()}")
                    break
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error(f"Receive loop error: {e}")

        if self.is_current(generation):
            logger.info("Signaling channel closed by receiver")
            await self._handle_closed(generation)

    async def _dispatch(self, data: str | bytes, generation: int) -> None:
        try:
            envelope = decode_message(data)
        except MessageError as e:
            logger.warning(f"Rejected signaling message: {e}")
            envelope = ErrorReport(message=str(e))

        if isinstance(envelope, Ping):
            return

        logger.debug(f"<- {envelope.type}")
        if self._subscriber is None:
            logger.debug(f"No subscriber for '{envelope.type}', dropping")
            return

        try:
            await invoke_handler(self._subscriber, envelope, generation)
        except Exception as e:
            logger.error(f"Error in message handler for '{envelope.type}': {e}")
