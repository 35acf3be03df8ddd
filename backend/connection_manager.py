"""
Connection Manager - one persistent kline stream with exponential backoff.

State machine:

    CONNECTING   -> CONNECTED     handshake completed within connect_timeout
    CONNECTING   -> RECONNECTING  handshake failed or timed out
    CONNECTED    -> RECONNECTING  stream error or close
    RECONNECTING -> CONNECTING    after the backoff delay
    RECONNECTING -> TERMINATED    attempt counter exceeded max_attempts
    any          -> TERMINATED    stop()

TERMINATED is absorbing. Every reconnect re-seeds the candle window through
the resync callback before the stream is reopened, so no stale window is
served across a gap.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Union
import websockets

from retry import BackoffPolicy, ConnectionHealthMonitor, RECONNECT_BACKOFF

logger = logging.getLogger(__name__)

# Seconds a handshake may take before the attempt counts as failed
CONNECT_TIMEOUT_SEC = 10.0


class ConnectionState(Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    TERMINATED = "terminated"


class StreamConnection(Protocol):
    """What the manager needs from an open stream (websockets client connection)."""

    def __aiter__(self) -> Any: ...

    async def close(self) -> Any: ...


Message = Union[str, bytes]
MessageHandler = Callable[[Message], Awaitable[None]]
Connector = Callable[[str], Awaitable[StreamConnection]]
StateCallback = Callable[["ConnectionState", "ConnectionState"], None]


async def websocket_connector(url: str) -> StreamConnection:
    """Open a Binance stream connection"""
    return await websockets.connect(
        url,
        ping_interval=20,
        ping_timeout=10,
        close_timeout=10,
    )


class ConnectionManager:
    """
    Owns a single streaming connection for one trader.

    Messages are delivered to `on_message` one at a time in arrival order.
    Handler errors are logged and never tear down the connection.
    """

    def __init__(
        self,
        url: str,
        on_message: MessageHandler,
        resync: Optional[Callable[[], Awaitable[None]]] = None,
        name: Optional[str] = None,
        backoff: BackoffPolicy = RECONNECT_BACKOFF,
        connect_timeout: float = CONNECT_TIMEOUT_SEC,
        connector: Connector = websocket_connector,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        monitor: Optional[ConnectionHealthMonitor] = None,
        on_state_change: Optional[StateCallback] = None,
    ):
        self.url = url
        self.name = name or url
        self.backoff = backoff
        self.connect_timeout = connect_timeout
        self.on_state_change = on_state_change

        self._on_message = on_message
        self._resync = resync
        self._connector = connector
        self._sleep = sleep
        self._monitor = monitor

        self._state = ConnectionState.CONNECTING
        self.attempts = 0
        self._ws: Optional[StreamConnection] = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        self._first_attempt_done = asyncio.Event()

        if self._monitor:
            self._monitor.register_connection(self.monitor_key)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def is_terminated(self) -> bool:
        return self._state == ConnectionState.TERMINATED

    @property
    def stop_requested(self) -> bool:
        return self._stopped

    @property
    def monitor_key(self) -> str:
        return f"binance_ws:{self.name}"

    def _set_state(self, new_state: ConnectionState):
        old_state = self._state
        if old_state == new_state:
            return
        if old_state == ConnectionState.TERMINATED:
            return

        self._state = new_state
        logger.debug(f"[Conn {self.name}] {old_state.value} -> {new_state.value}")

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"[Conn {self.name}] Error in state change callback: {e}")

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Start the connection loop in the background.

        Returns once the first connection attempt has resolved: True if the
        stream is connected, False if it failed (reconnects continue in the
        background unless the manager terminated).
        """
        if self._stopped:
            return False
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"conn-{self.name}")
        await self._first_attempt_done.wait()
        return self.is_connected

    async def wait_closed(self):
        """Wait for the connection loop to finish (after TERMINATED)."""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def stop(self):
        """Force TERMINATED, cancel any pending reconnect, release the stream."""
        self._stopped = True
        self._set_state(ConnectionState.TERMINATED)

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"[Conn {self.name}] Connection loop failed during stop: {e}")

        await self._release()
        self._first_attempt_done.set()
        if self._monitor:
            self._monitor.mark_disconnected(self.monitor_key)
        logger.info(f"[Conn {self.name}] Stopped")

    # -------------------------------------------------------------------------
    # CONNECTION LOOP
    # -------------------------------------------------------------------------

    async def _run(self):
        first_attempt = True
        try:
            while not self._stopped:
                self._set_state(ConnectionState.CONNECTING)

                try:
                    if not first_attempt and self._resync is not None:
                        await self._resync()
                    await self._connect_and_listen()
                except asyncio.CancelledError:
                    raise
                except asyncio.TimeoutError:
                    self._mark_error()
                    logger.error(f"[Conn {self.name}] Connection timeout after {self.connect_timeout:.0f}s")
                except websockets.ConnectionClosed as e:
                    self._mark_error()
                    logger.warning(f"[Conn {self.name}] Connection closed: {e}")
                except Exception as e:
                    self._mark_error()
                    logger.error(f"[Conn {self.name}] Connection error: {type(e).__name__}: {e}")

                first_attempt = False
                self._first_attempt_done.set()

                if self._stopped:
                    break
                if not await self._wait_before_reconnect():
                    break
        finally:
            await self._release()
            self._first_attempt_done.set()

    async def _connect_and_listen(self):
        logger.info(f"[Conn {self.name}] Connecting to {self.url}")
        self._ws = await asyncio.wait_for(self._connector(self.url), timeout=self.connect_timeout)

        try:
            if self._stopped:
                return

            self.attempts = 0
            self._set_state(ConnectionState.CONNECTED)
            self._first_attempt_done.set()
            if self._monitor:
                self._monitor.mark_success(self.monitor_key)
            logger.info(f"[Conn {self.name}] Connected")

            async for message in self._ws:
                if self._stopped:
                    break
                if self._monitor:
                    self._monitor.mark_success(self.monitor_key)
                await self._dispatch(message)

            if not self._stopped:
                logger.warning(f"[Conn {self.name}] Stream ended by server")
        finally:
            await self._release()

    async def _dispatch(self, message: Message):
        try:
            await self._on_message(message)
        except Exception as e:
            logger.error(f"[Conn {self.name}] Error handling message: {type(e).__name__}: {e}")

    async def _wait_before_reconnect(self) -> bool:
        """Enter RECONNECTING and sleep out the backoff; False once terminated."""
        self._set_state(ConnectionState.RECONNECTING)
        if self._monitor:
            self._monitor.mark_disconnected(self.monitor_key)

        self.attempts += 1
        if self.backoff.exhausted(self.attempts):
            logger.error(
                f"[Conn {self.name}] Maximum reconnection attempts ({self.backoff.max_attempts}) reached. Giving up."
            )
            self._set_state(ConnectionState.TERMINATED)
            return False

        delay = self.backoff.delay_for(self.attempts)
        logger.info(
            f"[Conn {self.name}] Reconnecting in {delay:.0f}s... "
            f"(Attempt {self.attempts}/{self.backoff.max_attempts})"
        )
        await self._sleep(delay)
        return not self._stopped

    def _mark_error(self):
        if self._monitor:
            self._monitor.mark_error(self.monitor_key)

    async def _release(self):
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"[Conn {self.name}] Error closing stream: {e}")
