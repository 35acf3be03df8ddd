"""
Live Trader - drives one (symbol, interval, market) instance end to end.

Pipeline per completed candle:

    stream tick -> parse -> closed-candle filter -> CandleWindow.append
        -> SignalEngineAdapter.evaluate -> TradeLifecycleTracker.process
        -> notifications (signal / exit / update / stats)

All trader state (window, engine state snapshot, active trades, trade-id
counter, heartbeat clock) belongs to this instance and is only touched from
the connection's message loop.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional

from candle_window import Candle, CandleWindow
from config import TraderConfig
from connection_manager import ConnectionManager, ConnectionState
from data_feeds import (
    MalformedMessageError,
    SnapshotError,
    build_stream_url,
    completed_candles,
    fetch_snapshot,
    parse_kline_message,
)
from notifier import (
    Notifier,
    build_entry_notification,
    build_exit_notification,
    build_stats_notification,
    build_update_notification,
)
from retry import ConnectionHealthMonitor
from signal_engine import (
    AlgorithmState,
    EngineCallable,
    EngineEvaluationError,
    SignalEngineAdapter,
    load_engine,
)
from trade_tracker import (
    EntryEvent,
    ExitEvent,
    StopUpdateEvent,
    TradeEvent,
    TradeLifecycleTracker,
)

logger = logging.getLogger(__name__)

# Trade-only audit log (routed to its own file by setup_logging)
trade_logger = logging.getLogger("live_trader.trades")

# Stats panel is re-sent at least this often even without trades
HEARTBEAT_INTERVAL_SEC = 24 * 60 * 60

SnapshotFetcher = Callable[[TraderConfig], Awaitable[list[Candle]]]
ConnectionFactory = Callable[..., ConnectionManager]


async def binance_snapshot(config: TraderConfig) -> list[Candle]:
    return await fetch_snapshot(
        config.symbol,
        config.interval,
        limit=config.window_size,
        market=config.market,
    )


def _fmt_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


class LiveTrader:
    """
    Supervises one trader instance.

    Collaborators are injectable for tests: the engine callable, the snapshot
    fetcher, the connection factory, the heartbeat clock and the wall clock
    used to tell completed candles from the bar still in progress.
    """

    def __init__(
        self,
        config: TraderConfig,
        notifier: Optional[Notifier] = None,
        engine: Optional[EngineCallable] = None,
        fetch_candles: SnapshotFetcher = binance_snapshot,
        connection_factory: Optional[ConnectionFactory] = None,
        monitor: Optional[ConnectionHealthMonitor] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        on_terminated: Optional[Callable[["LiveTrader"], None]] = None,
    ):
        self.config = config
        self.notifier = notifier or Notifier()
        self.on_terminated = on_terminated

        self._engine = engine
        self._fetch_candles = fetch_candles
        self._connection_factory = connection_factory or self._default_connection
        self._monitor = monitor
        self._clock = clock
        self._wall_clock = wall_clock

        self.window = CandleWindow(config.window_size)
        self.tracker = TradeLifecycleTracker(config)
        self.adapter: Optional[SignalEngineAdapter] = None
        self.connection: Optional[ConnectionManager] = None

        # Engine state snapshot from the last successful evaluation
        self.state: Optional[AlgorithmState] = None
        self.last_stats: Mapping[str, Any] = {}
        self._last_stats_emit: Optional[float] = None

        self.initialized = False
        self.candles_processed = 0
        self.candles_skipped = 0

    @property
    def label(self) -> str:
        return self.config.label

    @property
    def market_name(self) -> str:
        return "Futures" if self.config.is_futures else "Spot"

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    async def initialize(self) -> bool:
        """
        Fetch the snapshot, seed the window, run the engine once, open the
        stream and send the initial stats panel.

        Returns False on any fatal initialization failure.
        """
        logger.info(f"[Trader {self.label}] Initializing on Binance {self.market_name}")

        try:
            engine = self._engine or load_engine(self.config.engine)
            self.adapter = SignalEngineAdapter(engine, self.config)

            await self._seed_window()
            logger.info(f"[Trader {self.label}] Initial data fetched: {len(self.window)} candles")

            result = self.adapter.evaluate(self.window, None)
        except Exception as e:
            logger.error(f"[Trader {self.label}] Failed to initialize: {type(e).__name__}: {e}")
            return False

        self.state = result.state
        self.last_stats = result.stats
        logger.info(f"[Trader {self.label}] Algorithm initialized. Ready to start trading.")

        self.connection = self._connection_factory(
            url=build_stream_url(self.config.symbol, self.config.interval, self.config.market),
            on_message=self.on_tick,
            resync=self.resync,
        )
        # Ticks can arrive while start() is still running; the initial panel below
        # counts as this heartbeat period's emission.
        self._last_stats_emit = self._clock()
        connected = await self.connection.start()
        if self.connection.is_terminated:
            logger.error(f"[Trader {self.label}] Stream terminated during startup")
            return False
        if not connected:
            logger.warning(f"[Trader {self.label}] Stream not connected yet, reconnecting in background")

        self._emit_stats(result.stats)
        self.initialized = True
        return True

    async def resync(self):
        """Re-seed the window from a fresh snapshot (called before each reconnect)."""
        await self._seed_window()
        logger.info(f"[Trader {self.label}] Window re-synchronized: {len(self.window)} candles")

    async def _seed_window(self):
        candles = await self._fetch_candles(self.config)
        now_ms = int(self._wall_clock() * 1000)
        completed = completed_candles(candles, now_ms)
        if not completed:
            raise SnapshotError("Snapshot returned no completed candles")
        if len(completed) < len(candles):
            logger.debug(f"[Trader {self.label}] Dropped {len(candles) - len(completed)} in-progress candle(s)")
        self.window.seed(completed)

    async def stop(self):
        """Tear down the stream and wait for in-flight notifications."""
        if self.connection is not None:
            await self.connection.stop()
        await self.notifier.drain()
        logger.info(f"[Trader {self.label}] Live trader stopped")

    def _default_connection(self, url: str, on_message, resync) -> ConnectionManager:
        return ConnectionManager(
            url=url,
            on_message=on_message,
            resync=resync,
            name=f"{self.config.symbol}:{self.config.interval}",
            monitor=self._monitor,
            on_state_change=self._on_connection_state,
        )

    def _on_connection_state(self, old: ConnectionState, new: ConnectionState):
        if new != ConnectionState.TERMINATED:
            return
        if self.connection is not None and self.connection.stop_requested:
            return
        logger.error(f"[Trader {self.label}] Stream terminated, trader is no longer receiving data")
        if self.on_terminated:
            self.on_terminated(self)

    # -------------------------------------------------------------------------
    # CANDLE PIPELINE
    # -------------------------------------------------------------------------

    async def on_tick(self, raw) -> list[TradeEvent]:
        """Handle one stream message; returns the trade events it produced."""
        try:
            update = parse_kline_message(raw)
        except MalformedMessageError as e:
            logger.warning(f"[Trader {self.label}] Dropping malformed message: {e}")
            return []

        if update is None or not update.is_closed:
            return []
        if self.state is None:
            logger.debug(f"[Trader {self.label}] Ignoring candle before initialization")
            return []

        appended = self.window.append(update.candle)
        if not appended.accepted:
            logger.debug(f"[Trader {self.label}] Duplicate candle {update.candle.open_time} ignored")
            return []

        logger.info(f"[Trader {self.label}] Processing completed candle: {_fmt_ms(update.candle.close_time)}")
        return self.process_candle(update.candle)

    def process_candle(self, candle: Candle) -> list[TradeEvent]:
        """Evaluate the engine on the current window and emit trade events."""
        prior = self.state
        try:
            result = self.adapter.evaluate(self.window, prior)
        except EngineEvaluationError as e:
            self.candles_skipped += 1
            logger.error(f"[Trader {self.label}] Engine evaluation failed, candle skipped: {e}")
            return []

        self.state = result.state
        self.last_stats = result.stats
        self.candles_processed += 1

        if result.signal is not None:
            logger.info(f"[Trader {self.label}] Signal generated: {result.signal.position}")

        events = self.tracker.process(prior, result.state, result.signal, candle)
        for event in events:
            self._emit_event(event, candle)

        if any(isinstance(e, ExitEvent) for e in events):
            self._emit_stats(result.stats)

        logger.info(
            f"[Trader {self.label}] Processed candle: Close={candle.close}, High={candle.high}, Low={candle.low} | "
            f"Capital: {self.state.current_capital:.2f}, Total P/L: {self.state.total_profit_loss:.2f}"
        )

        if self.heartbeat_due():
            self._emit_stats(result.stats)

        return events

    def heartbeat_due(self) -> bool:
        if self._last_stats_emit is None:
            return True
        return self._clock() - self._last_stats_emit >= HEARTBEAT_INTERVAL_SEC

    # -------------------------------------------------------------------------
    # NOTIFICATIONS
    # -------------------------------------------------------------------------

    def _emit_event(self, event: TradeEvent, candle: Candle):
        if isinstance(event, ExitEvent):
            trade_logger.info(
                f"EXIT {self.label} {event.side.upper()} reason={event.reason.value} "
                f"entry={event.entry_price} exit={event.exit_price} pnl={event.profit_loss:.2f}"
            )
            notification = build_exit_notification(self.config, event, self.state, candle.close_time)
        elif isinstance(event, EntryEvent):
            trade_logger.info(
                f"ENTRY {self.label} {event.side.upper()} id={event.trade_id} price={event.price} "
                f"stop={event.stop_level} target={event.target_level}"
            )
            notification = build_entry_notification(self.config, event, self.state, candle.close_time)
        elif isinstance(event, StopUpdateEvent):
            trade_logger.info(
                f"UPDATE {self.label} {event.side.upper()} id={event.trade_id} "
                f"stop {event.previous_stop} -> {event.new_stop}"
            )
            notification = build_update_notification(self.config, event, candle.close_time)
        else:
            return
        self.notifier.notify(notification)

    def _emit_stats(self, stats: Mapping[str, Any]):
        self.notifier.notify(build_stats_notification(self.config, self.state, stats))
        self._last_stats_emit = self._clock()

    # -------------------------------------------------------------------------
    # STATUS
    # -------------------------------------------------------------------------

    def get_status(self) -> dict:
        last = self.window.last
        state = self.state
        return {
            "symbol": self.config.symbol,
            "interval": self.config.interval,
            "market": self.config.market.value,
            "initialized": self.initialized,
            "connection": self.connection.state.value if self.connection else None,
            "reconnect_attempts": self.connection.attempts if self.connection else 0,
            "window_size": len(self.window),
            "last_candle_open_time": last.open_time if last else None,
            "candles_processed": self.candles_processed,
            "candles_skipped": self.candles_skipped,
            "active_trades": {
                side: trade.to_dict() if trade else None
                for side, trade in self.tracker.active_trades.items()
            },
            "current_capital": state.current_capital if state else None,
            "total_profit_loss": state.total_profit_loss if state else None,
        }
