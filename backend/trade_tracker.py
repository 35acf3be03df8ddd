"""
Trade Lifecycle Tracker

Diffs the engine's previous and new state after every processed candle and
derives trade events:

- Exit: a side was in a trade and no longer is. Resolved as Target Hit,
  Opposing Signal (partial P&L) or Unknown.
- Entry: the engine declared a new long/short signal.
- StopUpdate: the stop reference moved for a side holding an active trade.

Events are returned exits first, then entries, then stop updates, so a side
that closes and reopens on the same candle reports the old outcome first.
"""

import logging
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Optional, Union

from candle_window import Candle
from config import TraderConfig
from signal_engine import AlgorithmState, EngineSignal, Side, SIDES

logger = logging.getLogger(__name__)


class ExitReason(Enum):
    TARGET_HIT = "Target Hit"
    OPPOSING_SIGNAL = "Opposing Signal"
    # Engine closed the position for a reason not visible in its state
    UNKNOWN = "Unknown"


def opposite(side: Side) -> Side:
    return "short" if side == "long" else "long"


# ============================================================================
# EVENTS
# ============================================================================

@dataclass
class ActiveTrade:
    """An open position as seen by the tracker; at most one per side"""
    id: str
    side: Side
    entry_time: int  # candle close time, Unix ms
    entry_price: float
    stop_level: Optional[float]
    target_level: Optional[float]
    risk_amount: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ExitEvent:
    side: Side
    entry_price: Optional[float]
    exit_price: float
    profit_loss: float
    risked_amount: float
    reason: ExitReason
    trade_id: Optional[str] = None

    kind = "exit"

    def to_dict(self) -> dict:
        d = asdict(self)
        d["reason"] = self.reason.value
        return d


@dataclass(frozen=True)
class EntryEvent:
    side: Side
    price: float
    stop_level: Optional[float]
    target_level: Optional[float]
    risk_amount: float
    trade_id: str

    kind = "signal"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class StopUpdateEvent:
    side: Side
    previous_stop: Optional[float]
    new_stop: Optional[float]
    entry_price: float
    target_level: Optional[float]
    trade_id: str

    kind = "update"

    def to_dict(self) -> dict:
        return asdict(self)


TradeEvent = Union[ExitEvent, EntryEvent, StopUpdateEvent]


# ============================================================================
# P&L
# ============================================================================

def partial_profit_loss(
    side: Side,
    entry: float,
    stop: Optional[float],
    target: Optional[float],
    close: float,
    risk_amount: float,
    reward_multiple: float,
    leverage_factor: float = 1.0,
) -> float:
    """
    P&L for a position closed before reaching its target or full stop.

    A favorable move earns the reward in proportion to the distance covered
    toward the target; an adverse move loses the risk in proportion to the
    distance covered toward the stop. Both fractions are capped at 1.0, and a
    zero or missing reference distance counts as fully covered.
    """
    move = close - entry if side == "long" else entry - close

    if move > 0:
        target_distance = abs(target - entry) if target is not None else 0.0
        fraction = min(move / target_distance, 1.0) if target_distance > 0 else 1.0
        return fraction * risk_amount * reward_multiple * leverage_factor

    if move == 0:
        return 0.0

    stop_distance = abs(entry - stop) if stop is not None else 0.0
    fraction = min(abs(move) / stop_distance, 1.0) if stop_distance > 0 else 1.0
    return -fraction * risk_amount * leverage_factor


def target_reached(side: Side, candle: Candle, target: Optional[float]) -> bool:
    if target is None:
        return False
    if side == "long":
        return candle.high >= target
    return candle.low <= target


# ============================================================================
# TRACKER
# ============================================================================

class TradeLifecycleTracker:
    """Owns the active trades and the trade-id counter of one trader."""

    def __init__(self, config: TraderConfig, clock: Callable[[], float] = time.time):
        self.config = config
        self._clock = clock
        self._trade_counter = 0
        self.active_trades: dict[str, Optional[ActiveTrade]] = {side: None for side in SIDES}

    def next_trade_id(self) -> str:
        self._trade_counter += 1
        return f"{self.config.symbol}-{int(self._clock() * 1000)}-{self._trade_counter}"

    def process(
        self,
        prior: AlgorithmState,
        new: AlgorithmState,
        signal: Optional[EngineSignal],
        candle: Candle,
    ) -> list[TradeEvent]:
        """Derive trade events for one processed candle."""
        # Trades open before this candle; a trade opened now reports its stop in the entry
        carried = {side: self.active_trades[side] for side in SIDES}

        exits: list[TradeEvent] = []
        for side in SIDES:
            if prior.in_trade(side) and not new.in_trade(side):
                exits.append(self._resolve_exit(side, prior, signal, candle))
                self.active_trades[side] = None
                carried[side] = None

        entries: list[TradeEvent] = []
        if signal is not None:
            entries.append(self._open_trade(signal.position, new, candle))

        updates: list[TradeEvent] = []
        for side in SIDES:
            trade = carried[side]
            if trade is None:
                continue
            previous_stop = prior.stop_reference(side)
            new_stop = new.stop_reference(side)
            if previous_stop != new_stop:
                trade.stop_level = new_stop
                updates.append(StopUpdateEvent(
                    side=side,
                    previous_stop=previous_stop,
                    new_stop=new_stop,
                    entry_price=trade.entry_price,
                    target_level=trade.target_level,
                    trade_id=trade.id,
                ))

        return exits + entries + updates

    def _resolve_exit(
        self,
        side: Side,
        prior: AlgorithmState,
        signal: Optional[EngineSignal],
        candle: Candle,
    ) -> ExitEvent:
        cfg = self.config
        risk = prior.risk_amount
        entry = prior.entry_price(side)
        trade = self.active_trades[side]

        if target_reached(side, candle, prior.target_level(side)):
            reason = ExitReason.TARGET_HIT
            profit_loss = risk * cfg.reward_multiple * cfg.leverage_factor
        elif signal is not None and signal.position == opposite(side) and entry is not None:
            reason = ExitReason.OPPOSING_SIGNAL
            profit_loss = partial_profit_loss(
                side,
                entry=entry,
                stop=prior.stop_reference(side),
                target=prior.target_level(side),
                close=candle.close,
                risk_amount=risk,
                reward_multiple=cfg.reward_multiple,
                leverage_factor=cfg.leverage_factor,
            )
        else:
            reason = ExitReason.UNKNOWN
            profit_loss = 0.0
            logger.warning(
                f"[Tracker {cfg.label}] {side} position closed without target hit or opposing signal "
                f"(close={candle.close}, target={prior.target_level(side)}, stop={prior.stop_reference(side)})"
            )

        return ExitEvent(
            side=side,
            entry_price=entry,
            exit_price=candle.close,
            profit_loss=profit_loss,
            risked_amount=risk,
            reason=reason,
            trade_id=trade.id if trade else None,
        )

    def _open_trade(self, side: Side, new: AlgorithmState, candle: Candle) -> EntryEvent:
        trade = ActiveTrade(
            id=self.next_trade_id(),
            side=side,
            entry_time=candle.close_time,
            entry_price=candle.close,
            stop_level=new.stop_reference(side),
            target_level=new.target_level(side),
            risk_amount=new.risk_amount,
        )
        replaced = self.active_trades[side]
        if replaced is not None:
            logger.warning(f"[Tracker {self.config.label}] New {side} entry replaces open trade {replaced.id}")
        self.active_trades[side] = trade

        return EntryEvent(
            side=side,
            price=trade.entry_price,
            stop_level=trade.stop_level,
            target_level=trade.target_level,
            risk_amount=trade.risk_amount,
            trade_id=trade.id,
        )
