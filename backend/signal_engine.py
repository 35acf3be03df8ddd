"""
Signal Engine Adapter

Wraps the external signal-generating engine. The engine is an opaque,
deterministic callable:

    engine(candles, prior_state, settings) -> {
        "state": dict, "signal": dict | None, "stats": dict, "indicators": dict
    }

where `candles` is the column dict from CandleWindow.to_columns(),
`prior_state` is the engine's own state from the previous call (or None on
the first call) and `settings` is TraderConfig.engine_settings().

The adapter never hands the engine a live reference to state it keeps: each
result is frozen into an AlgorithmState snapshot holding a private deep copy.
"""

import copy
import importlib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Mapping, Optional

from candle_window import CandleWindow
from config import TraderConfig

logger = logging.getLogger(__name__)

EngineCallable = Callable[[dict, Optional[dict], dict], Mapping[str, Any]]

Side = Literal["long", "short"]
SIDES: tuple[Side, Side] = ("long", "short")


class EngineEvaluationError(Exception):
    """The engine raised or returned a result without the expected shape."""


class EngineLoadError(Exception):
    """The configured engine path could not be imported."""


# engine key -> AlgorithmState field
_STATE_FIELDS = {
    "inLongTrade": "in_long_trade",
    "inShortTrade": "in_short_trade",
    "longEntryPrice": "long_entry_price",
    "shortEntryPrice": "short_entry_price",
    "longStopReference": "long_stop_reference",
    "shortStopReference": "short_stop_reference",
    "longTargetLevel": "long_target_level",
    "shortTargetLevel": "short_target_level",
    "riskAmount": "risk_amount",
    "currentCapital": "current_capital",
    "totalProfitLoss": "total_profit_loss",
    "totalProfit": "total_profit",
    "totalLoss": "total_loss",
    "longWins": "long_wins",
    "shortWins": "short_wins",
    "longTargetHits": "long_target_hits",
    "shortTargetHits": "short_target_hits",
}


@dataclass(frozen=True)
class AlgorithmState:
    """
    Immutable snapshot of the engine's state after one evaluation.

    The tracker reads the well-known fields; `raw` is the engine's full state,
    handed back (as a fresh copy) on the next evaluation.
    """
    in_long_trade: bool = False
    in_short_trade: bool = False
    long_entry_price: Optional[float] = None
    short_entry_price: Optional[float] = None
    long_stop_reference: Optional[float] = None
    short_stop_reference: Optional[float] = None
    long_target_level: Optional[float] = None
    short_target_level: Optional[float] = None
    risk_amount: float = 0.0
    current_capital: float = 0.0
    total_profit_loss: float = 0.0
    total_profit: float = 0.0
    total_loss: float = 0.0
    long_wins: int = 0
    short_wins: int = 0
    long_target_hits: int = 0
    short_target_hits: int = 0
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def in_trade(self, side: Side) -> bool:
        return self.in_long_trade if side == "long" else self.in_short_trade

    def entry_price(self, side: Side) -> Optional[float]:
        return self.long_entry_price if side == "long" else self.short_entry_price

    def stop_reference(self, side: Side) -> Optional[float]:
        return self.long_stop_reference if side == "long" else self.short_stop_reference

    def target_level(self, side: Side) -> Optional[float]:
        return self.long_target_level if side == "long" else self.short_target_level

    def engine_state(self) -> dict:
        """Fresh copy of the engine's raw state for the next call"""
        return copy.deepcopy(dict(self.raw))

    @classmethod
    def from_engine(cls, state: Mapping[str, Any]) -> "AlgorithmState":
        if not isinstance(state, Mapping):
            raise EngineEvaluationError(f"Engine state must be a mapping, got {type(state).__name__}")

        kwargs: dict[str, Any] = {}
        for key, name in _STATE_FIELDS.items():
            value = state.get(key)
            if value is None:
                continue
            if name.startswith("in_"):
                kwargs[name] = bool(value)
            elif name.endswith(("_wins", "_hits")):
                kwargs[name] = int(value)
            else:
                kwargs[name] = float(value)
        return cls(raw=copy.deepcopy(dict(state)), **kwargs)


@dataclass(frozen=True)
class EngineSignal:
    """Entry intent declared by the engine"""
    position: Side
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_engine(cls, signal: Any) -> Optional["EngineSignal"]:
        if not signal:
            return None
        if not isinstance(signal, Mapping):
            raise EngineEvaluationError(f"Engine signal must be a mapping, got {type(signal).__name__}")
        position = str(signal.get("position", "")).lower()
        if position not in SIDES:
            logger.warning(f"[Engine] Ignoring signal with unknown position: {signal.get('position')!r}")
            return None
        return cls(position=position, raw=copy.deepcopy(dict(signal)))


@dataclass(frozen=True)
class EngineResult:
    state: AlgorithmState
    signal: Optional[EngineSignal]
    stats: Mapping[str, Any]
    indicators: Mapping[str, Any]


def load_engine(path: str) -> EngineCallable:
    """Resolve "package.module:callable" (or "package.module.callable")."""
    if not path:
        raise EngineLoadError("No signal engine configured (set SIGNAL_ENGINE=module:callable)")

    if ":" in path:
        module_name, _, attr = path.partition(":")
    else:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise EngineLoadError(f"Invalid engine path: {path!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise EngineLoadError(f"Cannot import engine module {module_name!r}: {e}") from e

    engine = module
    for part in attr.split("."):
        engine = getattr(engine, part, None)
        if engine is None:
            raise EngineLoadError(f"Engine {path!r} not found")
    if not callable(engine):
        raise EngineLoadError(f"Engine {path!r} is not callable")
    return engine


class SignalEngineAdapter:
    """Calls the engine once per completed candle and freezes its result."""

    def __init__(self, engine: EngineCallable, config: TraderConfig):
        self._engine = engine
        self._settings = config.engine_settings()

    def evaluate(self, window: CandleWindow, prior: Optional[AlgorithmState]) -> EngineResult:
        prior_raw = prior.engine_state() if prior is not None else None

        try:
            result = self._engine(window.to_columns(), prior_raw, dict(self._settings))
        except Exception as e:
            raise EngineEvaluationError(f"Engine raised {type(e).__name__}: {e}") from e

        if not isinstance(result, Mapping) or "state" not in result:
            raise EngineEvaluationError("Engine result is missing 'state'")

        try:
            state = AlgorithmState.from_engine(result["state"])
        except (TypeError, ValueError) as e:
            raise EngineEvaluationError(f"Engine state has invalid fields: {e}") from e

        return EngineResult(
            state=state,
            signal=EngineSignal.from_engine(result.get("signal")),
            stats=copy.deepcopy(dict(result.get("stats") or {})),
            indicators=dict(result.get("indicators") or {}),
        )
