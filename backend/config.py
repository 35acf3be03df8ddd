"""
Configuration for the Live Signal Trader.
Contains exchange endpoints, per-trader settings, and notification channels.
"""

import json
import os
from dataclasses import dataclass, field, fields
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional


class ConfigError(ValueError):
    """Raised when a trader configuration is missing or invalid."""


# ============================================================================
# API ENDPOINTS
# ============================================================================

class BinanceAPI:
    """Binance REST and WebSocket endpoints for spot and USD-M futures."""

    # REST APIs (for OHLCV snapshots)
    SPOT_REST = "https://api.binance.com/api/v3"
    FUTURES_REST = "https://fapi.binance.com/fapi/v1"

    # WebSocket streams
    SPOT_WS = "wss://stream.binance.com:9443/ws"
    FUTURES_WS = "wss://fstream.binance.com/ws"

    # Binance caps klines requests at 1000 rows
    MAX_KLINES_LIMIT = 1000


# ============================================================================
# TRADER SETTINGS
# ============================================================================

class MarketKind(Enum):
    """Which Binance market a trader follows"""
    SPOT = "spot"
    FUTURES = "futures"


# Engine parameters understood by the default signal engine
DEFAULT_ALGORITHM_PARAMS = {
    "fastLength": 6,
    "ATRPeriod": 16,
    "ATRMultiplier": 9.0,
    "ATRMultiplierFast": 5.1,
    "scalpPeriod": 21,
}

# camelCase keys used by config files and the engine -> TraderConfig field
_CONFIG_ALIASES = {
    "rewardMultiple": "reward_multiple",
    "initialCapital": "initial_capital",
    "riskPerTrade": "risk_per_trade",
    "useLeverage": "use_leverage",
    "leverageAmount": "leverage_amount",
    "windowSize": "window_size",
    "signalEngine": "engine",
}


@dataclass(frozen=True)
class TraderConfig:
    """Immutable settings for one (symbol, interval, market) trader."""

    # Trading pair and market settings
    symbol: str = "BTCUSDT"
    interval: str = "5m"
    market: MarketKind = MarketKind.SPOT

    # Algorithm parameters (passed through to the engine untouched; read-only after construction)
    algorithm_params: Mapping[str, Any] = field(default_factory=lambda: dict(DEFAULT_ALGORITHM_PARAMS))

    # Risk-reward parameters
    reward_multiple: float = 1.5
    initial_capital: float = 100.0
    risk_per_trade: float = 10.0  # % of capital

    # Leverage parameters
    use_leverage: bool = False
    leverage_amount: float = 2.0

    # "package.module:callable" of the signal engine
    engine: Optional[str] = None

    # Candles kept in the rolling window
    window_size: int = BinanceAPI.MAX_KLINES_LIMIT

    def __post_init__(self):
        object.__setattr__(self, "algorithm_params", MappingProxyType(dict(self.algorithm_params)))
        try:
            for name in ("reward_multiple", "initial_capital", "risk_per_trade", "leverage_amount"):
                object.__setattr__(self, name, float(getattr(self, name)))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e

        if not self.symbol:
            raise ConfigError("symbol is required")
        if not self.interval:
            raise ConfigError("interval is required")
        if self.reward_multiple <= 0:
            raise ConfigError(f"reward_multiple must be positive, got {self.reward_multiple}")
        if not 0 < self.risk_per_trade <= 100:
            raise ConfigError(f"risk_per_trade must be in (0, 100], got {self.risk_per_trade}")
        if self.initial_capital <= 0:
            raise ConfigError(f"initial_capital must be positive, got {self.initial_capital}")
        if self.use_leverage and self.leverage_amount < 1:
            raise ConfigError(f"leverage_amount must be >= 1, got {self.leverage_amount}")
        if not 1 <= self.window_size <= BinanceAPI.MAX_KLINES_LIMIT:
            raise ConfigError(
                f"window_size must be between 1 and {BinanceAPI.MAX_KLINES_LIMIT}, got {self.window_size}"
            )

    @property
    def is_futures(self) -> bool:
        return self.market == MarketKind.FUTURES

    @property
    def leverage_factor(self) -> float:
        """Multiplier applied to realized P&L"""
        return self.leverage_amount if self.use_leverage else 1.0

    @property
    def label(self) -> str:
        return f"{self.symbol} {self.interval}"

    def engine_settings(self) -> dict:
        """Settings dict in the engine's own (camelCase) vocabulary."""
        return {
            "symbol": self.symbol,
            "interval": self.interval,
            "isFutures": self.is_futures,
            **self.algorithm_params,
            "rewardMultiple": self.reward_multiple,
            "initialCapital": self.initial_capital,
            "riskPerTrade": self.risk_per_trade,
            "useLeverage": self.use_leverage,
            "leverageAmount": self.leverage_amount,
            "isBacktest": False,
        }

    def to_dict(self) -> dict:
        d = {f.name: getattr(self, f.name) for f in fields(self)}
        d["market"] = self.market.value
        d["algorithm_params"] = dict(self.algorithm_params)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "TraderConfig":
        """
        Build a config from a dict using either snake_case field names or the
        engine's camelCase keys. Unknown keys are treated as algorithm parameters.
        """
        if not isinstance(data, dict):
            raise ConfigError(f"Trader configuration must be an object, got {type(data).__name__}")

        field_names = set(cls.__dataclass_fields__)
        kwargs: dict[str, Any] = {}
        params = dict(DEFAULT_ALGORITHM_PARAMS)
        params.update(data.get("algorithm_params") or {})

        for key, value in data.items():
            if key == "algorithm_params":
                continue
            if key == "isFutures":
                kwargs["market"] = MarketKind.FUTURES if value else MarketKind.SPOT
            elif key in ("market", "marketType"):
                kwargs["market"] = _parse_market(value)
            elif key in _CONFIG_ALIASES:
                kwargs[_CONFIG_ALIASES[key]] = value
            elif key in field_names:
                kwargs[key] = value
            elif key == "isBacktest":
                continue
            else:
                params[key] = value

        kwargs["algorithm_params"] = params

        try:
            for name in ("reward_multiple", "initial_capital", "risk_per_trade", "leverage_amount"):
                if name in kwargs:
                    kwargs[name] = float(kwargs[name])
            if "window_size" in kwargs:
                kwargs["window_size"] = int(kwargs["window_size"])
            if "use_leverage" in kwargs:
                kwargs["use_leverage"] = _parse_bool(kwargs["use_leverage"])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e

        return cls(**kwargs)

    @classmethod
    def from_env(cls) -> "TraderConfig":
        """Load a single trader's config from environment variables"""
        try:
            return cls(
                symbol=os.getenv("TRADING_PAIR", "BTCUSDT"),
                interval=os.getenv("TIMEFRAME", "5m"),
                market=_parse_market(os.getenv("MARKET_TYPE", "spot")),
                algorithm_params={
                    "fastLength": int(os.getenv("FAST_LENGTH", "6")),
                    "ATRPeriod": int(os.getenv("ATR_PERIOD", "16")),
                    "ATRMultiplier": float(os.getenv("ATR_MULTIPLIER", "9")),
                    "ATRMultiplierFast": float(os.getenv("ATR_MULTIPLIER_FAST", "5.1")),
                    "scalpPeriod": int(os.getenv("SCALP_PERIOD", "21")),
                },
                reward_multiple=float(os.getenv("REWARD_MULTIPLE", "1.5")),
                initial_capital=float(os.getenv("INITIAL_CAPITAL", "100")),
                risk_per_trade=float(os.getenv("RISK_PER_TRADE", "10")),
                use_leverage=os.getenv("USE_LEVERAGE", "false").lower() == "true",
                leverage_amount=float(os.getenv("LEVERAGE_AMOUNT", "2.0")),
                engine=os.getenv("SIGNAL_ENGINE"),
            )
        except ValueError as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(f"Invalid environment setting: {e}") from e


def _parse_market(value: Any) -> MarketKind:
    if isinstance(value, MarketKind):
        return value
    try:
        return MarketKind(str(value).lower().strip())
    except ValueError:
        raise ConfigError(f"Unknown market kind: {value!r} (expected 'spot' or 'futures')")


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower().strip() in ("1", "true", "yes", "on")
    return bool(value)


def load_configurations(path: str) -> list[TraderConfig]:
    """
    Load trader configurations from a JSON file.

    The file holds either a list of trader objects or a single object.
    Entries without an engine inherit SIGNAL_ENGINE from the environment.
    """
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read configuration file {path}: {e}") from e

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not data:
        raise ConfigError(f"Configuration file {path} must contain a non-empty list")

    default_engine = os.getenv("SIGNAL_ENGINE")
    configs = []
    for entry in data:
        if isinstance(entry, dict) and default_engine and not (entry.get("engine") or entry.get("signalEngine")):
            entry = {**entry, "engine": default_engine}
        configs.append(TraderConfig.from_dict(entry))
    return configs


# ============================================================================
# NOTIFICATIONS
# ============================================================================

@dataclass(frozen=True)
class NotificationConfig:
    """Discord webhook per message kind; None disables that channel."""
    signals_webhook: Optional[str] = None
    exits_webhook: Optional[str] = None
    stats_webhook: Optional[str] = None
    username: str = "Live Signal Trader"
    timeout_sec: float = 10.0

    @classmethod
    def from_env(cls) -> "NotificationConfig":
        fallback = os.getenv("DISCORD_WEBHOOK")
        return cls(
            signals_webhook=os.getenv("DISCORD_WEBHOOK_SIGNALS") or fallback,
            exits_webhook=os.getenv("DISCORD_WEBHOOK_EXITS") or fallback,
            stats_webhook=os.getenv("DISCORD_WEBHOOK_STATS") or fallback,
        )
