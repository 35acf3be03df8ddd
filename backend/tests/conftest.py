"""
Pytest fixtures for the test suite.
"""
import pytest
import asyncio
import json
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from candle_window import Candle
from config import TraderConfig, MarketKind
from notifier import Notifier


BASE_TIME_MS = 1_700_000_000_000
INTERVAL_MS = 5 * 60 * 1000


def _make_candle(index, close=100.0, high=None, low=None, open_=None, volume=1.0):
    open_time = BASE_TIME_MS + index * INTERVAL_MS
    return Candle(
        open_time=open_time,
        close_time=open_time + INTERVAL_MS - 1,
        open=open_ if open_ is not None else close,
        high=high if high is not None else close,
        low=low if low is not None else close,
        close=close,
        volume=volume,
    )


def _kline_message(candle, closed=True, symbol="BTCUSDT"):
    return json.dumps({
        "e": "kline",
        "E": candle.close_time,
        "s": symbol,
        "k": {
            "t": candle.open_time,
            "T": candle.close_time,
            "s": symbol,
            "i": "5m",
            "o": str(candle.open),
            "h": str(candle.high),
            "l": str(candle.low),
            "c": str(candle.close),
            "v": str(candle.volume),
            "x": closed,
        },
    })


def _engine_state(**overrides):
    state = {
        "inLongTrade": False,
        "inShortTrade": False,
        "longEntryPrice": None,
        "shortEntryPrice": None,
        "longStopReference": None,
        "shortStopReference": None,
        "longTargetLevel": None,
        "shortTargetLevel": None,
        "riskAmount": 10.0,
        "currentCapital": 100.0,
        "totalProfitLoss": 0.0,
        "totalProfit": 0.0,
        "totalLoss": 0.0,
        "longWins": 0,
        "shortWins": 0,
        "longTargetHits": 0,
        "shortTargetHits": 0,
    }
    state.update(overrides)
    return state


class FakeEngine:
    """
    Scripted signal engine.

    Returns queued results in order (an Exception instance is raised instead);
    once the queue is empty it repeats the last state with no signal.
    """

    def __init__(self):
        self.results = []
        self.calls = []
        self._last_state = _engine_state()

    def queue(self, state=None, signal=None, stats=None, error=None):
        if error is not None:
            self.results.append(error)
            return
        self.results.append({
            "state": state if state is not None else dict(self._last_state),
            "signal": signal,
            "stats": stats or {"totalLongTrades": 0, "totalShortTrades": 0, "overallWinRate": 0.0, "efficiency": 0.0},
            "indicators": {},
        })

    def __call__(self, candles, prior_state, settings):
        self.calls.append({"candles": candles, "prior_state": prior_state, "settings": settings})
        if self.results:
            result = self.results.pop(0)
        else:
            result = {"state": dict(self._last_state), "signal": None, "stats": {}, "indicators": {}}
        if isinstance(result, Exception):
            raise result
        self._last_state = dict(result["state"])
        return result


class FakeStream:
    """In-memory stand-in for a websocket client connection."""

    def __init__(self, messages=None, end=False):
        self.queue = asyncio.Queue()
        for message in messages or []:
            self.queue.put_nowait(message)
        if end:
            self.queue.put_nowait(None)
        self.closed = False

    def push(self, message):
        self.queue.put_nowait(message)

    def end(self):
        self.queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.queue.get()
        if message is None:
            raise StopAsyncIteration
        return message

    async def close(self):
        self.closed = True


@pytest.fixture
def make_candle():
    """Factory for candles spaced one 5m interval apart."""
    return _make_candle


@pytest.fixture
def kline_message():
    """Factory for Binance kline stream messages."""
    return _kline_message


@pytest.fixture
def engine_state():
    """Factory for engine state dicts in the engine's camelCase vocabulary."""
    return _engine_state


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def fake_stream_cls():
    return FakeStream


@pytest.fixture
def trader_config():
    """Create a test trader config."""
    return TraderConfig(
        symbol="BTCUSDT",
        interval="5m",
        market=MarketKind.SPOT,
        reward_multiple=1.5,
        initial_capital=100.0,
        risk_per_trade=10.0,
        use_leverage=False,
        window_size=50,
    )


@pytest.fixture
def leveraged_config():
    """Create a futures config with 3x leverage."""
    return TraderConfig(
        symbol="ETHUSDT",
        interval="1h",
        market=MarketKind.FUTURES,
        reward_multiple=1.5,
        use_leverage=True,
        leverage_amount=3.0,
        window_size=50,
    )


@pytest.fixture
def recorded_notifications():
    return []


@pytest.fixture
def notifier(recorded_notifications):
    """Notifier with no webhooks that records every notification."""
    return Notifier(on_notification=recorded_notifications.append)
