"""
Candle Window - fixed-capacity, time-ordered buffer of OHLCV candles.

Holds the most recent N completed candles for one trader. Candles are keyed
by open time: duplicates and out-of-order candles are rejected, and inserting
at capacity evicts the oldest entry.
"""

from collections import deque
from dataclasses import dataclass, asdict
from typing import Iterable, Iterator, Optional

DEFAULT_CAPACITY = 1000


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar"""
    open_time: int   # Unix ms, unique key
    close_time: int  # Unix ms
    open: float
    high: float
    low: float
    close: float
    volume: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class AppendResult:
    """Outcome of CandleWindow.append"""
    accepted: bool
    evicted: Optional[Candle] = None


class CandleWindow:
    """Ring buffer of the most recent <= capacity distinct candles."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._candles: deque[Candle] = deque(maxlen=capacity)

    def seed(self, candles: Iterable[Candle]) -> None:
        """Replace the entire window (used on connect and reconnect)."""
        by_time = {c.open_time: c for c in candles}
        ordered = [by_time[t] for t in sorted(by_time)]
        self._candles = deque(ordered[-self.capacity:], maxlen=self.capacity)

    def append(self, candle: Candle) -> AppendResult:
        """Push a completed candle, evicting the oldest when full."""
        last = self.last
        if last is not None and candle.open_time <= last.open_time:
            return AppendResult(accepted=False)

        evicted = None
        if len(self._candles) == self.capacity:
            evicted = self._candles[0]
        self._candles.append(candle)
        return AppendResult(accepted=True, evicted=evicted)

    @property
    def last(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    def __len__(self) -> int:
        return len(self._candles)

    def __iter__(self) -> Iterator[Candle]:
        return iter(self._candles)

    def to_columns(self) -> dict[str, list]:
        """Column arrays in the shape the signal engine consumes."""
        return {
            "openTime": [c.open_time for c in self._candles],
            "open": [c.open for c in self._candles],
            "high": [c.high for c in self._candles],
            "low": [c.low for c in self._candles],
            "close": [c.close for c in self._candles],
            "volume": [c.volume for c in self._candles],
            "closeTime": [c.close_time for c in self._candles],
        }
