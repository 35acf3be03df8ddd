"""
Binance market data boundary: kline snapshots over REST and kline stream
messages over WebSocket.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union
import aiohttp

from candle_window import Candle
from config import BinanceAPI, MarketKind
from retry import retry_http_request, HTTP_RETRY_CONFIG, RetryConfig

logger = logging.getLogger(__name__)


class SnapshotError(Exception):
    """Historical snapshot could not be fetched or was not a kline array."""


class MalformedMessageError(ValueError):
    """Stream message could not be parsed into a kline update."""


# ============================================================================
# DATA MODELS
# ============================================================================

@dataclass(frozen=True)
class KlineUpdate:
    """One kline tick from the stream; is_closed marks a completed candle"""
    symbol: str
    candle: Candle
    is_closed: bool


# ============================================================================
# REST SNAPSHOT
# ============================================================================

def klines_url(market: MarketKind) -> str:
    base = BinanceAPI.FUTURES_REST if market == MarketKind.FUTURES else BinanceAPI.SPOT_REST
    return f"{base}/klines"


def parse_klines_payload(data: Any) -> list[Candle]:
    """
    Convert a Binance klines response into candles, ascending by open time.

    Each row is [openTime, open, high, low, close, volume, closeTime, ...].
    """
    if not isinstance(data, list):
        raise SnapshotError(f"Failed to fetch data: {json.dumps(data)[:200]}")

    try:
        candles = [
            Candle(
                open_time=int(k[0]),
                open=float(k[1]),
                high=float(k[2]),
                low=float(k[3]),
                close=float(k[4]),
                volume=float(k[5]),
                close_time=int(k[6]),
            )
            for k in data
        ]
    except (TypeError, ValueError, IndexError) as e:
        raise SnapshotError(f"Malformed kline row: {e}") from e

    candles.sort(key=lambda c: c.open_time)
    return candles


def completed_candles(candles: list[Candle], now_ms: int) -> list[Candle]:
    """Drop bars still in progress at now_ms (Binance returns the open bar last)."""
    return [c for c in candles if c.close_time < now_ms]


async def fetch_snapshot(
    symbol: str,
    interval: str,
    limit: int = BinanceAPI.MAX_KLINES_LIMIT,
    market: MarketKind = MarketKind.SPOT,
    session: Optional[aiohttp.ClientSession] = None,
    retry_config: Optional[RetryConfig] = None,
) -> list[Candle]:
    """Fetch historical OHLCV candles from the Binance REST API"""
    limit = max(1, min(limit, BinanceAPI.MAX_KLINES_LIMIT))
    params = {
        "symbol": symbol.upper(),
        "interval": interval,
        "limit": limit,
    }
    url = klines_url(market)

    owns_session = session is None
    if owns_session:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30))

    try:
        resp = await retry_http_request(
            session, "GET", url, config=retry_config or HTTP_RETRY_CONFIG, params=params
        )
        async with resp:
            data = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
        raise SnapshotError(f"Error fetching {symbol} {interval} klines: {e}") from e
    finally:
        if owns_session:
            await session.close()

    candles = parse_klines_payload(data)
    logger.info(f"[Snapshot] {symbol.upper()} {interval} ({market.value}): {len(candles)} candles")
    return candles


# ============================================================================
# WEBSOCKET STREAM
# ============================================================================

def build_stream_url(symbol: str, interval: str, market: MarketKind = MarketKind.SPOT) -> str:
    """Single-stream kline URL for one symbol/interval"""
    base = BinanceAPI.FUTURES_WS if market == MarketKind.FUTURES else BinanceAPI.SPOT_WS
    return f"{base}/{symbol.lower()}@kline_{interval}"


def parse_kline_message(raw: Union[str, bytes, dict]) -> Optional[KlineUpdate]:
    """
    Parse a stream message.

    Returns None for messages that carry no kline payload (subscription
    acks, other event types). Raises MalformedMessageError for unparseable
    JSON or a kline payload missing required fields.
    """
    if isinstance(raw, dict):
        event = raw
    else:
        try:
            event = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedMessageError(f"Invalid JSON: {e}") from e

    if not isinstance(event, dict):
        return None

    # Combined streams wrap the payload: {"stream": ..., "data": {...}}
    if "data" in event and isinstance(event["data"], dict):
        event = event["data"]

    k = event.get("k")
    if k is None:
        return None
    if not isinstance(k, dict):
        raise MalformedMessageError(f"Unexpected kline payload: {k!r}")

    try:
        candle = Candle(
            open_time=int(k["t"]),
            close_time=int(k["T"]),
            open=float(k["o"]),
            high=float(k["h"]),
            low=float(k["l"]),
            close=float(k["c"]),
            volume=float(k["v"]),
        )
        return KlineUpdate(
            symbol=str(k.get("s", event.get("s", ""))).upper(),
            candle=candle,
            is_closed=bool(k["x"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedMessageError(f"Kline payload missing or invalid field: {e}") from e
