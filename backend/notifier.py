"""
Notification sink - Discord webhook embeds for trade signals, exits,
stop updates and statistics panels.

Delivery is fire-and-forget: each post runs in its own task, failures are
logged and never retried, and candle processing never waits on delivery.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional
import httpx

from config import NotificationConfig, TraderConfig
from signal_engine import AlgorithmState
from trade_tracker import EntryEvent, ExitEvent, StopUpdateEvent

logger = logging.getLogger(__name__)

GREEN = 0x00FF00
RED = 0xFF0000
GREY = 0x999999

# kind -> NotificationConfig attribute holding its webhook
_CHANNELS = {
    "signal": "signals_webhook",
    "update": "signals_webhook",
    "exit": "exits_webhook",
    "stats": "stats_webhook",
}


@dataclass
class Notification:
    """Structured message handed to the sink"""
    kind: str  # "signal", "exit", "update" or "stats"
    symbol: str
    interval: str
    market: str
    data: dict
    embed: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "symbol": self.symbol,
            "interval": self.interval,
            "market": self.market,
            "data": self.data,
        }


def _format_time(at_ms: Optional[int] = None) -> str:
    if at_ms is None:
        when = datetime.now(timezone.utc)
    else:
        when = datetime.fromtimestamp(at_ms / 1000, tz=timezone.utc)
    return when.strftime("%Y-%m-%d %H:%M:%S UTC")


def _price(value: Optional[float]) -> str:
    return f"{value:.2f}" if value is not None else "n/a"


def _market_label(config: TraderConfig) -> str:
    return "Futures" if config.is_futures else "Spot"


def _base_embed(config: TraderConfig, kind: str) -> dict:
    return {
        "title": f"{config.symbol} {config.interval} - {kind.upper()}",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "footer": {"text": f"Live Signal Trader - {_market_label(config)}"},
    }


# ============================================================================
# MESSAGE BUILDERS
# ============================================================================

def build_entry_notification(
    config: TraderConfig,
    event: EntryEvent,
    state: AlgorithmState,
    at_ms: Optional[int] = None,
) -> Notification:
    potential_reward = state.risk_amount * config.reward_multiple
    embed = _base_embed(config, "entry")
    embed["color"] = GREEN if event.side == "long" else RED
    embed["description"] = (
        f"**New {event.side.upper()} Signal**\n\n"
        f"Entry: `{_price(event.price)}`\n"
        f"Stop Loss: `{_price(event.stop_level)}`\n"
        f"Target: `{_price(event.target_level)}`\n\n"
        f"Risk: `${state.risk_amount:.2f}` ({config.risk_per_trade}% of capital)\n"
        f"Potential Reward: `${potential_reward:.2f}`\n\n"
        f"Time: {_format_time(at_ms)}"
    )
    return Notification(
        kind="signal",
        symbol=config.symbol,
        interval=config.interval,
        market=config.market.value,
        data={
            **event.to_dict(),
            "potential_reward": potential_reward,
            "risk_per_trade": config.risk_per_trade,
        },
        embed=embed,
    )


def build_exit_notification(
    config: TraderConfig,
    event: ExitEvent,
    state: AlgorithmState,
    at_ms: Optional[int] = None,
) -> Notification:
    profitable = event.profit_loss > 0
    embed = _base_embed(config, "exit")
    embed["color"] = GREEN if profitable else RED
    embed["description"] = (
        f"**{event.side.upper()} Trade Exit - {event.reason.value}**\n\n"
        f"Entry: `{_price(event.entry_price)}`\n"
        f"Exit: `{_price(event.exit_price)}`\n\n"
        f"P/L: `{'+' if profitable else ''}${event.profit_loss:.2f}`\n"
        f"Risk Amount: `${event.risked_amount:.2f}`\n\n"
        f"Current Capital: `${state.current_capital:.2f}`\n"
        f"Total P/L: `${state.total_profit_loss:.2f}`\n\n"
        f"Time: {_format_time(at_ms)}"
    )
    return Notification(
        kind="exit",
        symbol=config.symbol,
        interval=config.interval,
        market=config.market.value,
        data={
            **event.to_dict(),
            "current_capital": state.current_capital,
            "total_profit_loss": state.total_profit_loss,
        },
        embed=embed,
    )


def build_update_notification(
    config: TraderConfig,
    event: StopUpdateEvent,
    at_ms: Optional[int] = None,
) -> Notification:
    embed = _base_embed(config, "update")
    embed["color"] = GREY
    embed["description"] = (
        f"**Trade Update - {event.side.upper()}**\n\n"
        f"Previous Stop Loss: `{_price(event.previous_stop)}`\n"
        f"New Stop Loss: `{_price(event.new_stop)}`\n\n"
        f"Entry: `{_price(event.entry_price)}`\n"
        f"Target: `{_price(event.target_level)}`\n\n"
        f"Time: {_format_time(at_ms)}"
    )
    return Notification(
        kind="update",
        symbol=config.symbol,
        interval=config.interval,
        market=config.market.value,
        data=event.to_dict(),
        embed=embed,
    )


def build_stats_notification(
    config: TraderConfig,
    state: AlgorithmState,
    stats: Mapping[str, Any],
) -> Notification:
    """Statistics panel: signal counts, wins, target hits, capital and settings"""
    long_trades = int(stats.get("totalLongTrades", 0) or 0)
    short_trades = int(stats.get("totalShortTrades", 0) or 0)
    win_rate = float(stats.get("overallWinRate", 0.0) or 0.0)
    efficiency = float(stats.get("efficiency", 0.0) or 0.0)
    leverage = f"{config.leverage_amount}x" if config.use_leverage else "OFF"

    data = {
        "long_signals": long_trades,
        "short_signals": short_trades,
        "total_signals": long_trades + short_trades,
        "long_wins": state.long_wins,
        "short_wins": state.short_wins,
        "overall_win_rate": win_rate,
        "long_target_hits": state.long_target_hits,
        "short_target_hits": state.short_target_hits,
        "total_target_hits": state.long_target_hits + state.short_target_hits,
        "initial_capital": config.initial_capital,
        "current_capital": state.current_capital,
        "total_profit_loss": state.total_profit_loss,
        "total_profit": state.total_profit,
        "total_loss": state.total_loss,
        "efficiency": efficiency,
        "reward_multiple": config.reward_multiple,
        "risk_per_trade": config.risk_per_trade,
        "leverage": leverage,
    }

    def inline(name: str, value: str) -> dict:
        return {"name": name, "value": value, "inline": True}

    embed = {
        "title": f"Stats Panel - {config.symbol} {config.interval}",
        "color": GREEN if state.total_profit_loss >= 0 else RED,
        "description": (
            f"Trading statistics for {config.symbol} {config.interval} on {_market_label(config)}"
        ),
        "fields": [
            inline("Long Signals", str(long_trades)),
            inline("Short Signals", str(short_trades)),
            inline("Total Signals", str(long_trades + short_trades)),
            inline("Successful Longs", str(state.long_wins)),
            inline("Successful Shorts", str(state.short_wins)),
            inline("Overall Win %", f"{win_rate:.2f}%"),
            inline("Long Target Hits", str(state.long_target_hits)),
            inline("Short Target Hits", str(state.short_target_hits)),
            inline("Total Target Hits", str(state.long_target_hits + state.short_target_hits)),
            inline("Initial Capital", f"${config.initial_capital:.2f}"),
            inline("Current Capital", f"${state.current_capital:.2f}"),
            inline("Total P/L", f"${state.total_profit_loss:.2f}"),
            inline("Total Profit", f"${state.total_profit:.2f}"),
            inline("Total Loss", f"${state.total_loss:.2f}"),
            inline("Efficiency", f"{efficiency:.2f}%"),
            inline("R:R Ratio", f"1:{config.reward_multiple}"),
            inline("Risk Per Trade", f"{config.risk_per_trade}%"),
            inline("Leverage", leverage),
        ],
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "footer": {"text": "Live Signal Trader"},
    }
    return Notification(
        kind="stats",
        symbol=config.symbol,
        interval=config.interval,
        market=config.market.value,
        data=data,
        embed=embed,
    )


# ============================================================================
# DELIVERY
# ============================================================================

class Notifier:
    """Posts notifications to Discord webhooks without blocking the caller."""

    def __init__(
        self,
        config: Optional[NotificationConfig] = None,
        on_notification: Optional[Callable[[Notification], None]] = None,
    ):
        self.config = config or NotificationConfig()
        self.on_notification = on_notification
        self._pending: set[asyncio.Task] = set()

    def webhook_for(self, kind: str) -> Optional[str]:
        attr = _CHANNELS.get(kind)
        return getattr(self.config, attr) if attr else None

    def notify(self, notification: Notification) -> Optional[asyncio.Task]:
        """Schedule delivery and return immediately."""
        logger.info(
            f"[Notify] {notification.kind.upper()} {notification.symbol} {notification.interval}"
        )

        if self.on_notification:
            try:
                self.on_notification(notification)
            except Exception as e:
                logger.error(f"[Notify] Error in notification callback: {e}")

        webhook = self.webhook_for(notification.kind)
        if not webhook:
            return None

        task = asyncio.create_task(self._send_discord(webhook, notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _send_discord(self, webhook: str, notification: Notification):
        """Send Discord webhook message (non-blocking)"""
        payload = {
            "username": self.config.username,
            "embeds": [notification.embed],
        }
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(webhook, json=payload, timeout=self.config.timeout_sec)
                if response.status_code >= 300:
                    logger.warning(
                        f"[Notify] Discord returned {response.status_code} for {notification.kind}: {response.text[:200]}"
                    )
        except Exception as e:
            logger.error(f"[Notify] Discord {notification.kind} delivery failed: {e}")

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self):
        """Wait for in-flight deliveries (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
