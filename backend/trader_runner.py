#!/usr/bin/env python3
"""
Runs one or more live traders (one per symbol/interval) side by side.

Usage:
    python trader_runner.py                      # single trader from env vars
    python trader_runner.py --config traders.json
    python trader_runner.py --config traders.json --serve --port 8000
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from config import ConfigError, NotificationConfig, TraderConfig, load_configurations
from live_trader import LiveTrader
from notifier import Notifier
from retry import ConnectionHealthMonitor

logger = logging.getLogger(__name__)

# Pause between trader startups to stay clear of REST rate limits
STARTUP_STAGGER_SEC = 1.0


# ============================================================================
# LOGGING SETUP
# ============================================================================

def setup_logging(log_dir: str = "logs", level: int = logging.INFO) -> logging.Logger:
    """Setup console, daily file, and trade audit logging"""
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    day = datetime.now().strftime('%Y%m%d')

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # File handler - all logs
    file_handler = logging.FileHandler(f"{log_dir}/live_trader_{day}.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s'
    ))

    # Trade-specific log
    trade_handler = logging.FileHandler(f"{log_dir}/trades_{day}.log")
    trade_handler.setLevel(logging.INFO)
    trade_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(message)s'
    ))
    logging.getLogger("live_trader.trades").addHandler(trade_handler)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(message)s'
    ))

    root.addHandler(file_handler)
    root.addHandler(console_handler)

    return root


# ============================================================================
# RUNNER
# ============================================================================

class TraderRunner:
    """Creates, initializes and stops a set of independent traders."""

    def __init__(
        self,
        configs: list[TraderConfig],
        notifier: Optional[Notifier] = None,
        monitor: Optional[ConnectionHealthMonitor] = None,
        trader_factory=LiveTrader,
        stagger_sec: float = STARTUP_STAGGER_SEC,
    ):
        self.configs = configs
        self.notifier = notifier or Notifier(NotificationConfig.from_env())
        self.monitor = monitor or ConnectionHealthMonitor()
        self.traders: list[LiveTrader] = []
        self.failed: list[TraderConfig] = []
        self._trader_factory = trader_factory
        self._stagger_sec = stagger_sec

    async def start(self) -> list[LiveTrader]:
        """Initialize traders one after another; keeps the ones that started."""
        for index, config in enumerate(self.configs):
            logger.info(f"[Runner] Creating trader for {config.symbol} {config.interval}")
            trader = self._trader_factory(
                config,
                notifier=self.notifier,
                monitor=self.monitor,
                on_terminated=self._on_trader_terminated,
            )
            if await trader.initialize():
                self.traders.append(trader)
            else:
                logger.error(f"[Runner] Trader {config.label} failed to start")
                self.failed.append(config)

            if index < len(self.configs) - 1 and self._stagger_sec > 0:
                await asyncio.sleep(self._stagger_sec)

        logger.info(f"[Runner] Started {len(self.traders)}/{len(self.configs)} trader instances")
        return self.traders

    async def stop(self):
        logger.info("[Runner] Shutting down traders...")
        results = await asyncio.gather(*(t.stop() for t in self.traders), return_exceptions=True)
        for trader, result in zip(self.traders, results):
            if isinstance(result, Exception):
                logger.error(f"[Runner] Error stopping {trader.label}: {result}")
        logger.info("[Runner] All traders stopped")

    def get_trader(self, symbol: str, interval: str) -> Optional[LiveTrader]:
        for trader in self.traders:
            if trader.config.symbol.upper() == symbol.upper() and trader.config.interval == interval:
                return trader
        return None

    def get_status(self) -> dict:
        return {
            "traders": [t.get_status() for t in self.traders],
            "failed": [c.label for c in self.failed],
            "connections": self.monitor.get_status(),
        }

    def _on_trader_terminated(self, trader: LiveTrader):
        logger.error(f"[Runner] FATAL: {trader.label} exhausted reconnect attempts")


def resolve_configurations(config_file: Optional[str] = None) -> list[TraderConfig]:
    """Trader configs from a JSON file (argument or CONFIG_FILE) or the environment."""
    config_file = config_file or os.getenv("CONFIG_FILE")
    if config_file:
        if not os.path.exists(config_file):
            raise ConfigError(f"Configuration file not found: {config_file}")
        configs = load_configurations(config_file)
        logger.info(f"Loaded {len(configs)} configurations from {config_file}")
        return configs

    logger.info("Using default configuration")
    return [TraderConfig.from_env()]


def describe(config: TraderConfig, index: int) -> str:
    return (
        f"Configuration #{index}: {config.symbol} {config.interval} | "
        f"Market: {'Futures' if config.is_futures else 'Spot'} | "
        f"Risk Per Trade: {config.risk_per_trade}% | "
        f"Reward Multiple: {config.reward_multiple} | "
        f"Leverage: {str(config.leverage_amount) + 'x' if config.use_leverage else 'OFF'} | "
        f"Initial Capital: {config.initial_capital}"
    )


# ============================================================================
# MAIN
# ============================================================================

async def run(configs: list[TraderConfig]) -> int:
    runner = TraderRunner(configs)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    traders = await runner.start()
    if not traders:
        logger.error("No trader started. Exiting.")
        await runner.notifier.drain()
        return 1

    logger.info("Monitoring markets for signals...")
    try:
        await stop_event.wait()
    finally:
        await runner.stop()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Live signal trader for Binance klines")
    parser.add_argument("--config", help="JSON file with a list of trader configurations")
    parser.add_argument("--log-dir", default="logs", help="Directory for log files")
    parser.add_argument("--verbose", action="store_true", help="Debug output on the console")
    parser.add_argument("--serve", action="store_true", help="Run the status API instead of headless")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args(argv)

    load_dotenv()
    setup_logging(args.log_dir, logging.DEBUG if args.verbose else logging.INFO)

    logger.info("Starting Live Signal Trader")
    try:
        configs = resolve_configurations(args.config)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    for index, config in enumerate(configs, start=1):
        logger.info(describe(config, index))

    if args.serve:
        import uvicorn
        import server

        server.configure(configs)
        uvicorn.run(server.app, host=args.host, port=args.port, log_level="info")
        return 0

    return asyncio.run(run(configs))


if __name__ == "__main__":
    sys.exit(main())
