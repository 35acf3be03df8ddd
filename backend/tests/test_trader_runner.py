"""
Tests for the multi-trader runner and CLI.

Tests cover:
- Sequential startup with stagger and failure isolation
- Shutdown
- Configuration resolution
- Logging setup
- CLI exit codes
"""
import pytest
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import trader_runner
from config import ConfigError, TraderConfig
from notifier import Notifier
from trader_runner import TraderRunner, describe, resolve_configurations, setup_logging


class FakeTrader:
    """Trader stand-in; symbols starting with BAD fail to initialize."""

    def __init__(self, config, notifier=None, monitor=None, on_terminated=None):
        self.config = config
        self.notifier = notifier
        self.monitor = monitor
        self.on_terminated = on_terminated
        self.stop = AsyncMock()

    @property
    def label(self):
        return self.config.label

    async def initialize(self):
        return not self.config.symbol.startswith("BAD")

    def get_status(self):
        return {"symbol": self.config.symbol, "interval": self.config.interval}


@pytest.fixture
def configs():
    return [
        TraderConfig(symbol="BTCUSDT", interval="5m"),
        TraderConfig(symbol="BADUSDT", interval="5m"),
        TraderConfig(symbol="ETHUSDT", interval="1h"),
    ]


@pytest.fixture
def runner(configs):
    return TraderRunner(configs, notifier=Notifier(), trader_factory=FakeTrader, stagger_sec=0)


class TestTraderRunner:
    """Tests for TraderRunner."""

    @pytest.mark.asyncio
    async def test_failed_trader_does_not_stop_others(self, runner):
        started = await runner.start()

        assert [t.config.symbol for t in started] == ["BTCUSDT", "ETHUSDT"]
        assert [c.symbol for c in runner.failed] == ["BADUSDT"]

    @pytest.mark.asyncio
    async def test_shared_notifier_and_monitor(self, runner):
        await runner.start()

        for trader in runner.traders:
            assert trader.notifier is runner.notifier
            assert trader.monitor is runner.monitor

    @pytest.mark.asyncio
    async def test_startup_is_staggered(self, configs):
        runner = TraderRunner(configs, notifier=Notifier(), trader_factory=FakeTrader, stagger_sec=1.0)

        with patch("trader_runner.asyncio.sleep", new=AsyncMock()) as sleep:
            await runner.start()

        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.0)

    @pytest.mark.asyncio
    async def test_stop_all(self, runner):
        await runner.start()
        runner.traders[0].stop.side_effect = RuntimeError("already closed")

        await runner.stop()

        for trader in runner.traders:
            trader.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_trader_and_status(self, runner):
        await runner.start()

        assert runner.get_trader("ethusdt", "1h").config.symbol == "ETHUSDT"
        assert runner.get_trader("ETHUSDT", "5m") is None

        status = runner.get_status()
        assert len(status["traders"]) == 2
        assert status["failed"] == ["BADUSDT 5m"]


class TestResolveConfigurations:
    """Tests for resolve_configurations."""

    def test_from_environment(self, monkeypatch):
        monkeypatch.delenv("CONFIG_FILE", raising=False)
        monkeypatch.setenv("TRADING_PAIR", "XRPUSDT")

        configs = resolve_configurations()

        assert [c.symbol for c in configs] == ["XRPUSDT"]

    def test_from_config_file_env(self, monkeypatch, tmp_path):
        path = tmp_path / "traders.json"
        path.write_text('[{"symbol": "ADAUSDT", "interval": "15m"}]')
        monkeypatch.setenv("CONFIG_FILE", str(path))

        assert resolve_configurations()[0].label == "ADAUSDT 15m"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            resolve_configurations(str(tmp_path / "missing.json"))

    def test_describe(self):
        cfg = TraderConfig(symbol="ETHUSDT", interval="1h", use_leverage=True, leverage_amount=3)
        line = describe(cfg, 2)

        assert line.startswith("Configuration #2: ETHUSDT 1h")
        assert "Market: Spot" in line
        assert "Leverage: 3.0x" in line


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    trades = logging.getLogger("live_trader.trades")
    saved = (list(root.handlers), list(trades.handlers), root.level)
    yield
    for logger_, handlers in ((root, saved[0]), (trades, saved[1])):
        for handler in list(logger_.handlers):
            if handler not in handlers:
                logger_.removeHandler(handler)
                handler.close()
    root.setLevel(saved[2])


class TestLogging:
    """Tests for setup_logging."""

    def test_creates_log_files(self, tmp_path, restore_logging):
        setup_logging(str(tmp_path / "logs"))

        logging.getLogger("live_trader.trades").info("ENTRY BTCUSDT 5m LONG")
        for handler in logging.getLogger().handlers + logging.getLogger("live_trader.trades").handlers:
            handler.flush()

        names = sorted(p.name for p in (tmp_path / "logs").iterdir())
        assert any(n.startswith("live_trader_") for n in names)
        trade_logs = [p for p in (tmp_path / "logs").iterdir() if p.name.startswith("trades_")]
        assert "ENTRY BTCUSDT 5m LONG" in trade_logs[0].read_text()


class TestMain:
    """Tests for the CLI entry points."""

    def test_invalid_config_exits_1(self, tmp_path, restore_logging):
        code = trader_runner.main([
            "--config", str(tmp_path / "missing.json"),
            "--log-dir", str(tmp_path / "logs"),
        ])
        assert code == 1

    @pytest.mark.asyncio
    async def test_run_exits_1_without_traders(self):
        fake_runner = MagicMock()
        fake_runner.start = AsyncMock(return_value=[])
        fake_runner.notifier.drain = AsyncMock()

        with patch("trader_runner.TraderRunner", return_value=fake_runner):
            code = await trader_runner.run([TraderConfig()])

        assert code == 1
        fake_runner.notifier.drain.assert_awaited_once()
