"""
Tests for the signal engine adapter.

Tests cover:
- AlgorithmState conversion from the engine's camelCase state
- Signal parsing
- Engine loading by dotted path
- Evaluation: inputs handed to the engine, state isolation, failure wrapping
"""
import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from candle_window import CandleWindow
from signal_engine import (
    AlgorithmState,
    EngineEvaluationError,
    EngineLoadError,
    EngineSignal,
    SignalEngineAdapter,
    load_engine,
)


@pytest.fixture
def window(make_candle):
    w = CandleWindow(capacity=10)
    w.seed([make_candle(i, close=100 + i) for i in range(5)])
    return w


class TestAlgorithmState:
    """Tests for AlgorithmState.from_engine."""

    def test_maps_well_known_fields(self, engine_state):
        s = AlgorithmState.from_engine(engine_state(
            inLongTrade=1,
            longEntryPrice="101.5",
            longStopReference=99,
            longWins=3.0,
            currentCapital=112.5,
        ))

        assert s.in_long_trade is True
        assert s.long_entry_price == 101.5
        assert s.long_stop_reference == 99.0
        assert s.long_wins == 3
        assert s.current_capital == 112.5
        assert s.in_trade("long") and not s.in_trade("short")
        assert s.entry_price("long") == 101.5
        assert s.short_entry_price is None

    def test_raw_state_is_private_copy(self, engine_state):
        source = engine_state(custom={"nested": [1, 2]})
        s = AlgorithmState.from_engine(source)

        source["custom"]["nested"].append(3)
        handed_out = s.engine_state()
        handed_out["custom"]["nested"].append(4)

        assert s.raw["custom"]["nested"] == [1, 2]

    def test_rejects_non_mapping(self):
        with pytest.raises(EngineEvaluationError):
            AlgorithmState.from_engine(["not", "a", "dict"])


class TestEngineSignal:
    """Tests for EngineSignal.from_engine."""

    def test_parses_position(self):
        assert EngineSignal.from_engine({"position": "LONG"}).position == "long"
        assert EngineSignal.from_engine({"position": "short", "price": 1}).position == "short"

    def test_empty_signal(self):
        assert EngineSignal.from_engine(None) is None
        assert EngineSignal.from_engine({}) is None

    def test_unknown_position_ignored(self):
        assert EngineSignal.from_engine({"position": "flat"}) is None

    def test_non_mapping_rejected(self):
        with pytest.raises(EngineEvaluationError):
            EngineSignal.from_engine("long")


class TestLoadEngine:
    """Tests for load_engine."""

    def test_colon_path(self):
        import json
        assert load_engine("json:dumps") is json.dumps

    def test_dotted_path(self):
        import os.path
        assert load_engine("os.path.join") is os.path.join

    def test_missing_module(self):
        with pytest.raises(EngineLoadError):
            load_engine("no_such_engine_module:run")

    def test_missing_attribute(self):
        with pytest.raises(EngineLoadError):
            load_engine("json:no_such_callable")

    def test_not_callable(self):
        with pytest.raises(EngineLoadError):
            load_engine("math:pi")

    def test_unset(self):
        with pytest.raises(EngineLoadError):
            load_engine(None)


class TestEvaluate:
    """Tests for SignalEngineAdapter.evaluate."""

    def test_first_call_has_no_prior_state(self, fake_engine, trader_config, window):
        adapter = SignalEngineAdapter(fake_engine, trader_config)

        result = adapter.evaluate(window, None)

        call = fake_engine.calls[0]
        assert call["prior_state"] is None
        assert call["candles"]["close"] == [100, 101, 102, 103, 104]
        assert call["settings"]["isBacktest"] is False
        assert call["settings"]["rewardMultiple"] == 1.5
        assert call["settings"]["fastLength"] == 6
        assert result.signal is None

    def test_engine_cannot_mutate_kept_state(self, fake_engine, engine_state, trader_config, window):
        fake_engine.queue(state=engine_state(inLongTrade=True, longEntryPrice=104.0))
        first = SignalEngineAdapter(fake_engine, trader_config).evaluate(window, None).state
        seen_rewards = []

        def mutating_engine(candles, prior_state, settings):
            seen_rewards.append(settings["rewardMultiple"])
            prior_state["inLongTrade"] = False
            settings["rewardMultiple"] = 99
            return {"state": prior_state, "signal": None}

        adapter = SignalEngineAdapter(mutating_engine, trader_config)
        second = adapter.evaluate(window, first)
        adapter.evaluate(window, first)

        assert first.in_long_trade is True
        assert first.raw["inLongTrade"] is True
        assert second.state.in_long_trade is False
        assert seen_rewards == [1.5, 1.5]

    def test_signal_and_stats(self, fake_engine, engine_state, trader_config, window):
        adapter = SignalEngineAdapter(fake_engine, trader_config)
        fake_engine.queue(
            state=engine_state(inShortTrade=True),
            signal={"position": "short", "price": 104.0},
            stats={"totalShortTrades": 1},
        )

        result = adapter.evaluate(window, None)

        assert result.signal == EngineSignal(position="short")
        assert result.stats == {"totalShortTrades": 1}
        assert result.state.in_short_trade is True

    def test_engine_exception_wrapped(self, fake_engine, trader_config, window):
        fake_engine.queue(error=ZeroDivisionError("division by zero"))
        adapter = SignalEngineAdapter(fake_engine, trader_config)

        with pytest.raises(EngineEvaluationError, match="ZeroDivisionError"):
            adapter.evaluate(window, None)

    def test_result_without_state(self, trader_config, window):
        adapter = SignalEngineAdapter(lambda c, p, s: {"signal": None}, trader_config)

        with pytest.raises(EngineEvaluationError):
            adapter.evaluate(window, None)

    def test_invalid_state_field(self, engine_state, trader_config, window):
        adapter = SignalEngineAdapter(
            lambda c, p, s: {"state": engine_state(longEntryPrice="abc")},
            trader_config,
        )

        with pytest.raises(EngineEvaluationError):
            adapter.evaluate(window, None)
