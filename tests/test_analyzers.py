import math

import pytest

from engine.analyzers import (
    MomentumDirection,
    TrendDirection,
    analyze_momentum,
    analyze_trend,
    position_in_range,
    volatility_from_closes,
)
from factors.indicators import MACDResult
from factors.snapshot import IndicatorSnapshot


def _hl(closes):
    return [c * 1.001 for c in closes], [c * 0.999 for c in closes]


def test_strong_uptrend_over_all_windows():
    closes = [100.0 + i for i in range(120)]
    highs, lows = _hl(closes)
    state = analyze_trend(closes, highs, lows)
    assert state.direction == TrendDirection.STRONG_UP
    assert 0.6 <= state.strength <= 1.0


def test_downtrend_without_long_window_is_plain_down():
    closes = [200.0 - i for i in range(60)]
    highs, lows = _hl(closes)
    state = analyze_trend(closes, highs, lows)
    assert state.direction == TrendDirection.DOWN
    assert state.direction.is_down
    assert 0.6 <= state.strength <= 1.0


def test_flat_prices_are_sideways():
    closes = [100.0] * 120
    state = analyze_trend(closes, closes, closes)
    assert state.direction == TrendDirection.SIDEWAYS
    assert state.strength == 0.0


def test_empty_window_is_sideways():
    assert analyze_trend([], [], []).direction == TrendDirection.SIDEWAYS


def test_weak_directions_are_not_confirmed():
    assert not TrendDirection.WEAK_UP.is_up
    assert not TrendDirection.WEAK_DOWN.is_down


def test_position_in_range():
    assert position_in_range([5.0], [10.0], [0.0]) == pytest.approx(0.5)
    assert position_in_range([10.0], [10.0], [0.0]) == pytest.approx(1.0)
    assert position_in_range([3.0], [3.0], [3.0]) == 0.5


def _snap(rsi, histogram):
    return IndicatorSnapshot(current_price=100.0, rsi=rsi, macd=MACDResult(histogram=histogram))


def test_momentum_strengthening():
    state = analyze_momentum(_snap(60.0, 0.001), previous_rsi=55.0)
    assert state.direction == MomentumDirection.STRENGTHENING
    assert state.strength == pytest.approx(min((1.0 + 5.0) / 10.0, 1.0))


def test_momentum_weakening():
    state = analyze_momentum(_snap(40.0, -0.01), previous_rsi=50.0)
    assert state.direction == MomentumDirection.WEAKENING
    assert state.strength == 1.0


def test_momentum_neutral_without_previous_sample():
    state = analyze_momentum(_snap(40.0, -0.01), previous_rsi=None)
    assert state.direction == MomentumDirection.NEUTRAL


def test_momentum_small_rsi_change_is_neutral():
    state = analyze_momentum(_snap(51.0, 0.5), previous_rsi=50.0)
    assert state.direction == MomentumDirection.NEUTRAL


def test_volatility_scales_to_daily():
    closes = [100.0, 101.0, 100.0, 101.0, 100.0]
    state = volatility_from_closes(closes)
    assert state.current > 0
    assert state.daily == pytest.approx(state.current * math.sqrt(96))
    assert state.percentile == 0.5
