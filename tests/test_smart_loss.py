import itertools
from datetime import timedelta

import pytest

from engine.analyzers import MomentumDirection, MomentumState, TrendDirection, TrendState, VolatilityState
from engine.recommendation import Action, Reason, Urgency
from engine.smart_loss import PositionAnalysis, SmartLossManager
from factors.indicators import BollingerBands, MACDResult
from factors.snapshot import IndicatorSnapshot, neutral_snapshot
from factors.trend import TrendSignal
from market_data.client import StaticMarketDataProvider
from shared.state.metric_store import InMemoryMetricStore, Metric

from conftest import T0, FakeClock, make_candles, make_position


def _manager(cfg, market_data=None, clock=None):
    clock = clock or FakeClock(T0 + timedelta(hours=1))
    return SmartLossManager(
        cfg,
        market_data or StaticMarketDataProvider(),
        InMemoryMetricStore(clock=clock),
        clock=clock,
    )


def _analysis(price, entry=100.0, snapshot=None, trend=None, momentum=None, **kwargs):
    kwargs.setdefault("now", T0 + timedelta(hours=1))
    return PositionAnalysis(
        symbol="BTCUSDT",
        current_price=price,
        pnl_pct=(price - entry) / entry * 100.0,
        snapshot=snapshot or neutral_snapshot(price),
        trend=trend or TrendState(),
        momentum=momentum or MomentumState(),
        volatility=VolatilityState(),
        **kwargs,
    )


@pytest.fixture
def position():
    return make_position(entry_price=100.0, stop_loss=92.0, take_profit=115.0)


def test_stop_loss_price_hit(cfg, position):
    rec = _manager(cfg).decide(_analysis(90.0), position)
    assert rec.reason == Reason.STOP_LOSS
    assert rec.action == Action.SELL
    assert rec.confidence == 1.0
    assert rec.urgency == Urgency.HIGH


def test_flash_crash_is_emergency(cfg, position):
    snap = IndicatorSnapshot(current_price=99.0, rsi=45.0, sma20=99.0, sma50=99.0)
    rec = _manager(cfg).decide(_analysis(99.0, snapshot=snap, hourly_change=-9.0), position)
    assert rec.reason == Reason.EMERGENCY_SELL
    assert rec.urgency == Urgency.HIGH
    assert rec.confidence >= 0.9
    assert any("Flash crash" in d for d in rec.details)


def test_shallow_loss_in_downtrend_holds(cfg, position):
    trend = TrendState(TrendDirection.DOWN, 0.5)
    rec = _manager(cfg).decide(_analysis(98.0, trend=trend), position)
    assert rec.reason == Reason.HOLD
    assert rec.action == Action.HOLD
    assert rec.urgency == Urgency.NONE
    assert rec.confidence == pytest.approx(0.3)


def _deep_loss_snapshot(price):
    return IndicatorSnapshot(current_price=price, rsi=50.0, sma20=95.0, sma50=97.0, volume=150.0, volume_ma=100.0)


def test_deep_loss_downtrend_is_trend_reversal(cfg, position):
    trend = TrendState(TrendDirection.DOWN, 0.6)
    rec = _manager(cfg).decide(_analysis(90.0, snapshot=_deep_loss_snapshot(90.0), trend=trend), position)
    assert rec.reason == Reason.TREND_REVERSAL
    assert rec.urgency == Urgency.MEDIUM
    assert rec.confidence > 0.6
    assert any("SMA20 and SMA50" in d for d in rec.details)


def test_emergency_takes_priority_over_reversal(cfg, position):
    trend = TrendState(TrendDirection.DOWN, 0.6)
    a = _analysis(90.0, snapshot=_deep_loss_snapshot(90.0), trend=trend, hourly_change=-9.0)
    assert _manager(cfg).decide(a, position).reason == Reason.EMERGENCY_SELL


def test_shallow_loss_needs_higher_reversal_confidence(cfg, position):
    # 浅亏阈值 0.8：下跌趋势 0.4 + 均线下方 0.3 + 放量 0.2 = 0.9 才触发
    trend = TrendState(TrendDirection.DOWN, 1.0)
    snap = IndicatorSnapshot(current_price=98.0, sma20=99.0, sma50=99.5, volume=100.0, volume_ma=100.0)
    assert _manager(cfg).decide(_analysis(98.0, snapshot=snap, trend=trend), position).reason == Reason.HOLD

    loud = IndicatorSnapshot(current_price=98.0, sma20=99.0, sma50=99.5, volume=150.0, volume_ma=100.0)
    rec = _manager(cfg).decide(_analysis(98.0, snapshot=loud, trend=trend), position)
    assert rec.reason == Reason.TREND_REVERSAL


def test_longer_timeframe_and_rsi_weakness_add_evidence(cfg, position):
    trend = TrendState(TrendDirection.DOWN, 0.5)
    snap = IndicatorSnapshot(current_price=96.0, rsi=40.0, sma20=96.0, sma50=96.0)
    a = _analysis(
        96.0,
        snapshot=snap,
        trend=trend,
        momentum=MomentumState(MomentumDirection.WEAKENING, 0.8),
        rsi_weakening=True,
        longer_trend=TrendSignal.DOWNTREND,
    )
    check = _manager(cfg).check_trend_reversal(a)
    assert check.fired
    assert check.confidence == pytest.approx(0.2 + 0.2 + 0.2 + 0.2)


def test_time_based_loss_after_period(cfg, position):
    now = position.entry_time + timedelta(days=8, hours=1)
    rec = _manager(cfg).decide(_analysis(97.0, now=now), position)
    assert rec.reason == Reason.TIME_BASED_LOSS
    assert rec.urgency == Urgency.LOW
    assert rec.confidence == pytest.approx(0.8)


def test_take_profit(cfg, position):
    rec = _manager(cfg).decide(_analysis(116.0), position)
    assert rec.reason == Reason.TAKE_PROFIT
    assert rec.urgency == Urgency.LOW


def test_stop_loss_beats_take_profit_and_time(cfg):
    pos = make_position(entry_price=100.0, stop_loss=92.0, take_profit=91.0)
    now = pos.entry_time + timedelta(days=10)
    assert _manager(cfg).decide(_analysis(91.5, now=now), pos).reason == Reason.STOP_LOSS


def _emergency_analysis(flash, panic, strong_down, macd, squeeze):
    price = 87.0
    snap = IndicatorSnapshot(
        current_price=price,
        rsi=15.0 if panic else 50.0,
        sma20=price,
        sma50=price,
        volume=300.0 if panic else 100.0,
        volume_ma=100.0,
        macd=MACDResult(macd=-0.01, signal=-0.005, histogram=-0.005) if macd else MACDResult(),
        bollinger=BollingerBands(upper=101.0, middle=100.0, lower=99.5) if squeeze else None,
    )
    trend = TrendState(TrendDirection.STRONG_DOWN, 0.9) if strong_down else TrendState()
    return _analysis(price, snapshot=snap, trend=trend, hourly_change=-9.0 if flash else 0.0)


def test_emergency_confidence_is_monotonic(cfg):
    manager = _manager(cfg)
    for flags in itertools.product([False, True], repeat=5):
        base = manager.check_emergency(_emergency_analysis(*flags))
        assert len(base.details) == sum(flags)
        for i, flag in enumerate(flags):
            if flag:
                continue
            more = list(flags)
            more[i] = True
            extended = manager.check_emergency(_emergency_analysis(*more))
            assert extended.confidence >= base.confidence
            if base.fired:
                assert extended.fired


@pytest.mark.parametrize(
    "direction,trend_strength,momentum,momentum_strength,pnl",
    list(
        itertools.product(
            list(TrendDirection),
            [0.0, 0.5, 1.0],
            list(MomentumDirection),
            [0.0, 1.0],
            [-50.0, -10.0, -5.0, 0.0, 3.0, 14.0],
        )
    ),
)
def test_hold_confidence_is_bounded(direction, trend_strength, momentum, momentum_strength, pnl):
    a = _analysis(
        100.0 + pnl,
        trend=TrendState(direction, trend_strength),
        momentum=MomentumState(momentum, momentum_strength),
    )
    assert 0.0 <= SmartLossManager.hold_confidence(a) <= 1.0


def test_every_recommendation_is_bounded_and_labelled(cfg, position):
    manager = _manager(cfg)
    for price in (50.0, 85.0, 91.0, 95.0, 100.0, 105.0, 120.0):
        rec = manager.decide(_analysis(price), position)
        assert 0.0 <= rec.confidence <= 1.0
        assert rec.should_sell == (rec.reason != Reason.HOLD)
        payload = rec.to_dict()
        assert payload["reason"] == rec.reason.value
        assert payload["urgency"] == rec.urgency.value


def test_evaluate_degrades_to_hold_without_market_data(cfg, position):
    manager = _manager(cfg, StaticMarketDataProvider())
    rec = manager.evaluate("BTCUSDT", position, 101.0)
    assert rec.reason == Reason.HOLD
    assert 0.0 <= rec.confidence <= 1.0
    # 中性默认值不进历史，只记录价格
    assert manager.metric_store.previous("BTCUSDT", Metric.RSI) is None
    assert manager.metric_store.previous("BTCUSDT", Metric.VOLATILITY) is None
    assert manager.metric_store.previous("BTCUSDT", Metric.PRICE) == 101.0


def test_failed_fetch_keeps_real_rsi_history(cfg, position):
    manager = _manager(cfg, StaticMarketDataProvider())
    manager.metric_store.record("BTCUSDT", Metric.RSI, 30.0)
    manager.evaluate("BTCUSDT", position, 101.0)
    assert manager.metric_store.previous("BTCUSDT", Metric.RSI) == 30.0

    # 下一周期 RSI 仍为 30：没有虚构的 50 -> 30 回落，动量不应判为走弱
    snap = IndicatorSnapshot(current_price=100.0, rsi=30.0, macd=MACDResult(histogram=-0.001))
    assert manager.analyze_momentum("BTCUSDT", snap).direction == MomentumDirection.NEUTRAL


def test_evaluate_with_rising_market_takes_profit(cfg):
    closes = [100.0 + i for i in range(100)]
    market = StaticMarketDataProvider(candles={("BTCUSDT", "15m"): make_candles(closes)})
    manager = _manager(cfg, market)
    pos = make_position(entry_price=150.0)

    rec = manager.evaluate("BTCUSDT", pos, closes[-1])
    assert rec.reason == Reason.TAKE_PROFIT
    assert manager.trend_cache.get("BTCUSDT").direction == TrendDirection.STRONG_UP
    assert manager.volatility_cache.get("BTCUSDT").current > 0
    assert ("BTCUSDT", "1h", cfg.decision_engine.longer_limit) in market.calls
    assert ("BTCUSDT", "15m", cfg.decision_engine.hourly_change_limit) in market.calls


def test_momentum_uses_previous_stored_rsi(cfg):
    manager = _manager(cfg)
    manager.metric_store.record("BTCUSDT", Metric.RSI, 40.0)
    snap = IndicatorSnapshot(current_price=100.0, rsi=50.0, macd=MACDResult(histogram=0.001))
    state = manager.analyze_momentum("BTCUSDT", snap)
    assert state.direction == MomentumDirection.STRENGTHENING
