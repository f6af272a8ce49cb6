"""趋势 / 动量 / 波动率分析（决策引擎的输入状态）。"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from factors.indicators import Values, _as_array, returns_volatility
from factors.snapshot import IndicatorSnapshot
from factors.trend import TrendSignal, identify_trend

RANGE_LOOKBACK = 10
CANDLES_PER_DAY = 24 * 4  # 15m K 线


class TrendDirection(str, Enum):
    STRONG_UP = "STRONG_UP"
    UP = "UP"
    WEAK_UP = "WEAK_UP"
    SIDEWAYS = "SIDEWAYS"
    WEAK_DOWN = "WEAK_DOWN"
    DOWN = "DOWN"
    STRONG_DOWN = "STRONG_DOWN"

    @property
    def is_up(self) -> bool:
        return self in (TrendDirection.UP, TrendDirection.STRONG_UP)

    @property
    def is_down(self) -> bool:
        return self in (TrendDirection.DOWN, TrendDirection.STRONG_DOWN)


class MomentumDirection(str, Enum):
    STRENGTHENING = "STRENGTHENING"
    WEAKENING = "WEAKENING"
    NEUTRAL = "NEUTRAL"


@dataclass(frozen=True)
class TrendState:
    direction: TrendDirection = TrendDirection.SIDEWAYS
    strength: float = 0.0


@dataclass(frozen=True)
class MomentumState:
    direction: MomentumDirection = MomentumDirection.NEUTRAL
    strength: float = 0.0


@dataclass(frozen=True)
class VolatilityState:
    current: float = 0.0
    daily: float = 0.0
    percentile: float = 0.5


def position_in_range(closes: Values, highs: Values, lows: Values, lookback: int = RANGE_LOOKBACK) -> float:
    """现价在最近 `lookback` 根 K 线高低区间中的位置（0=低点，1=高点；区间为 0 时 0.5）。"""
    c, h, lo = _as_array(closes), _as_array(highs), _as_array(lows)
    if c.size == 0 or h.size == 0 or lo.size == 0:
        return 0.5
    highest = float(h[-lookback:].max())
    lowest = float(lo[-lookback:].min())
    span = highest - lowest
    if span <= 0:
        return 0.5
    return (float(c[-1]) - lowest) / span


def analyze_trend(closes: Sequence[float], highs: Sequence[float], lows: Sequence[float]) -> TrendState:
    """在 20 / 50 / 全部 三个窗口上组合粗粒度趋势。

    短+中同向：长周期也同向为 STRONG，否则为普通；只有其一同向为 WEAK。
    强度 = 0.6 + 区间位置 * 0.4（WEAK 为 0.3 + 区间位置 * 0.3，下跌方向取 1 - 位置）。
    """
    prices = _as_array(closes)
    if prices.size == 0:
        return TrendState()

    short = identify_trend(prices[-20:], 10, 20)
    medium = identify_trend(prices[-50:], 20, 50)
    long = identify_trend(prices, 50, 100)
    pos = position_in_range(prices, highs, lows)

    up, down = TrendSignal.UPTREND, TrendSignal.DOWNTREND
    if short == up and medium == up:
        direction = TrendDirection.STRONG_UP if long == up else TrendDirection.UP
        return TrendState(direction, 0.6 + pos * 0.4)
    if short == down and medium == down:
        direction = TrendDirection.STRONG_DOWN if long == down else TrendDirection.DOWN
        return TrendState(direction, 0.6 + (1.0 - pos) * 0.4)
    if short == up or medium == up:
        return TrendState(TrendDirection.WEAK_UP, 0.3 + pos * 0.3)
    if short == down or medium == down:
        return TrendState(TrendDirection.WEAK_DOWN, 0.3 + (1.0 - pos) * 0.3)
    return TrendState()


def analyze_momentum(snapshot: IndicatorSnapshot, previous_rsi: float | None) -> MomentumState:
    """MACD 柱方向 + RSI 相对上一次存储样本的变化。

    - 柱 > 0 且 RSI 上升 > 2 点 -> STRENGTHENING
    - 柱 <= 0 且 RSI 下降 > 2 点 -> WEAKENING
    强度 = min((|柱| * 1000 + |RSI 变化|) / 10, 1)。
    """
    histogram = snapshot.macd.histogram
    rsi_change = snapshot.rsi - previous_rsi if previous_rsi else 0.0
    strength = min((abs(histogram) * 1000.0 + abs(rsi_change)) / 10.0, 1.0)

    if histogram > 0 and rsi_change > 2:
        return MomentumState(MomentumDirection.STRENGTHENING, strength)
    if histogram <= 0 and rsi_change < -2:
        return MomentumState(MomentumDirection.WEAKENING, strength)
    return MomentumState()


def volatility_from_closes(closes: Values, percentile: float = 0.5) -> VolatilityState:
    current = returns_volatility(closes)
    return VolatilityState(
        current=current,
        daily=current * math.sqrt(CANDLES_PER_DAY),
        percentile=percentile,
    )
