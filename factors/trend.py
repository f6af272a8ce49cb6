"""粗粒度趋势与成交量分类。

`identify_trend` 只给出 UPTREND/DOWNTREND/SIDEWAYS 三态，
由决策引擎在 20/50/100 三个窗口上组合成更细的趋势状态。
"""

from __future__ import annotations

from enum import Enum

from factors.indicators import Values, _as_array, calculate_sma


class TrendSignal(str, Enum):
    UPTREND = "UPTREND"
    DOWNTREND = "DOWNTREND"
    SIDEWAYS = "SIDEWAYS"


class VolumeSignal(str, Enum):
    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"


def identify_trend(prices: Values, short_period: int = 20, long_period: int = 50) -> TrendSignal:
    """比较短/长均线与现价相对短均线的位置。

    - price > SMA(short) > SMA(long) -> UPTREND
    - price < SMA(short) < SMA(long) -> DOWNTREND
    - 其它或历史不足 `long_period` -> SIDEWAYS
    """
    arr = _as_array(prices)
    if arr.size == 0 or arr.size < long_period:
        return TrendSignal.SIDEWAYS
    short_ma = calculate_sma(arr, short_period)
    long_ma = calculate_sma(arr, long_period)
    price = float(arr[-1])
    if price > short_ma > long_ma:
        return TrendSignal.UPTREND
    if price < short_ma < long_ma:
        return TrendSignal.DOWNTREND
    return TrendSignal.SIDEWAYS


def classify_volume(
    volume: float,
    volume_ma: float,
    high_ratio: float = 1.5,
    low_ratio: float = 0.5,
) -> VolumeSignal:
    """当前成交量相对均量的分类。均量非正时视为 NORMAL。"""
    if volume_ma <= 0:
        return VolumeSignal.NORMAL
    ratio = volume / volume_ma
    if ratio > high_ratio:
        return VolumeSignal.HIGH
    if ratio < low_ratio:
        return VolumeSignal.LOW
    return VolumeSignal.NORMAL
