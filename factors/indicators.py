"""技术指标（纯函数）。

约定：
- 输入为按时间从旧到新排列的数值序列（list / np.ndarray / pd.Series 均可）；
- 无状态、不抛异常：历史不足时返回文档化的中性默认值，而不是 NaN 或报错；
- EMA 以首个值作为种子（不是 SMA 种子），与历史阈值标定保持一致。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd

Values = Sequence[float] | np.ndarray | pd.Series


@dataclass(frozen=True)
class MACDResult:
    macd: float = 0.0
    signal: float = 0.0
    histogram: float = 0.0


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float

    @property
    def width_pct(self) -> float:
        """带宽占中轨的百分比。"""
        if self.middle == 0:
            return 0.0
        return (self.upper - self.lower) / self.middle * 100.0


@dataclass(frozen=True)
class StochasticResult:
    k: float = 50.0
    d: float = 50.0


def _as_array(values: Values) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if arr.ndim != 1:
        arr = arr.reshape(-1)
    return arr


def calculate_sma(values: Values, period: int) -> float:
    """最近 `period` 个值的算术平均；不足 `period` 个时返回最后一个值。"""
    arr = _as_array(values)
    if arr.size == 0:
        return 0.0
    if period <= 0 or arr.size < period:
        return float(arr[-1])
    return float(arr[-period:].mean())


def ema_series(values: Values, period: int) -> np.ndarray:
    """EMA 序列，k = 2/(period+1)，以首个值为种子。

    `ewm(span=period, adjust=False)` 的递推式正是 y0 = x0, yt = yt-1 + k*(xt - yt-1)。
    """
    arr = _as_array(values)
    if arr.size == 0:
        return arr
    if period <= 0:
        return arr.copy()
    return pd.Series(arr).ewm(span=period, adjust=False).mean().to_numpy()


def calculate_ema(values: Values, period: int) -> float:
    series = ema_series(values, period)
    if series.size == 0:
        return 0.0
    return float(series[-1])


def calculate_rsi(values: Values, period: int = 14) -> float:
    """SMA 版 RSI：最近 `period` 个涨跌幅的平均涨幅 / 平均跌幅。

    历史不足（<= period 个值）返回 50；平均跌幅为 0 时返回 100。
    """
    arr = _as_array(values)
    if period <= 0 or arr.size <= period:
        return 50.0
    deltas = np.diff(arr[-(period + 1):])
    avg_gain = float(np.clip(deltas, 0.0, None).mean())
    avg_loss = float(np.clip(-deltas, 0.0, None).mean())
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def calculate_macd(
    values: Values,
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> MACDResult:
    """MACD = EMA(fast) - EMA(slow)，signal = MACD 序列自身的 EMA。

    MACD 序列的第 i 项等于“对前 i+1 个值重新计算 EMA”的结果；由于 EMA 以首值为种子，
    这与整段递推的第 i 项完全相同，因此这里一次性计算，数值与逐前缀重算一致。
    不足 `slow_period` 个值时返回全 0。
    """
    arr = _as_array(values)
    if arr.size == 0 or arr.size < slow_period:
        return MACDResult()
    macd_line = ema_series(arr, fast_period) - ema_series(arr, slow_period)
    signal_line = ema_series(macd_line, signal_period)
    macd = float(macd_line[-1])
    signal = float(signal_line[-1])
    return MACDResult(macd=macd, signal=signal, histogram=macd - signal)


def calculate_bollinger_bands(values: Values, period: int = 20, std_dev_multiplier: float = 2.0) -> BollingerBands:
    """SMA ± k * 总体标准差；历史不足时退化为当前价处的平带。"""
    arr = _as_array(values)
    if arr.size == 0:
        return BollingerBands(upper=0.0, middle=0.0, lower=0.0)
    if period <= 0 or arr.size < period:
        price = float(arr[-1])
        return BollingerBands(upper=price, middle=price, lower=price)
    window = arr[-period:]
    middle = float(window.mean())
    std = float(window.std(ddof=0))
    return BollingerBands(
        upper=middle + std * std_dev_multiplier,
        middle=middle,
        lower=middle - std * std_dev_multiplier,
    )


def _percent_k(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray, end: int, period: int) -> float:
    hh = float(highs[end - period:end].max())
    ll = float(lows[end - period:end].min())
    if hh == ll:
        return 50.0
    return (float(closes[end - 1]) - ll) / (hh - ll) * 100.0


def calculate_stochastic(
    highs: Values,
    lows: Values,
    closes: Values,
    k_period: int = 14,
    d_period: int = 3,
) -> StochasticResult:
    """随机指标 %K/%D；%D 为最近至多 `d_period` 个 %K 的均值。历史不足返回 50/50。"""
    h, lo, c = _as_array(highs), _as_array(lows), _as_array(closes)
    n = min(h.size, lo.size, c.size)
    if k_period <= 0 or n < k_period:
        return StochasticResult()
    h, lo, c = h[-n:], lo[-n:], c[-n:]
    ks = [
        _percent_k(h, lo, c, end, k_period)
        for end in range(max(k_period, n - max(d_period, 1) + 1), n + 1)
    ]
    return StochasticResult(k=ks[-1], d=float(np.mean(ks)))


def calculate_williams_r(highs: Values, lows: Values, closes: Values, period: int = 14) -> float:
    """Williams %R ∈ [-100, 0]；历史不足或区间为 0 时返回 -50。"""
    h, lo, c = _as_array(highs), _as_array(lows), _as_array(closes)
    n = min(h.size, lo.size, c.size)
    if period <= 0 or n < period:
        return -50.0
    hh = float(h[-period:].max())
    ll = float(lo[-period:].min())
    if hh == ll:
        return -50.0
    return (hh - float(c[-1])) / (hh - ll) * -100.0


def calculate_atr(highs: Values, lows: Values, closes: Values, period: int = 14) -> float:
    """SMA 版 ATR：最近 `period` 根 K 线真实波幅的均值；历史不足返回 0。"""
    h, lo, c = _as_array(highs), _as_array(lows), _as_array(closes)
    n = min(h.size, lo.size, c.size)
    if period <= 0 or n <= period:
        return 0.0
    h, lo, c = h[-n:], lo[-n:], c[-n:]
    prev_close = c[:-1]
    tr = np.maximum.reduce(
        [
            h[1:] - lo[1:],
            np.abs(h[1:] - prev_close),
            np.abs(lo[1:] - prev_close),
        ]
    )
    return float(tr[-period:].mean())


def returns_volatility(closes: Values) -> float:
    """逐根收益率的总体标准差；少于 2 个价格返回 0。"""
    arr = _as_array(closes)
    if arr.size < 2:
        return 0.0
    prev = arr[:-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        rets = np.where(prev != 0, (arr[1:] - prev) / prev, 0.0)
    return float(np.std(rets, ddof=0))
