"""指标快照：从一段 K 线窗口计算决策所需的全部指标。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import pandas as pd

from factors.indicators import (
    BollingerBands,
    MACDResult,
    StochasticResult,
    calculate_atr,
    calculate_bollinger_bands,
    calculate_ema,
    calculate_macd,
    calculate_rsi,
    calculate_sma,
    calculate_stochastic,
    calculate_williams_r,
)
from shared.models.models import Candle

CANDLE_COLUMNS = ["start_ts", "open", "high", "low", "close", "volume"]


@dataclass(frozen=True)
class IndicatorSnapshot:
    """一次评估的指标快照（派生值，不持久化）。"""

    current_price: float
    rsi: float = 50.0
    sma20: float = 0.0
    sma50: float = 0.0
    ema12: float = 0.0
    ema26: float = 0.0
    macd: MACDResult = field(default_factory=MACDResult)
    bollinger: BollingerBands | None = None
    stochastic: StochasticResult = field(default_factory=StochasticResult)
    williams_r: float = -50.0
    atr: float = 0.0
    volume: float = 0.0
    volume_ma: float = 0.0

    @property
    def bands(self) -> BollingerBands:
        if self.bollinger is not None:
            return self.bollinger
        return BollingerBands(upper=self.current_price, middle=self.current_price, lower=self.current_price)


def neutral_snapshot(current_price: float) -> IndicatorSnapshot:
    """行情不可用时的中性快照：RSI 50、均线贴合现价、MACD 0、平带。"""
    return IndicatorSnapshot(
        current_price=current_price,
        sma20=current_price,
        sma50=current_price,
        ema12=current_price,
        ema26=current_price,
    )


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """Candle 列表 -> DataFrame（时间升序）。"""
    if not candles:
        return pd.DataFrame(columns=CANDLE_COLUMNS)
    df = pd.DataFrame(
        [
            {
                "start_ts": c.start_ts,
                "open": float(c.open),
                "high": float(c.high),
                "low": float(c.low),
                "close": float(c.close),
                "volume": float(c.volume),
            }
            for c in candles
        ]
    )
    return df.sort_values("start_ts", kind="stable").reset_index(drop=True)


def compute_indicators(candles: Sequence[Candle], volume_ma_period: int = 20) -> IndicatorSnapshot:
    """计算指标快照。空窗口返回价格为 0 的中性快照。"""
    df = candles_to_frame(candles)
    if df.empty:
        return neutral_snapshot(0.0)

    closes = df["close"].to_numpy()
    highs = df["high"].to_numpy()
    lows = df["low"].to_numpy()
    volumes = df["volume"].to_numpy()

    return IndicatorSnapshot(
        current_price=float(closes[-1]),
        rsi=calculate_rsi(closes, 14),
        sma20=calculate_sma(closes, 20),
        sma50=calculate_sma(closes, 50),
        ema12=calculate_ema(closes, 12),
        ema26=calculate_ema(closes, 26),
        macd=calculate_macd(closes),
        bollinger=calculate_bollinger_bands(closes, 20, 2.0),
        stochastic=calculate_stochastic(highs, lows, closes),
        williams_r=calculate_williams_r(highs, lows, closes),
        atr=calculate_atr(highs, lows, closes),
        volume=float(volumes[-1]),
        volume_ma=calculate_sma(volumes, volume_ma_period),
    )
