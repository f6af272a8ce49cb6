"""开仓信号：日内 / 波段 / 补仓（DCA）三类打分。

每个评估器返回带方向与置信度的 `EntrySignal`，`determine_strategies`
按配置筛选并按置信度降序排列；是否真正下单由编排层决定（置信度 > 0.6）。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from factors.snapshot import IndicatorSnapshot
from shared.config.schema import TradingStyle

BUY_CONFIDENCE = 0.6


class MarketCondition(str, Enum):
    BULL = "bull"
    BEAR = "bear"
    NEUTRAL = "neutral"


def classify_market(average_change: float | None, bull_threshold: float, bear_threshold: float) -> MarketCondition:
    """参考币种 24h 平均涨跌幅 -> 市场状态；没有数据时为 neutral。"""
    if average_change is None:
        return MarketCondition.NEUTRAL
    if average_change >= bull_threshold:
        return MarketCondition.BULL
    if average_change <= bear_threshold:
        return MarketCondition.BEAR
    return MarketCondition.NEUTRAL


@dataclass(frozen=True)
class EntrySignal:
    strategy: str
    action: str
    confidence: float
    score: float
    signals: tuple[str, ...] = ()
    profit_target: float = 0.0
    holding_period_hours: float | None = None

    @property
    def is_buy(self) -> bool:
        return self.action == "BUY"


def evaluate_day_trading(snapshot: IndicatorSnapshot, market: MarketCondition) -> tuple[str, float, float, tuple[str, ...]]:
    s = snapshot
    bands = s.bands
    score = 0.0
    signals: list[str] = []

    if s.rsi < 35:
        score += 2
        signals.append("RSI_OVERSOLD")
    elif s.rsi > 65:
        score -= 2
        signals.append("RSI_OVERBOUGHT")

    if s.current_price < bands.lower * 1.01:
        score += 2
        signals.append("BB_BOUNCE")
    elif s.current_price > bands.upper * 0.99:
        score -= 2
        signals.append("BB_RESISTANCE")

    if s.macd.histogram > 0 and s.macd.macd > s.macd.signal:
        score += 1
        signals.append("MACD_BULLISH")

    if market == MarketCondition.BULL:
        score += 1
    elif market == MarketCondition.BEAR:
        score -= 1

    action = "BUY" if score > 0 else "SELL"
    return action, min(abs(score) / 6.0, 1.0), score, tuple(signals)


def evaluate_swing_trading(snapshot: IndicatorSnapshot) -> tuple[str, float, float, tuple[str, ...]]:
    s = snapshot
    score = 0.0
    signals: list[str] = []

    if s.current_price > s.sma20 > s.sma50:
        score += 2
        signals.append("UPTREND")
    elif s.current_price < s.sma20 < s.sma50:
        score -= 2
        signals.append("DOWNTREND")

    if s.rsi < 40:
        score += 1
        signals.append("RSI_SWING_LOW")
    elif s.rsi > 70:
        score -= 1
        signals.append("RSI_SWING_HIGH")

    # 波动越大机会越多
    if s.atr > 0 and s.current_price > 0 and min(s.atr / s.current_price * 100.0, 3.0) > 2:
        score += 1

    action = "BUY" if score > 0 else "SELL"
    return action, min(abs(score) / 5.0, 1.0), score, tuple(signals)


def evaluate_dca(snapshot: IndicatorSnapshot) -> tuple[str, float, float, tuple[str, ...]]:
    s = snapshot
    score = 0.0
    if s.current_price < s.sma20 * 0.95:
        score += 2
    if s.rsi < 30:
        score += 2
    return "BUY", min(score / 4.0, 1.0), score, ("DCA_OPPORTUNITY",)


def determine_strategies(
    snapshot: IndicatorSnapshot,
    market: MarketCondition,
    existing_positions: int,
    style: TradingStyle,
) -> list[EntrySignal]:
    """候选信号（已按置信度降序）。

    - 日内：置信度 > 0.5
    - 波段：现有持仓 < 2 且置信度 > 0.6
    - DCA：已有持仓且置信度 > 0.7
    """
    out: list[EntrySignal] = []

    if style.day_trading.enabled:
        action, conf, score, signals = evaluate_day_trading(snapshot, market)
        if conf > 0.5:
            out.append(
                EntrySignal(
                    strategy="day_trade",
                    action=action,
                    confidence=conf,
                    score=score,
                    signals=signals,
                    profit_target=style.day_trading.quick_profit_target,
                    holding_period_hours=style.day_trading.max_holding_period_hours,
                )
            )

    if style.swing_trading.enabled and existing_positions < 2:
        action, conf, score, signals = evaluate_swing_trading(snapshot)
        if conf > 0.6:
            out.append(
                EntrySignal(
                    strategy="swing_trade",
                    action=action,
                    confidence=conf,
                    score=score,
                    signals=signals,
                    profit_target=style.swing_trading.target_profit_min,
                    holding_period_hours=style.swing_trading.max_holding_period_days * 24.0,
                )
            )

    if existing_positions > 0:
        action, conf, score, signals = evaluate_dca(snapshot)
        if conf > 0.7:
            out.append(
                EntrySignal(
                    strategy="dca",
                    action=action,
                    confidence=conf,
                    score=score,
                    signals=signals,
                    profit_target=style.dca_profit_target,
                )
            )

    return sorted(out, key=lambda sig: sig.confidence, reverse=True)
