"""智能止损决策引擎（SmartLossManager）。

对单个持仓做一次无状态评估：拉取行情 → 计算指标/趋势/动量/波动率 →
按固定优先级跑规则链，返回唯一的 Recommendation。

规则优先级（先命中者胜出，后面的规则不会覆盖前面的结论）：
1. 紧急卖出（闪崩、恐慌抛售、强下跌+深亏、MACD 极端背离、布林收口后破位）
2. 趋势反转（自适应阈值：浅亏 0.8，深亏 0.6）
3. 止损（价格触及止损价或亏损达到硬止损百分比）
4. 超期接受亏损
5. 止盈
6. 持有（附带持有置信度与理由）

任何行情获取失败都只影响对应的子分析（退回中性默认值并记录日志），
规则链总能给出结论。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from factors.snapshot import IndicatorSnapshot, compute_indicators, neutral_snapshot
from factors.trend import TrendSignal, identify_trend
from engine.analyzers import (
    MomentumDirection,
    MomentumState,
    TrendDirection,
    TrendState,
    VolatilityState,
    analyze_momentum,
    analyze_trend,
    volatility_from_closes,
)
from engine.recommendation import (
    EmergencySell,
    Hold,
    Recommendation,
    StopLoss,
    TakeProfit,
    TimeBasedLoss,
    TrendReversal,
)
from market_data.client import MarketDataError, MarketDataProvider
from risk.manager import RiskManager
from shared.config.schema import MainConfig
from shared.models.models import Candle, Position
from shared.state.metric_store import Metric, MetricStore
from shared.state.ttl_cache import TTLCache
from shared.utils.logging import setup_logger

EMERGENCY_THRESHOLD = 0.7
TREND_THRESHOLD_SHALLOW = 0.8
TREND_THRESHOLD_DEEP = 0.6
SHALLOW_LOSS_PCT = -3.0


@dataclass(frozen=True)
class Check:
    """单条规则的判定结果。"""

    fired: bool
    confidence: float = 0.0
    details: tuple[str, ...] = ()


@dataclass(frozen=True)
class PositionAnalysis:
    """一次评估所需的全部派生状态（规则链的唯一输入）。"""

    symbol: str
    current_price: float
    pnl_pct: float
    snapshot: IndicatorSnapshot
    trend: TrendState
    momentum: MomentumState
    volatility: VolatilityState
    hourly_change: float = 0.0
    longer_trend: TrendSignal = TrendSignal.SIDEWAYS
    rsi_weakening: bool = False
    now: datetime | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SmartLossManager:
    """持仓卖出/持有决策。

    Parameters
    ----------
    config:
        主配置（只读）。
    market_data:
        行情提供方，可能失败或超时。
    metric_store:
        历史指标存储（RSI / 波动率 / 价格）。
    risk_manager:
        风险计算器；缺省时由 `config` 构建。
    clock:
        可注入的时钟（测试用）。
    """

    def __init__(
        self,
        config: MainConfig,
        market_data: MarketDataProvider,
        metric_store: MetricStore,
        risk_manager: RiskManager | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.market_data = market_data
        self.metric_store = metric_store
        self.risk = risk_manager or RiskManager(config)
        self._clock = clock or _utc_now
        self.logger = setup_logger("smart-loss")

        de = config.decision_engine
        self.trend_cache: TTLCache[str, TrendState] = TTLCache(de.cache_ttl_secs, de.cache_max_entries, clock=self._clock)
        self.volatility_cache: TTLCache[str, VolatilityState] = TTLCache(
            de.cache_ttl_secs, de.cache_max_entries, clock=self._clock
        )

    # ------------------------------------------------------------------
    # 入口
    # ------------------------------------------------------------------

    def evaluate(self, symbol: str, position: Position, current_price: float) -> Recommendation:
        analysis = self.analyze_position(symbol, position, current_price)
        rec = self.decide(analysis, position)
        if rec.should_sell:
            log = self.logger.warning if rec.urgency.value == "HIGH" else self.logger.info
            log(
                "%s %s conf=%.2f urgency=%s pnl=%.2f%% details=%s",
                symbol,
                rec.reason.value,
                rec.confidence,
                rec.urgency.value,
                analysis.pnl_pct,
                "; ".join(rec.details),
            )
        else:
            self.logger.debug("%s HOLD conf=%.2f pnl=%.2f%%", symbol, rec.confidence, analysis.pnl_pct)
        return rec

    # ------------------------------------------------------------------
    # 分析
    # ------------------------------------------------------------------

    def analyze_position(self, symbol: str, position: Position, current_price: float) -> PositionAnalysis:
        de = self.config.decision_engine
        candles = self._fetch_candles(symbol, de.candle_interval, de.candle_limit)

        if candles:
            snapshot = compute_indicators(candles)
            trend = self.analyze_trend(symbol, candles)
        else:
            snapshot = neutral_snapshot(current_price)
            trend = TrendState()

        # 先读上一次 RSI / 计算波动率分位，再写入本次样本
        momentum = self.analyze_momentum(symbol, snapshot)
        volatility = self.analyze_volatility(symbol, candles)

        if candles:
            self.metric_store.record_batch(
                symbol,
                rsi=snapshot.rsi,
                volatility=volatility.current,
                price=current_price,
                timestamp=self._clock(),
            )
        else:
            # 中性默认值不是观测值，只记录价格
            self.metric_store.record(symbol, Metric.PRICE, current_price, self._clock())

        return PositionAnalysis(
            symbol=symbol,
            current_price=current_price,
            pnl_pct=position.pnl_percentage(current_price),
            snapshot=snapshot,
            trend=trend,
            momentum=momentum,
            volatility=volatility,
            hourly_change=self.hourly_price_change(symbol),
            longer_trend=self.longer_timeframe_trend(symbol),
            rsi_weakening=self.metric_store.is_weakening(symbol, Metric.RSI, 3),
            now=self._clock(),
        )

    def analyze_trend(self, symbol: str, candles: list[Candle]) -> TrendState:
        trend = analyze_trend(
            [c.close for c in candles],
            [c.high for c in candles],
            [c.low for c in candles],
        )
        self.trend_cache.set(symbol, trend)
        return trend

    def cached_trend(self, symbol: str) -> TrendState | None:
        """最近一次评估得到的趋势（缓存未过期时）。"""
        return self.trend_cache.get(symbol)

    def forget(self, symbol: str) -> None:
        """交易对不再跟踪：丢弃缓存，并把它的历史指标缩短为短期过期。"""
        self.trend_cache.pop(symbol)
        self.volatility_cache.pop(symbol)
        self.metric_store.touch(symbol)

    def purge_expired(self) -> int:
        return (
            self.trend_cache.purge_expired()
            + self.volatility_cache.purge_expired()
            + self.metric_store.purge_expired()
        )

    def analyze_momentum(self, symbol: str, snapshot: IndicatorSnapshot) -> MomentumState:
        previous_rsi = self.metric_store.previous(symbol, Metric.RSI)
        return analyze_momentum(snapshot, previous_rsi)

    def analyze_volatility(self, symbol: str, candles: list[Candle]) -> VolatilityState:
        if not candles:
            return VolatilityState()
        state = volatility_from_closes([c.close for c in candles])
        percentile = self.metric_store.percentile_rank(symbol, Metric.VOLATILITY, state.current)
        state = VolatilityState(current=state.current, daily=state.daily, percentile=percentile)
        self.volatility_cache.set(symbol, state)
        return state

    def hourly_price_change(self, symbol: str) -> float:
        """最近一小时（5 根 15m K 线）首尾收盘价变化百分比；失败返回 0。"""
        de = self.config.decision_engine
        candles = self._fetch_candles(symbol, de.candle_interval, de.hourly_change_limit)
        if not candles:
            return 0.0
        first = candles[0].close
        if first <= 0:
            return 0.0
        return (candles[-1].close - first) / first * 100.0

    def longer_timeframe_trend(self, symbol: str) -> TrendSignal:
        de = self.config.decision_engine
        candles = self._fetch_candles(symbol, de.longer_interval, de.longer_limit)
        if not candles:
            return TrendSignal.SIDEWAYS
        return identify_trend([c.close for c in candles], 20, 50)

    def _fetch_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        try:
            return list(self.market_data.get_candles(symbol, interval, limit))
        except (MarketDataError, ValueError) as exc:
            self.logger.error("Failed to get %s candles for %s: %s", interval, symbol, exc)
            return []

    # ------------------------------------------------------------------
    # 规则链
    # ------------------------------------------------------------------

    def decide(self, analysis: PositionAnalysis, position: Position) -> Recommendation:
        emergency = self.check_emergency(analysis)
        if emergency.fired:
            return EmergencySell(confidence=emergency.confidence, details=emergency.details)

        reversal = self.check_trend_reversal(analysis)
        if reversal.fired:
            return TrendReversal(confidence=reversal.confidence, details=reversal.details)

        stop = self.check_stop_loss(analysis, position)
        if stop.fired:
            return StopLoss(confidence=1.0, details=stop.details)

        timed = self.check_time_based(analysis, position)
        if timed.fired:
            return TimeBasedLoss(confidence=timed.confidence, details=timed.details)

        profit = self.check_take_profit(analysis, position)
        if profit.fired:
            return TakeProfit(confidence=1.0, details=profit.details)

        return Hold(confidence=self.hold_confidence(analysis), details=self.hold_reasons(analysis))

    def check_emergency(self, a: PositionAnalysis) -> Check:
        s = a.snapshot
        details: list[str] = []
        confidence = 0.0

        if a.hourly_change < -8:
            details.append(f"Flash crash detected: {a.hourly_change:.2f}% in 1 hour")
            confidence += 0.9

        if s.rsi < 20 and s.volume > s.volume_ma * 2:
            details.append(f"Panic selling detected: RSI {s.rsi:.1f}, high volume")
            confidence += 0.7

        if a.trend.direction == TrendDirection.STRONG_DOWN and a.trend.strength > 0.8 and a.pnl_pct < -12:
            details.append(f"Strong downtrend with {a.pnl_pct:.1f}% loss")
            confidence += 0.8

        if s.macd.histogram < -0.002 and s.macd.macd < s.macd.signal * 1.1:
            details.append("Extreme bearish MACD divergence")
            confidence += 0.6

        bands = s.bands
        if bands.middle > 0 and bands.width_pct < 2 and s.current_price < bands.lower * 0.98:
            details.append("Bollinger band breakdown after squeeze")
            confidence += 0.7

        return Check(confidence > EMERGENCY_THRESHOLD, min(confidence, 1.0), tuple(details))

    def check_trend_reversal(self, a: PositionAnalysis) -> Check:
        s = a.snapshot
        details: list[str] = []
        confidence = 0.0

        if a.trend.direction.is_down:
            details.append(f"Confirmed downtrend: {a.trend.direction.value} (strength: {a.trend.strength:.2f})")
            confidence += a.trend.strength * 0.4

        if s.current_price < s.sma20 and s.current_price < s.sma50:
            details.append("Price below SMA20 and SMA50")
            confidence += 0.3

        if a.momentum.direction == MomentumDirection.WEAKENING and a.momentum.strength > 0.6:
            details.append("Momentum weakening significantly")
            confidence += 0.2

        if s.rsi < 45 and a.rsi_weakening:
            details.append("RSI showing sustained weakness trend")
            confidence += 0.2

        if s.volume > s.volume_ma * 1.2:
            details.append("High volume confirming downward move")
            confidence += 0.2

        if a.pnl_pct < -6:
            details.append(f"Significant unrealized loss: {a.pnl_pct:.1f}%")
            confidence += min(abs(a.pnl_pct) / 15.0, 0.3)

        if a.longer_trend == TrendSignal.DOWNTREND:
            details.append("Longer timeframe also showing downtrend")
            confidence += 0.2

        required = TREND_THRESHOLD_SHALLOW if a.pnl_pct > SHALLOW_LOSS_PCT else TREND_THRESHOLD_DEEP
        return Check(confidence > required, min(confidence, 1.0), tuple(details))

    def check_stop_loss(self, a: PositionAnalysis, position: Position) -> Check:
        hard_stop = -self.config.risk_management.stop_loss_percentage
        if a.current_price <= position.stop_loss:
            return Check(True, 1.0, (f"Stop loss price hit: {position.stop_loss}",))
        if a.pnl_pct <= hard_stop:
            return Check(True, 1.0, (f"Hard stop loss hit: {a.pnl_pct:.1f}%",))
        return Check(False)

    def check_time_based(self, a: PositionAnalysis, position: Position) -> Check:
        now = a.now or self._clock()
        if not self.risk.should_accept_loss(position, now, a.current_price):
            return Check(False)
        held_days = (now - position.entry_time).total_seconds() / 86400.0
        threshold = -self.config.trading_periods.accept_loss_threshold
        return Check(
            True,
            0.8,
            (
                f"Position expired after {held_days:.1f} days",
                f"Loss {a.pnl_pct:.1f}% vs threshold {threshold:g}%",
            ),
        )

    def check_take_profit(self, a: PositionAnalysis, position: Position) -> Check:
        target = self.config.risk_management.take_profit_percentage
        if a.current_price >= position.take_profit:
            return Check(True, 1.0, (f"Take profit price hit: {position.take_profit}",))
        if a.pnl_pct >= target:
            return Check(True, 1.0, (f"Profit target hit: {a.pnl_pct:.1f}%",))
        return Check(False)

    @staticmethod
    def hold_confidence(a: PositionAnalysis) -> float:
        confidence = 0.5
        if a.trend.direction.is_up:
            confidence += a.trend.strength * 0.3
        if a.momentum.direction == MomentumDirection.STRENGTHENING:
            confidence += a.momentum.strength * 0.2
        if a.pnl_pct > 0:
            confidence += min(a.pnl_pct / 10.0, 0.2)
        if a.trend.direction.is_down:
            confidence -= a.trend.strength * 0.4
        if a.pnl_pct < -5:
            confidence -= min(abs(a.pnl_pct) / 20.0, 0.3)
        return max(0.0, min(1.0, confidence))

    @staticmethod
    def hold_reasons(a: PositionAnalysis) -> tuple[str, ...]:
        s = a.snapshot
        reasons: list[str] = []
        if a.trend.direction.is_up:
            reasons.append(f"Uptrend confirmed (strength: {a.trend.strength:.2f})")
        if a.momentum.direction == MomentumDirection.STRENGTHENING:
            reasons.append("Momentum strengthening")
        if 50 < s.rsi < 70:
            reasons.append(f"RSI in healthy range: {s.rsi:.1f}")
        if s.current_price > s.sma20:
            reasons.append("Price above SMA20 support")
        if a.pnl_pct > -3:
            reasons.append("Small unrealized loss, room for recovery")
        return tuple(reasons)
