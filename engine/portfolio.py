"""组合编排层（PortfolioManager）。

职责：
- 持有持仓表（symbol -> [Position]）与订单历史；
- 每个周期重算风险预算、检查暂停/紧急停止；
- 调用决策引擎评估每个持仓并执行卖出；
- 评估市场状态并寻找新的开仓机会。

决策本身全部在 `SmartLossManager` 中完成，这里只负责调度与记账。
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from broker.abstract_broker import Broker, BrokerError
from engine.entry_signals import BUY_CONFIDENCE, EntrySignal, MarketCondition, classify_market, determine_strategies
from engine.execution import SmartSellExecutor
from engine.recommendation import Recommendation, Urgency
from engine.smart_loss import SmartLossManager
from engine.trailing_stop import TrailingStopTracker
from factors.snapshot import compute_indicators
from market_data.client import MarketDataError, MarketDataProvider
from risk.manager import RiskManager
from shared.config.schema import MainConfig
from shared.models.models import Order, OrderSide, OrderStatus, OrderType, Position, RiskBudget
from shared.utils.logging import setup_logger

TRAILING_STOP_REASON = "TRAILING_STOP"
EMERGENCY_STOP_REASON = "EMERGENCY_STOP"
FLASH_CRASH_PAUSE_MINUTES = 60.0
DEFAULT_VOLATILITY = 0.1
WIN_RATE_LOOKBACK = timedelta(days=30)
AT_RISK_CONFIDENCE = 0.6
STRONG_HOLD_CONFIDENCE = 0.7
HIGH_RISK_UTILIZATION = 60.0
REVIEW_MIN_WIN_RATE = 40.0
REVIEW_RISK_RATIO = 0.8


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PerformanceMetrics:
    total_trades: int = 0
    winning_trades: int = 0
    total_return: float = 0.0
    max_drawdown: float = 0.0
    consecutive_losses: int = 0
    loss_types: dict[str, int] = field(default_factory=dict)
    smart_sells: int = 0
    prevented_larger_losses: int = 0

    @property
    def win_rate(self) -> float:
        """胜率百分比；尚无交易时视为 50。"""
        if self.total_trades <= 0:
            return 50.0
        return self.winning_trades / self.total_trades * 100.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "total_return": self.total_return,
            "max_drawdown": self.max_drawdown,
            "consecutive_losses": self.consecutive_losses,
            "loss_types": dict(self.loss_types),
            "smart_sells": self.smart_sells,
            "prevented_larger_losses": self.prevented_larger_losses,
            "win_rate": self.win_rate,
        }


@dataclass(frozen=True)
class PositionEvaluation:
    symbol: str
    order_id: str
    current_price: float
    unrealized_pnl: float
    recommendation: Recommendation


@dataclass(frozen=True)
class Advisory:
    """给人工复核的组合级建议（不会自动执行）。"""

    type: str
    priority: str
    title: str
    message: str
    action: str
    symbols: tuple[str, ...] = ()
    amount: float | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "type": self.type,
            "priority": self.priority,
            "title": self.title,
            "message": self.message,
            "action": self.action,
            "symbols": list(self.symbols),
        }
        if self.amount is not None:
            out["amount"] = self.amount
        return out


@dataclass(frozen=True)
class PortfolioHealth:
    score: float
    risk_utilization: float
    win_rate: float
    consecutive_losses: int
    total_unrealized_profit: float
    active_positions: int


class PortfolioManager:
    """持仓、风险指标与交易周期的编排器。

    Parameters
    ----------
    cfg:
        主配置（只读）。
    market_data:
        行情提供方（最新价、K 线、24h 涨跌幅）。
    broker:
        下单执行方。
    smart_loss:
        决策引擎；缺省时按 `cfg` 构建（需要 metric_store，因此一般由引擎注入）。
    """

    def __init__(
        self,
        cfg: MainConfig,
        market_data: MarketDataProvider,
        broker: Broker,
        smart_loss: SmartLossManager,
        *,
        risk_manager: RiskManager | None = None,
        executor: SmartSellExecutor | None = None,
        trailing: TrailingStopTracker | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.cfg = cfg
        self.market_data = market_data
        self.broker = broker
        self.smart_loss = smart_loss
        self.risk = risk_manager or smart_loss.risk
        self.executor = executor or SmartSellExecutor(broker, cfg.order_management)
        self._clock = clock or _utc_now
        self.trailing = trailing or TrailingStopTracker(cfg.risk_management.trailing_stop_percentage, clock=self._clock)
        self.logger = setup_logger("portfolio")

        self.positions: dict[str, list[Position]] = {}
        self.orders: list[Order] = []
        self.prices: dict[str, float] = {}
        self.performance = PerformanceMetrics()
        self.risk_budget = self.risk.build_risk_budget([], [])
        self.paused_until: datetime | None = None
        self._loss_pause_base = 0
        self.active = True
        self.advisories: list[Advisory] = []
        self.last_review: dict[str, Any] | None = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # 持仓表
    # ------------------------------------------------------------------

    def add_position(self, position: Position) -> None:
        with self._lock:
            self.positions.setdefault(position.symbol, []).append(position)

    def remove_position(self, symbol: str, order_id: str) -> None:
        with self._lock:
            remaining = [p for p in self.positions.get(symbol, []) if p.order_id != order_id]
            if remaining:
                self.positions[symbol] = remaining
            else:
                self.positions.pop(symbol, None)

    def positions_for(self, symbol: str) -> list[Position]:
        with self._lock:
            return list(self.positions.get(symbol, []))

    def all_positions(self) -> list[Position]:
        with self._lock:
            return [p for group in self.positions.values() for p in group]

    @property
    def position_count(self) -> int:
        return len(self.all_positions())

    # ------------------------------------------------------------------
    # 行情与风险指标
    # ------------------------------------------------------------------

    def refresh_prices(self) -> dict[str, float]:
        symbols = set(self.cfg.active_symbols) | set(self.positions.keys())
        for symbol in sorted(symbols):
            try:
                self.prices[symbol] = float(self.market_data.get_price(symbol))
            except MarketDataError as exc:
                self.logger.warning("Failed to refresh price for %s: %s", symbol, exc)
        return dict(self.prices)

    def _todays_sell_orders(self) -> list[Order]:
        start = self._clock().replace(hour=0, minute=0, second=0, microsecond=0)
        return [o for o in self.orders if o.side == OrderSide.SELL and o.timestamp >= start]

    def update_risk_metrics(self) -> RiskBudget:
        """按当日卖单与当前标记价重算风险预算，并标注持仓浮动盈亏。"""
        marked: list[Position] = []
        for pos in self.all_positions():
            price = self.prices.get(pos.symbol)
            if price is None:
                continue
            pos.unrealized_pnl = (price - pos.entry_price) * pos.quantity
            pos.current_price = price
            marked.append(pos)
        self.risk_budget = self.risk.build_risk_budget(self._todays_sell_orders(), marked, self.prices)
        return self.risk_budget

    @property
    def total_risk(self) -> float:
        return self.risk.calculate_total_risk(self.risk_budget.realized_loss, self.risk_budget.unrealized_loss)

    # ------------------------------------------------------------------
    # 暂停 / 紧急停止
    # ------------------------------------------------------------------

    def pause_trading(self, minutes: float) -> None:
        self.paused_until = self._clock() + timedelta(minutes=minutes)
        self.logger.warning("Trading paused for %s minutes (until %s)", minutes, self.paused_until.isoformat())

    def is_trading_paused(self) -> bool:
        if self.paused_until is not None and self._clock() < self.paused_until:
            return True
        if self.unacknowledged_losses >= self.cfg.emergency.pause_after_consecutive_losses:
            self.pause_trading(self.cfg.emergency.pause_duration_minutes)
            self._loss_pause_base = self.performance.consecutive_losses
            return True
        return False

    @property
    def unacknowledged_losses(self) -> int:
        """当前连亏中尚未被暂停“消化”的部分；每次连亏暂停只触发一次。"""
        return max(0, self.performance.consecutive_losses - self._loss_pause_base)

    def detect_flash_crash(self) -> float:
        """参考币种最近一小时（12 根 5m K 线）的最大跌幅（<= 0）。"""
        max_drop = 0.0
        for symbol in self.cfg.market_conditions.reference_symbols:
            try:
                candles = self.market_data.get_candles(symbol, "5m", 12)
            except (MarketDataError, ValueError) as exc:
                self.logger.error("Failed to check flash crash for %s: %s", symbol, exc)
                continue
            if not candles or candles[0].close <= 0:
                continue
            change = (candles[-1].close - candles[0].close) / candles[0].close * 100.0
            max_drop = min(max_drop, change)
        return max_drop

    def check_risk_limits(self) -> str | None:
        """紧急停止 / 闪崩暂停检查；返回触发的动作名（未触发为 None）。"""
        self.update_risk_metrics()
        total_risk = self.total_risk
        em = self.cfg.emergency
        emergency_amount = em.total_loss_emergency_stop / 100.0 * self.cfg.portfolio.total_capital
        if total_risk >= emergency_amount:
            self.logger.error("EMERGENCY STOP: total risk %.4f >= %.4f", total_risk, emergency_amount)
            self.emergency_stop("TOTAL_RISK_EXCEEDED")
            return "EMERGENCY_STOP"

        if em.flash_crash_protection:
            drop = self.detect_flash_crash()
            if drop <= em.flash_crash_threshold:
                self.logger.warning("Flash crash detected (%.2f%%), pausing trading", drop)
                self.pause_trading(FLASH_CRASH_PAUSE_MINUTES)
                return "FLASH_CRASH_PAUSE"

        if self.risk.max_total_loss_amount > 0 and total_risk / self.risk.max_total_loss_amount * 100.0 > 80:
            self.logger.warning(
                "High risk warning: total risk %.4f of max %.4f", total_risk, self.risk.max_total_loss_amount
            )
        return None

    def emergency_stop(self, reason: str) -> list[str]:
        """停止交易并以市价清空全部持仓。"""
        self.active = False
        closed: list[str] = []
        for pos in self.all_positions():
            price = self.prices.get(pos.symbol, pos.current_price or pos.entry_price)
            order = self.execute_sell(
                pos,
                current_price=price,
                reason=EMERGENCY_STOP_REASON,
                urgency=Urgency.HIGH,
                confidence=1.0,
                details=(f"Emergency stop: {reason}",),
            )
            if order is not None:
                closed.append(pos.symbol)
        self.logger.error("Emergency stop (%s) closed %d position(s)", reason, len(closed))
        return closed

    # ------------------------------------------------------------------
    # 持仓评估与卖出
    # ------------------------------------------------------------------

    def _evaluate_symbol(self, symbol: str, positions: list[Position], price: float) -> list[PositionEvaluation]:
        out: list[PositionEvaluation] = []
        for pos in positions:
            rec = self.smart_loss.evaluate(symbol, pos, price)
            out.append(
                PositionEvaluation(
                    symbol=symbol,
                    order_id=pos.order_id,
                    current_price=price,
                    unrealized_pnl=(price - pos.entry_price) * pos.quantity,
                    recommendation=rec,
                )
            )
        return out

    def evaluate_all_positions(self) -> list[PositionEvaluation]:
        """并发评估各交易对的持仓（每个交易对一个任务），超时的交易对本周期跳过。"""
        groups = {s: self.positions_for(s) for s in list(self.positions.keys())}
        jobs = {s: ps for s, ps in groups.items() if ps and self.prices.get(s)}
        if not jobs:
            return []

        timeout = self.cfg.decision_engine.evaluation_timeout_secs
        pool = ThreadPoolExecutor(max_workers=self.cfg.max_workers, thread_name_prefix="evaluate")
        try:
            futures = {
                pool.submit(self._evaluate_symbol, symbol, ps, self.prices[symbol]): symbol
                for symbol, ps in jobs.items()
            }
            done, not_done = wait(futures, timeout=timeout)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        for fut in not_done:
            self.logger.error("Evaluation timed out for %s after %.1fs", futures[fut], timeout)

        evaluations: list[PositionEvaluation] = []
        for fut in done:
            symbol = futures[fut]
            try:
                evaluations.extend(fut.result())
            except (MarketDataError, ValueError, ArithmeticError) as exc:
                self.logger.error("Failed to evaluate positions for %s: %s", symbol, exc)
        evaluations.sort(key=lambda e: (e.symbol, e.order_id))

        for ev in evaluations:
            self._act_on(ev)
        return evaluations

    def _act_on(self, ev: PositionEvaluation) -> None:
        pos = next((p for p in self.positions_for(ev.symbol) if p.order_id == ev.order_id), None)
        if pos is None:
            return
        rec = ev.recommendation
        if rec.should_sell:
            self.execute_sell(
                pos,
                current_price=ev.current_price,
                reason=rec.reason.value,
                urgency=rec.urgency,
                confidence=rec.confidence,
                details=rec.details,
            )
            return
        if self.cfg.risk_management.enable_trailing_stop and self.trailing.is_hit(pos, ev.current_price):
            stop = self.trailing.stop_price(pos, ev.current_price)
            self.execute_sell(
                pos,
                current_price=ev.current_price,
                reason=TRAILING_STOP_REASON,
                urgency=Urgency.HIGH,
                confidence=1.0,
                details=(f"Trailing stop hit: {ev.current_price:.8g} <= {stop:.8g}",),
            )

    def execute_sell(
        self,
        position: Position,
        *,
        current_price: float,
        reason: str,
        urgency: Urgency | str,
        confidence: float,
        details: tuple[str, ...] = (),
    ) -> Order | None:
        """按紧急度执行卖出并记账；失败返回 None（持仓保留到下个周期）。"""
        report = self.executor.execute(position.symbol, position.quantity, urgency, current_price)
        if not report.succeeded or report.order is None:
            self.logger.error("Sell failed for %s (%s): %s", position.symbol, reason, report.error)
            return None

        exit_price = report.order.price if report.order.is_filled else current_price
        pnl = (exit_price - position.entry_price) * position.quantity
        pnl_pct = pnl / position.cost * 100.0 if position.cost > 0 else 0.0
        now = self._clock()
        order = Order(
            symbol=position.symbol,
            order_id=report.order.order_id,
            side=OrderSide.SELL,
            type=report.order.type,
            quantity=position.quantity,
            price=exit_price,
            status=report.order.status,
            timestamp=now,
            strategy=position.strategy,
            pnl=pnl,
            pnl_percentage=pnl_pct,
            sell_reason=reason,
            confidence=confidence,
            urgency=Urgency(urgency).value,
            execution_strategy=report.strategy.value,
            holding_period_secs=(now - position.entry_time).total_seconds(),
            buy_order_id=position.order_id,
            details=list(details),
        )
        with self._lock:
            self.orders.append(order)
        self.update_risk_metrics()
        self.update_performance_metrics(pnl, reason, confidence)
        self.remove_position(position.symbol, position.order_id)
        self.trailing.forget(position)
        if not self.positions_for(position.symbol) and position.symbol not in self.cfg.active_symbols:
            self.smart_loss.forget(position.symbol)
        self.logger.info(
            "SELL %s qty=%.8f @ %.8g pnl=%.4f (%.2f%%) reason=%s conf=%.2f via=%s",
            position.symbol,
            position.quantity,
            exit_price,
            pnl,
            pnl_pct,
            reason,
            confidence,
            report.strategy.value,
        )
        return order

    def update_performance_metrics(self, pnl: float, reason: str, confidence: float = 1.0) -> None:
        perf = self.performance
        perf.total_trades += 1
        perf.total_return += pnl
        if pnl > 0:
            perf.winning_trades += 1
            perf.consecutive_losses = 0
            self._loss_pause_base = 0
        else:
            perf.consecutive_losses += 1
            perf.loss_types[reason] = perf.loss_types.get(reason, 0) + 1

        # 趋势反转、紧急卖出与紧急停止清仓都算“智能卖出”
        if "TREND" in reason or "EMERGENCY" in reason:
            perf.smart_sells += 1
            # 高置信度下小额亏损离场，视为避免了更大的亏损
            if -20 < pnl < 0 and confidence > 0.7:
                perf.prevented_larger_losses += 1

        perf.max_drawdown = min(perf.max_drawdown, min(0.0, self.risk_budget.daily_pnl))

    # ------------------------------------------------------------------
    # 开仓
    # ------------------------------------------------------------------

    def assess_market_conditions(self) -> MarketCondition:
        changes: list[float] = []
        for symbol in self.cfg.market_conditions.reference_symbols:
            try:
                changes.append(float(self.market_data.get_24h_change(symbol)))
            except MarketDataError as exc:
                self.logger.error("Failed to get market data for %s: %s", symbol, exc)
        mc = self.cfg.market_conditions
        average = sum(changes) / len(changes) if changes else None
        return classify_market(average, mc.bull_market_threshold, mc.bear_market_threshold)

    def calculate_symbol_win_rate(self, symbol: str) -> float:
        since = self._clock() - WIN_RATE_LOOKBACK
        sells = [
            o for o in self.orders
            if o.symbol == symbol and o.side == OrderSide.SELL and o.timestamp >= since
        ]
        if not sells:
            return 0.5
        return sum(1 for o in sells if (o.pnl or 0.0) > 0) / len(sells)

    def can_accept_new_positions(self) -> bool:
        if self.position_count >= self.cfg.portfolio.max_concurrent_orders:
            return False
        if self.unacknowledged_losses >= self.cfg.emergency.pause_after_consecutive_losses:
            self.logger.info("Too many consecutive losses, no new positions")
            return False
        realized_pct = self.risk_budget.realized_loss / self.cfg.portfolio.total_capital * 100.0
        if realized_pct > self.cfg.portfolio.max_loss_percentage * 0.7:
            self.logger.info("Approaching risk limit (%.2f%%), no new positions", realized_pct)
            return False
        return True

    def can_place_new_order(self, symbol: str, order_value: float) -> bool:
        self.update_risk_metrics()
        total_risk = self.total_risk
        if total_risk >= self.risk.max_total_loss_amount:
            self.logger.warning(
                "Max loss reached for %s: %.4f >= %.4f", symbol, total_risk, self.risk.max_total_loss_amount
            )
            return False
        if not self.risk.can_place_new_order(total_risk, order_value, self.position_count):
            return False
        return len(self.positions_for(symbol)) < self.cfg.order_management.max_orders_per_symbol

    def analyze_symbol_for_trading(self, symbol: str, market: MarketCondition) -> Order | None:
        price = self.prices.get(symbol)
        if not price:
            return None

        cached_vol = self.smart_loss.volatility_cache.get(symbol)
        volatility = cached_vol.current if cached_vol is not None and cached_vol.current > 0 else DEFAULT_VOLATILITY
        win_rate = self.calculate_symbol_win_rate(symbol)
        size = self.risk.calculate_optimal_position_size(symbol, volatility, win_rate)
        if not self.can_place_new_order(symbol, size):
            return None

        de = self.cfg.decision_engine
        try:
            candles = self.market_data.get_candles(symbol, de.candle_interval, de.candle_limit)
        except (MarketDataError, ValueError) as exc:
            self.logger.error("Failed to get candles for %s: %s", symbol, exc)
            return None
        if not candles:
            return None
        snapshot = compute_indicators(candles)

        for signal in determine_strategies(snapshot, market, len(self.positions_for(symbol)), self.cfg.trading_style):
            if signal.is_buy and signal.confidence > BUY_CONFIDENCE:
                return self.place_buy_order(symbol, size, signal, price)
        return None

    def place_buy_order(self, symbol: str, position_size: float, signal: EntrySignal, price: float) -> Order | None:
        if price <= 0 or position_size <= 0:
            return None
        quantity = round(position_size / price, 6)
        try:
            result = self.broker.market_buy(symbol, quantity)
        except BrokerError as exc:
            self.logger.error("Failed to place buy order for %s: %s", symbol, exc)
            return None

        fill_price = result.price if result.price > 0 else price
        stop_loss = fill_price * (1.0 - self.cfg.risk_management.stop_loss_percentage / 100.0)
        take_profit = fill_price * (1.0 + signal.profit_target / 100.0)
        now = self._clock()
        order = Order(
            symbol=symbol,
            order_id=result.order_id,
            side=OrderSide.BUY,
            type=OrderType.MARKET,
            quantity=result.quantity,
            price=fill_price,
            status=result.status,
            timestamp=now,
            strategy=signal.strategy,
            confidence=signal.confidence,
            details=list(signal.signals),
        )
        with self._lock:
            self.orders.append(order)
        if result.status == OrderStatus.FILLED:
            self.add_position(
                Position(
                    symbol=symbol,
                    order_id=result.order_id,
                    entry_price=fill_price,
                    quantity=result.quantity,
                    entry_time=now,
                    stop_loss=stop_loss,
                    take_profit=take_profit,
                    strategy=signal.strategy,
                    signals=list(signal.signals),
                )
            )
        self.logger.info(
            "BUY %s qty=%.6f @ %.8g strategy=%s conf=%.2f size=%.4f",
            symbol,
            result.quantity,
            fill_price,
            signal.strategy,
            signal.confidence,
            position_size,
        )
        return order

    # ------------------------------------------------------------------
    # 汇总
    # ------------------------------------------------------------------

    def generate_recommendations(
        self,
        evaluations: list[PositionEvaluation],
        market: MarketCondition | None = None,
    ) -> list[Advisory]:
        """根据本周期的持仓评估、市场状态和风险占用生成人工复核建议。"""
        if market is None:
            market = self.assess_market_conditions()
        out: list[Advisory] = []

        at_risk = [
            e for e in evaluations
            if e.recommendation.should_sell and e.recommendation.confidence > AT_RISK_CONFIDENCE
        ]
        if at_risk:
            symbols = tuple(e.symbol for e in at_risk)
            out.append(
                Advisory(
                    type="WARNING",
                    priority="HIGH",
                    title=f"{len(at_risk)} position(s) at risk",
                    message="Potential trend reversals in: " + ", ".join(
                        f"{e.symbol} ({e.recommendation.reason.value}, {e.recommendation.confidence:.2f})"
                        for e in at_risk
                    ),
                    action="Consider manual review of these positions",
                    symbols=symbols,
                    amount=sum(e.unrealized_pnl for e in at_risk),
                )
            )

        strong = [
            e for e in evaluations
            if not e.recommendation.should_sell
            and e.recommendation.confidence > STRONG_HOLD_CONFIDENCE
            and e.unrealized_pnl > 0
        ]
        if strong:
            labels = []
            for e in strong:
                trend = self.smart_loss.cached_trend(e.symbol)
                labels.append(f"{e.symbol} ({trend.direction.value})" if trend is not None else e.symbol)
            out.append(
                Advisory(
                    type="POSITIVE",
                    priority="LOW",
                    title=f"{len(strong)} strong position(s)",
                    message="Trending well: " + ", ".join(labels),
                    action="Continue holding, trends look positive",
                    symbols=tuple(e.symbol for e in strong),
                    amount=sum(e.unrealized_pnl for e in strong),
                )
            )

        if market == MarketCondition.BEAR:
            out.append(
                Advisory(
                    type="CAUTION",
                    priority="MEDIUM",
                    title="Bear market detected",
                    message="Reference symbols are falling, entries will be more conservative",
                    action="Consider reducing position sizes and tightening stop losses",
                )
            )
        elif market == MarketCondition.BULL:
            out.append(
                Advisory(
                    type="OPPORTUNITY",
                    priority="LOW",
                    title="Bull market detected",
                    message="Reference symbols are rising, good time for new positions",
                    action="Position sizes may increase in favorable conditions",
                )
            )

        utilization = self.risk.risk_utilization(self.risk_budget.realized_loss)
        if utilization > HIGH_RISK_UTILIZATION:
            out.append(
                Advisory(
                    type="WARNING",
                    priority="HIGH",
                    title="High risk utilization",
                    message=f"Using {utilization:.1f}% of maximum allowed loss",
                    action="Consider closing some positions or reducing new position sizes",
                    amount=utilization,
                )
            )

        self.advisories = out
        for adv in out:
            log = self.logger.warning if adv.priority == "HIGH" else self.logger.info
            log("[%s] %s: %s", adv.type, adv.title, adv.message)
        return out

    def daily_review(self) -> dict[str, Any]:
        """每日复盘：收益、胜率、回撤、当前风险，并给出调整建议。"""
        perf = self.performance
        current_risk = self.total_risk
        review: dict[str, Any] = {
            "date": self._clock().date().isoformat(),
            "total_return": perf.total_return,
            "total_trades": perf.total_trades,
            "win_rate": perf.win_rate,
            "max_drawdown": perf.max_drawdown,
            "current_risk": current_risk,
            "active_positions": self.position_count,
            "recommendations": [],
        }
        if perf.total_trades > 0 and perf.win_rate < REVIEW_MIN_WIN_RATE:
            review["recommendations"].append("Consider adjusting strategy parameters")
        if current_risk > self.risk.max_total_loss_amount * REVIEW_RISK_RATIO:
            review["recommendations"].append("Reduce position sizes or close losing positions")
        self.last_review = review
        self.logger.info(
            "Daily review %s: return=%.4f win_rate=%.1f%% risk=%.4f advice=%s",
            review["date"],
            perf.total_return,
            perf.win_rate,
            current_risk,
            review["recommendations"],
        )
        return review

    def _review_due(self) -> bool:
        return self.last_review is None or self.last_review["date"] != self._clock().date().isoformat()

    def calculate_portfolio_health(self) -> PortfolioHealth:
        capital = self.cfg.portfolio.total_capital
        risk_utilization = self.risk.risk_utilization(self.risk_budget.realized_loss)
        score = 100.0
        score -= risk_utilization * 0.5
        score -= self.performance.consecutive_losses * 10
        score -= self.risk_budget.unrealized_loss / capital * 100.0

        unrealized_profit = sum(p.unrealized_pnl for p in self.all_positions() if p.unrealized_pnl > 0)
        score += min(unrealized_profit / capital * 100.0, 20.0)

        win_rate = self.performance.win_rate
        if win_rate > 60:
            score += (win_rate - 60) * 0.5

        return PortfolioHealth(
            score=max(0.0, min(100.0, score)),
            risk_utilization=risk_utilization,
            win_rate=win_rate,
            consecutive_losses=self.performance.consecutive_losses,
            total_unrealized_profit=unrealized_profit,
            active_positions=self.position_count,
        )

    def run_cycle(self) -> dict[str, Any]:
        """一个交易周期：清理过期状态 → 风险 → 暂停检查 → 持仓评估 → 市场状态 → 新开仓 → 建议/复盘。"""
        summary: dict[str, Any] = {"timestamp": self._clock().isoformat(), "status": "ok"}
        if not self.active:
            summary["status"] = "stopped"
            return summary

        self.smart_loss.purge_expired()
        self.refresh_prices()
        self.update_risk_metrics()
        action = self.check_risk_limits()
        if action == "EMERGENCY_STOP":
            summary["status"] = "emergency_stop"
            return summary

        if self.is_trading_paused():
            self.logger.info("Trading paused due to risk management")
            summary["status"] = "paused"
            summary["paused_until"] = self.paused_until.isoformat() if self.paused_until else None
            return summary

        evaluations = self.evaluate_all_positions()
        market = self.assess_market_conditions()

        buys: list[str] = []
        if self.can_accept_new_positions():
            for symbol in self.cfg.active_symbols:
                if self.analyze_symbol_for_trading(symbol, market) is not None:
                    buys.append(symbol)

        advisories = self.generate_recommendations(evaluations, market)
        health = self.calculate_portfolio_health()
        summary.update(
            {
                "market": market.value,
                "evaluations": [
                    {"symbol": e.symbol, "order_id": e.order_id, **e.recommendation.to_dict()} for e in evaluations
                ],
                "buys": buys,
                "positions": self.position_count,
                "total_risk": self.total_risk,
                "health": health.score,
                "advisories": [a.to_dict() for a in advisories],
            }
        )
        if self._review_due():
            summary["daily_review"] = self.daily_review()
        return summary
