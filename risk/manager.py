"""资金/风险预算计算与开仓准入。"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Mapping

from shared.config.schema import MainConfig
from shared.models.models import Order, OrderSide, Position, RiskBudget
from shared.utils.logging import setup_logger
from sizing.base import SizingContext, build_sizer


class RiskManager:
    """风险管理器（只读配置上的纯计算）。

    Parameters
    ----------
    cfg:
        主配置；只读取 portfolio / trading_periods / loss_calculation /
        position_sizing / risk_management 几个块，从不修改。

    Notes
    -----
    风险预算永远从订单历史与当前标记价重新计算，不保存增量，避免漂移。
    """

    def __init__(self, cfg: MainConfig):
        self.cfg = cfg
        self.logger = setup_logger("risk")
        self._sizer = build_sizer(cfg.position_sizing, self.sizing_context)

    # --- 派生值 ---

    @property
    def max_total_loss_amount(self) -> float:
        p = self.cfg.portfolio
        return p.total_capital * p.max_loss_percentage / 100.0

    @property
    def reserve_amount(self) -> float:
        p = self.cfg.portfolio
        return p.total_capital * p.reserve_percentage / 100.0

    @property
    def available_capital(self) -> float:
        return self.cfg.portfolio.total_capital - self.reserve_amount

    @property
    def max_position_size_calculated(self) -> float:
        return min(
            self.cfg.position_sizing.max_position_size,
            self.available_capital / self.cfg.portfolio.max_active_symbols,
        )

    @property
    def sizing_context(self) -> SizingContext:
        return SizingContext(
            available_capital=self.available_capital,
            max_active_symbols=self.cfg.portfolio.max_active_symbols,
            min_position_size=self.cfg.position_sizing.min_position_size,
            max_position_size=self.cfg.position_sizing.max_position_size,
        )

    # --- 损失统计 ---

    @staticmethod
    def calculate_realized_loss(orders: Iterable[Order]) -> float:
        """已平仓亏损：SELL 且 pnl < 0 的订单 |pnl| 之和。"""
        return sum(
            abs(o.pnl)
            for o in orders
            if o.side == OrderSide.SELL and o.pnl is not None and o.pnl < 0
        )

    @staticmethod
    def calculate_unrealized_loss(
        positions: Iterable[Position],
        prices: Mapping[str, float] | None = None,
    ) -> float:
        """浮动亏损：按 `prices` 中的标记价（缺失时用持仓上的 unrealized_pnl）。"""
        total = 0.0
        for pos in positions:
            price = (prices or {}).get(pos.symbol)
            pnl = (price - pos.entry_price) * pos.quantity if price is not None else pos.unrealized_pnl
            if pnl < 0:
                total += abs(pnl)
        return total

    def calculate_total_risk(self, realized_loss: float, unrealized_loss: float) -> float:
        lc = self.cfg.loss_calculation
        if lc.only_realized_losses:
            return realized_loss
        if lc.include_unrealized_in_risk:
            return realized_loss + unrealized_loss * lc.unrealized_loss_weight
        return realized_loss

    def risk_utilization(self, realized_loss: float) -> float:
        """已用风险预算百分比（0-100+）。"""
        if self.max_total_loss_amount <= 0:
            return 0.0
        return realized_loss / self.max_total_loss_amount * 100.0

    def build_risk_budget(
        self,
        orders: Iterable[Order],
        positions: Iterable[Position],
        prices: Mapping[str, float] | None = None,
    ) -> RiskBudget:
        positions = list(positions)
        orders = list(orders)
        realized = self.calculate_realized_loss(orders)
        unrealized = self.calculate_unrealized_loss(positions, prices)
        exposure = sum(pos.cost for pos in positions)
        daily_pnl = sum(o.pnl for o in orders if o.side == OrderSide.SELL and o.pnl is not None)
        return RiskBudget(
            max_total_loss_amount=self.max_total_loss_amount,
            reserve_amount=self.reserve_amount,
            available_capital=self.available_capital,
            realized_loss=realized,
            unrealized_loss=unrealized,
            total_exposure=exposure,
            total_risk=self.calculate_total_risk(realized, unrealized),
            daily_pnl=daily_pnl,
        )

    # --- 准入 ---

    def can_place_new_order(self, current_risk: float, order_value: float, active_orders_count: int) -> bool:
        """最坏情况（打到止损）下的新增损失不得突破总亏损预算，且并发订单未满。"""
        worst_case_loss = order_value * self.cfg.risk_management.stop_loss_percentage / 100.0
        within_budget = current_risk + worst_case_loss <= self.max_total_loss_amount
        return within_budget and active_orders_count < self.cfg.portfolio.max_concurrent_orders

    def should_accept_loss(self, position: Position, now: datetime, current_price: float | None = None) -> bool:
        """持仓超期后是否接受亏损离场。

        超过 period_days 且（宽限期也已过，或亏损超过 accept_loss_threshold%）。
        """
        tp = self.cfg.trading_periods
        if not tp.accept_loss_after_period:
            return False

        age = now - position.entry_time
        period = timedelta(days=tp.period_days)
        grace = timedelta(hours=tp.grace_period_hours)
        if age <= period:
            return False
        if age > period + grace:
            return True

        price = current_price if current_price is not None else position.current_price
        if price is not None:
            pnl_pct = position.pnl_percentage(price)
        elif position.cost > 0:
            pnl_pct = position.unrealized_pnl / position.cost * 100.0
        else:
            return False
        return pnl_pct < 0 and abs(pnl_pct) > tp.accept_loss_threshold

    # --- 仓位 ---

    def calculate_optimal_position_size(
        self,
        symbol: str,
        volatility: float | None = None,
        win_rate: float | None = None,
    ) -> float:
        size = self._sizer.position_size(volatility=volatility, win_rate=win_rate)
        self.logger.debug(
            "Position size for %s (%s): %.4f vol=%s win_rate=%s",
            symbol,
            self.cfg.position_sizing.strategy,
            size,
            volatility,
            win_rate,
        )
        return size
