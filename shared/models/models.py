"""核心数据结构：Candle/Position/Order/RiskBudget。"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class OrderStatus(str, Enum):
    NEW = "NEW"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class Candle:
    """K 线数据（只读，按时间从旧到新排列）。"""
    symbol: str
    open: float
    high: float
    low: float
    close: float
    volume: float
    start_ts: datetime
    end_ts: datetime


@dataclass
class Position:
    """持仓。

    由编排层在买单成交时创建、卖单成交时销毁；决策引擎只读。
    `unrealized_pnl` / `current_price` 每个周期由编排层重新标注。
    """
    symbol: str
    order_id: str
    entry_price: float
    quantity: float
    entry_time: datetime
    stop_loss: float
    take_profit: float
    strategy: str = "manual"
    signals: list[str] = field(default_factory=list)
    unrealized_pnl: float = 0.0
    current_price: float | None = None

    @property
    def cost(self) -> float:
        return self.entry_price * self.quantity

    def pnl_percentage(self, price: float) -> float:
        """相对入场价的盈亏百分比，例如 -5.0 表示亏损 5%。"""
        if self.entry_price <= 0:
            return 0.0
        return (price - self.entry_price) / self.entry_price * 100.0


@dataclass
class Order:
    """订单记录（买/卖）。卖单携带 pnl 与卖出原因，供风险预算重算。"""
    symbol: str
    order_id: str
    side: OrderSide
    type: OrderType
    quantity: float
    price: float
    status: OrderStatus
    timestamp: datetime
    strategy: str | None = None
    pnl: float | None = None
    pnl_percentage: float | None = None
    sell_reason: str | None = None
    confidence: float | None = None
    urgency: str | None = None
    execution_strategy: str | None = None
    holding_period_secs: float | None = None
    buy_order_id: str | None = None
    details: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class OrderResult:
    """broker 下单/查询返回。"""
    order_id: str
    symbol: str
    side: OrderSide
    type: OrderType
    quantity: float
    price: float
    status: OrderStatus

    @property
    def is_filled(self) -> bool:
        return self.status == OrderStatus.FILLED


@dataclass(frozen=True)
class RiskBudget:
    """风险预算快照。

    realized_loss / unrealized_loss 每个周期从订单历史与当前标记价重新计算，
    不以增量形式持久化。
    """
    max_total_loss_amount: float
    reserve_amount: float
    available_capital: float
    realized_loss: float = 0.0
    unrealized_loss: float = 0.0
    total_exposure: float = 0.0
    total_risk: float = 0.0
    daily_pnl: float = 0.0

    @property
    def remaining_loss_budget(self) -> float:
        return max(0.0, self.max_total_loss_amount - self.total_risk)
