"""卖出执行：按决策紧急度选择下单方式。

- HIGH   -> 市价单立即成交
- MEDIUM -> 略低于现价挂限价单，超时未成交则撤单转市价（SMART_LIMIT）
- LOW    -> 略低于现价挂普通限价单
执行失败时，只有 HIGH 紧急度会再补一次市价单；其它情况不自动重试。
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from broker.abstract_broker import Broker, BrokerError
from engine.recommendation import Urgency
from shared.config.schema import OrderManagement
from shared.models.models import OrderResult
from shared.utils.logging import setup_logger


class ExecutionStrategy(str, Enum):
    MARKET = "MARKET"
    SMART_LIMIT = "SMART_LIMIT"
    LIMIT = "LIMIT"


def execution_strategy_for(urgency: Urgency | str) -> ExecutionStrategy:
    urgency = Urgency(urgency)
    if urgency == Urgency.HIGH:
        return ExecutionStrategy.MARKET
    if urgency == Urgency.MEDIUM:
        return ExecutionStrategy.SMART_LIMIT
    return ExecutionStrategy.LIMIT


@dataclass(frozen=True)
class ExecutionReport:
    strategy: ExecutionStrategy
    order: OrderResult | None
    fallback_used: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.order is not None


class SmartSellExecutor:
    """把 (symbol, 数量, 紧急度, 现价) 变成一笔卖单。"""

    def __init__(
        self,
        broker: Broker,
        order_cfg: OrderManagement,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.broker = broker
        self.cfg = order_cfg
        self._sleep = sleep
        self._clock = clock
        self.logger = setup_logger("execution")

    def execute(self, symbol: str, quantity: float, urgency: Urgency | str, current_price: float) -> ExecutionReport:
        urgency = Urgency(urgency)
        strategy = execution_strategy_for(urgency)
        try:
            if strategy == ExecutionStrategy.MARKET:
                order = self.broker.market_sell(symbol, quantity)
                return ExecutionReport(strategy, order)
            if strategy == ExecutionStrategy.SMART_LIMIT:
                return self._smart_limit(symbol, quantity, current_price)
            price = current_price * (1.0 - self.cfg.limit_offset_pct / 100.0)
            order = self.broker.limit_sell(symbol, quantity, price)
            return ExecutionReport(strategy, order)
        except BrokerError as exc:
            self.logger.error("Failed to execute %s sell for %s: %s", strategy.value, symbol, exc)
            if urgency != Urgency.HIGH:
                return ExecutionReport(strategy, None, error=str(exc))
            try:
                order = self.broker.market_sell(symbol, quantity)
            except BrokerError as fallback_exc:
                self.logger.error("Emergency market sell also failed for %s: %s", symbol, fallback_exc)
                return ExecutionReport(strategy, None, fallback_used=True, error=str(fallback_exc))
            self.logger.warning("Emergency market sell executed for %s after failure", symbol)
            return ExecutionReport(strategy, order, fallback_used=True)

    def _smart_limit(self, symbol: str, quantity: float, current_price: float) -> ExecutionReport:
        strategy = ExecutionStrategy.SMART_LIMIT
        price = current_price * (1.0 - self.cfg.smart_limit_offset_pct / 100.0)
        try:
            order = self.broker.limit_sell(symbol, quantity, price)
        except BrokerError as exc:
            self.logger.warning("Limit sell rejected for %s (%s), using market order", symbol, exc)
            return ExecutionReport(strategy, self.broker.market_sell(symbol, quantity), fallback_used=True)

        order_id = order.order_id
        deadline = self._clock() + self.cfg.smart_limit_timeout_secs
        try:
            while not order.is_filled and self._clock() < deadline:
                self._sleep(self.cfg.poll_interval_secs)
                order = self.broker.order_status(symbol, order_id)

            if order.is_filled:
                return ExecutionReport(strategy, order)

            self.broker.cancel(symbol, order_id)
        except BrokerError:
            # 挂单不能留在盘口，否则下一周期重复卖出
            self._cancel_quietly(symbol, order_id)
            raise

        market = self.broker.market_sell(symbol, quantity)
        self.logger.info("Converted limit order to market order for %s", symbol)
        return ExecutionReport(strategy, market, fallback_used=True)

    def _cancel_quietly(self, symbol: str, order_id: str) -> None:
        try:
            self.broker.cancel(symbol, order_id)
        except BrokerError as exc:
            self.logger.error("Failed to cancel limit order %s for %s: %s", order_id, symbol, exc)
