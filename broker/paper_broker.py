"""模拟 broker（dry-run / paper）。

- 市价单按当前标记价立即成交
- 限价卖单在标记价 >= 限价时成交，否则挂起，直到 `order_status` 时重新撮合
- 标记价来自 `set_price` 或注入的 `price_source`（通常是行情提供方的 get_price）
"""

from __future__ import annotations

import itertools
import threading
from typing import Callable

from broker.abstract_broker import Broker, BrokerError, BrokerMode
from shared.models.models import OrderResult, OrderSide, OrderStatus, OrderType
from shared.utils.logging import setup_logger


class PaperBroker(Broker):
    """纸面交易 broker：按标记价撮合，本地记账。"""

    def __init__(
        self,
        *,
        mode: BrokerMode = BrokerMode.PAPER,
        price_source: Callable[[str], float] | None = None,
        min_notional: float | None = None,
    ):
        self.mode = mode
        self.logger = setup_logger("paper-broker")
        self.price_source = price_source
        self.min_notional = min_notional
        self.prices: dict[str, float] = {}
        self.holdings: dict[str, float] = {}
        self.orders: dict[str, OrderResult] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def set_price(self, symbol: str, price: float) -> None:
        self.prices[symbol] = float(price)

    def _mark(self, symbol: str) -> float:
        price = self.prices.get(symbol)
        if price is None and self.price_source is not None:
            try:
                price = float(self.price_source(symbol))
            except Exception as exc:
                raise BrokerError(f"No mark price for {symbol}: {exc}") from exc
        if price is None or price <= 0:
            raise BrokerError(f"No mark price for {symbol}")
        return price

    def _next_id(self) -> str:
        return f"paper-{next(self._ids)}"

    def _validate(self, symbol: str, quantity: float, price: float) -> None:
        if quantity <= 0:
            raise BrokerError("quantity must be positive")
        if self.min_notional and quantity * price < self.min_notional:
            raise BrokerError(f"notional {quantity * price} < min_notional {self.min_notional}")

    def _fill(self, order: OrderResult, price: float) -> OrderResult:
        filled = OrderResult(
            order_id=order.order_id,
            symbol=order.symbol,
            side=order.side,
            type=order.type,
            quantity=order.quantity,
            price=price,
            status=OrderStatus.FILLED,
        )
        delta = order.quantity if order.side == OrderSide.BUY else -order.quantity
        self.holdings[order.symbol] = self.holdings.get(order.symbol, 0.0) + delta
        self.orders[order.order_id] = filled
        self.logger.info(
            "[%s] %s %s %s qty=%.8f @ %.8f",
            self.mode.value,
            order.type.value,
            order.side.value,
            order.symbol,
            order.quantity,
            price,
        )
        return filled

    def market_buy(self, symbol: str, quantity: float) -> OrderResult:
        with self._lock:
            price = self._mark(symbol)
            self._validate(symbol, quantity, price)
            order = OrderResult(self._next_id(), symbol, OrderSide.BUY, OrderType.MARKET, quantity, price, OrderStatus.NEW)
            return self._fill(order, price)

    def market_sell(self, symbol: str, quantity: float) -> OrderResult:
        with self._lock:
            price = self._mark(symbol)
            self._validate(symbol, quantity, price)
            order = OrderResult(self._next_id(), symbol, OrderSide.SELL, OrderType.MARKET, quantity, price, OrderStatus.NEW)
            return self._fill(order, price)

    def limit_sell(self, symbol: str, quantity: float, price: float) -> OrderResult:
        with self._lock:
            self._validate(symbol, quantity, price)
            order = OrderResult(self._next_id(), symbol, OrderSide.SELL, OrderType.LIMIT, quantity, price, OrderStatus.NEW)
            self.orders[order.order_id] = order
            return self._match(order)

    def _match(self, order: OrderResult) -> OrderResult:
        if order.status != OrderStatus.NEW:
            return order
        mark = self._mark(order.symbol)
        if mark >= order.price:
            return self._fill(order, order.price)
        return order

    def order_status(self, symbol: str, order_id: str) -> OrderResult:
        with self._lock:
            order = self.orders.get(order_id)
            if order is None or order.symbol != symbol:
                raise BrokerError(f"Unknown order {order_id} for {symbol}")
            return self._match(order)

    def cancel(self, symbol: str, order_id: str) -> OrderResult:
        with self._lock:
            order = self.orders.get(order_id)
            if order is None or order.symbol != symbol:
                raise BrokerError(f"Unknown order {order_id} for {symbol}")
            if order.status != OrderStatus.NEW:
                return order
            canceled = OrderResult(
                order.order_id, order.symbol, order.side, order.type, order.quantity, order.price, OrderStatus.CANCELED
            )
            self.orders[order_id] = canceled
            return canceled
