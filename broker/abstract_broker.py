"""Broker 抽象接口与运行模式定义。"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

from shared.models.models import OrderResult


class BrokerMode(Enum):
    """Broker 运行模式枚举。"""

    DRY_RUN = "dry-run"
    PAPER = "paper"


class BrokerError(RuntimeError):
    """下单/撤单/查询失败。"""


class Broker(ABC):
    """交易执行抽象层（现货，只做多）。

    执行层只依赖这几个动作：市价买卖、限价卖出、查询、撤单。
    """

    mode: BrokerMode

    @abstractmethod
    def market_buy(self, symbol: str, quantity: float) -> OrderResult:
        """按市价买入 `quantity`。"""

    @abstractmethod
    def market_sell(self, symbol: str, quantity: float) -> OrderResult:
        """按市价卖出 `quantity`。"""

    @abstractmethod
    def limit_sell(self, symbol: str, quantity: float, price: float) -> OrderResult:
        """挂限价卖单（GTC）。"""

    @abstractmethod
    def order_status(self, symbol: str, order_id: str) -> OrderResult:
        """查询订单最新状态。"""

    @abstractmethod
    def cancel(self, symbol: str, order_id: str) -> OrderResult:
        """撤单；已成交订单原样返回。"""
