import pytest

from broker.abstract_broker import BrokerError, BrokerMode
from broker.paper_broker import PaperBroker
from engine.execution import ExecutionStrategy, SmartSellExecutor, execution_strategy_for
from engine.recommendation import Urgency
from shared.config.schema import OrderManagement
from shared.models.models import OrderSide, OrderStatus, OrderType


class _Timer:
    """把 sleep 转成时钟推进，轮询循环不会真的等待。"""

    def __init__(self):
        self.t = 0.0
        self.sleeps = []

    def sleep(self, secs):
        self.sleeps.append(secs)
        self.t += secs

    def __call__(self):
        return self.t


class _FailingBroker(PaperBroker):
    def __init__(self, fail_limit=False, fail_market_times=0):
        super().__init__(mode=BrokerMode.DRY_RUN)
        self.fail_limit = fail_limit
        self.fail_market_times = fail_market_times
        self.market_calls = 0

    def limit_sell(self, symbol, quantity, price):
        if self.fail_limit:
            raise BrokerError("limit rejected")
        return super().limit_sell(symbol, quantity, price)

    def market_sell(self, symbol, quantity):
        self.market_calls += 1
        if self.market_calls <= self.fail_market_times:
            raise BrokerError("exchange busy")
        return super().market_sell(symbol, quantity)


def _executor(broker, timer=None):
    timer = timer or _Timer()
    return SmartSellExecutor(broker, OrderManagement(), sleep=timer.sleep, clock=timer)


@pytest.mark.parametrize(
    "urgency,strategy",
    [
        (Urgency.HIGH, ExecutionStrategy.MARKET),
        (Urgency.MEDIUM, ExecutionStrategy.SMART_LIMIT),
        (Urgency.LOW, ExecutionStrategy.LIMIT),
        ("NONE", ExecutionStrategy.LIMIT),
    ],
)
def test_strategy_by_urgency(urgency, strategy):
    assert execution_strategy_for(urgency) == strategy


def test_high_urgency_market_sell():
    broker = PaperBroker()
    broker.set_price("BTCUSDT", 100.0)
    report = _executor(broker).execute("BTCUSDT", 0.5, Urgency.HIGH, 100.0)
    assert report.succeeded
    assert report.strategy == ExecutionStrategy.MARKET
    assert report.order.type == OrderType.MARKET
    assert report.order.side == OrderSide.SELL
    assert report.order.is_filled
    assert broker.holdings["BTCUSDT"] == pytest.approx(-0.5)


def test_low_urgency_limit_below_current_price():
    broker = PaperBroker()
    broker.set_price("BTCUSDT", 100.0)
    report = _executor(broker).execute("BTCUSDT", 1.0, Urgency.LOW, 100.0)
    assert report.strategy == ExecutionStrategy.LIMIT
    assert report.order.type == OrderType.LIMIT
    assert report.order.price == pytest.approx(99.95)
    assert report.order.is_filled


def test_smart_limit_fills_without_fallback():
    broker = PaperBroker()
    broker.set_price("BTCUSDT", 100.0)
    timer = _Timer()
    report = _executor(broker, timer).execute("BTCUSDT", 1.0, Urgency.MEDIUM, 100.0)
    assert report.strategy == ExecutionStrategy.SMART_LIMIT
    assert report.order.price == pytest.approx(99.9)
    assert not report.fallback_used
    assert timer.sleeps == []


def test_smart_limit_converts_to_market_after_timeout():
    broker = PaperBroker()
    broker.set_price("BTCUSDT", 99.0)  # 低于限价，挂单不会成交
    timer = _Timer()
    report = _executor(broker, timer).execute("BTCUSDT", 1.0, Urgency.MEDIUM, 100.0)

    assert report.fallback_used
    assert report.order.type == OrderType.MARKET
    assert report.order.price == pytest.approx(99.0)
    assert timer.t >= OrderManagement().smart_limit_timeout_secs
    assert all(s == OrderManagement().poll_interval_secs for s in timer.sleeps)
    limit_orders = [o for o in broker.orders.values() if o.type == OrderType.LIMIT]
    assert [o.status for o in limit_orders] == [OrderStatus.CANCELED]


def test_smart_limit_fills_while_polling():
    broker = PaperBroker()
    broker.set_price("BTCUSDT", 99.0)
    timer = _Timer()

    def sleep(secs):
        timer.sleep(secs)
        broker.set_price("BTCUSDT", 101.0)

    executor = SmartSellExecutor(broker, OrderManagement(), sleep=sleep, clock=timer)
    report = executor.execute("BTCUSDT", 1.0, Urgency.MEDIUM, 100.0)
    assert report.order.type == OrderType.LIMIT
    assert report.order.is_filled
    assert not report.fallback_used
    assert len(timer.sleeps) == 1


def test_smart_limit_rejected_falls_back_to_market():
    broker = _FailingBroker(fail_limit=True)
    broker.set_price("BTCUSDT", 100.0)
    report = _executor(broker).execute("BTCUSDT", 1.0, Urgency.MEDIUM, 100.0)
    assert report.fallback_used
    assert report.order.type == OrderType.MARKET


def test_high_urgency_retries_market_once():
    broker = _FailingBroker(fail_market_times=1)
    broker.set_price("BTCUSDT", 100.0)
    report = _executor(broker).execute("BTCUSDT", 1.0, Urgency.HIGH, 100.0)
    assert report.succeeded
    assert report.fallback_used
    assert broker.market_calls == 2


def test_high_urgency_double_failure_reports_error():
    broker = _FailingBroker(fail_market_times=2)
    broker.set_price("BTCUSDT", 100.0)
    report = _executor(broker).execute("BTCUSDT", 1.0, Urgency.HIGH, 100.0)
    assert not report.succeeded
    assert report.error == "exchange busy"


def test_low_urgency_failure_is_not_retried():
    broker = _FailingBroker()
    report = _executor(broker).execute("BTCUSDT", 0.0, Urgency.LOW, 100.0)
    assert not report.succeeded
    assert report.error
    assert broker.market_calls == 0


def test_paper_broker_requires_mark_price():
    broker = PaperBroker()
    with pytest.raises(BrokerError):
        broker.market_buy("BTCUSDT", 1.0)
    broker = PaperBroker(price_source=lambda s: 42.0)
    assert broker.market_buy("BTCUSDT", 1.0).price == 42.0


def test_paper_broker_min_notional_and_unknown_orders():
    broker = PaperBroker(min_notional=10.0)
    broker.set_price("BTCUSDT", 100.0)
    with pytest.raises(BrokerError):
        broker.market_buy("BTCUSDT", 0.05)
    with pytest.raises(BrokerError):
        broker.cancel("BTCUSDT", "paper-999")
    with pytest.raises(BrokerError):
        broker.order_status("BTCUSDT", "paper-999")


def test_cancel_filled_order_returns_it_unchanged():
    broker = PaperBroker()
    broker.set_price("BTCUSDT", 100.0)
    filled = broker.limit_sell("BTCUSDT", 1.0, 99.0)
    assert broker.cancel("BTCUSDT", filled.order_id).status == OrderStatus.FILLED


class _StatusDownBroker(PaperBroker):
    def order_status(self, symbol, order_id):
        raise BrokerError("status endpoint down")


def test_smart_limit_status_failure_cancels_resting_order():
    broker = _StatusDownBroker()
    broker.set_price("BTCUSDT", 99.0)  # 挂单不会立即成交
    report = _executor(broker).execute("BTCUSDT", 1.0, Urgency.MEDIUM, 100.0)

    assert not report.succeeded
    assert report.error == "status endpoint down"
    limit_orders = [o for o in broker.orders.values() if o.type == OrderType.LIMIT]
    assert [o.status for o in limit_orders] == [OrderStatus.CANCELED]
    assert broker.holdings.get("BTCUSDT", 0.0) == 0.0
