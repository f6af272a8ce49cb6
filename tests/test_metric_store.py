from datetime import timedelta

import pytest

from shared.state.metric_store import (
    InMemoryMetricStore,
    Metric,
    SqliteMetricStore,
    build_metric_store,
)

from conftest import T0, FakeClock


@pytest.fixture(params=["memory", "sqlite"])
def store_and_clock(request, tmp_path):
    clock = FakeClock()
    if request.param == "memory":
        store = InMemoryMetricStore(capacity=100, clock=clock)
    else:
        store = SqliteMetricStore(str(tmp_path / "metrics.sqlite3"), capacity=100, clock=clock)
    yield store, clock
    store.close()


def _fill(store, symbol, metric, values):
    for i, v in enumerate(values):
        store.record(symbol, metric, v, T0 + timedelta(minutes=15 * i))


def test_history_is_chronological(store_and_clock):
    store, _ = store_and_clock
    values = [50.0, 48.5, 47.0, 52.25, 49.0]
    _fill(store, "BTCUSDT", Metric.RSI, values)

    hist = store.history("BTCUSDT", Metric.RSI, 5)
    assert [s.value for s in hist] == values
    assert hist[0].timestamp < hist[-1].timestamp
    assert [s.value for s in store.history("BTCUSDT", Metric.RSI, 2)] == values[-2:]


def test_history_is_per_symbol_and_metric(store_and_clock):
    store, _ = store_and_clock
    store.record("BTCUSDT", Metric.RSI, 40.0)
    store.record("ETHUSDT", Metric.RSI, 60.0)
    store.record("BTCUSDT", "price", 100.0)
    assert store.previous("BTCUSDT", Metric.RSI) == 40.0
    assert store.previous("ETHUSDT", Metric.RSI) == 60.0
    assert store.previous("BTCUSDT", Metric.PRICE) == 100.0
    assert store.previous("BTCUSDT", Metric.VOLATILITY) is None
    assert store.history("SOLUSDT", Metric.RSI) == []


def test_capacity_keeps_newest_samples(store_and_clock):
    store, _ = store_and_clock
    _fill(store, "BTCUSDT", Metric.PRICE, [float(i) for i in range(120)])
    hist = store.history("BTCUSDT", Metric.PRICE, 200)
    assert len(hist) == 100
    assert hist[0].value == 20.0
    assert hist[-1].value == 119.0


def test_record_batch_shares_timestamp(store_and_clock):
    store, _ = store_and_clock
    store.record_batch("BTCUSDT", rsi=45.0, volatility=0.01, price=100.0, timestamp=T0)
    rsi = store.history("BTCUSDT", Metric.RSI, 1)[0]
    price = store.history("BTCUSDT", Metric.PRICE, 1)[0]
    assert rsi.timestamp == price.timestamp
    assert store.previous("BTCUSDT", Metric.VOLATILITY) == 0.01


@pytest.mark.parametrize(
    "values,expected",
    [
        ([60.0, 55.0, 50.0], True),
        ([60.0, 58.0, 56.0], False),  # 单调但跌幅不足 5 点
        ([60.0, 55.0, 56.0], False),
        ([60.0, 60.0, 50.0], False),
        ([60.0, 50.0], False),  # 样本不足
    ],
)
def test_rsi_weakening(store_and_clock, values, expected):
    store, _ = store_and_clock
    _fill(store, "BTCUSDT", Metric.RSI, values)
    assert store.is_weakening("BTCUSDT", Metric.RSI, 3) is expected


def test_price_weakening_has_no_minimum_decline(store_and_clock):
    store, _ = store_and_clock
    _fill(store, "BTCUSDT", Metric.PRICE, [100.0, 99.9, 99.8])
    assert store.is_weakening("BTCUSDT", Metric.PRICE, 3)


def test_percentile_neutral_with_few_samples(store_and_clock):
    store, _ = store_and_clock
    _fill(store, "BTCUSDT", Metric.VOLATILITY, [0.01] * 9)
    assert store.percentile_rank("BTCUSDT", Metric.VOLATILITY, 1.0) == 0.5


def test_percentile_rank(store_and_clock):
    store, _ = store_and_clock
    _fill(store, "BTCUSDT", Metric.VOLATILITY, [float(i) for i in range(1, 21)])
    assert store.percentile_rank("BTCUSDT", Metric.VOLATILITY, 10.0) == pytest.approx(0.5)
    assert store.percentile_rank("BTCUSDT", Metric.VOLATILITY, 15.0) == pytest.approx(0.75)
    assert store.percentile_rank("BTCUSDT", Metric.VOLATILITY, 0.0) == 0.0
    assert store.percentile_rank("BTCUSDT", Metric.VOLATILITY, 99.0) == 1.0


def test_ttl_is_per_metric(store_and_clock):
    store, clock = store_and_clock
    store.record_batch("BTCUSDT", rsi=50.0, volatility=0.02, price=100.0)
    clock.advance(hours=3)
    assert store.history("BTCUSDT", Metric.PRICE) == []
    assert store.previous("BTCUSDT", Metric.RSI) == 50.0
    clock.advance(hours=22)
    assert store.history("BTCUSDT", Metric.RSI) == []
    assert store.previous("BTCUSDT", Metric.VOLATILITY) == 0.02


def test_write_refreshes_ttl(store_and_clock):
    store, clock = store_and_clock
    store.record("BTCUSDT", Metric.PRICE, 1.0)
    clock.advance(hours=1, minutes=30)
    store.record("BTCUSDT", Metric.PRICE, 2.0)
    clock.advance(hours=1)
    assert [s.value for s in store.history("BTCUSDT", Metric.PRICE)] == [1.0, 2.0]


def test_touch_shortens_expiry(store_and_clock):
    store, clock = store_and_clock
    store.record_batch("BTCUSDT", rsi=50.0, volatility=0.02, price=100.0)
    store.touch("BTCUSDT", timedelta(hours=1))
    clock.advance(hours=2)
    for metric in Metric:
        assert store.history("BTCUSDT", metric) == []


def test_sqlite_persists_across_instances(tmp_path):
    path = str(tmp_path / "metrics.sqlite3")
    clock = FakeClock()
    first = SqliteMetricStore(path, clock=clock)
    _fill(first, "BTCUSDT", Metric.RSI, [40.0, 41.0])
    first.close()

    second = SqliteMetricStore(path, clock=clock)
    try:
        assert [s.value for s in second.history("BTCUSDT", Metric.RSI)] == [40.0, 41.0]
    finally:
        second.close()


def test_sqlite_errors_are_logged_not_raised(tmp_path):
    store = SqliteMetricStore(str(tmp_path / "metrics.sqlite3"), clock=FakeClock())
    store.close()
    store.record("BTCUSDT", Metric.RSI, 50.0)
    assert store.history("BTCUSDT", Metric.RSI) == []
    assert store.is_weakening("BTCUSDT", Metric.RSI) is False


def test_build_metric_store():
    assert isinstance(build_metric_store("memory"), InMemoryMetricStore)
    with pytest.raises(ValueError):
        build_metric_store("redis")
    with pytest.raises(ValueError):
        InMemoryMetricStore(capacity=0)


def test_purge_expired_drops_stale_keys(store_and_clock):
    store, clock = store_and_clock
    store.record_batch("BTCUSDT", rsi=50.0, volatility=0.02, price=100.0)
    clock.advance(hours=3)
    # 只有价格键（2h）过期
    assert store.purge_expired() == 1
    assert store.previous("BTCUSDT", Metric.RSI) == 50.0
    clock.advance(days=31)
    assert store.purge_expired() == 2
    assert store.purge_expired() == 0


def test_memory_store_forgets_churned_symbols():
    clock = FakeClock()
    store = InMemoryMetricStore(clock=clock)
    for i in range(20):
        store.record(f"SYM{i}USDT", Metric.PRICE, 1.0)
    assert len(store) == 20
    clock.advance(hours=3)
    assert store.history("SYM0USDT", Metric.PRICE) == []
    assert len(store) == 19
    store.purge_expired()
    assert len(store) == 0
    store.record("SYM0USDT", Metric.PRICE, 2.0)
    assert store.previous("SYM0USDT", Metric.PRICE) == 2.0
