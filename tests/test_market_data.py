import pytest
import requests

from market_data import (
    BinanceMarketDataProvider,
    FakeMarketDataProvider,
    MarketDataError,
    StaticMarketDataProvider,
    get_market_data_provider,
)

from conftest import make_candles


class _Resp:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"HTTP {self.status}")

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


def _patch_get(monkeypatch, payload=None, exc=None, status=200):
    calls = []

    def fake_get(url, params=None, timeout=None):
        calls.append((url, params, timeout))
        if exc is not None:
            raise exc
        return _Resp(payload, status)

    monkeypatch.setattr(requests, "get", fake_get)
    return calls


def test_klines_are_parsed(monkeypatch):
    rows = [
        [1700000000000, "100.0", "101.0", "99.0", "100.5", "12.5", 1700000899999, "0", 10, "0", "0", "0"],
        [1700000900000, "100.5", "102.0", "100.0", "101.5", "8.0", 1700001799999, "0", 10, "0", "0", "0"],
    ]
    calls = _patch_get(monkeypatch, rows)
    provider = BinanceMarketDataProvider(base_url="https://api.example.invalid/", timeout=3)
    candles = provider.get_candles("BTCUSDT", "15m", 2)

    assert [c.close for c in candles] == [100.5, 101.5]
    assert candles[0].volume == 12.5
    assert candles[0].start_ts.timestamp() == 1700000000
    url, params, timeout = calls[0]
    assert url == "https://api.example.invalid/api/v3/klines"
    assert params == {"symbol": "BTCUSDT", "interval": "15m", "limit": 2}
    assert timeout == 3.0


def test_price_and_24h_change(monkeypatch):
    _patch_get(monkeypatch, {"price": "42.5", "priceChangePercent": "-3.25"})
    provider = BinanceMarketDataProvider()
    assert provider.get_price("BTCUSDT") == 42.5
    assert provider.get_24h_change("BTCUSDT") == -3.25


@pytest.mark.parametrize(
    "kwargs",
    [
        {"exc": requests.Timeout("slow")},
        {"exc": requests.ConnectionError("down")},
        {"payload": {}, "status": 500},
        {"payload": ValueError("not json")},
        {"payload": {"code": -1121}},
        {"payload": [["bad"]]},
    ],
)
def test_transport_and_payload_errors_become_market_data_error(monkeypatch, kwargs):
    _patch_get(monkeypatch, **kwargs)
    with pytest.raises(MarketDataError):
        BinanceMarketDataProvider().get_candles("BTCUSDT", "15m", 10)


def test_timeout_message(monkeypatch):
    _patch_get(monkeypatch, exc=requests.Timeout("slow"))
    with pytest.raises(MarketDataError, match="Timeout"):
        BinanceMarketDataProvider().get_price("BTCUSDT")


def test_static_provider():
    candles = make_candles([1.0, 2.0, 3.0])
    provider = StaticMarketDataProvider(candles={("BTCUSDT", "15m"): candles}, changes_24h={"BTCUSDT": 1.5})
    assert [c.close for c in provider.get_candles("BTCUSDT", "15m", 2)] == [2.0, 3.0]
    assert provider.get_price("BTCUSDT") == 3.0
    assert provider.get_24h_change("BTCUSDT") == 1.5
    with pytest.raises(MarketDataError):
        provider.get_candles("BTCUSDT", "1h", 2)
    with pytest.raises(MarketDataError):
        provider.get_price("ETHUSDT")


def test_fake_provider_is_reproducible():
    a = FakeMarketDataProvider(seed=11)
    b = FakeMarketDataProvider(seed=11)
    closes_a = [c.close for c in a.get_candles("BTCUSDT", "15m", 50)]
    closes_b = [c.close for c in b.get_candles("BTCUSDT", "15m", 50)]
    assert closes_a == closes_b
    assert closes_a == [c.close for c in a.get_candles("BTCUSDT", "15m", 50)]
    assert a.get_price("BTCUSDT") == closes_a[-1]


def test_fake_provider_advances():
    provider = FakeMarketDataProvider(seed=11)
    before = [c.close for c in provider.get_candles("BTCUSDT", "15m", 10)]
    provider.advance()
    after = [c.close for c in provider.get_candles("BTCUSDT", "15m", 10)]
    assert after[:-1] == before[1:]


def test_fake_provider_higher_interval_windows():
    provider = FakeMarketDataProvider(seed=5)
    hourly = provider.get_candles("ETHUSDT", "1h", 24)
    assert len(hourly) == 24
    assert all(c.low <= c.close <= c.high for c in hourly)
    assert all(c.end_ts - c.start_ts == hourly[0].end_ts - hourly[0].start_ts for c in hourly)


def test_provider_selection():
    assert isinstance(get_market_data_provider("dry_run"), FakeMarketDataProvider)
    assert isinstance(get_market_data_provider("paper"), BinanceMarketDataProvider)
    with pytest.raises(ValueError):
        get_market_data_provider("paper", exchange_name="kraken")
    with pytest.raises(ValueError):
        get_market_data_provider("live")
