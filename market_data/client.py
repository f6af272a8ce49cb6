"""行情数据提供方（Binance REST / 静态 / 本地随机游走）。

决策引擎只依赖 `MarketDataProvider` 协议；所有传输层错误（含超时）
统一包装为 `MarketDataError`，由调用方决定降级策略。这里不做自动重试。
"""

from __future__ import annotations

import random
import threading
from datetime import datetime, timedelta, timezone
from typing import Mapping, Protocol, Sequence

import requests

from shared.models.models import Candle
from shared.utils.logging import setup_logger

_INTERVAL_SECONDS = {
    "1m": 60,
    "3m": 180,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "2h": 7200,
    "4h": 14400,
    "1d": 86400,
}


class MarketDataError(RuntimeError):
    """行情获取失败（网络、超时、响应格式）。"""


def interval_to_timedelta(interval: str) -> timedelta:
    try:
        return timedelta(seconds=_INTERVAL_SECONDS[interval])
    except KeyError as exc:
        raise ValueError(f"Unsupported interval: {interval}") from exc


class MarketDataProvider(Protocol):
    """行情协议：K 线、最新价、24h 涨跌幅。"""

    def get_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]: ...

    def get_price(self, symbol: str) -> float: ...

    def get_24h_change(self, symbol: str) -> float: ...


class BinanceMarketDataProvider:
    """Binance 公共 REST 行情（无需鉴权）。"""

    def __init__(self, base_url: str = "https://api.binance.com", timeout: float = 10.0, logger=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.logger = logger or setup_logger("market-data")

    def _get(self, path: str, params: dict) -> object:
        url = f"{self.base_url}{path}"
        try:
            resp = requests.get(url, params=params, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.Timeout as exc:
            raise MarketDataError(f"Timeout fetching {path} {params}") from exc
        except (requests.RequestException, ValueError) as exc:
            raise MarketDataError(f"Failed fetching {path} {params}: {exc}") from exc

    def get_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        data = self._get("/api/v3/klines", {"symbol": symbol, "interval": interval, "limit": int(limit)})
        if not isinstance(data, list):
            raise MarketDataError(f"Unexpected klines payload for {symbol}: {type(data).__name__}")
        try:
            return [
                Candle(
                    symbol=symbol,
                    open=float(row[1]),
                    high=float(row[2]),
                    low=float(row[3]),
                    close=float(row[4]),
                    volume=float(row[5]),
                    start_ts=datetime.fromtimestamp(int(row[0]) / 1000, tz=timezone.utc),
                    end_ts=datetime.fromtimestamp(int(row[6]) / 1000, tz=timezone.utc),
                )
                for row in data
            ]
        except (IndexError, TypeError, ValueError) as exc:
            raise MarketDataError(f"Malformed kline row for {symbol}: {exc}") from exc

    def get_price(self, symbol: str) -> float:
        data = self._get("/api/v3/ticker/price", {"symbol": symbol})
        try:
            return float(data["price"])  # type: ignore[index]
        except (KeyError, TypeError, ValueError) as exc:
            raise MarketDataError(f"Malformed price payload for {symbol}") from exc

    def get_24h_change(self, symbol: str) -> float:
        data = self._get("/api/v3/ticker/24hr", {"symbol": symbol})
        try:
            return float(data["priceChangePercent"])  # type: ignore[index]
        except (KeyError, TypeError, ValueError) as exc:
            raise MarketDataError(f"Malformed 24h ticker payload for {symbol}") from exc


class StaticMarketDataProvider:
    """固定数据源，主要用于测试与离线评估。

    `candles` 以 (symbol, interval) 为键；缺失的键抛 `MarketDataError`，
    便于直接覆盖降级路径。
    """

    def __init__(
        self,
        candles: Mapping[tuple[str, str], Sequence[Candle]] | None = None,
        prices: Mapping[str, float] | None = None,
        changes_24h: Mapping[str, float] | None = None,
    ):
        self.candles = dict(candles or {})
        self.prices = dict(prices or {})
        self.changes_24h = dict(changes_24h or {})
        self.calls: list[tuple[str, str, int]] = []

    def get_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        self.calls.append((symbol, interval, int(limit)))
        rows = self.candles.get((symbol, interval))
        if rows is None:
            raise MarketDataError(f"No candles for {symbol} {interval}")
        return list(rows)[-int(limit):]

    def get_price(self, symbol: str) -> float:
        if symbol in self.prices:
            return float(self.prices[symbol])
        rows = self.candles.get((symbol, "15m")) or next(
            (v for (s, _), v in self.candles.items() if s == symbol), None
        )
        if not rows:
            raise MarketDataError(f"No price for {symbol}")
        return float(rows[-1].close)

    def get_24h_change(self, symbol: str) -> float:
        if symbol not in self.changes_24h:
            raise MarketDataError(f"No 24h change for {symbol}")
        return float(self.changes_24h[symbol])


class FakeMarketDataProvider:
    """可复现的随机游走行情（dry-run 使用）。

    每个交易对维护一条 15m 粒度的基础价格路径，“当前”固定在第
    `HISTORY_STEPS + offset` 个点；任意周期、任意长度的 K 线都截止于同一时刻，
    `advance()` 推进一步以模拟新周期。
    """

    HISTORY_STEPS = 2000

    def __init__(self, seed: int = 7, start_price: float = 100.0, step_volatility: float = 0.004, logger=None):
        self.seed = int(seed)
        self.start_price = float(start_price)
        self.step_volatility = float(step_volatility)
        self.logger = logger or setup_logger("market-fake")
        self._paths: dict[str, list[float]] = {}
        self._rngs: dict[str, random.Random] = {}
        self._offset = 0
        self._lock = threading.Lock()

    def _path(self, symbol: str, length: int) -> list[float]:
        with self._lock:
            path = self._paths.get(symbol)
            if path is None:
                path = [self.start_price]
                self._paths[symbol] = path
                self._rngs[symbol] = random.Random(f"{self.seed}:{symbol}")
            rng = self._rngs[symbol]
            while len(path) < length:
                path.append(max(0.01, path[-1] * (1.0 + rng.gauss(0.0, self.step_volatility))))
            return path[:length]

    def advance(self, steps: int = 1) -> None:
        self._offset += int(steps)

    def get_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        step = interval_to_timedelta(interval)
        stride = max(1, int(step / timedelta(minutes=15)))
        limit = int(limit)
        now_idx = self.HISTORY_STEPS + self._offset
        path = self._path(symbol, now_idx + 1)
        end = datetime.now(timezone.utc)
        candles: list[Candle] = []
        for i in range(limit):
            hi_idx = now_idx + 1 - (limit - i - 1) * stride
            window = path[max(0, hi_idx - stride - 1):max(1, hi_idx)]
            start_ts = end - step * (limit - i)
            candles.append(
                Candle(
                    symbol=symbol,
                    open=window[0],
                    high=max(window),
                    low=min(window),
                    close=window[-1],
                    volume=1000.0 + 50.0 * (i % 7),
                    start_ts=start_ts,
                    end_ts=start_ts + step,
                )
            )
        return candles

    def get_price(self, symbol: str) -> float:
        return float(self._path(symbol, self.HISTORY_STEPS + self._offset + 1)[-1])

    def get_24h_change(self, symbol: str) -> float:
        candles = self.get_candles(symbol, "1h", 24)
        first = candles[0].open
        return (candles[-1].close - first) / first * 100.0 if first else 0.0


def get_market_data_provider(
    mode: str,
    exchange_name: str = "binance",
    base_url: str | None = None,
    timeout: float = 10.0,
    logger=None,
) -> MarketDataProvider:
    """根据运行模式选择行情数据源。

    Parameters
    ----------
    mode:
        dry-run（本地随机游走）或 paper（Binance 公共行情 + 模拟撮合）。
    exchange_name:
        交易所名称（当前仅支持 binance）。
    """
    mode_l = mode.lower().replace("_", "-")
    if mode_l == "paper":
        if exchange_name.lower() == "binance":
            return BinanceMarketDataProvider(base_url=base_url or "https://api.binance.com", timeout=timeout, logger=logger)
        raise ValueError(f"Unsupported exchange for paper mode: {exchange_name}")
    if mode_l == "dry-run":
        return FakeMarketDataProvider(logger=logger)
    raise ValueError(f"Unsupported market mode: {mode}")
