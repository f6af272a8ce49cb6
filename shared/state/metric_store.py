"""历史指标存储（RSI / 波动率 / 价格）。

目标
----
- 记住每个交易对最近的标量指标，让决策引擎识别“指标自身的方向变化”
  （例如 RSI 连续 3 期走弱），这是单个快照看不出来的。

设计
----
- 每个 (symbol, metric) 是一个有界列表：新样本插在头部，超过容量截断最旧的；
  读取时按时间正序返回。
- 过期按指标类别独立设置（RSI 24h、波动率 30 天、价格 2h），每次写入刷新。
- 存储异常在边界内捕获并记录日志，调用方拿到安全默认值（空历史、0.5 分位），
  决策引擎不会因为历史上下文缺失而中断。
- 两个后端：进程内（按键加锁，不同交易对互不争用）与 SQLite（本地文件，WAL）。
"""

from __future__ import annotations

import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Deque

from shared.utils.logging import setup_logger

DEFAULT_CAPACITY = 100
PERCENTILE_WINDOW = 50
PERCENTILE_MIN_SAMPLES = 10
NEUTRAL_PERCENTILE = 0.5
CLEANUP_TTL = timedelta(hours=1)


class Metric(str, Enum):
    RSI = "rsi"
    VOLATILITY = "volatility"
    PRICE = "price"


METRIC_TTL: dict[Metric, timedelta] = {
    Metric.RSI: timedelta(hours=24),
    Metric.VOLATILITY: timedelta(days=30),
    Metric.PRICE: timedelta(hours=2),
}

# 判定“走弱”所需的最小累计跌幅
WEAKENING_THRESHOLD: dict[Metric, float] = {
    Metric.RSI: 5.0,
    Metric.VOLATILITY: 0.0,
    Metric.PRICE: 0.0,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MetricSample:
    value: float
    timestamp: datetime


class MetricStore(ABC):
    """历史指标存储的公共语义；子类只实现原始读写。"""

    def __init__(self, capacity: int = DEFAULT_CAPACITY, clock: Callable[[], datetime] | None = None):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.capacity = int(capacity)
        self._clock = clock or _utc_now
        self.logger = setup_logger("metric-store")

    # --- backend primitives ---

    @abstractmethod
    def _append(self, symbol: str, metric: Metric, sample: MetricSample, expires_at: datetime) -> None:
        """头部插入并截断到容量，同时刷新该键的过期时间。"""

    @abstractmethod
    def _read_newest_first(self, symbol: str, metric: Metric, count: int, now: datetime) -> list[MetricSample]:
        """读取最新的 `count` 个样本（新 -> 旧）；已过期的键视为空。"""

    @abstractmethod
    def _expire_symbol(self, symbol: str, expires_at: datetime) -> None:
        """把某交易对所有已存在的键的过期时间重置为 `expires_at`。"""

    @abstractmethod
    def _purge_expired(self, now: datetime) -> int:
        """删除所有已过期的键，返回删除的键数。"""

    # --- public API ---

    def record(self, symbol: str, metric: Metric | str, value: float, timestamp: datetime | None = None) -> None:
        metric = Metric(metric)
        ts = timestamp or self._clock()
        try:
            sample = MetricSample(value=float(value), timestamp=ts)
            self._append(symbol, metric, sample, self._clock() + METRIC_TTL[metric])
            self.logger.debug("Stored %s %s for %s", metric.value, value, symbol)
        except (sqlite3.Error, OSError, ValueError, TypeError) as exc:
            self.logger.error("Failed to store %s for %s: %s", metric.value, symbol, exc)

    def record_batch(
        self,
        symbol: str,
        *,
        rsi: float,
        volatility: float,
        price: float,
        timestamp: datetime | None = None,
    ) -> None:
        """一次评估的三项指标共用同一个时间戳写入。"""
        ts = timestamp or self._clock()
        self.record(symbol, Metric.RSI, rsi, ts)
        self.record(symbol, Metric.VOLATILITY, volatility or 0.0, ts)
        self.record(symbol, Metric.PRICE, price, ts)

    def history(self, symbol: str, metric: Metric | str, count: int = 10) -> list[MetricSample]:
        """最近 `count` 个样本，按时间正序（窗口内最旧的在前）。"""
        metric = Metric(metric)
        if count <= 0:
            return []
        try:
            newest_first = self._read_newest_first(symbol, metric, int(count), self._clock())
        except (sqlite3.Error, OSError, ValueError, TypeError) as exc:
            self.logger.error("Failed to read %s history for %s: %s", metric.value, symbol, exc)
            return []
        return list(reversed(newest_first))

    def previous(self, symbol: str, metric: Metric | str) -> float | None:
        """最近一次存储的样本值；没有则为 None。"""
        hist = self.history(symbol, metric, 1)
        return hist[-1].value if hist else None

    def is_weakening(
        self,
        symbol: str,
        metric: Metric | str,
        periods: int = 3,
        min_decline: float | None = None,
    ) -> bool:
        """最近 `periods` 个样本严格递减且累计跌幅超过阈值（RSI 为 5 点）。

        两个条件缺一不可：小幅单调漂移不算走弱。
        """
        metric = Metric(metric)
        if periods < 2:
            return False
        threshold = WEAKENING_THRESHOLD[metric] if min_decline is None else float(min_decline)
        hist = self.history(symbol, metric, periods)
        if len(hist) < periods:
            return False
        values = [s.value for s in hist]
        for prev, curr in zip(values, values[1:]):
            if curr >= prev:
                return False
        return (values[0] - values[-1]) > threshold

    def percentile_rank(self, symbol: str, metric: Metric | str, current_value: float) -> float:
        """历史样本中 <= current_value 的比例；样本少于 10 个时返回 0.5。"""
        hist = self.history(symbol, metric, PERCENTILE_WINDOW)
        if len(hist) < PERCENTILE_MIN_SAMPLES:
            return NEUTRAL_PERCENTILE
        values = sorted(s.value for s in hist)
        rank = sum(1 for v in values if v <= current_value)
        percentile = rank / len(values)
        self.logger.debug("%s percentile for %s: %.2f", Metric(metric).value, symbol, percentile)
        return percentile

    def touch(self, symbol: str, ttl: timedelta = CLEANUP_TTL) -> None:
        """交易对被移出关注列表时调用：把它的历史过期时间缩短到 `ttl`。"""
        try:
            self._expire_symbol(symbol, self._clock() + ttl)
        except (sqlite3.Error, OSError) as exc:
            self.logger.error("Failed to cleanup history for %s: %s", symbol, exc)

    def purge_expired(self) -> int:
        """批量清理已过期的键（交易周期开始时调用）。"""
        try:
            removed = self._purge_expired(self._clock())
        except (sqlite3.Error, OSError) as exc:
            self.logger.error("Failed to purge expired history: %s", exc)
            return 0
        if removed:
            self.logger.debug("Purged %d expired metric key(s)", removed)
        return removed

    def close(self) -> None:
        return None


class _Series:
    __slots__ = ("samples", "expires_at", "lock", "retired")

    def __init__(self, capacity: int):
        self.samples: Deque[MetricSample] = deque(maxlen=capacity)
        self.expires_at: datetime | None = None
        self.lock = threading.Lock()
        # 已从注册表移除；持有旧引用的写入方需要重新取键
        self.retired = False

    def expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class InMemoryMetricStore(MetricStore):
    """进程内后端：每个 (symbol, metric) 一把锁，交易对之间不互相阻塞。

    过期的键会从注册表中移除（读取时顺带移除，或由 `purge_expired` 批量清理），
    交易对轮换时内存不会无限增长。锁顺序固定为先注册表锁、后键锁。
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, clock: Callable[[], datetime] | None = None):
        super().__init__(capacity=capacity, clock=clock)
        self._series: dict[tuple[str, Metric], _Series] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._series)

    def _series_for_write(self, symbol: str, metric: Metric) -> _Series:
        with self._registry_lock:
            return self._series.setdefault((symbol, metric), _Series(self.capacity))

    def _retire_if_expired(self, key: tuple[str, Metric], now: datetime) -> bool:
        with self._registry_lock:
            series = self._series.get(key)
            if series is None:
                return False
            with series.lock:
                if not series.expired(now):
                    return False
                series.retired = True
                series.samples.clear()
            del self._series[key]
            return True

    def _append(self, symbol: str, metric: Metric, sample: MetricSample, expires_at: datetime) -> None:
        while True:
            series = self._series_for_write(symbol, metric)
            with series.lock:
                if series.retired:
                    continue
                if series.expired(self._clock()):
                    series.samples.clear()
                series.samples.appendleft(sample)
                series.expires_at = expires_at
                return

    def _read_newest_first(self, symbol: str, metric: Metric, count: int, now: datetime) -> list[MetricSample]:
        series = self._series.get((symbol, metric))
        if series is None:
            return []
        with series.lock:
            if not series.expired(now):
                return list(series.samples)[:count]
        self._retire_if_expired((symbol, metric), now)
        return []

    def _expire_symbol(self, symbol: str, expires_at: datetime) -> None:
        for metric in Metric:
            series = self._series.get((symbol, metric))
            if series is None:
                continue
            with series.lock:
                if series.samples:
                    series.expires_at = expires_at

    def _purge_expired(self, now: datetime) -> int:
        return sum(1 for key in list(self._series.keys()) if self._retire_if_expired(key, now))


def _to_epoch(ts: datetime) -> float:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp()


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class SqliteMetricStore(MetricStore):
    """SQLite 后端：样本表 + 键过期表。单连接串行访问。"""

    def __init__(
        self,
        path: str | Path,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], datetime] | None = None,
    ):
        super().__init__(capacity=capacity, clock=clock)
        self.path = Path(path)
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), isolation_level=None, check_same_thread=False)
        self._lock = threading.Lock()
        if str(path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

    def close(self) -> None:
        try:
            self._conn.close()
        except sqlite3.Error as exc:
            self.logger.warning("Failed to close metric store: %s", exc)

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS metric_samples (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              symbol TEXT NOT NULL,
              metric TEXT NOT NULL,
              value REAL NOT NULL,
              ts REAL NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS metric_keys (
              symbol TEXT NOT NULL,
              metric TEXT NOT NULL,
              expires_at REAL NOT NULL,
              PRIMARY KEY (symbol, metric)
            );
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_metric_samples_key ON metric_samples(symbol, metric, id);"
        )

    def _is_expired(self, symbol: str, metric: Metric, now: datetime) -> bool:
        row = self._conn.execute(
            "SELECT expires_at FROM metric_keys WHERE symbol = ? AND metric = ?;",
            (symbol, metric.value),
        ).fetchone()
        return row is not None and _to_epoch(now) >= float(row[0])

    def _drop_key(self, symbol: str, metric: Metric) -> None:
        self._conn.execute(
            "DELETE FROM metric_samples WHERE symbol = ? AND metric = ?;", (symbol, metric.value)
        )
        self._conn.execute("DELETE FROM metric_keys WHERE symbol = ? AND metric = ?;", (symbol, metric.value))

    def _append(self, symbol: str, metric: Metric, sample: MetricSample, expires_at: datetime) -> None:
        with self._lock:
            if self._is_expired(symbol, metric, self._clock()):
                self._drop_key(symbol, metric)
            self._conn.execute(
                "INSERT INTO metric_samples (symbol, metric, value, ts) VALUES (?, ?, ?, ?);",
                (symbol, metric.value, sample.value, _to_epoch(sample.timestamp)),
            )
            self._conn.execute(
                """
                DELETE FROM metric_samples
                WHERE symbol = ? AND metric = ? AND id NOT IN (
                  SELECT id FROM metric_samples WHERE symbol = ? AND metric = ?
                  ORDER BY id DESC LIMIT ?
                );
                """,
                (symbol, metric.value, symbol, metric.value, self.capacity),
            )
            self._conn.execute(
                """
                INSERT INTO metric_keys (symbol, metric, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(symbol, metric) DO UPDATE SET expires_at = excluded.expires_at;
                """,
                (symbol, metric.value, _to_epoch(expires_at)),
            )

    def _read_newest_first(self, symbol: str, metric: Metric, count: int, now: datetime) -> list[MetricSample]:
        with self._lock:
            if self._is_expired(symbol, metric, now):
                self._drop_key(symbol, metric)
                return []
            rows = self._conn.execute(
                """
                SELECT value, ts FROM metric_samples
                WHERE symbol = ? AND metric = ?
                ORDER BY id DESC LIMIT ?;
                """,
                (symbol, metric.value, count),
            ).fetchall()
        return [MetricSample(value=float(v), timestamp=_from_epoch(ts)) for v, ts in rows]

    def _expire_symbol(self, symbol: str, expires_at: datetime) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE metric_keys SET expires_at = ? WHERE symbol = ?;",
                (_to_epoch(expires_at), symbol),
            )

    def _purge_expired(self, now: datetime) -> int:
        with self._lock:
            rows = self._conn.execute(
                "SELECT symbol, metric FROM metric_keys WHERE expires_at <= ?;", (_to_epoch(now),)
            ).fetchall()
            for symbol, metric in rows:
                self._drop_key(symbol, Metric(metric))
        return len(rows)


def build_metric_store(
    backend: str = "memory",
    path: str | Path | None = None,
    capacity: int = DEFAULT_CAPACITY,
    clock: Callable[[], datetime] | None = None,
) -> MetricStore:
    """按配置构建指标存储。"""
    backend_l = str(backend or "memory").strip().lower()
    if backend_l == "memory":
        return InMemoryMetricStore(capacity=capacity, clock=clock)
    if backend_l == "sqlite":
        return SqliteMetricStore(path or "dataset/state/metrics.sqlite3", capacity=capacity, clock=clock)
    raise ValueError(f"Unknown metric store backend: {backend}")
