"""带过期时间与容量上限的键值缓存（symbol -> entry）。

用于趋势/波动率等短期复用的分析结果，以及移动止损的最高价跟踪。
容量满时淘汰最早写入的键，避免交易对轮换导致无界增长。
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Generic, Hashable, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    value: V
    stored_at: datetime
    expires_at: datetime


class TTLCache(Generic[K, V]):
    def __init__(
        self,
        ttl_secs: float,
        max_entries: int = 256,
        clock: Callable[[], datetime] | None = None,
    ):
        if ttl_secs <= 0:
            raise ValueError("ttl_secs must be > 0")
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.ttl = timedelta(seconds=float(ttl_secs))
        self.max_entries = int(max_entries)
        self._clock = clock or utc_now
        self._entries: OrderedDict[K, CacheEntry[V]] = OrderedDict()
        self._lock = threading.Lock()

    def set(self, key: K, value: V, ttl_secs: float | None = None) -> CacheEntry[V]:
        now = self._clock()
        ttl = timedelta(seconds=float(ttl_secs)) if ttl_secs is not None else self.ttl
        entry = CacheEntry(value=value, stored_at=now, expires_at=now + ttl)
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = entry
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        return entry

    def get_entry(self, key: K) -> CacheEntry[V] | None:
        """返回带时间戳的条目；是否“够新”由调用方判断。"""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now >= entry.expires_at:
                del self._entries[key]
                return None
            return entry

    def get(self, key: K, default: V | None = None) -> V | None:
        entry = self.get_entry(key)
        return entry.value if entry is not None else default

    def pop(self, key: K) -> V | None:
        with self._lock:
            entry = self._entries.pop(key, None)
        return entry.value if entry is not None else None

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return self.get_entry(key) is not None  # type: ignore[arg-type]
