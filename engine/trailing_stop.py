"""移动止损：按 (symbol, order_id) 记录入场以来的最高标记价。"""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from shared.models.models import Position
from shared.state.ttl_cache import TTLCache

HIGH_WATERMARK_TTL_SECS = 24 * 3600


class TrailingStopTracker:
    def __init__(
        self,
        trailing_pct: float,
        ttl_secs: float = HIGH_WATERMARK_TTL_SECS,
        max_entries: int = 1024,
        clock: Callable[[], datetime] | None = None,
    ):
        self.trailing_pct = float(trailing_pct)
        self._highs: TTLCache[tuple[str, str], float] = TTLCache(ttl_secs, max_entries, clock=clock)

    def stop_price(self, position: Position, current_price: float) -> float:
        """更新最高价并返回止损价：max(最高价 * (1 - pct), 原始止损价)。"""
        key = (position.symbol, position.order_id)
        highest = self._highs.get(key)
        if highest is None or current_price > highest:
            highest = current_price
            self._highs.set(key, highest)
        return max(highest * (1.0 - self.trailing_pct / 100.0), position.stop_loss)

    def is_hit(self, position: Position, current_price: float) -> bool:
        return current_price <= self.stop_price(position, current_price)

    def forget(self, position: Position) -> None:
        self._highs.pop((position.symbol, position.order_id))
