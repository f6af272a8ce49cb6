"""固定金额：始终使用最小仓位。"""

from __future__ import annotations

from dataclasses import dataclass

from sizing.base import SizingContext


@dataclass(frozen=True)
class FixedAmountSizer:
    ctx: SizingContext

    def position_size(self, *, volatility: float | None = None, win_rate: float | None = None) -> float:
        return self.ctx.min_position_size
