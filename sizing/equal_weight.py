"""等权：available_capital / max_active_symbols。"""

from __future__ import annotations

from dataclasses import dataclass

from sizing.base import SizingContext


@dataclass(frozen=True)
class EqualWeightSizer:
    ctx: SizingContext

    def position_size(self, *, volatility: float | None = None, win_rate: float | None = None) -> float:
        return self.ctx.base_size
