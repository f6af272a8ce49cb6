"""波动率反向加权：base * (avg_vol / max(vol, floor))，上限为 max_position_size。"""

from __future__ import annotations

from dataclasses import dataclass

from sizing.base import SizingContext


@dataclass(frozen=True)
class RiskParitySizer:
    ctx: SizingContext
    assumed_average_volatility: float = 0.15
    volatility_floor: float = 0.05

    def position_size(self, *, volatility: float | None = None, win_rate: float | None = None) -> float:
        vol = max(float(volatility or 0.0), self.volatility_floor)
        adjustment = self.assumed_average_volatility / vol
        return min(self.ctx.base_size * adjustment, self.ctx.max_position_size)
