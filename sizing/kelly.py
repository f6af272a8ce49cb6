"""凯利公式仓位。

f = p - q / b，其中 b = 平均盈利 / 平均亏损（赔率），p 为胜率，q = 1 - p。
胜率缺失或 <= 50% 时凯利值无意义，直接返回最小仓位；
否则仓位 = available_capital * f，夹在 [min, max] 之间。
"""

from __future__ import annotations

from dataclasses import dataclass

from sizing.base import SizingContext


def kelly_fraction(win_rate: float, average_win: float, average_loss: float) -> float:
    if average_win <= 0 or average_loss <= 0:
        return 0.0
    odds = average_win / average_loss
    return win_rate - (1.0 - win_rate) / odds


@dataclass(frozen=True)
class KellySizer:
    ctx: SizingContext
    average_win: float = 0.10
    average_loss: float = 0.08

    def position_size(self, *, volatility: float | None = None, win_rate: float | None = None) -> float:
        if not win_rate or win_rate <= 0.5:
            return self.ctx.min_position_size
        fraction = kelly_fraction(float(win_rate), self.average_win, self.average_loss)
        size = self.ctx.available_capital * fraction
        return min(max(size, self.ctx.min_position_size), self.ctx.max_position_size)
