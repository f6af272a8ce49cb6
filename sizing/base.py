"""Sizer 抽象与构建逻辑。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from shared.config.schema import PositionSizing


class Sizer(Protocol):
    """Sizer：给出一笔新开仓的名义金额（报价货币）。"""

    def position_size(self, *, volatility: float | None, win_rate: float | None) -> float: ...


@dataclass(frozen=True)
class SizingContext:
    """各 sizer 共享的资金约束（由 RiskManager 从配置派生）。"""

    available_capital: float
    max_active_symbols: int
    min_position_size: float
    max_position_size: float

    @property
    def base_size(self) -> float:
        if self.max_active_symbols <= 0:
            return 0.0
        return self.available_capital / self.max_active_symbols


def build_sizer(sizing_cfg: PositionSizing, ctx: SizingContext) -> Sizer:
    """按 `position_sizing.strategy` 构建 sizer。

    - equal_weight: 可用资金平均分配到 max_active_symbols
    - risk_parity: 按波动率反向缩放
    - kelly_criterion: 凯利比例，胜率 <= 50% 时退回最小仓位
    - fixed_amount: 恒为最小仓位
    """
    from sizing.equal_weight import EqualWeightSizer
    from sizing.fixed_amount import FixedAmountSizer
    from sizing.kelly import KellySizer
    from sizing.risk_parity import RiskParitySizer

    strategy = str(sizing_cfg.strategy).strip().lower().replace("-", "_")
    if strategy == "equal_weight":
        return EqualWeightSizer(ctx=ctx)
    if strategy == "risk_parity":
        return RiskParitySizer(
            ctx=ctx,
            assumed_average_volatility=sizing_cfg.assumed_average_volatility,
            volatility_floor=sizing_cfg.volatility_floor,
        )
    if strategy == "kelly_criterion":
        return KellySizer(
            ctx=ctx,
            average_win=sizing_cfg.kelly_average_win,
            average_loss=sizing_cfg.kelly_average_loss,
        )
    return FixedAmountSizer(ctx=ctx)
