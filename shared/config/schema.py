"""配置架构定义（Pydantic Schema）。

目标：
- 让配置成为“强类型 + 可演进”的边界协议；
- 写入时尽早失败（例如 min_position_size > max_position_size），
  决策引擎在评估时不再重复校验；
- 配置对象不可变：更新通过 `update_config` 产生新的已校验对象。
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _Block(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ExchangeConfig(_Block):
    """交易所配置（仅行情 REST）。"""
    name: str = "binance"
    base_url: str = "https://api.binance.com"
    request_timeout_secs: float = Field(default=10.0, gt=0)


class PortfolioSettings(_Block):
    """资金与组合规模。"""
    total_capital: float = Field(default=50.0, gt=0)
    max_loss_percentage: float = Field(default=20.0, ge=1, le=50)
    max_active_symbols: int = Field(default=5, ge=1, le=20)
    max_concurrent_orders: int = Field(default=15, ge=1, le=50)
    reserve_percentage: float = Field(default=10.0, ge=0, le=30)


class TradingPeriods(_Block):
    """持仓周期与到期认亏。"""
    period_days: float = Field(default=7.0, ge=1, le=365)
    accept_loss_after_period: bool = True
    accept_loss_threshold: float = Field(default=5.0, ge=1, le=20)
    grace_period_hours: float = Field(default=24.0, ge=1, le=168)


class LossCalculation(_Block):
    """真实亏损 vs 账面亏损的计入口径。"""
    only_realized_losses: bool = True
    include_unrealized_in_risk: bool = True
    unrealized_loss_weight: float = Field(default=0.5, ge=0, le=1)


class PositionSizing(_Block):
    """仓位规模策略。"""
    strategy: Literal["equal_weight", "risk_parity", "kelly_criterion", "fixed_amount"] = "risk_parity"
    min_position_size: float = Field(default=5.0, gt=0)
    max_position_size: float = Field(default=15.0, gt=0)
    assumed_average_volatility: float = Field(default=0.15, gt=0)
    volatility_floor: float = Field(default=0.05, gt=0)
    kelly_average_win: float = Field(default=0.10, gt=0)
    kelly_average_loss: float = Field(default=0.08, gt=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "PositionSizing":
        if self.min_position_size > self.max_position_size:
            raise ValueError(
                f"min_position_size ({self.min_position_size}) must be <= "
                f"max_position_size ({self.max_position_size})"
            )
        return self


class RiskManagement(_Block):
    """单笔持仓的止损/止盈/移动止损。"""
    stop_loss_percentage: float = Field(default=8.0, ge=1, le=20)
    take_profit_percentage: float = Field(default=15.0, ge=1, le=100)
    enable_trailing_stop: bool = True
    trailing_stop_percentage: float = Field(default=5.0, ge=1, le=15)


class DayTrading(_Block):
    enabled: bool = True
    max_holding_period_hours: float = Field(default=24.0, ge=1, le=168)
    quick_profit_target: float = Field(default=3.0, ge=0.5, le=10)


class SwingTrading(_Block):
    enabled: bool = True
    max_holding_period_days: float = Field(default=7.0, ge=1, le=30)
    target_profit_min: float = Field(default=8.0, gt=0)
    target_profit_max: float = Field(default=25.0, gt=0)


class TradingStyle(_Block):
    day_trading: DayTrading = Field(default_factory=DayTrading)
    swing_trading: SwingTrading = Field(default_factory=SwingTrading)
    dca_profit_target: float = Field(default=5.0, gt=0)


class MarketConditions(_Block):
    """大盘状态判定（参考币种 24h 平均涨跌幅）。"""
    bull_market_threshold: float = Field(default=5.0, ge=1, le=20)
    bear_market_threshold: float = Field(default=-5.0, ge=-50, le=-1)
    reference_symbols: List[str] = Field(default_factory=lambda: ["BTCUSDT", "ETHUSDT"])


class OrderManagement(_Block):
    """下单与卖出执行参数。"""
    max_orders_per_symbol: int = Field(default=3, ge=1, le=10)
    smart_limit_offset_pct: float = Field(default=0.1, ge=0)
    limit_offset_pct: float = Field(default=0.05, ge=0)
    smart_limit_timeout_secs: float = Field(default=120.0, gt=0)
    poll_interval_secs: float = Field(default=5.0, gt=0)


class EmergencySettings(_Block):
    total_loss_emergency_stop: float = Field(default=18.0, ge=5, le=30)
    flash_crash_protection: bool = True
    flash_crash_threshold: float = Field(default=-10.0, ge=-50, le=-5)
    pause_after_consecutive_losses: int = Field(default=3, ge=2, le=10)
    pause_duration_minutes: float = Field(default=60.0, ge=15, le=1440)


class DecisionEngineSettings(_Block):
    """决策引擎的数据窗口与缓存参数。"""
    candle_interval: str = "15m"
    candle_limit: int = Field(default=100, ge=20)
    longer_interval: str = "1h"
    longer_limit: int = Field(default=50, ge=20)
    hourly_change_limit: int = Field(default=5, ge=2)
    cache_ttl_secs: float = Field(default=900.0, gt=0)
    cache_max_entries: int = Field(default=256, ge=1)
    evaluation_timeout_secs: float = Field(default=30.0, gt=0)


class MetricStoreConfig(_Block):
    backend: Literal["memory", "sqlite"] = "memory"
    path: str = "dataset/state/metrics.sqlite3"
    capacity: int = Field(default=100, ge=1)


class MainConfig(_Block):
    """应用总配置。"""
    mode: Literal["dry-run", "paper"] = "dry-run"
    active_symbols: List[str] = Field(default_factory=lambda: ["BTCUSDT", "ETHUSDT", "SOLUSDT"])
    cycle_minutes: float = Field(default=15.0, gt=0)
    max_workers: int = Field(default=4, ge=1)

    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    portfolio: PortfolioSettings = Field(default_factory=PortfolioSettings)
    trading_periods: TradingPeriods = Field(default_factory=TradingPeriods)
    loss_calculation: LossCalculation = Field(default_factory=LossCalculation)
    position_sizing: PositionSizing = Field(default_factory=PositionSizing)
    risk_management: RiskManagement = Field(default_factory=RiskManagement)
    trading_style: TradingStyle = Field(default_factory=TradingStyle)
    market_conditions: MarketConditions = Field(default_factory=MarketConditions)
    order_management: OrderManagement = Field(default_factory=OrderManagement)
    emergency: EmergencySettings = Field(default_factory=EmergencySettings)
    decision_engine: DecisionEngineSettings = Field(default_factory=DecisionEngineSettings)
    metric_store: MetricStoreConfig = Field(default_factory=MetricStoreConfig)

    @model_validator(mode="before")
    @classmethod
    def _normalize_mode(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("mode"), str):
            data = dict(data)
            data["mode"] = data["mode"].replace("_", "-").lower()
        return data


def _deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def update_config(cfg: MainConfig, patch: Dict[str, Any]) -> MainConfig:
    """合并局部更新并返回新的已校验配置；原对象保持不变。

    Raises
    ------
    pydantic.ValidationError
        合并后的配置不合法（ValidationError 是 ValueError 的子类）。
    """
    merged = _deep_merge(cfg.model_dump(), patch)
    return MainConfig.model_validate(merged)


DEFAULT_OPTIMIZED_SYMBOLS = ["BTCUSDT", "ETHUSDT", "SOLUSDT", "ADAUSDT", "DOGEUSDT"]


def _capital_sizing(capital: float, max_cap: float) -> Dict[str, float]:
    min_size = max(capital * 0.05, 2.0)
    max_size = max(min(capital * 0.3, max_cap), min_size)
    return {"min_position_size": min_size, "max_position_size": max_size}


def optimized_config(capital: float = 50.0, base: MainConfig | None = None) -> MainConfig:
    """按本金规模生成的快速配置。

    - 最小仓位 = max(5% 本金, 2)，最大仓位 = min(30% 本金, 15)
    - 并发订单数 = floor(本金 / 3)，限制在 [1, 50]
    小本金时最大仓位不低于最小仓位，保证配置可通过校验。
    """
    if capital <= 0:
        raise ValueError("capital must be > 0")
    patch: Dict[str, Any] = {
        "active_symbols": list(DEFAULT_OPTIMIZED_SYMBOLS),
        "portfolio": {
            "total_capital": capital,
            "max_loss_percentage": 20.0,
            "max_active_symbols": 5,
            "max_concurrent_orders": max(1, min(50, int(capital // 3))),
            "reserve_percentage": 10.0,
        },
        "position_sizing": _capital_sizing(capital, 15.0),
    }
    return update_config(base or MainConfig(), patch)


PRESETS: Dict[str, Dict[str, Any]] = {
    "conservative": {
        "portfolio": {"max_loss_percentage": 15, "max_active_symbols": 3, "reserve_percentage": 15},
        "risk_management": {
            "stop_loss_percentage": 5,
            "take_profit_percentage": 10,
            "enable_trailing_stop": True,
            "trailing_stop_percentage": 3,
        },
        "trading_periods": {"period_days": 30, "accept_loss_after_period": True, "accept_loss_threshold": 3},
        "trading_style": {
            "day_trading": {"enabled": False},
            "swing_trading": {
                "enabled": True,
                "max_holding_period_days": 14,
                "target_profit_min": 5,
                "target_profit_max": 15,
            },
        },
    },
    "balanced": {
        "portfolio": {"max_loss_percentage": 20, "max_active_symbols": 5, "reserve_percentage": 10},
        "risk_management": {
            "stop_loss_percentage": 8,
            "take_profit_percentage": 15,
            "enable_trailing_stop": True,
            "trailing_stop_percentage": 5,
        },
        "trading_periods": {"period_days": 7, "accept_loss_after_period": True, "accept_loss_threshold": 5},
        "trading_style": {
            "day_trading": {"enabled": True, "max_holding_period_hours": 24, "quick_profit_target": 3},
            "swing_trading": {
                "enabled": True,
                "max_holding_period_days": 7,
                "target_profit_min": 8,
                "target_profit_max": 25,
            },
        },
    },
    "aggressive": {
        "portfolio": {"max_loss_percentage": 30, "max_active_symbols": 8, "reserve_percentage": 5},
        "risk_management": {
            "stop_loss_percentage": 12,
            "take_profit_percentage": 25,
            "enable_trailing_stop": True,
            "trailing_stop_percentage": 8,
        },
        "trading_periods": {"period_days": 3, "accept_loss_after_period": True, "accept_loss_threshold": 8},
        "trading_style": {
            "day_trading": {"enabled": True, "max_holding_period_hours": 12, "quick_profit_target": 5},
            "swing_trading": {
                "enabled": True,
                "max_holding_period_days": 3,
                "target_profit_min": 15,
                "target_profit_max": 50,
            },
        },
    },
    "day_trader": {
        "portfolio": {"max_loss_percentage": 25, "max_active_symbols": 6, "reserve_percentage": 8},
        "risk_management": {
            "stop_loss_percentage": 6,
            "take_profit_percentage": 12,
            "enable_trailing_stop": True,
            "trailing_stop_percentage": 4,
        },
        "trading_periods": {"period_days": 1, "accept_loss_after_period": True, "accept_loss_threshold": 4},
        "trading_style": {
            "day_trading": {"enabled": True, "max_holding_period_hours": 8, "quick_profit_target": 2},
            "swing_trading": {"enabled": False},
        },
    },
}


def apply_preset(name: str, cfg: MainConfig | None = None, capital: float | None = None) -> MainConfig:
    """在现有配置（缺省为按 50 本金生成的快速配置）上套用预设风格。

    指定 `capital` 时同时按本金重算仓位范围（最大仓位上限 50）。
    """
    preset = PRESETS.get(name)
    if preset is None:
        raise ValueError(f"Unknown preset: {name} (available: {', '.join(sorted(PRESETS))})")
    base = cfg or optimized_config(capital or 50.0)
    patch: Dict[str, Any] = dict(preset)
    if capital:
        patch = _deep_merge(
            patch,
            {"portfolio": {"total_capital": capital}, "position_sizing": _capital_sizing(capital, 50.0)},
        )
    return update_config(base, patch)
