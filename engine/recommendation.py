"""决策引擎输出：每种卖出原因一个 Recommendation 子类。

原因、紧急度、动作由子类固定（ClassVar），实例只携带置信度与证据列表，
下游按类型（或 `reason`）分派，不再依赖散落的字符串约定。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar


class Action(str, Enum):
    SELL = "SELL"
    HOLD = "HOLD"


class Reason(str, Enum):
    EMERGENCY_SELL = "EMERGENCY_SELL"
    TREND_REVERSAL = "TREND_REVERSAL"
    STOP_LOSS = "STOP_LOSS"
    TIME_BASED_LOSS = "TIME_BASED_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    HOLD = "HOLD"


class Urgency(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    NONE = "NONE"


@dataclass(frozen=True)
class Recommendation:
    confidence: float
    details: tuple[str, ...] = ()

    reason: ClassVar[Reason]
    urgency: ClassVar[Urgency]
    action: ClassVar[Action] = Action.SELL

    @property
    def should_sell(self) -> bool:
        return self.action == Action.SELL

    @property
    def message(self) -> str:
        evidence = ", ".join(self.details)
        if self.should_sell:
            return f"Recommend {self.reason.value}: {evidence}"
        return f"HOLD: {evidence}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "reason": self.reason.value,
            "confidence": round(float(self.confidence), 4),
            "urgency": self.urgency.value,
            "details": list(self.details),
            "message": self.message,
        }


@dataclass(frozen=True)
class EmergencySell(Recommendation):
    reason: ClassVar[Reason] = Reason.EMERGENCY_SELL
    urgency: ClassVar[Urgency] = Urgency.HIGH


@dataclass(frozen=True)
class TrendReversal(Recommendation):
    reason: ClassVar[Reason] = Reason.TREND_REVERSAL
    urgency: ClassVar[Urgency] = Urgency.MEDIUM


@dataclass(frozen=True)
class StopLoss(Recommendation):
    reason: ClassVar[Reason] = Reason.STOP_LOSS
    urgency: ClassVar[Urgency] = Urgency.HIGH


@dataclass(frozen=True)
class TimeBasedLoss(Recommendation):
    reason: ClassVar[Reason] = Reason.TIME_BASED_LOSS
    urgency: ClassVar[Urgency] = Urgency.LOW


@dataclass(frozen=True)
class TakeProfit(Recommendation):
    reason: ClassVar[Reason] = Reason.TAKE_PROFIT
    urgency: ClassVar[Urgency] = Urgency.LOW


@dataclass(frozen=True)
class Hold(Recommendation):
    reason: ClassVar[Reason] = Reason.HOLD
    urgency: ClassVar[Urgency] = Urgency.NONE
    action: ClassVar[Action] = Action.HOLD


RECOMMENDATION_TYPES: dict[Reason, type[Recommendation]] = {
    cls.reason: cls
    for cls in (EmergencySell, TrendReversal, StopLoss, TimeBasedLoss, TakeProfit, Hold)
}
