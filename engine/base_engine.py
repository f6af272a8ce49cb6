"""引擎基类。

引擎负责“按周期推进”，具体的评估/执行/记账都在 PortfolioManager 中，
这样 dry-run 与 paper 共用同一套周期逻辑。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class EngineResult:
    """引擎运行结果：总览 + 每个周期的摘要。"""

    summary: dict[str, Any]
    cycles: list[dict[str, Any]] = field(default_factory=list)


class BaseEngine(ABC):
    @abstractmethod
    def run(self) -> EngineResult:
        raise NotImplementedError

    def close(self) -> None:
        """释放外部资源（默认无）。"""
        return None
