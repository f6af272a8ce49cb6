"""纸面/干跑交易引擎（TradingEngine）。

配置 → 行情源 → 指标存储 → 决策引擎 → 组合编排 → 按周期运行 → 总结。
"""

from __future__ import annotations

import time
from typing import Any, Callable

from broker.abstract_broker import Broker, BrokerMode
from broker.paper_broker import PaperBroker
from engine.base_engine import BaseEngine, EngineResult
from engine.portfolio import PortfolioManager
from engine.smart_loss import SmartLossManager
from market_data.client import MarketDataProvider, get_market_data_provider
from risk.manager import RiskManager
from shared.config.config_loader import load_config
from shared.config.schema import MainConfig
from shared.state.metric_store import MetricStore, build_metric_store
from shared.utils.logging import setup_logger


def build_market_data(cfg: MainConfig) -> MarketDataProvider:
    return get_market_data_provider(
        cfg.mode,
        exchange_name=cfg.exchange.name,
        base_url=cfg.exchange.base_url,
        timeout=cfg.exchange.request_timeout_secs,
    )


def build_store(cfg: MainConfig) -> MetricStore:
    ms = cfg.metric_store
    return build_metric_store(ms.backend, path=ms.path, capacity=ms.capacity)


def build_smart_loss(
    cfg: MainConfig,
    *,
    market_data: MarketDataProvider | None = None,
    metric_store: MetricStore | None = None,
) -> SmartLossManager:
    """按配置装配决策引擎（依赖均可注入）。"""
    return SmartLossManager(
        cfg,
        market_data or build_market_data(cfg),
        metric_store or build_store(cfg),
        risk_manager=RiskManager(cfg),
    )


class TradingEngine(BaseEngine):
    def __init__(
        self,
        *,
        cfg_path: str = "config/config.yml",
        cfg_obj: MainConfig | None = None,
        max_cycles: int | None = None,
        market_data: MarketDataProvider | None = None,
        broker: Broker | None = None,
        metric_store: MetricStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._cfg_path = cfg_path
        self._cfg_obj = cfg_obj
        self._max_cycles = max_cycles
        self._market_data = market_data
        self._broker = broker
        self._metric_store = metric_store
        self._sleep = sleep

        self.cfg: MainConfig | None = None
        self.portfolio: PortfolioManager | None = None

    def _load_cfg(self) -> MainConfig:
        return self._cfg_obj or load_config(self._cfg_path)

    @staticmethod
    def _build_broker(cfg: MainConfig, market_data: MarketDataProvider) -> Broker:
        mode = BrokerMode.PAPER if cfg.mode == "paper" else BrokerMode.DRY_RUN
        return PaperBroker(mode=mode, price_source=market_data.get_price)

    def build(self) -> PortfolioManager:
        cfg = self._load_cfg()
        self.cfg = cfg
        market_data = self._market_data or build_market_data(cfg)
        store = self._metric_store or build_store(cfg)
        self._metric_store = store
        broker = self._broker or self._build_broker(cfg, market_data)
        smart_loss = build_smart_loss(cfg, market_data=market_data, metric_store=store)
        self.portfolio = PortfolioManager(cfg, market_data, broker, smart_loss)
        return self.portfolio

    def run(self) -> EngineResult:
        logger = setup_logger("engine")
        portfolio = self.portfolio or self.build()
        cfg = portfolio.cfg
        logger.info(
            "Engine start: mode=%s symbols=%s capital=%.2f max_loss=%.2f",
            cfg.mode,
            ",".join(cfg.active_symbols),
            cfg.portfolio.total_capital,
            portfolio.risk.max_total_loss_amount,
        )

        cycles: list[dict[str, Any]] = []
        try:
            while self._max_cycles is None or len(cycles) < self._max_cycles:
                summary = portfolio.run_cycle()
                cycles.append(summary)
                logger.info(
                    "Cycle %d: status=%s positions=%s health=%s",
                    len(cycles),
                    summary.get("status"),
                    summary.get("positions"),
                    summary.get("health"),
                )
                if summary.get("status") in {"stopped", "emergency_stop"}:
                    break
                if self._max_cycles is not None and len(cycles) >= self._max_cycles:
                    break
                advance = getattr(portfolio.market_data, "advance", None)
                if callable(advance):
                    advance()
                self._sleep(cfg.cycle_minutes * 60.0)
        except KeyboardInterrupt:
            logger.info("Interrupted by user, shutting down.")
        finally:
            self.close()

        return EngineResult(summary=self._build_summary(portfolio, cycles), cycles=cycles)

    def close(self) -> None:
        if self._metric_store is not None:
            self._metric_store.close()

    @staticmethod
    def _build_summary(portfolio: PortfolioManager, cycles: list[dict[str, Any]]) -> dict[str, Any]:
        health = portfolio.calculate_portfolio_health()
        budget = portfolio.risk_budget
        return {
            "mode": portfolio.cfg.mode,
            "cycles": len(cycles),
            "active": portfolio.active,
            "open_positions": portfolio.position_count,
            "orders": len(portfolio.orders),
            "realized_loss": budget.realized_loss,
            "unrealized_loss": budget.unrealized_loss,
            "total_risk": portfolio.total_risk,
            "health": health.score,
            "performance": portfolio.performance.to_dict(),
        }
