"""决策与编排层（engine）。

- `smart_loss`：持仓卖出/持有决策引擎
- `portfolio`：持仓表、风险指标与交易周期
- `trading_engine`：按周期驱动 PortfolioManager，`run() -> EngineResult`
命令行入口由仓库根目录 `main.py` 统一承载。
"""
