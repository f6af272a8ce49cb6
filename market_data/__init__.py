"""行情数据模块（market_data）。

决策引擎通过 `MarketDataProvider` 协议消费 K 线，这里提供：
- Binance 公共 REST 数据源（paper 模式）
- 可复现的随机游走数据源（dry-run 模式）
- 静态数据源（测试 / 离线评估）
"""

from market_data.client import (
    BinanceMarketDataProvider,
    FakeMarketDataProvider,
    MarketDataError,
    MarketDataProvider,
    StaticMarketDataProvider,
    get_market_data_provider,
)

__all__ = [
    "MarketDataProvider",
    "MarketDataError",
    "BinanceMarketDataProvider",
    "FakeMarketDataProvider",
    "StaticMarketDataProvider",
    "get_market_data_provider",
]
