import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# 确保项目根目录在 sys.path，便于测试内直接以顶层包名导入
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from shared.config.schema import MainConfig  # noqa: E402
from shared.models.models import Candle, Position  # noqa: E402

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """可手动推进的时钟。"""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_candles(closes, symbol="BTCUSDT", interval_minutes=15, volumes=None, start=T0):
    """按收盘价序列构造 K 线；high/low 在收盘价上下浮动 0.1%。"""
    step = timedelta(minutes=interval_minutes)
    out = []
    for i, close in enumerate(closes):
        ts = start + step * i
        out.append(
            Candle(
                symbol=symbol,
                open=float(close),
                high=float(close) * 1.001,
                low=float(close) * 0.999,
                close=float(close),
                volume=float(volumes[i]) if volumes is not None else 100.0,
                start_ts=ts,
                end_ts=ts + step,
            )
        )
    return out


def make_position(symbol="BTCUSDT", entry_price=100.0, quantity=0.1, entry_time=T0, order_id="buy-1", **kwargs):
    kwargs.setdefault("stop_loss", entry_price * 0.92)
    kwargs.setdefault("take_profit", entry_price * 1.15)
    return Position(
        symbol=symbol,
        order_id=order_id,
        entry_price=entry_price,
        quantity=quantity,
        entry_time=entry_time,
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cfg():
    return MainConfig()
