"""命令行入口。

- `runner`：纸面/干跑主循环，按 cycle_minutes 运行交易周期。
- `evaluate`：对单个持仓跑一次决策引擎，输出 JSON 结论。
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from engine.trading_engine import TradingEngine, build_smart_loss
from market_data.client import MarketDataError
from shared.config.config_loader import load_config
from shared.models.models import Position
from shared.utils.logging import set_global_level


@dataclass
class CliArgs:
    """命令行参数。

    config: 配置文件路径
    task: runner / evaluate
    """
    config: str
    task: str
    max_cycles: int | None = None  # 跑多少个周期后退出
    symbol: str | None = None
    entry_price: float | None = None
    quantity: float | None = None
    hours_held: float = 0.0
    current_price: float | None = None
    log_level: str | None = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="smartloss", description="智能止损交易引擎")

    def _add_config_arg(p: argparse.ArgumentParser, *, default: Any) -> None:
        p.add_argument("--config", default=default, help="配置文件路径 (默认: config/config.yml)")

    _add_config_arg(parser, default="config/config.yml")
    parser.add_argument("--log-level", default=None, help="日志级别 (DEBUG/INFO/WARNING/ERROR)")
    sub = parser.add_subparsers(dest="task")

    p_runner = sub.add_parser("runner", help="纸面/干跑主循环")
    _add_config_arg(p_runner, default=argparse.SUPPRESS)
    p_runner.add_argument("--max-cycles", type=int, default=None, help="跑多少个周期后退出")

    p_eval = sub.add_parser("evaluate", help="评估单个持仓")
    _add_config_arg(p_eval, default=argparse.SUPPRESS)
    p_eval.add_argument("--symbol", required=True)
    p_eval.add_argument("--entry-price", type=float, required=True)
    p_eval.add_argument("--quantity", type=float, required=True)
    p_eval.add_argument("--hours-held", type=float, default=0.0)
    p_eval.add_argument("--current-price", type=float, default=None, help="缺省时从行情源获取")

    return parser


def parse_args(argv: list[str] | None = None) -> CliArgs:
    ns = build_parser().parse_args(argv)
    return CliArgs(
        config=str(getattr(ns, "config", "config/config.yml")),
        task=ns.task or "runner",
        max_cycles=getattr(ns, "max_cycles", None),
        symbol=getattr(ns, "symbol", None),
        entry_price=getattr(ns, "entry_price", None),
        quantity=getattr(ns, "quantity", None),
        hours_held=float(getattr(ns, "hours_held", 0.0) or 0.0),
        current_price=getattr(ns, "current_price", None),
        log_level=ns.log_level,
    )


def evaluate_position(args: CliArgs) -> dict[str, Any]:
    """按命令行参数构造持仓并评估。止损/止盈价按配置百分比从入场价推出。"""
    if not args.symbol or not args.entry_price or not args.quantity:
        raise ValueError("evaluate requires --symbol, --entry-price and --quantity")
    if args.entry_price <= 0 or args.quantity <= 0:
        raise ValueError("entry price and quantity must be positive")

    cfg = load_config(args.config)
    smart_loss = build_smart_loss(cfg)
    rm = cfg.risk_management
    position = Position(
        symbol=args.symbol,
        order_id="cli",
        entry_price=args.entry_price,
        quantity=args.quantity,
        entry_time=datetime.now(timezone.utc) - timedelta(hours=args.hours_held),
        stop_loss=args.entry_price * (1 - rm.stop_loss_percentage / 100),
        take_profit=args.entry_price * (1 + rm.take_profit_percentage / 100),
    )
    current_price = args.current_price
    if current_price is None:
        current_price = smart_loss.market_data.get_price(args.symbol)
    if current_price <= 0:
        raise ValueError("current price must be positive")

    try:
        rec = smart_loss.evaluate(args.symbol, position, current_price)
    finally:
        smart_loss.metric_store.close()
    out = rec.to_dict()
    out.update({"symbol": args.symbol, "current_price": current_price, "pnl_percentage": position.pnl_percentage(current_price)})
    return out


def main(argv: list[str] | None = None) -> Any:
    args = parse_args(argv)
    if args.log_level:
        set_global_level(args.log_level)

    if args.task == "runner":
        return TradingEngine(cfg_path=args.config, max_cycles=args.max_cycles).run().summary

    if args.task == "evaluate":
        try:
            result = evaluate_position(args)
        except MarketDataError as exc:
            print(f"Failed to fetch current price: {exc}", file=sys.stderr)
            raise SystemExit(2) from exc
        print(json.dumps(result, ensure_ascii=False, indent=2))
        return result

    raise ValueError(f"Unknown task: {args.task}")


if __name__ == "__main__":
    main()
