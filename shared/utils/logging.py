"""
轻量日志封装。

Notes
-----
`setup_logger` 会避免重复添加 handler，否则多次调用会出现重复日志。
决策引擎、指标存储、行情、执行各自使用独立的 logger 名称，便于按组件过滤。
"""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"

_default_level = logging.INFO


def setup_logger(name: str = "trading", level: int | None = None) -> logging.Logger:
    """
    创建或获取命名 logger。

    Parameters
    ----------
    name:
        Logger 名称。
    level:
        日志级别，缺省使用全局默认级别（INFO，可由 `set_global_level` 修改）。

    Returns
    -------
    logging.Logger
        已配置的 logger。
    """
    logger = logging.getLogger(name)
    logger.setLevel(_default_level if level is None else level)
    logger.propagate = False

    has_stream = any(isinstance(h, logging.StreamHandler) for h in logger.handlers)
    if not has_stream:
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(ch)

    return logger


def set_global_level(level: int | str) -> None:
    """统一调整所有已创建 logger 的级别（CLI `--log-level` 使用）。"""
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        level = resolved
    global _default_level
    _default_level = level
    for name in list(logging.root.manager.loggerDict.keys()):
        logger = logging.getLogger(name)
        if logger.handlers:
            logger.setLevel(level)
