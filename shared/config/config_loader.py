"""配置加载。

支持 YAML 配置、环境变量占位符 `${VAR}` 展开，以及 .env/.env.local 自动加载，
解析结果统一校验为 `MainConfig`。
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from shared.config.schema import MainConfig


ENV_FILENAMES = (".env", ".env.local")


def _parse_env_lines(text: str) -> dict[str, str]:
    """解析 KEY=VALUE 行；忽略空行、注释与 `export ` 前缀。"""
    pairs: dict[str, str] = {}
    for raw in text.splitlines():
        entry = raw.strip()
        if entry.startswith("export "):
            entry = entry[len("export "):].lstrip()
        if not entry or entry.startswith("#"):
            continue
        name, sep, val = entry.partition("=")
        name = name.strip()
        if sep and name:
            pairs[name] = val.strip().strip("\"'")
    return pairs


def _load_dotenv(cfg_path: Path) -> None:
    """依次读取配置目录及其上一级的 .env/.env.local，已有环境变量优先。"""
    for folder in (cfg_path.parent, cfg_path.parent.parent):
        for filename in ENV_FILENAMES:
            env_file = folder / filename
            if not env_file.is_file():
                continue
            for name, val in _parse_env_lines(env_file.read_text(encoding="utf-8")).items():
                os.environ.setdefault(name, val)


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        def replacer(match):
            var_name = match.group(1)
            if var_name not in os.environ:
                raise ValueError(f"Missing environment variable: {var_name}")
            return os.environ[var_name]

        return re.sub(r"\$\{([^}]+)\}", replacer, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def parse_config(raw_cfg: dict[str, Any]) -> MainConfig:
    """把原始 dict 校验为 `MainConfig`，错误统一转为 ValueError。"""
    try:
        return MainConfig.model_validate(raw_cfg)
    except ValidationError as exc:
        raise ValueError(f"Invalid config: {exc}") from exc


def load_config(path: str, load_env: bool = True, expand_env: bool = True) -> MainConfig:
    """从 YAML 读取并解析配置。

    Parameters
    ----------
    path:
        配置文件路径。
    load_env:
        是否自动加载 .env/.env.local。
    expand_env:
        是否展开 `${VAR}` 占位符。

    Returns
    -------
    MainConfig
        解析并校验后的配置对象。

    Raises
    ------
    FileNotFoundError
        配置文件不存在。
    ValueError
        字段不合法或缺失环境变量。
    """
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    if load_env:
        _load_dotenv(cfg_path)

    with cfg_path.open("r", encoding="utf-8") as f:
        raw_cfg: dict[str, Any] = yaml.safe_load(f) or {}

    if expand_env:
        raw_cfg = _expand_env(raw_cfg)
    return parse_config(raw_cfg)
