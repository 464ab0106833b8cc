"""
配置加载

读取 config.yaml（路径可由 CODEBLOCKING_CONFIG 指定），再用环境变量覆盖部分配置。
"""

import os
import copy
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv


DEFAULT_CONFIG = {
    "server": {
        "host": "127.0.0.1",
        "port": 3001,
        "frontend_url": "http://localhost:3000",
        "shutdown_timeout": 30,
        "log_level": "INFO",
    },
    "workspace": {
        "root": None,
    },
    "sandbox": {},
}

# 环境变量 -> (配置段, 配置项, 类型)
ENV_OVERRIDES = {
    "HOST": ("server", "host", str),
    "PORT": ("server", "port", int),
    "FRONTEND_URL": ("server", "frontend_url", str),
    "LOG_LEVEL": ("server", "log_level", str),
    "WORKSPACE_DIR": ("workspace", "root", str),
    "DOCKER_SOCKET": ("sandbox", "docker_socket", str),
}

_config: Optional[dict] = None


def _default_config_path() -> Path:
    return Path(__file__).resolve().parents[2] / "config.yaml"


def _merge(base: dict, override: dict) -> dict:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path: Optional[str] = None) -> dict:
    """
    加载配置

    Args:
        path: 配置文件路径，不指定时依次使用 CODEBLOCKING_CONFIG 和仓库根目录的 config.yaml

    Returns:
        合并了默认值和环境变量的配置字典
    """
    load_dotenv()

    config = copy.deepcopy(DEFAULT_CONFIG)

    config_path = Path(path or os.environ.get("CODEBLOCKING_CONFIG") or _default_config_path())
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            _merge(config, yaml.safe_load(f) or {})

    for env_name, (section, key, cast) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            config.setdefault(section, {})[key] = cast(value)

    return config


def get_config() -> dict:
    """获取全局配置（首次调用时加载）"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    global _config
    _config = None
