"""
core/config.py — 配置加载

• 配置文件为 YAML（默认 ./config.yaml，可用环境变量 COVERFLOW_CONFIG 覆盖路径）
• cfg.get("a.b.c", default) 按点号路径读取
• 任意键都可以被环境变量覆盖：generation.max_poll_attempts -> GENERATION_MAX_POLL_ATTEMPTS
"""

import os
import threading
from typing import Any, Dict

import yaml

VERSION = "1.0.0"
API_BASE = "/api"

_DEFAULT_CONFIG_FILE = "config.yaml"


class Config:
    def __init__(self, config_path: str = ""):
        self.config_path = config_path or os.getenv("COVERFLOW_CONFIG", _DEFAULT_CONFIG_FILE)
        self.config: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self.reload()

    def reload(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.config_path and os.path.exists(self.config_path):
            with open(self.config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
            if isinstance(loaded, dict):
                data = loaded
        with self._lock:
            self.config = data
        return self.config

    @staticmethod
    def _env_key(key: str) -> str:
        return str(key or "").replace(".", "_").replace("-", "_").upper()

    def get(self, key: str, default: Any = None) -> Any:
        env_value = os.getenv(self._env_key(key))
        if env_value is not None and env_value != "":
            return env_value
        node: Any = self.config
        for part in str(key or "").split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return default if node is None else node

    def set(self, key: str, value: Any) -> None:
        parts = str(key or "").split(".")
        with self._lock:
            node = self.config
            for part in parts[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = {}
                    node[part] = child
                node = child
            node[parts[-1]] = value

    def save(self) -> None:
        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.config, f, allow_unicode=True, sort_keys=False)


cfg = Config()


def set_config(key: str, value: Any) -> None:
    """写入配置并落盘"""
    cfg.set(key, value)
    cfg.save()
