"""
core/config.py — YAML 配置加载

    from core.config import cfg
    cfg.get("telemetry.queue_size", 1000)

配置文件路径由环境变量 CONFIG_PATH 指定，默认 ./config.yaml；
文件不存在时所有配置项走默认值。
"""

import os
import re
import threading
from typing import Any, Dict

import yaml

VERSION = "1.0.0"
API_BASE = "/api"

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def _expand_env(value: Any) -> Any:
    """展开 ${VAR:-default} 形式的环境变量。"""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.getenv(m.group(1), m.group(2) or ""), value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


class Config:
    def __init__(self, config_path: str = None):
        self.config_path = config_path or os.getenv("CONFIG_PATH", "./config.yaml")
        self._lock = threading.Lock()
        self.config: Dict[str, Any] = {}
        self.reload()

    def reload(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if os.path.exists(self.config_path):
            with open(self.config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
            if isinstance(loaded, dict):
                data = _expand_env(loaded)
        self.config = data
        return self.config

    def get(self, key: str, default: Any = None) -> Any:
        cursor: Any = self.config
        for part in [x for x in str(key or "").split(".") if x]:
            if not isinstance(cursor, dict) or part not in cursor:
                return default
            cursor = cursor[part]
        return default if cursor is None else cursor

    def set(self, key: str, value: Any) -> None:
        keys = [x for x in str(key or "").split(".") if x]
        if not keys:
            return
        with self._lock:
            cursor = self.config
            for part in keys[:-1]:
                current = cursor.get(part)
                if not isinstance(current, dict):
                    cursor[part] = {}
                cursor = cursor[part]
            cursor[keys[-1]] = value

    def save_config(self) -> None:
        with self._lock:
            folder = os.path.dirname(os.path.abspath(self.config_path))
            os.makedirs(folder, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(self.config, f, allow_unicode=True, sort_keys=False)


cfg = Config()
