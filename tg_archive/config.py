"""
配置管理模块
默认值 ← config.yaml ← .env / 环境变量，后者优先级更高
"""
from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import find_dotenv, load_dotenv


DEFAULT_STORE_DIR = "~/.tg-archive"

DEFAULTS: Dict[str, Any] = {
    "telegram": {
        "api_id": None,
        "api_hash": None,
        "phone": None,
    },
    "store": {
        "dir": DEFAULT_STORE_DIR,
    },
    "sync": {
        "batch_size": 100,
        "inter_batch_delay": 1.2,
        "inter_job_delay": 3.0,
        "max_attempts": 8,
        "max_backoff": 300.0,
        "idle_poll_interval": 0.5,
        "shutdown_timeout": 30.0,
    },
    "realtime": {
        "queue_size": 1000,
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """加载配置文件，环境变量优先级更高"""
    # .env 与 config.yaml 一样从当前目录查找
    load_dotenv(find_dotenv(usecwd=True))
    cfg = copy.deepcopy(DEFAULTS)

    if config_path is None:
        config_path = os.getenv("TG_ARCHIVE_CONFIG")
        path = Path(config_path) if config_path else Path("config.yaml")
        explicit = config_path is not None
    else:
        path = Path(config_path)
        explicit = True

    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            _merge(cfg, yaml.safe_load(f) or {})
    elif explicit:
        raise FileNotFoundError(f"配置文件不存在: {path}")

    # 环境变量覆盖
    env_api_id = os.getenv("TELEGRAM_API_ID")
    env_api_hash = os.getenv("TELEGRAM_API_HASH")
    env_phone = os.getenv("TELEGRAM_PHONE_NUMBER")
    env_store = os.getenv("TG_ARCHIVE_STORE")

    if env_api_id:
        cfg["telegram"]["api_id"] = env_api_id
    if env_api_hash:
        cfg["telegram"]["api_hash"] = env_api_hash
    if env_phone:
        cfg["telegram"]["phone"] = env_phone
    if env_store:
        cfg["store"]["dir"] = env_store

    if cfg["telegram"].get("api_id"):
        try:
            cfg["telegram"]["api_id"] = int(cfg["telegram"]["api_id"])
        except (TypeError, ValueError):
            pass  # 留给 validate_config 报告

    return cfg


def validate_config(cfg: dict) -> List[str]:
    """验证配置，返回错误列表"""
    errors = []

    tg = cfg.get("telegram", {})
    if not tg.get("api_id"):
        errors.append("缺少 telegram.api_id（请到 https://my.telegram.org 获取）")
    elif not isinstance(tg["api_id"], int):
        errors.append(f"telegram.api_id 必须是整数: {tg['api_id']}")
    if not tg.get("api_hash"):
        errors.append("缺少 telegram.api_hash")

    sync = cfg.get("sync", {})
    if int(sync.get("batch_size", 0)) <= 0:
        errors.append("sync.batch_size 必须大于 0")
    for key in ("inter_batch_delay", "inter_job_delay", "max_backoff"):
        if float(sync.get(key, 0)) < 0:
            errors.append(f"sync.{key} 不能为负数")

    return errors


def resolve_store_dir(cfg: dict, override: Optional[str] = None) -> Path:
    """命令行 --store 优先，其次配置中的 store.dir"""
    raw = override or cfg.get("store", {}).get("dir") or DEFAULT_STORE_DIR
    return Path(raw).expanduser().resolve()


def store_paths(store_dir: Path) -> Dict[str, Path]:
    """存储目录布局：会话文件、消息库、锁文件"""
    store_dir = Path(store_dir)
    return {
        "root": store_dir,
        "session": store_dir / "session",
        "database": store_dir / "messages.db",
        "lock": store_dir / "LOCK",
    }
