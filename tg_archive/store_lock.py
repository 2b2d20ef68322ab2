"""
存储目录独占锁
同一存储目录同一时间只允许一个进程写入；锁文件记录持有者 pid 与获取时间
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from .errors import LockHeldError
from .utils import utcnow_iso

logger = logging.getLogger("tg-archive.store_lock")

LOCK_FILENAME = "LOCK"

PathLike = Union[str, Path]


def _lock_path(store_dir: PathLike) -> Path:
    return Path(store_dir) / LOCK_FILENAME


def _lock_payload() -> str:
    return json.dumps({"pid": os.getpid(), "startedAt": utcnow_iso()})


def read_store_lock(store_dir: PathLike) -> Dict[str, Any]:
    """查看锁状态（不获取锁），用于诊断"""
    lock_path = _lock_path(store_dir)
    try:
        raw = lock_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return {"exists": False, "path": str(lock_path), "info": None}
    try:
        info: Any = json.loads(raw)
    except ValueError:
        info = raw or None
    return {"exists": True, "path": str(lock_path), "info": info}


def _describe(info: Any) -> str:
    if isinstance(info, dict):
        return f"pid={info.get('pid')}, since {info.get('startedAt')}"
    return str(info) if info else ""


def acquire_store_lock(store_dir: PathLike) -> Callable[[], None]:
    """原子创建锁文件，返回可重复调用的释放函数"""
    lock_path = _lock_path(store_dir)
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        details = _describe(read_store_lock(store_dir)["info"])
        suffix = f" ({details})" if details else ""
        raise LockHeldError(f"存储目录已被其他进程锁定{suffix}: {lock_path}")

    try:
        os.write(fd, _lock_payload().encode("utf-8"))
    finally:
        os.close(fd)
    logger.debug(f"🔒 已获取存储锁: {lock_path}")

    released = False

    def release() -> None:
        nonlocal released
        if released:
            return
        released = True
        try:
            lock_path.unlink()
            logger.debug(f"🔓 已释放存储锁: {lock_path}")
        except FileNotFoundError:
            pass

    return release


class StoreLock:
    """存储锁的上下文管理器形式，退出时保证释放"""

    def __init__(self, store_dir: PathLike):
        self.store_dir = Path(store_dir)
        self._release: Optional[Callable[[], None]] = None

    @property
    def held(self) -> bool:
        return self._release is not None

    def acquire(self) -> "StoreLock":
        if self._release is None:
            self._release = acquire_store_lock(self.store_dir)
        return self

    def release(self) -> None:
        if self._release is not None:
            release, self._release = self._release, None
            release()

    def __enter__(self) -> "StoreLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
