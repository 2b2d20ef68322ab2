"""
错误分类
所有外部客户端异常在到达调度器之前都会被归类为以下类型之一
"""
from __future__ import annotations

import asyncio
from typing import Optional

from telethon import errors as tg_errors


class ArchiveError(Exception):
    """归档引擎错误基类"""


class LockHeldError(ArchiveError):
    """存储目录已被其他进程锁定"""


class AuthenticationError(ArchiveError):
    """没有有效会话，或会话被服务端拒绝"""


class TransientFetchError(ArchiveError):
    """限流或临时网络故障，可重试"""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PermissionDeniedError(ArchiveError):
    """对该会话没有足够权限（私有频道、需要管理员、被封禁等）"""


class FatalFetchError(ArchiveError):
    """响应异常或无法归类的客户端失败，不再重试"""


class CorruptStoreError(ArchiveError):
    """存储文件不可读写，禁止在其上新建空库"""


class NotFoundError(ArchiveError):
    """请求的消息 / 会话 / 任务不存在"""


_PERMISSION_ERRORS = (
    tg_errors.ForbiddenError,
    tg_errors.ChannelPrivateError,
    tg_errors.ChatAdminRequiredError,
    tg_errors.ChatForbiddenError,
    tg_errors.UserBannedInChannelError,
)

_AUTH_ERRORS = (
    tg_errors.UnauthorizedError,
    tg_errors.AuthKeyError,
)

_TRANSIENT_ERRORS = (
    tg_errors.ServerError,
    tg_errors.TimedOutError,
    ConnectionError,
    asyncio.TimeoutError,
    OSError,
)


def classify_error(exc: BaseException) -> ArchiveError:
    """将任意客户端异常归类为错误分类中的一种"""
    if isinstance(exc, ArchiveError):
        return exc
    name = type(exc).__name__
    if isinstance(exc, tg_errors.FloodWaitError):
        seconds = getattr(exc, "seconds", None)
        return TransientFetchError(f"FloodWait: 需等待 {seconds}s", retry_after=seconds)
    if isinstance(exc, tg_errors.FloodError):
        return TransientFetchError(f"{name}: {exc}")
    if isinstance(exc, _AUTH_ERRORS):
        return AuthenticationError(f"{name}: {exc}")
    if isinstance(exc, _PERMISSION_ERRORS):
        return PermissionDeniedError(f"{name}: {exc}")
    if isinstance(exc, _TRANSIENT_ERRORS):
        return TransientFetchError(f"{name}: {exc}")
    return FatalFetchError(f"{name}: {exc}")
