"""
时间与时长工具
所有落库时间统一为 UTC、秒级精度的 ISO 8601 字符串，保证字典序即时间序
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional, Union

DURATION_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)?$", re.IGNORECASE)

DateLike = Union[datetime, str, None]


def parse_datetime(value: DateLike) -> Optional[datetime]:
    """解析 datetime / ISO 字符串为带时区的 UTC datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value).strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            raise ValueError(f"无效的时间格式: {value}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value: DateLike) -> Optional[str]:
    dt = parse_datetime(value)
    if dt is None:
        return None
    return dt.isoformat(timespec="seconds")


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def parse_duration(value: Optional[str]) -> Optional[float]:
    """解析 30s / 500ms / 2m / 1h 形式的时长，返回秒数（无单位按秒）"""
    if value is None or not str(value).strip():
        return None
    match = DURATION_PATTERN.match(str(value).strip())
    if not match:
        raise ValueError(f"无效的时长: {value}")
    amount = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    if unit == "ms":
        return amount / 1000
    if unit == "m":
        return amount * 60
    if unit == "h":
        return amount * 3600
    return amount
