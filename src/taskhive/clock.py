"""时间工具 -- UTC 时间获取与 SQLite 时间戳格式化

所有持久化时间戳统一为微秒精度 ISO 8601 字符串，保证字典序即时间序。
"""

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """当前 UTC 时间"""
    return datetime.now(UTC)


def format_ts(value: datetime) -> str:
    """格式化为固定精度 ISO 字符串（可直接在 SQL 中比较大小）"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)
