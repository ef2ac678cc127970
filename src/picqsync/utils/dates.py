"""时间工具：统一使用 naive UTC 存储."""

import re
from datetime import UTC, datetime

_ISO_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}")


def utcnow() -> datetime:
    """当前 UTC 时间（去掉时区信息，便于各数据库统一比较）."""
    return datetime.now(UTC).replace(tzinfo=None)


def looks_like_iso(value: str) -> bool:
    """判断字符串是否形如 ISO-8601 时间戳."""
    return bool(_ISO_PATTERN.match(value))


def parse_timestamp(value: object) -> datetime | None:
    """解析 Picqer 时间字段，无法解析时返回 None."""
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if not isinstance(value, str) or not looks_like_iso(value):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return to_naive_utc(parsed)


def to_naive_utc(value: datetime) -> datetime:
    """带时区的时间转为 naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def format_since(value: datetime) -> str:
    """格式化为 Picqer 查询参数使用的时间格式."""
    return to_naive_utc(value).strftime("%Y-%m-%d %H:%M:%S")
