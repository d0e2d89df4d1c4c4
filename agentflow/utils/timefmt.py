from datetime import datetime, UTC
from typing import Optional


def to_utc_naive(dt: Optional[datetime]) -> Optional[datetime]:
    """数据库统一存 naive UTC（去掉微秒）"""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(UTC)
    return dt.replace(tzinfo=None, microsecond=0)


def elapsed_ms(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    if start is None or end is None:
        return None
    return int((end - start).total_seconds() * 1000)


def naive_utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)
