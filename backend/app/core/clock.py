"""時刻ユーティリティ

DBにはタイムゾーンなしのUTC datetimeを保存し、
決済事業者のタイムスタンプ (UNIX秒) との変換はここに集約する。
"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """現在時刻 (naive UTC, 秒単位)"""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def now_ts() -> int:
    return int(datetime.now(timezone.utc).timestamp())


def from_timestamp(ts: Optional[int]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).replace(tzinfo=None)


def to_timestamp(dt: Optional[datetime]) -> Optional[int]:
    if dt is None:
        return None
    return int(dt.replace(tzinfo=timezone.utc).timestamp())
