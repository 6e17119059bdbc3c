"""Redis: スケジューラのハートビート記録と接続チェック"""
from datetime import datetime
from typing import Optional

import redis
from app.core.config import settings

HEARTBEAT_KEY = "scheduler:heartbeat"

# Scheduler / API 共用の同期プール (接続は初回コマンド時に確立)
redis_pool = redis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=10,
    decode_responses=True,
)


def get_redis() -> redis.Redis:
    """同期Redisクライアント取得"""
    return redis.Redis(connection_pool=redis_pool)


def write_heartbeat(now: datetime, ttl_seconds: int = 180):
    """スケジューラ生存記録 (TTL切れ = スケジューラ停止)"""
    get_redis().set(HEARTBEAT_KEY, now.isoformat(), ex=ttl_seconds)


def heartbeat_age_seconds(now: datetime) -> Optional[int]:
    """最後のハートビートからの経過秒数。記録がなければNone"""
    value = get_redis().get(HEARTBEAT_KEY)
    if not value:
        return None
    last = datetime.fromisoformat(value)
    return int((now - last).total_seconds())


def check_redis_connection() -> bool:
    """Redis接続チェック"""
    try:
        return bool(get_redis().ping())
    except Exception:
        return False
