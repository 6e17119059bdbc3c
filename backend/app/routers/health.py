from fastapi import APIRouter
from app.core import clock
from app.core.database import check_db_connection
from app.core.redis import check_redis_connection, heartbeat_age_seconds

router = APIRouter()

# ハートビートは1分ごと。これを超えたらスケジューラ停止とみなす
SCHEDULER_STALE_SECONDS = 180


@router.get("/health")
@router.get("/api/health")
def health_check():
    """ヘルスチェックエンドポイント"""
    db_ok = check_db_connection()
    redis_ok = check_redis_connection()
    heartbeat_age = heartbeat_age_seconds(clock.utcnow()) if redis_ok else None
    scheduler_ok = heartbeat_age is not None and heartbeat_age <= SCHEDULER_STALE_SECONDS

    status = "ok" if (db_ok and redis_ok and scheduler_ok) else "degraded"

    return {
        "status": status,
        "db": "connected" if db_ok else "disconnected",
        "redis": "connected" if redis_ok else "disconnected",
        "scheduler_heartbeat_age": heartbeat_age,
    }
