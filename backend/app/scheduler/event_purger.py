"""保持期間を過ぎた外部イベント台帳の削除"""
from app.core.config import settings
from app.core.database import SessionLocal
from app.services.reconciliation_service import purge_expired_event_records
from app.core.logging import get_logger

logger = get_logger(__name__)


def purge_event_records():
    """スケジューラから呼ばれる: 日次でイベント台帳を削除"""
    db = SessionLocal()
    try:
        purge_expired_event_records(db, settings.EVENT_RETENTION_DAYS)
    except Exception as e:
        db.rollback()
        logger.error(f"イベント台帳削除エラー: {e}", exc_info=True)
    finally:
        db.close()
