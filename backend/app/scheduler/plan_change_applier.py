"""期限到来したダウングレード予約の適用"""
from app.core import clock
from app.core.database import SessionLocal
from app.services.reconciliation_service import apply_scheduled_plan_changes
from app.core.logging import get_logger

logger = get_logger(__name__)


def apply_pending_plan_changes():
    """スケジューラから呼ばれる: 期限到来したダウングレードを適用"""
    now = clock.utcnow()
    db = SessionLocal()
    try:
        count = apply_scheduled_plan_changes(db, now)
        if count > 0:
            logger.info(f"ダウングレード適用完了: {count}件")
    except Exception as e:
        db.rollback()
        logger.error(f"ダウングレード適用エラー: {e}", exc_info=True)
    finally:
        db.close()
