"""照合待ちマーカーの定期解消"""
from app.core.config import settings
from app.core.database import SessionLocal
from app.services.reconciliation_service import heal_pending
from app.services.stripe_gateway import build_stripe_gateway
from app.core.logging import get_logger

logger = get_logger(__name__)

_gateway = None


def _get_gateway():
    global _gateway
    if _gateway is None:
        _gateway = build_stripe_gateway()
    return _gateway


def run_reconciliation_pass():
    """スケジューラから呼ばれる: 外部の状態を再取得して乖離を解消"""
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY 未設定のため照合をスキップ")
        return
    db = SessionLocal()
    try:
        stats = heal_pending(db, _get_gateway(), limit=settings.RECONCILE_BATCH_SIZE)
        if stats["checked"]:
            logger.info(
                f"照合完了: 対象={stats['checked']}件, 解消={stats['resolved']}件, 未解消={stats['unresolved']}件"
            )
    except Exception as e:
        db.rollback()
        logger.error(f"照合エラー: {e}", exc_info=True)
    finally:
        db.close()
