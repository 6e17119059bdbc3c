"""管理API: 外部との照合待ち (運用レポート)"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.models.pending_reconciliation import PendingReconciliation
from app.routers.deps import get_gateway, require_admin
from app.services import reconciliation_service
from app.services.payment_gateway import PaymentGateway

router = APIRouter(prefix="/api/admin/reconciliation", tags=["admin-reconciliation"])


@router.get("/pending")
def list_pending(
    include_resolved: bool = False,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    _=Depends(require_admin),
):
    """照合待ち一覧"""
    q = db.query(PendingReconciliation)
    if not include_resolved:
        q = q.filter(PendingReconciliation.resolved == False)  # noqa: E712

    total = q.count()
    markers = q.order_by(PendingReconciliation.id.desc()).offset((page - 1) * per_page).limit(per_page).all()
    return {
        "total": total,
        "page": page,
        "per_page": per_page,
        "items": [
            {
                "id": m.id,
                "business_id": m.business_id,
                "subscription_id": m.subscription_id,
                "stripe_subscription_id": m.stripe_subscription_id,
                "operation": m.operation,
                "reason": m.reason,
                "details": m.details,
                "attempts": m.attempts,
                "last_error": m.last_error,
                "resolved": m.resolved,
                "resolved_at": m.resolved_at.isoformat() if m.resolved_at else None,
                "created_at": m.created_at.isoformat() if m.created_at else None,
            }
            for m in markers
        ],
    }


@router.post("/run")
def run_reconciliation(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    _=Depends(require_admin),
):
    """照合を即時実行"""
    stats = reconciliation_service.heal_pending(db, gateway, limit=settings.RECONCILE_BATCH_SIZE)
    return {"message": "照合を実行しました", **stats}
