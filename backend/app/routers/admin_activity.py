"""管理API: 購読の監査ログ"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core import clock
from app.core.database import get_db
from app.routers.deps import require_admin
from app.services import activity_service

router = APIRouter(prefix="/api/admin/activity", tags=["admin-activity"])


@router.get("")
def list_activity(
    business_id: int = Query(..., alias="businessId"),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    _=Depends(require_admin),
):
    """店舗の遷移履歴 + 最後の遷移からの経過秒数"""
    total, entries = activity_service.list_for_business(db, business_id, page, per_page)
    return {
        "business_id": business_id,
        "total": total,
        "page": page,
        "per_page": per_page,
        "seconds_since_last_transition": activity_service.seconds_since_last_transition(
            db, business_id, clock.utcnow()
        ),
        "entries": [activity_service.serialize(e) for e in entries],
    }
