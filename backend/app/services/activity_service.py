"""監査ログの参照 (サポート用)"""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.models.activity_log import ActivityLog


def list_for_business(db: Session, business_id: int, page: int = 1, per_page: int = 50) -> tuple[int, list[ActivityLog]]:
    query = db.query(ActivityLog).filter(ActivityLog.business_id == business_id)
    total = query.count()
    entries = (
        query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return total, entries


def seconds_since_last_transition(db: Session, business_id: int, now: datetime) -> Optional[int]:
    last = (
        db.query(ActivityLog.created_at)
        .filter(ActivityLog.business_id == business_id)
        .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .first()
    )
    if not last or not last[0]:
        return None
    return max(0, int((now - last[0]).total_seconds()))


def serialize(entry: ActivityLog) -> dict:
    return {
        "id": entry.id,
        "subscription_id": entry.subscription_id,
        "action": entry.action,
        "actor": entry.actor,
        "from_status": entry.from_status,
        "to_status": entry.to_status,
        "plan_key": entry.plan_key,
        "version": entry.version,
        "stripe_event_id": entry.stripe_event_id,
        "details": entry.details,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
