import enum

from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, func
from app.core.database import Base


class ActivityActor(str, enum.Enum):
    INTERACTIVE = "interactive"
    RECONCILIATION = "reconciliation"
    SCHEDULER = "scheduler"


class ActivityLog(Base):
    """購読の状態遷移ごとの監査ログ (遷移と同一トランザクションで記録)"""
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    business_id = Column(Integer, ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    action = Column(String(50), nullable=False, index=True, comment="操作種別")
    actor = Column(String(20), nullable=False, comment="interactive/reconciliation/scheduler")
    from_status = Column(String(30), nullable=True)
    to_status = Column(String(30), nullable=True)
    plan_key = Column(String(50), nullable=True)
    version = Column(Integer, nullable=True, comment="遷移後のversion")
    stripe_event_id = Column(String(255), nullable=True)
    details = Column(JSON, nullable=True, comment="詳細データ")
    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
