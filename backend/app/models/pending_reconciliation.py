from sqlalchemy import Column, Integer, String, Boolean, Text, DateTime, JSON, ForeignKey, func
from app.core.database import Base

# 記録理由
REASON_OUTCOME_UNKNOWN = "outcome_unknown"    # 外部呼び出しの結果不明 (タイムアウト等)
REASON_COMMIT_FAILED = "commit_failed"        # 外部成功後のローカルコミット失敗
REASON_SUPERSEDED = "superseded"              # 外部成功後、並行変更によりローカル反映できず


class PendingReconciliation(Base):
    """外部と内部の乖離が疑われる操作の記録 (定期照合ジョブが解消する)"""
    __tablename__ = "pending_reconciliations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    business_id = Column(Integer, ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    operation = Column(String(50), nullable=False, comment="対象操作")
    reason = Column(String(30), nullable=False)
    idempotency_key = Column(String(255), nullable=True)
    details = Column(JSON, nullable=True)
    attempts = Column(Integer, nullable=False, default=0, comment="照合試行回数")
    last_error = Column(Text, nullable=True)
    resolved = Column(Boolean, nullable=False, default=False, index=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
