import enum

from sqlalchemy import Column, Integer, String, DateTime, func
from app.core.database import Base


class EventOutcome(str, enum.Enum):
    APPLIED = "applied"
    IGNORED_DUPLICATE = "ignored_duplicate"
    IGNORED_STALE = "ignored_stale"
    IGNORED_NOOP = "ignored_noop"
    IGNORED_UNHANDLED = "ignored_unhandled"
    IGNORED_ILLEGAL_TRANSITION = "ignored_illegal_transition"
    IGNORED_UNKNOWN_SUBSCRIPTION = "ignored_unknown_subscription"


# 再配信時に再処理する結果 (購読作成のコミット前に届いたイベントなど)
RETRYABLE_OUTCOMES = frozenset({EventOutcome.IGNORED_UNKNOWN_SUBSCRIPTION.value})


class ExternalEventRecord(Base):
    """受信済み外部イベントの台帳 (冪等性キー)"""
    __tablename__ = "external_event_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    event_created = Column(Integer, nullable=False, comment="イベント発生時刻 (UNIX秒)")
    outcome = Column(String(40), nullable=False, comment="処理結果")
    delivery_count = Column(Integer, nullable=False, default=1, comment="受信回数")
    received_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
    last_received_at = Column(DateTime, nullable=True)
