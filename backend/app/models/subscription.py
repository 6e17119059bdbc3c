import enum

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Enum as SAEnum, ForeignKey, UniqueConstraint, func,
)
from app.core.database import Base


class SubscriptionStatus(str, enum.Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAUSED = "paused"
    PAST_DUE = "past_due"
    CANCELED_SCHEDULED = "canceled_scheduled"
    CANCELED = "canceled"


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("live_business_id", name="uq_subscriptions_live_business"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    business_id = Column(Integer, ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)
    live_business_id = Column(
        Integer, nullable=True,
        comment="終了前の間だけbusiness_idを保持 (1店舗1購読の一意制約用)",
    )
    plan_key = Column(String(50), nullable=False, comment="利用中プランキー")
    stripe_price_id = Column(String(255), nullable=True, comment="外部で課金中の価格ID")
    status = Column(
        SAEnum(*[s.value for s in SubscriptionStatus], name="subscription_status"),
        nullable=False,
        default=SubscriptionStatus.ACTIVE.value,
    )

    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, unique=True)

    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    # ダウングレード予約
    pending_plan_key = Column(String(50), nullable=True, comment="次回更新時に適用するプランキー")
    pending_plan_effective_at = Column(DateTime, nullable=True, comment="プラン変更予定日時")

    paused_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)

    # 楽観的排他制御
    version = Column(Integer, nullable=False, default=1, comment="確定した変更ごとに+1")
    state_watermark = Column(
        Integer, nullable=False, default=0,
        comment="最後に適用した外部イベントの発生UNIX時刻 (イベント同士の順序判定用)",
    )
    local_commit_ts = Column(
        Integer, nullable=False, default=0,
        comment="最後のローカル変更 (対話操作・照合) のUNIX時刻",
    )
    last_event_id = Column(String(255), nullable=True, comment="最後に適用した外部イベントID")

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    @property
    def status_enum(self) -> SubscriptionStatus:
        return SubscriptionStatus(self.status)
