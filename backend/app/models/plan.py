from sqlalchemy import Column, Integer, String, Boolean, Text, DateTime, Enum as SAEnum, func
from app.core.database import Base


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(50), nullable=False, unique=True, index=True, comment="プランキー (例: basic, premium)")
    name = Column(String(255), nullable=False, comment="プラン名")
    description = Column(Text, nullable=True, comment="プラン説明")
    features = Column(Text, nullable=True, comment="機能一覧 (改行区切り)")
    is_active = Column(Boolean, nullable=False, default=True, comment="購読受付中")

    # 料金 (最小通貨単位)
    recurring_price = Column(Integer, nullable=False, default=0, comment="請求額 (セント単位)")
    currency = Column(String(3), nullable=False, default="eur")
    interval = Column(
        SAEnum("month", "year", "none", name="billing_interval"),
        nullable=False,
        default="month",
        comment="請求周期: none=請求なし (カタログ専用)",
    )
    trial_days = Column(Integer, nullable=False, default=0, comment="無料トライアル日数")

    # Stripe連携
    stripe_product_id = Column(String(255), nullable=True, unique=True)
    stripe_price_id = Column(String(255), nullable=True, unique=True, comment="現在の価格ID")

    sort_order = Column(Integer, nullable=False, default=0, comment="表示順（小さいほど上）")
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    @property
    def is_billable(self) -> bool:
        """外部決済で請求が発生するプランか"""
        return (self.recurring_price or 0) > 0 and self.interval != "none"

    @property
    def is_subscribable(self) -> bool:
        return bool(self.is_active and self.is_billable and self.stripe_price_id)
