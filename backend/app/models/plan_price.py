from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, func
from app.core.database import Base


class SubscriptionPlanPrice(Base):
    """プランの価格履歴

    価格変更時は新しい価格を作成し、旧価格はアーカイブする。
    既存購読は旧価格のまま課金されるため、価格IDからプランを逆引きできるよう履歴を残す。
    """
    __tablename__ = "subscription_plan_prices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False, index=True)
    stripe_price_id = Column(String(255), nullable=False, unique=True)
    unit_amount = Column(Integer, nullable=False, comment="請求額 (セント単位)")
    currency = Column(String(3), nullable=False)
    interval = Column(String(10), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    archived_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
