# 全モデルをインポート (Alembic autogenerate用)
from app.models.business import Business
from app.models.plan import SubscriptionPlan
from app.models.plan_price import SubscriptionPlanPrice
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.external_event_record import ExternalEventRecord, EventOutcome
from app.models.activity_log import ActivityLog, ActivityActor
from app.models.pending_reconciliation import PendingReconciliation

__all__ = [
    "Business",
    "SubscriptionPlan",
    "SubscriptionPlanPrice",
    "Subscription",
    "SubscriptionStatus",
    "ExternalEventRecord",
    "EventOutcome",
    "ActivityLog",
    "ActivityActor",
    "PendingReconciliation",
]
