"""購読API (店舗向け)"""
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.core.logging import get_logger
from app.core.rate_limit import limiter, SUBSCRIPTION_READ_RATE_LIMIT, SUBSCRIPTION_WRITE_RATE_LIMIT
from app.models.plan import SubscriptionPlan
from app.models.subscription import Subscription
from app.routers.deps import get_gateway
from app.schemas.subscription import LifecycleRequest, SubscriptionRequest
from app.services import plan_catalog, subscription_store
from app.services.errors import SubscriptionNotFound
from app.services.payment_gateway import PaymentGateway
from app.services.subscription_controller import SubscriptionController

logger = get_logger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])

PAYMENT_HISTORY_LIMIT = 10


def _iso(value):
    return value.isoformat() if value else None


def _plan_summary(db: Session, plan_key: str):
    if not plan_key:
        return None
    plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.key == plan_key).first()
    return plan_catalog.serialize(plan) if plan else {"key": plan_key}


def _serialize(db: Session, sub: Subscription) -> dict:
    return {
        "id": sub.id,
        "business_id": sub.business_id,
        "status": sub.status,
        "plan": _plan_summary(db, sub.plan_key),
        "pending_plan": _plan_summary(db, sub.pending_plan_key),
        "pending_plan_effective_at": _iso(sub.pending_plan_effective_at),
        "current_period_start": _iso(sub.current_period_start),
        "current_period_end": _iso(sub.current_period_end),
        "trial_end": _iso(sub.trial_end),
        "cancel_at_period_end": sub.cancel_at_period_end,
        "paused_at": _iso(sub.paused_at),
        "canceled_at": _iso(sub.canceled_at),
        "version": sub.version,
    }


@router.get("")
@limiter.limit(SUBSCRIPTION_READ_RATE_LIMIT)
def get_subscription(
    request: Request,
    business_id: int = Query(..., alias="businessId"),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """現在の購読 + 支払い履歴 (直近10件)"""
    sub = subscription_store.get_current_subscription(db, business_id)
    if not sub:
        raise SubscriptionNotFound(business_id)

    payment_history = []
    history_warning = None
    if sub.stripe_subscription_id:
        result = gateway.list_invoices(sub.stripe_subscription_id, limit=PAYMENT_HISTORY_LIMIT)
        if result.ok:
            payment_history = [
                {
                    "id": inv.id,
                    "amount": inv.amount,
                    "currency": inv.currency,
                    "status": inv.status,
                    "date": _iso(inv.created),
                    "pdf_url": inv.pdf_url,
                }
                for inv in result.value
            ]
        else:
            logger.warning(f"支払い履歴の取得に失敗: business_id={business_id}, error={result.message}")
            history_warning = "支払い履歴を取得できませんでした"

    return {
        "result": "succeeded",
        "subscription": _serialize(db, sub),
        "payment_history": payment_history,
        "payment_history_warning": history_warning,
    }


@router.post("")
@limiter.limit(SUBSCRIPTION_WRITE_RATE_LIMIT)
def subscribe_or_change(
    request: Request,
    data: SubscriptionRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """新規購読 / プラン変更"""
    controller = SubscriptionController(db, gateway)
    if data.action == "subscribe":
        created = controller.create_subscription(data.business_id, data.plan_key)
        return {
            "result": "succeeded",
            "subscription": _serialize(db, created.subscription),
            "client_secret": created.client_secret,
            "publishable_key": settings.STRIPE_PUBLISHABLE_KEY,
        }

    sub = controller.change_plan(data.business_id, data.plan_key)
    return {"result": "succeeded", "subscription": _serialize(db, sub)}


@router.put("")
@limiter.limit(SUBSCRIPTION_WRITE_RATE_LIMIT)
def update_lifecycle(
    request: Request,
    data: LifecycleRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """一時停止 / 再開 / 解約 / 解約予約の取り消し"""
    controller = SubscriptionController(db, gateway)
    if data.action == "pause":
        sub = controller.pause(data.business_id)
    elif data.action == "resume":
        sub = controller.resume(data.business_id)
    elif data.action == "reactivate":
        sub = controller.reactivate(data.business_id)
    else:
        sub = controller.cancel(data.business_id, immediate=data.immediate)
    return {"result": "succeeded", "subscription": _serialize(db, sub)}


@router.delete("")
@limiter.limit(SUBSCRIPTION_WRITE_RATE_LIMIT)
def cancel_subscription(
    request: Request,
    business_id: int = Query(..., alias="businessId"),
    immediate: bool = Query(False),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """解約 (immediate=true で即時解約、それ以外は期間終了時)"""
    sub = SubscriptionController(db, gateway).cancel(business_id, immediate=immediate)
    return {"result": "succeeded", "subscription": _serialize(db, sub)}
