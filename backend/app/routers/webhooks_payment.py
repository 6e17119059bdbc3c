"""決済Webhook ルーター"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.database import get_db
from app.routers.deps import get_gateway
from app.services.payment_gateway import PaymentGateway
from app.services.webhook_reconciler import WebhookReconciler

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/payment")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """決済事業者のWebhook (署名検証 → 重複排除 → 状態遷移)

    署名検証と重複排除を通過したイベントは、状態が変わらなくても2xxを返す。
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")
    reconciler = WebhookReconciler(db, gateway)
    result = await run_in_threadpool(reconciler.handle_event, payload, signature)
    return {"received": True, "event_id": result.event_id, "outcome": result.outcome.value}
