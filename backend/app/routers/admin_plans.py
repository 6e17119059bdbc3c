"""管理API: プランカタログ"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.rate_limit import limiter, ADMIN_RATE_LIMIT
from app.models.subscription import Subscription
from app.routers.deps import get_gateway, require_admin
from app.schemas.plan import PlanCreate, PlanUpdate
from app.services import plan_catalog
from app.services.payment_gateway import PaymentGateway

router = APIRouter(prefix="/api/admin/plans", tags=["admin-plans"])


@router.get("")
def list_plans(db: Session = Depends(get_db), _=Depends(require_admin)):
    """プラン一覧 (受付終了を含む) + 有効な購読数"""
    counts = dict(
        db.query(Subscription.plan_key, func.count(Subscription.id))
        .filter(Subscription.live_business_id.isnot(None))
        .group_by(Subscription.plan_key)
        .all()
    )
    result = []
    for plan in plan_catalog.list_all(db):
        data = plan_catalog.serialize(plan, admin=True)
        data["subscriber_count"] = counts.get(plan.key, 0)
        result.append(data)
    return result


@router.post("")
@limiter.limit(ADMIN_RATE_LIMIT)
def create_plan(
    request: Request,
    data: PlanCreate,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    _=Depends(require_admin),
):
    """プラン作成 (請求ありのプランはStripe Product/Priceも作成)"""
    plan = plan_catalog.create_plan(db, gateway, data)
    return {"plan": plan_catalog.serialize(plan, admin=True), "message": "プランを作成しました"}


@router.put("/{plan_key}")
@limiter.limit(ADMIN_RATE_LIMIT)
def update_plan(
    request: Request,
    plan_key: str,
    data: PlanUpdate,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    _=Depends(require_admin),
):
    """プラン更新 (価格変更時は新しいPriceを作成し旧Priceをアーカイブ)"""
    plan = plan_catalog.update_plan(db, gateway, plan_key, data)
    return {"plan": plan_catalog.serialize(plan, admin=True), "message": "プランを更新しました"}


@router.delete("/{plan_key}")
@limiter.limit(ADMIN_RATE_LIMIT)
def retire_plan(
    request: Request,
    plan_key: str,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    _=Depends(require_admin),
):
    """プランの受付終了 (既存の購読は継続)"""
    plan_catalog.retire_plan(db, gateway, plan_key)
    return {"message": "プランの受付を終了しました"}
