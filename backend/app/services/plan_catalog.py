"""プランカタログ: 参照と管理操作 (価格変更時は新価格を発行し旧価格をアーカイブ)"""
from typing import Optional

from sqlalchemy.orm import Session

from app.core import clock
from app.core.config import settings
from app.core.logging import get_logger
from app.models.plan import SubscriptionPlan
from app.models.plan_price import SubscriptionPlanPrice
from app.schemas.plan import PlanCreate, PlanUpdate
from app.services.errors import ExternalGatewayError, PlanConflict, PlanNotFound
from app.services.payment_gateway import GatewayResult, PaymentGateway

logger = get_logger(__name__)


def get(db: Session, plan_key: str) -> SubscriptionPlan:
    plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.key == plan_key).first()
    if not plan:
        raise PlanNotFound(plan_key)
    return plan


def list_active(db: Session) -> list[SubscriptionPlan]:
    return (
        db.query(SubscriptionPlan)
        .filter(SubscriptionPlan.is_active == True)  # noqa: E712
        .order_by(SubscriptionPlan.sort_order, SubscriptionPlan.id)
        .all()
    )


def list_all(db: Session) -> list[SubscriptionPlan]:
    return db.query(SubscriptionPlan).order_by(SubscriptionPlan.sort_order, SubscriptionPlan.id).all()


def plan_key_for_price(db: Session, price_id: str) -> Optional[str]:
    """価格IDからプランキーを逆引き (アーカイブ済み価格も対象)"""
    plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.stripe_price_id == price_id).first()
    if plan:
        return plan.key
    row = (
        db.query(SubscriptionPlan.key)
        .join(SubscriptionPlanPrice, SubscriptionPlanPrice.plan_id == SubscriptionPlan.id)
        .filter(SubscriptionPlanPrice.stripe_price_id == price_id)
        .first()
    )
    return row[0] if row else None


def _raise_for_result(result: GatewayResult, action: str):
    if result.ok:
        return
    logger.error(f"プランの外部連携に失敗 ({action}): {result.message}")
    raise ExternalGatewayError(
        f"決済システムとの連携に失敗しました: {result.message}",
        retryable=result.retryable,
        gateway_code=result.code,
    )


def _add_price_row(db: Session, plan: SubscriptionPlan, price_id: str):
    db.add(SubscriptionPlanPrice(
        plan_id=plan.id,
        stripe_price_id=price_id,
        unit_amount=plan.recurring_price,
        currency=plan.currency,
        interval=plan.interval,
        is_active=True,
    ))


def _archive_price_rows(db: Session, gateway: PaymentGateway, plan: SubscriptionPlan):
    """有効な旧価格をアーカイブ。外部のアーカイブ失敗は警告のみ (新規購読には使われない)"""
    rows = db.query(SubscriptionPlanPrice).filter(
        SubscriptionPlanPrice.plan_id == plan.id,
        SubscriptionPlanPrice.is_active == True,  # noqa: E712
    ).all()
    for row in rows:
        result = gateway.archive_price(row.stripe_price_id)
        if not result.ok:
            logger.warning(f"Stripe Priceアーカイブ失敗 (price_id={row.stripe_price_id}): {result.message}")
        row.is_active = False
        row.archived_at = clock.utcnow()


def create_plan(db: Session, gateway: PaymentGateway, data: PlanCreate) -> SubscriptionPlan:
    if db.query(SubscriptionPlan).filter(SubscriptionPlan.key == data.key).first():
        raise PlanConflict(data.key)

    plan = SubscriptionPlan(
        key=data.key,
        name=data.name,
        description=data.description,
        features=data.features,
        recurring_price=data.recurring_price,
        currency=(data.currency or settings.DEFAULT_CURRENCY).lower(),
        interval=data.interval,
        trial_days=data.trial_days,
        sort_order=data.sort_order,
        is_active=True,
    )

    # 請求なしのプランはカタログ専用 (外部商品を作らない)
    if plan.is_billable:
        result = gateway.create_product_and_price(
            plan_key=plan.key,
            name=plan.name,
            description=plan.description,
            unit_amount=plan.recurring_price,
            currency=plan.currency,
            interval=plan.interval,
        )
        _raise_for_result(result, "create_product_and_price")
        plan.stripe_product_id = result.value.product_id
        plan.stripe_price_id = result.value.price_id

    db.add(plan)
    db.flush()
    if plan.stripe_price_id:
        _add_price_row(db, plan, plan.stripe_price_id)
    db.commit()
    db.refresh(plan)
    logger.info(f"プラン作成: key={plan.key}, price={plan.recurring_price}, stripe_price={plan.stripe_price_id}")
    return plan


def update_plan(db: Session, gateway: PaymentGateway, plan_key: str, data: PlanUpdate) -> SubscriptionPlan:
    plan = get(db, plan_key)
    changes = data.model_dump(exclude_unset=True)

    price_fields = ("recurring_price", "currency", "interval")
    price_changed = any(
        field in changes and changes[field] is not None and changes[field] != getattr(plan, field)
        for field in price_fields
    )
    product_changed = any(
        field in changes and changes[field] != getattr(plan, field) for field in ("name", "description")
    )

    for field, value in changes.items():
        if value is None and field not in ("description", "features"):
            continue
        if field == "currency":
            value = value.lower()
        setattr(plan, field, value)

    if price_changed:
        if plan.is_billable:
            if plan.stripe_product_id:
                result = gateway.create_price(
                    plan.stripe_product_id, plan.key, plan.recurring_price, plan.currency, plan.interval
                )
                _raise_for_result(result, "create_price")
                new_price_id = result.value
            else:
                result = gateway.create_product_and_price(
                    plan_key=plan.key,
                    name=plan.name,
                    description=plan.description,
                    unit_amount=plan.recurring_price,
                    currency=plan.currency,
                    interval=plan.interval,
                )
                _raise_for_result(result, "create_product_and_price")
                plan.stripe_product_id = result.value.product_id
                new_price_id = result.value.price_id
            _archive_price_rows(db, gateway, plan)
            plan.stripe_price_id = new_price_id
            _add_price_row(db, plan, new_price_id)
            logger.info(f"プラン価格変更: key={plan.key}, new_price={new_price_id}")
        else:
            # 無料化: 以降の新規購読は不可、既存購読は旧価格のまま
            _archive_price_rows(db, gateway, plan)
            plan.stripe_price_id = None

    if product_changed and plan.stripe_product_id:
        result = gateway.update_product(plan.stripe_product_id, name=plan.name, description=plan.description)
        if not result.ok:
            logger.warning(f"Stripe Product更新失敗 (product_id={plan.stripe_product_id}): {result.message}")

    db.commit()
    db.refresh(plan)
    return plan


def retire_plan(db: Session, gateway: PaymentGateway, plan_key: str) -> SubscriptionPlan:
    """プランの受付終了 (物理削除はしない。既存購読はそのまま継続)"""
    plan = get(db, plan_key)
    plan.is_active = False
    _archive_price_rows(db, gateway, plan)
    if plan.stripe_product_id:
        result = gateway.update_product(plan.stripe_product_id, active=False)
        if not result.ok:
            logger.warning(f"Stripe Productアーカイブ失敗 (product_id={plan.stripe_product_id}): {result.message}")
    db.commit()
    db.refresh(plan)
    logger.info(f"プラン受付終了: key={plan.key}")
    return plan


def serialize(plan: SubscriptionPlan, admin: bool = False) -> dict:
    data = {
        "key": plan.key,
        "name": plan.name,
        "description": plan.description,
        "features": [f for f in (plan.features or "").splitlines() if f.strip()],
        "recurring_price": plan.recurring_price,
        "currency": plan.currency,
        "interval": plan.interval,
        "trial_days": plan.trial_days,
        "is_active": plan.is_active,
        "subscribable": plan.is_subscribable,
    }
    if admin:
        data.update({
            "id": plan.id,
            "stripe_product_id": plan.stripe_product_id,
            "stripe_price_id": plan.stripe_price_id,
            "sort_order": plan.sort_order,
            "created_at": plan.created_at.isoformat() if plan.created_at else None,
        })
    return data
