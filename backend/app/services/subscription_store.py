"""
購読の永続化層

すべての購読変更は commit_transition (version による compare-and-swap) を通す。
遷移・監査ログ・イベント台帳は同一トランザクションでコミットする。
"""
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core import clock
from app.core.logging import get_logger
from app.models.activity_log import ActivityLog, ActivityActor
from app.models.external_event_record import EventOutcome, ExternalEventRecord
from app.models.pending_reconciliation import PendingReconciliation
from app.models.subscription import Subscription, SubscriptionStatus
from app.services.errors import ConcurrentModification
from app.services.processor_events import ProcessorEvent

logger = get_logger(__name__)


# --- 購読の参照 ---

def get_live_subscription(db: Session, business_id: int) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.live_business_id == business_id).first()


def get_current_subscription(db: Session, business_id: int) -> Optional[Subscription]:
    """有効な購読、なければ直近の解約済み購読"""
    live = get_live_subscription(db, business_id)
    if live:
        return live
    return (
        db.query(Subscription)
        .filter(Subscription.business_id == business_id)
        .order_by(Subscription.id.desc())
        .first()
    )


def get_by_stripe_subscription_id(db: Session, stripe_subscription_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.stripe_subscription_id == stripe_subscription_id).first()


def count_subscriptions(db: Session, business_id: int) -> int:
    return db.query(Subscription).filter(Subscription.business_id == business_id).count()


def find_customer_id(db: Session, business_id: int) -> Optional[str]:
    """再購読時は既存のStripe Customerを再利用"""
    row = (
        db.query(Subscription.stripe_customer_id)
        .filter(Subscription.business_id == business_id, Subscription.stripe_customer_id.isnot(None))
        .order_by(Subscription.id.desc())
        .first()
    )
    return row[0] if row else None


def list_due_plan_changes(db: Session, now: datetime) -> list[Subscription]:
    return (
        db.query(Subscription)
        .filter(
            Subscription.live_business_id.isnot(None),
            Subscription.pending_plan_key.isnot(None),
            Subscription.pending_plan_effective_at <= now,
        )
        .all()
    )


# --- 購読の書き込み ---

def _activity(
    subscription: Subscription,
    *,
    action: str,
    actor: ActivityActor,
    from_status: Optional[str],
    to_status: Optional[str],
    plan_key: Optional[str],
    version: int,
    event: Optional[ProcessorEvent] = None,
    details: Optional[dict] = None,
) -> ActivityLog:
    return ActivityLog(
        business_id=subscription.business_id,
        subscription_id=subscription.id,
        action=action,
        actor=actor.value,
        from_status=from_status,
        to_status=to_status,
        plan_key=plan_key,
        version=version,
        stripe_event_id=event.id if event else None,
        details=details,
        created_at=clock.utcnow(),
    )


def insert_subscription(db: Session, subscription: Subscription, *, actor: ActivityActor, details: dict = None) -> Subscription:
    """新規購読を作成 (version=1)

    同じ店舗の有効な購読が既にある場合は一意制約違反となり ConcurrentModification を送出する。
    """
    subscription.live_business_id = subscription.business_id
    subscription.version = 1
    subscription.state_watermark = 0
    subscription.local_commit_ts = clock.now_ts()
    db.add(subscription)
    try:
        db.flush()
        db.add(_activity(
            subscription,
            action="subscription_created",
            actor=actor,
            from_status=None,
            to_status=subscription.status,
            plan_key=subscription.plan_key,
            version=1,
            details=details,
        ))
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConcurrentModification("この店舗には既に有効な購読があります")
    db.refresh(subscription)
    logger.info(
        f"購読作成: business_id={subscription.business_id}, subscription_id={subscription.id}, "
        f"status={subscription.status}, plan={subscription.plan_key}"
    )
    return subscription


def commit_transition(
    db: Session,
    subscription: Subscription,
    expected_version: int,
    changes: dict,
    *,
    action: str,
    actor: ActivityActor,
    event: Optional[ProcessorEvent] = None,
    details: Optional[dict] = None,
) -> Subscription:
    """version が expected_version のときだけ変更を確定する (compare-and-swap)

    成功時は version を1つ進め、監査ログ (とイベント台帳) を同一トランザクションで書く。
    他の書き込みが先に確定していた場合は ConcurrentModification。
    """
    from_status = subscription.status
    values = dict(changes)
    if "status" in values:
        values["live_business_id"] = (
            None if values["status"] == SubscriptionStatus.CANCELED.value else subscription.business_id
        )
    # イベント同士の順序はイベントの発生時刻、ローカル変更はコミット時刻で別々に記録する
    if event:
        values["state_watermark"] = max(subscription.state_watermark or 0, event.created)
        values["last_event_id"] = event.id
    else:
        values["local_commit_ts"] = clock.now_ts()
    values["version"] = Subscription.version + 1

    updated = (
        db.query(Subscription)
        .filter(Subscription.id == subscription.id, Subscription.version == expected_version)
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        db.rollback()
        logger.info(
            f"購読の競合を検出: subscription_id={subscription.id}, expected_version={expected_version}, action={action}"
        )
        raise ConcurrentModification(subscription_id=subscription.id)

    new_version = expected_version + 1
    db.add(_activity(
        subscription,
        action=action,
        actor=actor,
        from_status=from_status,
        to_status=values.get("status", from_status),
        plan_key=values.get("plan_key", subscription.plan_key),
        version=new_version,
        event=event,
        details=details,
    ))
    if event:
        _stage_event_record(db, event, EventOutcome.APPLIED)
    db.commit()
    db.refresh(subscription)
    logger.info(
        f"購読遷移を確定: subscription_id={subscription.id}, {from_status} -> {subscription.status}, "
        f"version={subscription.version}, action={action}, actor={actor.value}",
        extra={"business_id": subscription.business_id, "subscription_id": subscription.id,
               "stripe_event_id": event.id if event else None},
    )
    return subscription


# --- 外部イベント台帳 ---

def get_event_record(db: Session, event_id: str) -> Optional[ExternalEventRecord]:
    return db.query(ExternalEventRecord).filter(ExternalEventRecord.event_id == event_id).first()


def _stage_event_record(db: Session, event: ProcessorEvent, outcome: EventOutcome):
    record = get_event_record(db, event.id)
    if record:
        record.outcome = outcome.value
        record.delivery_count = (record.delivery_count or 1) + 1
        record.last_received_at = clock.utcnow()
    else:
        db.add(ExternalEventRecord(
            event_id=event.id,
            event_type=event.type,
            stripe_subscription_id=event.stripe_subscription_id,
            event_created=event.created,
            outcome=outcome.value,
            delivery_count=1,
            received_at=clock.utcnow(),
            last_received_at=clock.utcnow(),
        ))


def record_event_outcome(db: Session, event: ProcessorEvent, outcome: EventOutcome):
    """状態を変えないイベントの処理結果を記録 (一意制約違反は呼び出し側で処理)"""
    _stage_event_record(db, event, outcome)
    db.commit()


def mark_redelivered(db: Session, record: ExternalEventRecord):
    record.delivery_count = (record.delivery_count or 1) + 1
    record.last_received_at = clock.utcnow()
    db.commit()


def purge_event_records(db: Session, older_than: datetime) -> int:
    deleted = (
        db.query(ExternalEventRecord)
        .filter(ExternalEventRecord.received_at < older_than)
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted


# --- 照合待ちマーカー ---

def record_pending_reconciliation(
    db: Session,
    *,
    business_id: int,
    operation: str,
    reason: str,
    subscription_id: Optional[int] = None,
    stripe_subscription_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    details: Optional[dict] = None,
) -> PendingReconciliation:
    marker = PendingReconciliation(
        business_id=business_id,
        subscription_id=subscription_id,
        stripe_subscription_id=stripe_subscription_id,
        operation=operation,
        reason=reason,
        idempotency_key=idempotency_key,
        details=details,
        attempts=0,
        resolved=False,
    )
    db.add(marker)
    db.commit()
    db.refresh(marker)
    logger.error(
        f"外部と内部の不整合を記録: marker_id={marker.id}, business_id={business_id}, "
        f"operation={operation}, reason={reason}",
        extra={
            "business_id": business_id,
            "marker_id": marker.id,
            "extra_data": {"stripe_subscription_id": stripe_subscription_id, "details": details},
        },
    )
    return marker


def list_unresolved(db: Session, limit: int = 50) -> list[PendingReconciliation]:
    return (
        db.query(PendingReconciliation)
        .filter(PendingReconciliation.resolved == False)  # noqa: E712
        .order_by(PendingReconciliation.id)
        .limit(limit)
        .all()
    )
