"""
定期照合: 照合待ちマーカーの解消、予約済みプラン変更の適用、イベント台帳の削除
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core import clock
from app.core.logging import get_logger
from app.models.activity_log import ActivityActor
from app.models.external_event_record import EventOutcome
from app.models.pending_reconciliation import PendingReconciliation
from app.models.subscription import Subscription, SubscriptionStatus
from app.services import plan_catalog, subscription_store as store
from app.services.errors import ConcurrentModification, PlanNotFound
from app.services.payment_gateway import PaymentGateway
from app.services.processor_events import RemoteSubscription, event_from_remote
from app.services.transitions import Operation
from app.services.webhook_reconciler import evaluate_event

logger = get_logger(__name__)

# 外部の状態 -> 復元時のローカル状態
_RESTORABLE_STATUSES = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "incomplete": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAUSED,
}


def heal_pending(db: Session, gateway: PaymentGateway, limit: int = 50) -> dict:
    """未解消の照合待ちマーカーを外部の状態に合わせて解消する"""
    markers = store.list_unresolved(db, limit)
    stats = {"checked": 0, "resolved": 0, "unresolved": 0}
    for marker in markers:
        stats["checked"] += 1
        marker_id = marker.id
        try:
            error = _heal_one(db, gateway, marker)
        except SQLAlchemyError as e:
            db.rollback()
            error = f"DBエラー: {e}"

        marker = db.query(PendingReconciliation).filter(PendingReconciliation.id == marker_id).first()
        marker.attempts = (marker.attempts or 0) + 1
        if error is None:
            marker.resolved = True
            marker.resolved_at = clock.utcnow()
            marker.last_error = None
            stats["resolved"] += 1
            logger.info(f"照合待ちを解消: marker_id={marker_id}, operation={marker.operation}")
        else:
            marker.last_error = error
            stats["unresolved"] += 1
            logger.warning(f"照合待ちを解消できません: marker_id={marker_id}, error={error}")
        db.commit()
    return stats


def _heal_one(db: Session, gateway: PaymentGateway, marker: PendingReconciliation) -> Optional[str]:
    """1件のマーカーを処理。解消できなければエラーメッセージを返す"""
    stripe_subscription_id = marker.stripe_subscription_id
    if not stripe_subscription_id:
        return "外部購読IDが不明のため手動確認が必要です"

    result = gateway.retrieve_subscription(stripe_subscription_id)
    if not result.ok:
        return f"外部購読の取得に失敗: {result.message}"
    remote = result.value

    sub = store.get_by_stripe_subscription_id(db, stripe_subscription_id)
    if sub is None:
        if marker.operation == Operation.CREATE.value:
            return _restore_created(db, marker, remote)
        return "ローカルの購読が見つかりません"
    return sync_from_remote(db, sub, remote, details={"marker_id": marker.id})


def sync_from_remote(db: Session, sub: Subscription, remote: RemoteSubscription, details: dict = None) -> Optional[str]:
    """外部の購読状態を遷移表に従ってローカルに反映"""
    for _ in range(3):
        event = event_from_remote(remote, event_id=f"sync-{sub.id}-{sub.version}", created=clock.now_ts())
        decision = evaluate_event(sub, event, lambda price_id: plan_catalog.plan_key_for_price(db, price_id))
        if decision.outcome == EventOutcome.IGNORED_NOOP:
            return None
        if decision.outcome != EventOutcome.APPLIED:
            return f"外部の状態 ({remote.status}) をローカル ({sub.status}) に反映できません: {decision.outcome.value}"
        try:
            store.commit_transition(
                db, sub, sub.version, decision.changes,
                action="reconciled", actor=ActivityActor.RECONCILIATION, details=details,
            )
            return None
        except ConcurrentModification:
            sub = db.query(Subscription).filter(Subscription.id == sub.id).first()
    return "競合が続いたため反映できません"


def _restore_created(db: Session, marker: PendingReconciliation, remote: RemoteSubscription) -> Optional[str]:
    """外部で作成済み・ローカル未作成の購読を復元"""
    status = _RESTORABLE_STATUSES.get(remote.status)
    if status is None:
        # 外部でも終了済み: 復元不要
        return None
    if store.get_live_subscription(db, marker.business_id):
        return "店舗に別の有効な購読があるため復元できません (外部購読の解約が必要です)"

    details = marker.details or {}
    plan_key = plan_catalog.plan_key_for_price(db, remote.price_id) if remote.price_id else None
    plan_key = plan_key or details.get("plan_key")
    try:
        plan_catalog.get(db, plan_key)
    except PlanNotFound:
        return f"プランを特定できません: price={remote.price_id}"

    subscription = Subscription(
        business_id=marker.business_id,
        plan_key=plan_key,
        stripe_price_id=remote.price_id,
        status=status.value,
        stripe_customer_id=remote.customer_id,
        stripe_subscription_id=remote.id,
        current_period_start=remote.current_period_start,
        current_period_end=remote.current_period_end,
        trial_end=remote.trial_end,
        cancel_at_period_end=remote.cancel_at_period_end,
    )
    try:
        store.insert_subscription(db, subscription, actor=ActivityActor.RECONCILIATION,
                                  details={"marker_id": marker.id, "restored": True})
    except ConcurrentModification:
        return "店舗に別の有効な購読があるため復元できません (外部購読の解約が必要です)"
    return None


def apply_scheduled_plan_changes(db: Session, now: datetime) -> int:
    """適用日時を過ぎたダウングレード予約をプランに反映"""
    applied = 0
    for sub in store.list_due_plan_changes(db, now):
        new_plan_key = sub.pending_plan_key
        old_plan_key = sub.plan_key
        try:
            store.commit_transition(
                db, sub, sub.version,
                {"plan_key": new_plan_key, "pending_plan_key": None, "pending_plan_effective_at": None},
                action="plan_change_applied",
                actor=ActivityActor.SCHEDULER,
                details={"from_plan": old_plan_key, "to_plan": new_plan_key},
            )
            applied += 1
        except ConcurrentModification:
            # 次回の実行で再試行
            logger.info(f"プラン変更の適用が競合: subscription_id={sub.id}")
    return applied


def purge_expired_event_records(db: Session, retention_days: int, now: Optional[datetime] = None) -> int:
    """保持期間を過ぎたイベント台帳を削除"""
    cutoff = (now or clock.utcnow()) - timedelta(days=retention_days)
    deleted = store.purge_event_records(db, cutoff)
    if deleted:
        logger.info(f"イベント台帳を削除: {deleted}件 (基準={cutoff.isoformat()})")
    return deleted
