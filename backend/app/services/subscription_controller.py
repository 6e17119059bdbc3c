"""
対話的な購読ライフサイクル操作

各操作は「読み込み → 遷移検証 → 外部呼び出し → version付きコミット」の順に進む。
外部で確定する前にローカルの購読を変更することはない。
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core import clock
from app.core.logging import get_logger
from app.models.activity_log import ActivityActor
from app.models.business import Business
from app.models.pending_reconciliation import (
    REASON_COMMIT_FAILED,
    REASON_OUTCOME_UNKNOWN,
    REASON_SUPERSEDED,
)
from app.models.subscription import Subscription, SubscriptionStatus
from app.services import plan_catalog, subscription_store as store
from app.services.errors import (
    BusinessNotFound,
    ConcurrentModification,
    ExternalGatewayError,
    InvalidTransition,
    OperationOutcomeUnknown,
    SubscriptionNotFound,
)
from app.services.payment_gateway import GatewayOutcome, GatewayResult, PaymentGateway, idempotency_key
from app.services.processor_events import RemoteSubscription
from app.services.transitions import (
    INTERACTIVE_TRANSITIONS,
    Operation,
    interactive_target,
    operation_action,
)

logger = get_logger(__name__)

# 外部で確定済みの変更をローカルに反映する際の最大試行回数
MAX_COMMIT_ATTEMPTS = 3

# 「既に反映済み」の判定に使うフィールド (期間はWebhookで補正されるため除外)
_OUTCOME_FIELDS = ("status", "plan_key", "pending_plan_key", "cancel_at_period_end")

_PERIOD_FIELDS = ("current_period_start", "current_period_end", "trial_end")


@dataclass
class SubscriptionCreated:
    subscription: Subscription
    client_secret: Optional[str]


def _period_changes(remote: Optional[RemoteSubscription]) -> dict:
    if remote is None:
        return {}
    return {name: getattr(remote, name) for name in _PERIOD_FIELDS if getattr(remote, name)}


def _keep_newer_periods(changes: dict, fresh: Subscription) -> dict:
    """再コミット時、並行して進んだ期間を外部応答の古い値で戻さない"""
    rebased = dict(changes)
    for name in _PERIOD_FIELDS:
        current = getattr(fresh, name)
        if name in rebased and current and rebased[name] and current > rebased[name]:
            del rebased[name]
    # ダウングレード予約は読み直した期間の終了時に合わせる
    effective_at = rebased.get("pending_plan_effective_at")
    if effective_at and fresh.current_period_end and fresh.current_period_end > effective_at:
        rebased["pending_plan_effective_at"] = fresh.current_period_end
    return rebased


class SubscriptionController:
    def __init__(self, db: Session, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway

    # --- 公開操作 ---

    def create_subscription(self, business_id: int, plan_key: str) -> SubscriptionCreated:
        business = self.db.query(Business).filter(Business.id == business_id).first()
        if not business:
            raise BusinessNotFound(business_id)

        plan = plan_catalog.get(self.db, plan_key)
        if not plan.is_subscribable:
            raise InvalidTransition("このプランは購読できません", operation=Operation.CREATE.value)

        if store.get_live_subscription(self.db, business_id):
            raise InvalidTransition(
                "既に購読中です。プラン変更をご利用ください", operation=Operation.CREATE.value
            )

        # 再購読ごとに別の論理購読として扱う
        generation = store.count_subscriptions(self.db, business_id) + 1
        key = idempotency_key(business_id, Operation.CREATE.value, f"gen{generation}", 1)
        customer_id = store.find_customer_id(self.db, business_id)

        result = self.gateway.create_customer_and_subscription(
            business_id=business_id,
            name=business.name,
            email=business.contact_email,
            price_id=plan.stripe_price_id,
            trial_days=plan.trial_days,
            idempotency_key=key,
            customer_id=customer_id,
        )
        self._raise_for_result(
            result, business_id=business_id, operation=Operation.CREATE, key=key,
            details={"plan_key": plan.key},
        )

        created = result.value
        remote = created.subscription
        status = SubscriptionStatus.TRIALING if plan.trial_days > 0 else SubscriptionStatus.ACTIVE
        subscription = Subscription(
            business_id=business_id,
            plan_key=plan.key,
            stripe_price_id=plan.stripe_price_id,
            status=status.value,
            stripe_customer_id=created.customer_id,
            stripe_subscription_id=remote.id,
            current_period_start=remote.current_period_start,
            current_period_end=remote.current_period_end,
            trial_end=remote.trial_end,
            cancel_at_period_end=False,
        )
        marker_details = {
            "plan_key": plan.key,
            "stripe_customer_id": created.customer_id,
            "stripe_subscription_id": remote.id,
        }
        try:
            subscription = store.insert_subscription(
                self.db, subscription, actor=ActivityActor.INTERACTIVE, details={"trial_days": plan.trial_days},
            )
        except ConcurrentModification:
            live = store.get_live_subscription(self.db, business_id)
            if live and live.stripe_subscription_id == remote.id:
                # 同じ冪等キーの並行リクエストが同じ外部購読を先に記録した
                logger.info(f"並行した作成が同じ購読を記録済み: business_id={business_id}, subscription_id={live.id}")
                return SubscriptionCreated(subscription=live, client_secret=created.client_secret)
            # 並行した作成が先に確定した。外部には孤立した購読が残る
            self._record_marker(
                business_id=business_id, operation=Operation.CREATE, reason=REASON_SUPERSEDED,
                stripe_subscription_id=remote.id, key=key, details=marker_details,
            )
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            marker = self._record_marker(
                business_id=business_id, operation=Operation.CREATE, reason=REASON_COMMIT_FAILED,
                stripe_subscription_id=remote.id, key=key, details={**marker_details, "error": str(e)},
            )
            raise OperationOutcomeUnknown(marker_id=marker.id if marker else None)

        return SubscriptionCreated(subscription=subscription, client_secret=created.client_secret)

    def change_plan(self, business_id: int, new_plan_key: str) -> Subscription:
        sub = self._load(business_id)
        new_plan = plan_catalog.get(self.db, new_plan_key)

        if new_plan.key == sub.plan_key:
            if sub.pending_plan_key:
                return self._revert_pending_change(sub, new_plan)
            raise InvalidTransition("既にこのプランをご利用中です", current_status=sub.status,
                                    operation=Operation.CHANGE_PLAN.value)
        if new_plan.key == sub.pending_plan_key:
            raise InvalidTransition("このプランへの変更は既に予約されています", current_status=sub.status,
                                    operation=Operation.CHANGE_PLAN.value)
        if not new_plan.is_subscribable:
            raise InvalidTransition("このプランは購読できません", current_status=sub.status,
                                    operation=Operation.CHANGE_PLAN.value)
        interactive_target(Operation.CHANGE_PLAN, sub.status_enum)

        current_plan = plan_catalog.get(self.db, sub.plan_key)
        # 安いプランへの変更は次回更新から (日割りなし)
        downgrade = new_plan.recurring_price < current_plan.recurring_price

        version = sub.version
        key = idempotency_key(business_id, f"{Operation.CHANGE_PLAN.value}:{new_plan.key}", sub.id, version + 1)
        result = self.gateway.change_plan(
            sub.stripe_subscription_id, new_plan.stripe_price_id, prorate=not downgrade, idempotency_key=key,
        )
        self._raise_for_result(
            result, business_id=business_id, operation=Operation.CHANGE_PLAN, key=key, subscription=sub,
            details={"from_plan": sub.plan_key, "to_plan": new_plan.key},
        )

        changes = _period_changes(result.value)
        changes["stripe_price_id"] = new_plan.stripe_price_id
        if downgrade:
            changes["pending_plan_key"] = new_plan.key
            changes["pending_plan_effective_at"] = changes.get("current_period_end") or sub.current_period_end
            action = "plan_change_scheduled"
        else:
            changes["plan_key"] = new_plan.key
            changes["pending_plan_key"] = None
            changes["pending_plan_effective_at"] = None
            action = operation_action(Operation.CHANGE_PLAN)

        return self._commit(
            sub, version, Operation.CHANGE_PLAN, changes, action=action, key=key,
            details={"from_plan": sub.plan_key, "to_plan": new_plan.key, "prorate": not downgrade},
        )

    def pause(self, business_id: int) -> Subscription:
        sub = self._load(business_id)
        target = interactive_target(Operation.PAUSE, sub.status_enum)
        version = sub.version
        key = idempotency_key(business_id, Operation.PAUSE.value, sub.id, version + 1)
        result = self.gateway.pause(sub.stripe_subscription_id, idempotency_key=key)
        self._raise_for_result(result, business_id=business_id, operation=Operation.PAUSE, key=key, subscription=sub)
        changes = {"status": target.value, "paused_at": clock.utcnow()}
        return self._commit(sub, version, Operation.PAUSE, changes, key=key)

    def resume(self, business_id: int) -> Subscription:
        sub = self._load(business_id)
        target = interactive_target(Operation.RESUME, sub.status_enum)
        version = sub.version
        key = idempotency_key(business_id, Operation.RESUME.value, sub.id, version + 1)
        result = self.gateway.resume(sub.stripe_subscription_id, idempotency_key=key)
        self._raise_for_result(result, business_id=business_id, operation=Operation.RESUME, key=key, subscription=sub)
        changes = _period_changes(result.value)
        changes.update({"status": target.value, "paused_at": None})
        return self._commit(sub, version, Operation.RESUME, changes, key=key)

    def cancel(self, business_id: int, immediate: bool) -> Subscription:
        sub = self._load(business_id)
        operation = Operation.CANCEL_IMMEDIATELY if immediate else Operation.CANCEL_AT_PERIOD_END
        target = interactive_target(operation, sub.status_enum)
        version = sub.version
        key = idempotency_key(business_id, operation.value, sub.id, version + 1)
        result = self.gateway.cancel(sub.stripe_subscription_id, immediate=immediate, idempotency_key=key)
        self._raise_for_result(result, business_id=business_id, operation=operation, key=key, subscription=sub)

        if immediate:
            changes = {
                "status": target.value,
                "canceled_at": clock.utcnow(),
                "pending_plan_key": None,
                "pending_plan_effective_at": None,
            }
        else:
            # 期間終了までは利用可能。終了は外部イベントで確定する
            changes = {"status": target.value, "cancel_at_period_end": True}
        return self._commit(sub, version, operation, changes, key=key)

    def reactivate(self, business_id: int) -> Subscription:
        """期間終了時の解約予約を取り消す"""
        sub = self._load(business_id)
        target = interactive_target(Operation.REACTIVATE, sub.status_enum)
        version = sub.version
        key = idempotency_key(business_id, Operation.REACTIVATE.value, sub.id, version + 1)
        result = self.gateway.reactivate(sub.stripe_subscription_id, idempotency_key=key)
        self._raise_for_result(
            result, business_id=business_id, operation=Operation.REACTIVATE, key=key, subscription=sub,
        )
        remote = result.value
        if remote and remote.paused:
            target = SubscriptionStatus.PAUSED
        elif remote and remote.status == "trialing":
            target = SubscriptionStatus.TRIALING
        changes = _period_changes(remote)
        changes.update({"status": target.value, "cancel_at_period_end": False})
        return self._commit(sub, version, Operation.REACTIVATE, changes, key=key)

    # --- 内部処理 ---

    def _load(self, business_id: int) -> Subscription:
        sub = store.get_current_subscription(self.db, business_id)
        if not sub:
            raise SubscriptionNotFound(business_id)
        return sub

    def _revert_pending_change(self, sub: Subscription, plan) -> Subscription:
        """予約中のダウングレードを取り消し、現在のプランの価格に戻す"""
        interactive_target(Operation.CHANGE_PLAN, sub.status_enum)
        version = sub.version
        key = idempotency_key(sub.business_id, f"{Operation.CHANGE_PLAN.value}:{plan.key}", sub.id, version + 1)
        result = self.gateway.change_plan(
            sub.stripe_subscription_id, plan.stripe_price_id, prorate=False, idempotency_key=key,
        )
        self._raise_for_result(
            result, business_id=sub.business_id, operation=Operation.CHANGE_PLAN, key=key, subscription=sub,
            details={"revert_pending": sub.pending_plan_key},
        )
        changes = _period_changes(result.value)
        changes.update({
            "stripe_price_id": plan.stripe_price_id,
            "pending_plan_key": None,
            "pending_plan_effective_at": None,
        })
        return self._commit(
            sub, version, Operation.CHANGE_PLAN, changes, action="plan_change_reverted", key=key,
            details={"reverted_plan": sub.pending_plan_key},
        )

    def _raise_for_result(
        self,
        result: GatewayResult,
        *,
        business_id: int,
        operation: Operation,
        key: str,
        subscription: Optional[Subscription] = None,
        details: Optional[dict] = None,
    ):
        if result.outcome == GatewayOutcome.SUCCEEDED:
            return
        if result.outcome == GatewayOutcome.UNKNOWN:
            marker = self._record_marker(
                business_id=business_id,
                operation=operation,
                reason=REASON_OUTCOME_UNKNOWN,
                subscription=subscription,
                key=key,
                details={**(details or {}), "error": result.message},
            )
            raise OperationOutcomeUnknown(marker_id=marker.id if marker else None)
        logger.warning(
            f"決済システムが操作を拒否: business_id={business_id}, operation={operation.value}, "
            f"code={result.code}, retryable={result.retryable}"
        )
        raise ExternalGatewayError(
            result.message or "決済システムとの連携に失敗しました",
            retryable=result.retryable,
            gateway_code=result.code,
        )

    def _commit(
        self,
        sub: Subscription,
        expected_version: int,
        operation: Operation,
        changes: dict,
        *,
        key: str,
        action: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> Subscription:
        """外部で確定済みの変更をローカルに反映

        競合時は最新状態を読み直し、既に反映済みなら成功、まだ遷移可能なら再コミット、
        どちらでもなければ照合待ちマーカーを残して ConcurrentModification。
        """
        action = action or operation_action(operation)
        business_id = sub.business_id
        subscription_id = sub.id
        stripe_subscription_id = sub.stripe_subscription_id
        loaded_status = sub.status

        for attempt in range(1, MAX_COMMIT_ATTEMPTS + 1):
            try:
                return store.commit_transition(
                    self.db, sub, expected_version, changes,
                    action=action, actor=ActivityActor.INTERACTIVE, details=details,
                )
            except ConcurrentModification:
                fresh = self.db.query(Subscription).filter(Subscription.id == subscription_id).first()
                if self._already_reflected(fresh, changes):
                    logger.info(
                        f"競合したが変更は反映済み: subscription_id={subscription_id}, operation={operation.value}"
                    )
                    return fresh
                allowed = INTERACTIVE_TRANSITIONS[operation]
                if fresh.status_enum not in allowed or attempt == MAX_COMMIT_ATTEMPTS:
                    self._record_marker(
                        business_id=business_id, operation=operation, reason=REASON_SUPERSEDED,
                        stripe_subscription_id=stripe_subscription_id, subscription_id=subscription_id,
                        key=key, details={"changes": _jsonable(changes), "current_status": fresh.status},
                    )
                    raise
                changes = _keep_newer_periods(changes, fresh)
                if "status" in changes and fresh.status != loaded_status:
                    changes = {**changes, "status": allowed[fresh.status_enum].value}
                sub, expected_version = fresh, fresh.version
                logger.info(
                    f"最新状態で再コミット: subscription_id={subscription_id}, version={expected_version}, "
                    f"attempt={attempt + 1}"
                )
            except SQLAlchemyError as e:
                self.db.rollback()
                marker = self._record_marker(
                    business_id=business_id, operation=operation, reason=REASON_COMMIT_FAILED,
                    stripe_subscription_id=stripe_subscription_id, subscription_id=subscription_id,
                    key=key, details={"changes": _jsonable(changes), "error": str(e)},
                )
                raise OperationOutcomeUnknown(marker_id=marker.id if marker else None)

    @staticmethod
    def _already_reflected(fresh: Subscription, changes: dict) -> bool:
        relevant = [f for f in _OUTCOME_FIELDS if f in changes]
        return bool(relevant) and all(getattr(fresh, f) == changes[f] for f in relevant)

    def _record_marker(
        self,
        *,
        business_id: int,
        operation: Operation,
        reason: str,
        key: str,
        subscription: Optional[Subscription] = None,
        subscription_id: Optional[int] = None,
        stripe_subscription_id: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        """照合待ちマーカーを記録。記録自体に失敗した場合は全情報をCRITICALで出力"""
        if subscription is not None:
            subscription_id = subscription.id
            stripe_subscription_id = subscription.stripe_subscription_id
        try:
            return store.record_pending_reconciliation(
                self.db,
                business_id=business_id,
                subscription_id=subscription_id,
                stripe_subscription_id=stripe_subscription_id,
                operation=operation.value,
                reason=reason,
                idempotency_key=key,
                details=details,
            )
        except SQLAlchemyError:
            self.db.rollback()
            logger.critical(
                f"照合待ちマーカーを保存できません: business_id={business_id}, operation={operation.value}",
                exc_info=True,
                extra={"extra_data": {
                    "reason": reason,
                    "subscription_id": subscription_id,
                    "stripe_subscription_id": stripe_subscription_id,
                    "idempotency_key": key,
                    "details": details,
                }},
            )
            return None


def _jsonable(changes: dict) -> dict:
    return {k: (v.isoformat() if hasattr(v, "isoformat") else v) for k, v in changes.items()}
