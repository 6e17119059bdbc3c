"""
Webhook照合: 決済事業者のイベントを購読の状態遷移として適用する

同じイベントの再配信・順不同の到着・対話操作との競合があっても
状態が後戻りしないことを保証する。
"""
from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core import clock
from app.core.logging import get_logger
from app.models.activity_log import ActivityActor
from app.models.external_event_record import EventOutcome, RETRYABLE_OUTCOMES
from app.models.subscription import Subscription, SubscriptionStatus
from app.services import plan_catalog, subscription_store as store
from app.services.errors import ConcurrentModification, InvalidEventPayload, Unauthenticated
from app.services.payment_gateway import PaymentGateway
from app.services.processor_events import PROCESSOR_OWNED_KINDS, EventKind, ProcessorEvent, parse_event
from app.services.transitions import event_action, event_target

logger = get_logger(__name__)

MAX_APPLY_ATTEMPTS = 3


@dataclass
class EventDecision:
    outcome: EventOutcome
    changes: dict = field(default_factory=dict)
    action: str = ""


@dataclass
class ReconcileResult:
    event_id: str
    event_type: str
    outcome: EventOutcome
    subscription_id: Optional[int] = None
    version: Optional[int] = None


def is_stale(sub: Subscription, event: ProcessorEvent) -> bool:
    """確定済みの状態より古い情報を持つイベントか

    - 適用済みのイベントより前に発生したイベント
    - 期間終了が現在の期間より前のイベント
    - ローカル変更より前に発生し、その変更で置き換わった内容を持つイベント

    ローカル変更より前に発生した決済の成否・終了は、変更前の価格を持たない限り適用する。
    """
    if event.created < (sub.state_watermark or 0):
        return True
    if event.period_end and sub.current_period_end and event.period_end < sub.current_period_end:
        return True
    if event.created < (sub.local_commit_ts or 0):
        if event.kind not in PROCESSOR_OWNED_KINDS:
            # 購読状態のスナップショットはローカル変更時の外部応答のほうが新しい
            return True
        if event.price_id and event.price_id != sub.stripe_price_id:
            return True
    return False


def evaluate_event(
    sub: Subscription,
    event: ProcessorEvent,
    resolve_plan_key: Callable[[str], Optional[str]],
) -> EventDecision:
    """イベントを現在の購読に適用した結果を計算する (DBは変更しない)"""
    if is_stale(sub, event):
        return EventDecision(EventOutcome.IGNORED_STALE)

    current = sub.status_enum
    target = event_target(event.kind, current)
    if target is None:
        return EventDecision(EventOutcome.IGNORED_ILLEGAL_TRANSITION)

    changes: dict = {}
    if target != current:
        changes["status"] = target.value
        if target == SubscriptionStatus.CANCELED:
            changes["canceled_at"] = clock.utcnow()
            changes["pending_plan_key"] = None
            changes["pending_plan_effective_at"] = None
        elif target == SubscriptionStatus.PAUSED:
            changes["paused_at"] = clock.utcnow()
        if current == SubscriptionStatus.PAUSED:
            changes["paused_at"] = None
        if current == SubscriptionStatus.CANCELED_SCHEDULED and target != SubscriptionStatus.CANCELED:
            changes["cancel_at_period_end"] = False

    for name, value in (
        ("current_period_start", event.period_start),
        ("current_period_end", event.period_end),
        ("trial_end", event.trial_end),
    ):
        if value is not None and value != getattr(sub, name):
            changes[name] = value
    if target == SubscriptionStatus.CANCELED_SCHEDULED and not sub.cancel_at_period_end:
        changes["cancel_at_period_end"] = True

    pending_key = sub.pending_plan_key
    if event.price_id and event.price_id != sub.stripe_price_id:
        changes["stripe_price_id"] = event.price_id
        plan_key = resolve_plan_key(event.price_id)
        if plan_key is None:
            logger.warning(f"未知の価格ID: price={event.price_id}, subscription_id={sub.id}")
        elif plan_key == sub.pending_plan_key:
            pass
        elif plan_key != sub.plan_key:
            # 決済事業者側で直接プランが変更された
            changes["plan_key"] = plan_key
            pending_key = None
        else:
            pending_key = None
        if pending_key is None and sub.pending_plan_key:
            changes["pending_plan_key"] = None
            changes["pending_plan_effective_at"] = None

    # 予約済みダウングレードの適用 (新しい期間の開始)
    if (
        pending_key
        and target != SubscriptionStatus.CANCELED
        and sub.pending_plan_effective_at
        and event.period_start
        and event.period_start >= sub.pending_plan_effective_at
    ):
        changes["plan_key"] = pending_key
        changes["pending_plan_key"] = None
        changes["pending_plan_effective_at"] = None

    if not changes:
        return EventDecision(EventOutcome.IGNORED_NOOP)
    return EventDecision(EventOutcome.APPLIED, changes=changes, action=event_action(event.kind, current, target))


class WebhookReconciler:
    def __init__(self, db: Session, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway

    def handle_event(self, raw_payload: bytes, signature: str) -> ReconcileResult:
        verified = self.gateway.verify_webhook_signature(raw_payload, signature)
        if not verified.ok:
            raise Unauthenticated(verified.message or "Invalid signature")
        try:
            event = parse_event(verified.value)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Webhookペイロード解析失敗: {e}")
            raise InvalidEventPayload()
        return self.apply_event(event)

    def apply_event(self, event: ProcessorEvent) -> ReconcileResult:
        record = store.get_event_record(self.db, event.id)
        if record and record.outcome not in RETRYABLE_OUTCOMES:
            store.mark_redelivered(self.db, record)
            logger.info(f"処理済みイベントをスキップ: {event.id} ({record.outcome})")
            return ReconcileResult(event.id, event.type, EventOutcome.IGNORED_DUPLICATE)

        if event.kind == EventKind.UNHANDLED or not event.stripe_subscription_id:
            return self._finish(event, EventOutcome.IGNORED_UNHANDLED)

        for attempt in range(1, MAX_APPLY_ATTEMPTS + 1):
            sub = store.get_by_stripe_subscription_id(self.db, event.stripe_subscription_id)
            if sub is None:
                logger.warning(
                    f"未知の購読へのイベント: event={event.id}, type={event.type}, "
                    f"subscription={event.stripe_subscription_id}"
                )
                return self._finish(event, EventOutcome.IGNORED_UNKNOWN_SUBSCRIPTION)

            decision = evaluate_event(sub, event, lambda price_id: plan_catalog.plan_key_for_price(self.db, price_id))
            if decision.outcome != EventOutcome.APPLIED:
                return self._finish(event, decision.outcome, sub)

            try:
                sub = store.commit_transition(
                    self.db, sub, sub.version, decision.changes,
                    action=decision.action, actor=ActivityActor.RECONCILIATION, event=event,
                )
            except ConcurrentModification:
                logger.info(f"イベント適用が競合、再評価します: event={event.id}, attempt={attempt}")
                continue
            except IntegrityError:
                # 同じイベントを並行して処理した別のリクエストが先に記録した
                self.db.rollback()
                return ReconcileResult(event.id, event.type, EventOutcome.IGNORED_DUPLICATE)
            return ReconcileResult(event.id, event.type, EventOutcome.APPLIED, sub.id, sub.version)

        raise ConcurrentModification(f"イベントを適用できません (競合が続いています): {event.id}")

    def _finish(self, event: ProcessorEvent, outcome: EventOutcome, sub: Optional[Subscription] = None) -> ReconcileResult:
        if outcome == EventOutcome.IGNORED_STALE:
            logger.info(f"古いイベントを無視: event={event.id}, type={event.type}, subscription_id={sub.id}")
        elif outcome == EventOutcome.IGNORED_ILLEGAL_TRANSITION:
            logger.warning(
                f"遷移できないイベントを無視: event={event.id}, kind={event.kind.value}, status={sub.status}"
            )
        else:
            logger.info(f"イベントを記録: event={event.id}, type={event.type}, outcome={outcome.value}")
        try:
            store.record_event_outcome(self.db, event, outcome)
        except IntegrityError:
            self.db.rollback()
            return ReconcileResult(event.id, event.type, EventOutcome.IGNORED_DUPLICATE)
        return ReconcileResult(
            event.id, event.type, outcome,
            sub.id if sub else None, sub.version if sub else None,
        )
