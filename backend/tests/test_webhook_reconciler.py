import json
from datetime import datetime

import pytest

from app.core import clock
from app.models.activity_log import ActivityLog
from app.models.external_event_record import EventOutcome
from app.models.plan_price import SubscriptionPlanPrice
from app.models.subscription import Subscription
from app.services import subscription_store as store
from app.services.errors import InvalidEventPayload, Unauthenticated
from app.services.processor_events import EventKind
from app.services.subscription_controller import SubscriptionController
from app.services.webhook_reconciler import WebhookReconciler, evaluate_event
from tests.conftest import (
    NEXT_PERIOD_END,
    PERIOD_END,
    PERIOD_START,
    WATERMARK,
    make_event,
    subscription_payload,
)


@pytest.fixture
def reconciler(db, gateway):
    return WebhookReconciler(db, gateway)


def _body(payload: dict) -> bytes:
    return json.dumps(payload).encode()


class TestDelivery:
    def test_bad_signature_is_rejected(self, db, reconciler, make_subscription):
        make_subscription()

        with pytest.raises(Unauthenticated):
            reconciler.handle_event(_body(subscription_payload(status="past_due")), "forged")

        assert store.get_event_record(db, "evt_1") is None

    def test_malformed_payload(self, reconciler):
        with pytest.raises(InvalidEventPayload):
            reconciler.handle_event(_body({"id": "evt_broken"}), "valid")

    def test_redelivery_is_applied_once(self, db, reconciler, make_subscription):
        sub = make_subscription()
        body = _body(subscription_payload(status="past_due"))

        first = reconciler.handle_event(body, "valid")
        second = reconciler.handle_event(body, "valid")

        assert first.outcome == EventOutcome.APPLIED
        assert second.outcome == EventOutcome.IGNORED_DUPLICATE
        db.refresh(sub)
        assert sub.status == "past_due"
        assert sub.version == 2
        assert sub.last_event_id == "evt_1"
        record = store.get_event_record(db, "evt_1")
        assert record.outcome == EventOutcome.APPLIED.value
        assert record.delivery_count == 2

    def test_event_for_unknown_subscription_is_retried_later(self, db, reconciler, make_subscription):
        event = make_event(EventKind.PAYMENT_FAILED, stripe_subscription_id="sub_late", event_type="invoice.payment_failed")

        first = reconciler.apply_event(event)
        assert first.outcome == EventOutcome.IGNORED_UNKNOWN_SUBSCRIPTION

        sub = make_subscription(stripe_subscription_id="sub_late")
        second = reconciler.apply_event(event)

        assert second.outcome == EventOutcome.APPLIED
        db.refresh(sub)
        assert sub.status == "past_due"
        record = store.get_event_record(db, event.id)
        assert record.outcome == EventOutcome.APPLIED.value
        assert record.delivery_count == 2

    def test_zero_amount_invoice_is_unhandled(self, db, reconciler, make_subscription):
        sub = make_subscription(status="trialing")
        payload = {
            "id": "evt_inv0",
            "type": "invoice.paid",
            "created": WATERMARK + 60,
            "data": {"object": {"id": "in_0", "amount_paid": 0, "subscription": "sub_existing"}},
        }

        result = reconciler.handle_event(_body(payload), "valid")

        assert result.outcome == EventOutcome.IGNORED_UNHANDLED
        db.refresh(sub)
        assert sub.status == "trialing"

    def test_unrelated_event_type(self, reconciler):
        payload = {"id": "evt_cus", "type": "customer.created", "created": WATERMARK, "data": {"object": {}}}

        result = reconciler.handle_event(_body(payload), "valid")

        assert result.outcome == EventOutcome.IGNORED_UNHANDLED

    def test_no_change_is_recorded_as_noop(self, db, reconciler, make_subscription):
        sub = make_subscription()

        result = reconciler.handle_event(_body(subscription_payload()), "valid")

        assert result.outcome == EventOutcome.IGNORED_NOOP
        db.refresh(sub)
        assert sub.version == 1
        assert store.get_event_record(db, "evt_1").outcome == EventOutcome.IGNORED_NOOP.value


class TestOrdering:
    def test_event_older_than_local_change_is_ignored(self, db, gateway, reconciler, business, make_subscription):
        """プラン変更 (v5) 後に届いた変更前の請求イベントでプランが戻らない"""
        make_subscription("basic", version=4)
        changed = SubscriptionController(db, gateway).change_plan(business.id, "premium")
        assert changed.version == 5

        result = reconciler.apply_event(make_event(
            EventKind.PAYMENT_SUCCEEDED,
            created=clock.now_ts() - 3600,
            event_type="invoice.paid",
            price_id="price_basic",
            period_start=PERIOD_START,
            period_end=PERIOD_END,
        ))

        assert result.outcome == EventOutcome.IGNORED_STALE
        sub = store.get_live_subscription(db, business.id)
        assert sub.plan_key == "premium"
        assert sub.stripe_price_id == "price_premium"
        assert sub.version == 5

    def test_newer_event_after_local_change_applies(self, db, gateway, reconciler, business, make_subscription):
        make_subscription("basic")
        SubscriptionController(db, gateway).pause(business.id)

        result = reconciler.apply_event(make_event(EventKind.ACTIVATED, created=clock.now_ts() + 60))

        assert result.outcome == EventOutcome.APPLIED
        sub = store.get_live_subscription(db, business.id)
        assert sub.status == "active"
        assert sub.paused_at is None
        assert sub.version == 3

    def test_payment_failure_before_local_change_still_applies(self, db, gateway, reconciler, business,
                                                               make_subscription):
        """プラン変更前に発生した支払い失敗が変更後に届いても past_due になる"""
        make_subscription("basic")
        SubscriptionController(db, gateway).change_plan(business.id, "premium")

        result = reconciler.apply_event(make_event(
            EventKind.PAYMENT_FAILED, created=clock.now_ts() - 30, event_type="invoice.payment_failed",
        ))

        assert result.outcome == EventOutcome.APPLIED
        sub = store.get_live_subscription(db, business.id)
        assert sub.status == "past_due"
        assert sub.plan_key == "premium"
        assert sub.version == 3

    def test_snapshot_before_local_change_is_ignored(self, db, gateway, reconciler, business, make_subscription):
        """一時停止前の購読スナップショットで一時停止が取り消されない"""
        make_subscription("basic")
        SubscriptionController(db, gateway).pause(business.id)

        result = reconciler.apply_event(make_event(EventKind.ACTIVATED, created=clock.now_ts() - 30))

        assert result.outcome == EventOutcome.IGNORED_STALE
        sub = store.get_live_subscription(db, business.id)
        assert sub.status == "paused"
        assert sub.version == 2

    def test_events_are_ordered_by_event_time(self, db, reconciler, make_subscription):
        sub = make_subscription()
        reconciler.apply_event(make_event(EventKind.PAYMENT_FAILED, created=WATERMARK + 600, event_id="evt_failed",
                                          event_type="invoice.payment_failed"))

        result = reconciler.apply_event(make_event(EventKind.ACTIVATED, created=WATERMARK + 300,
                                                   event_id="evt_older"))

        assert result.outcome == EventOutcome.IGNORED_STALE
        db.refresh(sub)
        assert sub.status == "past_due"
        assert sub.state_watermark == WATERMARK + 600

    def test_event_for_previous_period_is_stale(self, db, reconciler, make_subscription):
        sub = make_subscription()

        result = reconciler.apply_event(make_event(
            EventKind.PAYMENT_FAILED,
            created=WATERMARK + 600,
            period_start=datetime(2025, 12, 1),
            period_end=datetime(2026, 1, 1),
        ))

        assert result.outcome == EventOutcome.IGNORED_STALE
        db.refresh(sub)
        assert sub.status == "active"


class TestTransitions:
    def test_trial_conversion(self, db, reconciler, make_subscription):
        sub = make_subscription("starter", status="trialing")

        result = reconciler.apply_event(make_event(
            EventKind.PAYMENT_SUCCEEDED, event_type="invoice.paid",
            price_id="price_starter", period_start=PERIOD_END, period_end=NEXT_PERIOD_END,
        ))

        assert result.outcome == EventOutcome.APPLIED
        db.refresh(sub)
        assert sub.status == "active"
        assert sub.current_period_end == NEXT_PERIOD_END
        log = db.query(ActivityLog).filter(ActivityLog.subscription_id == sub.id).one()
        assert log.action == "trial_converted"
        assert log.actor == "reconciliation"
        assert log.stripe_event_id == "evt_1"

    def test_cancel_schedule_then_end(self, db, reconciler, business, make_subscription):
        sub = make_subscription()

        scheduled = reconciler.apply_event(make_event(EventKind.CANCEL_SCHEDULED, event_id="evt_sched",
                                                      cancel_at_period_end=True))
        db.refresh(sub)
        assert scheduled.outcome == EventOutcome.APPLIED
        assert sub.status == "canceled_scheduled"
        assert sub.cancel_at_period_end is True
        assert sub.live_business_id == business.id

        ended = reconciler.apply_event(make_event(EventKind.ENDED, event_id="evt_end",
                                                  event_type="customer.subscription.deleted"))
        db.refresh(sub)
        assert ended.outcome == EventOutcome.APPLIED
        assert sub.status == "canceled"
        assert sub.live_business_id is None
        assert sub.canceled_at is not None

    def test_canceled_subscription_is_not_revived(self, db, reconciler, make_subscription):
        sub = make_subscription(status="canceled")

        result = reconciler.apply_event(make_event(EventKind.ACTIVATED, created=WATERMARK + 3600))

        assert result.outcome == EventOutcome.IGNORED_ILLEGAL_TRANSITION
        db.refresh(sub)
        assert sub.status == "canceled"
        assert sub.version == 1

    def test_illegal_transition_is_ignored(self, db, reconciler, make_subscription):
        sub = make_subscription(status="trialing")

        result = reconciler.apply_event(make_event(EventKind.PAUSED))

        assert result.outcome == EventOutcome.IGNORED_ILLEGAL_TRANSITION
        db.refresh(sub)
        assert sub.status == "trialing"

    def test_scheduled_cancel_withdrawn_at_processor(self, db, reconciler, make_subscription):
        sub = make_subscription(status="canceled_scheduled")

        result = reconciler.apply_event(make_event(EventKind.ACTIVATED, cancel_at_period_end=False))

        assert result.outcome == EventOutcome.APPLIED
        db.refresh(sub)
        assert sub.status == "active"
        assert sub.cancel_at_period_end is False
        assert db.query(ActivityLog).one().action == "subscription_reactivated"

    def test_scheduled_downgrade_takes_effect_on_renewal(self, db, reconciler, make_subscription):
        sub = make_subscription("premium", pending_plan_key="basic", pending_plan_effective_at=PERIOD_END)

        result = reconciler.apply_event(make_event(
            EventKind.PAYMENT_SUCCEEDED, event_type="invoice.paid",
            price_id="price_basic", period_start=PERIOD_END, period_end=NEXT_PERIOD_END,
        ))

        assert result.outcome == EventOutcome.APPLIED
        db.refresh(sub)
        assert sub.plan_key == "basic"
        assert sub.stripe_price_id == "price_basic"
        assert sub.pending_plan_key is None
        assert sub.pending_plan_effective_at is None

    def test_archived_price_resolves_to_plan(self, db, reconciler, plans, make_subscription):
        db.add(SubscriptionPlanPrice(
            plan_id=plans["premium"].id, stripe_price_id="price_premium_2025", unit_amount=4900,
            currency="eur", interval="month", is_active=False,
        ))
        db.commit()
        sub = make_subscription("basic")

        result = reconciler.apply_event(make_event(EventKind.ACTIVATED, price_id="price_premium_2025"))

        assert result.outcome == EventOutcome.APPLIED
        db.refresh(sub)
        assert sub.plan_key == "premium"
        assert sub.stripe_price_id == "price_premium_2025"


class TestEvaluateEvent:
    def _sub(self, **fields):
        values = dict(
            id=1, business_id=1, plan_key="basic", stripe_price_id="price_basic", status="active",
            current_period_start=PERIOD_START, current_period_end=PERIOD_END, cancel_at_period_end=False,
            version=3, state_watermark=WATERMARK, local_commit_ts=WATERMARK,
        )
        values.update(fields)
        return Subscription(**values)

    def test_unknown_price_keeps_plan(self):
        decision = evaluate_event(
            self._sub(), make_event(EventKind.ACTIVATED, price_id="price_mystery"), lambda price_id: None,
        )

        assert decision.outcome == EventOutcome.APPLIED
        assert decision.changes == {"stripe_price_id": "price_mystery"}

    def test_stale_event_is_not_evaluated(self):
        resolved = []

        decision = evaluate_event(
            self._sub(),
            make_event(EventKind.ENDED, created=WATERMARK - 1),
            lambda price_id: resolved.append(price_id),
        )

        assert decision.outcome == EventOutcome.IGNORED_STALE
        assert resolved == []

    def test_payment_event_before_local_change_is_evaluated(self):
        decision = evaluate_event(
            self._sub(local_commit_ts=WATERMARK + 600),
            make_event(EventKind.PAYMENT_FAILED, created=WATERMARK + 60),
            lambda price_id: None,
        )

        assert decision.outcome == EventOutcome.APPLIED
        assert decision.changes == {"status": "past_due"}

    def test_superseded_price_before_local_change_is_stale(self):
        decision = evaluate_event(
            self._sub(stripe_price_id="price_premium", plan_key="premium", local_commit_ts=WATERMARK + 600),
            make_event(EventKind.PAYMENT_SUCCEEDED, created=WATERMARK + 60, price_id="price_basic"),
            lambda price_id: "basic",
        )

        assert decision.outcome == EventOutcome.IGNORED_STALE

    def test_ended_clears_scheduled_downgrade(self):
        decision = evaluate_event(
            self._sub(pending_plan_key="trial", pending_plan_effective_at=PERIOD_END),
            make_event(EventKind.ENDED),
            lambda price_id: None,
        )

        assert decision.changes["status"] == "canceled"
        assert decision.changes["pending_plan_key"] is None
        assert decision.action == "subscription_ended"
