import json
import os

# app.core.config の読み込み前にテスト用設定を入れる
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"

from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.core.database import Base, get_db
from app.core.rate_limit import limiter
from app.models.business import Business
from app.models.plan import SubscriptionPlan
from app.models.plan_price import SubscriptionPlanPrice
from app.models.subscription import Subscription
from app.routers.deps import get_gateway
from app.services.payment_gateway import (
    CreatedSubscription,
    ExternalPrice,
    GatewayResult,
    InvoiceSummary,
    PaymentGateway,
)
from app.services.processor_events import EventKind, ProcessorEvent, RemoteSubscription

PERIOD_START = datetime(2026, 1, 1)
PERIOD_END = datetime(2026, 2, 1)
NEXT_PERIOD_END = datetime(2026, 3, 1)
# 既存購読の最終確定時刻 (UNIX秒)
WATERMARK = 1_767_225_600  # 2026-01-01T00:00:00Z


class FakeGateway(PaymentGateway):
    """インメモリの決済ゲートウェイ

    failures[method] に GatewayResult を入れると次の呼び出しがそれを返す。
    during_call[method] に関数を入れると外部呼び出しの「最中」に実行する (並行Webhookの再現用)。
    """

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.subscriptions: dict[str, RemoteSubscription] = {}
        self.failures: dict[str, GatewayResult] = {}
        self.during_call: dict[str, Callable[[], None]] = {}
        self.invoices: list[InvoiceSummary] = []
        self.created_by_key: dict[str, CreatedSubscription] = {}
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def _intercept(self, method: str, **kwargs) -> Optional[GatewayResult]:
        self.calls.append((method, kwargs))
        hook = self.during_call.pop(method, None)
        if hook:
            hook()
        return self.failures.pop(method, None)

    def calls_to(self, method: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == method]

    def _update(self, sub_id: str, **changes) -> GatewayResult:
        remote = self.subscriptions.get(sub_id)
        if remote is None:
            return GatewayResult.failure("No such subscription", code="resource_missing")
        remote = replace(remote, **changes)
        self.subscriptions[sub_id] = remote
        return GatewayResult.success(remote)

    def create_customer_and_subscription(self, business_id, name, email, price_id, trial_days,
                                         idempotency_key, customer_id=None):
        failure = self._intercept(
            "create_customer_and_subscription", business_id=business_id, price_id=price_id,
            trial_days=trial_days, idempotency_key=idempotency_key, customer_id=customer_id,
        )
        if failure:
            return failure
        # 同じ冪等キーの再送は最初の結果を返す
        if idempotency_key in self.created_by_key:
            return GatewayResult.success(self.created_by_key[idempotency_key])
        customer_id = customer_id or self._next_id("cus")
        remote = RemoteSubscription(
            id=self._next_id("sub"),
            customer_id=customer_id,
            status="trialing" if trial_days else "incomplete",
            price_id=price_id,
            current_period_start=PERIOD_START,
            current_period_end=PERIOD_END,
            trial_end=PERIOD_END if trial_days else None,
        )
        self.subscriptions[remote.id] = remote
        created = CreatedSubscription(
            customer_id=customer_id, subscription=remote, client_secret=f"seti_secret_{remote.id}",
        )
        self.created_by_key[idempotency_key] = created
        return GatewayResult.success(created)

    def change_plan(self, stripe_subscription_id, new_price_id, prorate, idempotency_key):
        failure = self._intercept(
            "change_plan", stripe_subscription_id=stripe_subscription_id, new_price_id=new_price_id,
            prorate=prorate, idempotency_key=idempotency_key,
        )
        return failure or self._update(stripe_subscription_id, price_id=new_price_id)

    def pause(self, stripe_subscription_id, idempotency_key):
        failure = self._intercept("pause", stripe_subscription_id=stripe_subscription_id,
                                  idempotency_key=idempotency_key)
        return failure or self._update(stripe_subscription_id, paused=True)

    def resume(self, stripe_subscription_id, idempotency_key):
        failure = self._intercept("resume", stripe_subscription_id=stripe_subscription_id,
                                  idempotency_key=idempotency_key)
        return failure or self._update(stripe_subscription_id, paused=False)

    def cancel(self, stripe_subscription_id, immediate, idempotency_key):
        failure = self._intercept("cancel", stripe_subscription_id=stripe_subscription_id,
                                  immediate=immediate, idempotency_key=idempotency_key)
        if failure:
            return failure
        if immediate:
            return self._update(stripe_subscription_id, status="canceled")
        return self._update(stripe_subscription_id, cancel_at_period_end=True)

    def reactivate(self, stripe_subscription_id, idempotency_key):
        failure = self._intercept("reactivate", stripe_subscription_id=stripe_subscription_id,
                                  idempotency_key=idempotency_key)
        return failure or self._update(stripe_subscription_id, cancel_at_period_end=False)

    def retrieve_subscription(self, stripe_subscription_id):
        failure = self._intercept("retrieve_subscription", stripe_subscription_id=stripe_subscription_id)
        if failure:
            return failure
        remote = self.subscriptions.get(stripe_subscription_id)
        if remote is None:
            return GatewayResult.failure("No such subscription", code="resource_missing")
        return GatewayResult.success(remote)

    def list_invoices(self, stripe_subscription_id, limit=10):
        failure = self._intercept("list_invoices", stripe_subscription_id=stripe_subscription_id, limit=limit)
        return failure or GatewayResult.success(self.invoices[:limit])

    def verify_webhook_signature(self, payload, signature):
        failure = self._intercept("verify_webhook_signature", signature=signature)
        if failure:
            return failure
        if signature != "valid":
            return GatewayResult.failure("Invalid signature", code="invalid_signature")
        return GatewayResult.success(json.loads(payload))

    def create_product_and_price(self, plan_key, name, description, unit_amount, currency, interval):
        failure = self._intercept("create_product_and_price", plan_key=plan_key, unit_amount=unit_amount)
        return failure or GatewayResult.success(
            ExternalPrice(product_id=f"prod_{plan_key}", price_id=self._next_id(f"price_{plan_key}"))
        )

    def create_price(self, product_id, plan_key, unit_amount, currency, interval):
        failure = self._intercept("create_price", product_id=product_id, unit_amount=unit_amount)
        return failure or GatewayResult.success(self._next_id(f"price_{plan_key}"))

    def archive_price(self, price_id):
        failure = self._intercept("archive_price", price_id=price_id)
        return failure or GatewayResult.success()

    def update_product(self, product_id, name=None, description=None, active=None):
        failure = self._intercept("update_product", product_id=product_id, name=name, active=active)
        return failure or GatewayResult.success()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def business(db):
    b = Business(name="Café Estrella", contact_email="owner@estrella.example")
    db.add(b)
    db.commit()
    db.refresh(b)
    return b


def _add_plan(db, key, name, price, trial_days=0, interval="month", sort_order=0, active=True):
    plan = SubscriptionPlan(
        key=key,
        name=name,
        recurring_price=price,
        currency="eur",
        interval=interval,
        trial_days=trial_days,
        is_active=active,
        sort_order=sort_order,
    )
    if price > 0 and interval != "none":
        plan.stripe_product_id = f"prod_{key}"
        plan.stripe_price_id = f"price_{key}"
    db.add(plan)
    db.flush()
    if plan.stripe_price_id:
        db.add(SubscriptionPlanPrice(
            plan_id=plan.id, stripe_price_id=plan.stripe_price_id, unit_amount=price,
            currency="eur", interval=interval, is_active=True,
        ))
    return plan


@pytest.fixture
def plans(db):
    """trial (無料カタログ), starter (14日トライアル), basic, premium"""
    result = {
        "trial": _add_plan(db, "trial", "Prueba", 0, interval="none", sort_order=0),
        "starter": _add_plan(db, "starter", "Starter", 1900, trial_days=14, sort_order=1),
        "basic": _add_plan(db, "basic", "Básico", 2900, sort_order=2),
        "premium": _add_plan(db, "premium", "Premium", 5900, sort_order=3),
    }
    db.commit()
    return result


@pytest.fixture
def make_subscription(db, business, plans, gateway):
    """既存購読を直接作成し、ゲートウェイ側にも同じ購読を登録する"""

    def _make(plan_key="basic", status="active", version=1, stripe_subscription_id="sub_existing", **fields):
        sub = Subscription(
            business_id=business.id,
            live_business_id=None if status == "canceled" else business.id,
            plan_key=plan_key,
            stripe_price_id=f"price_{plan_key}",
            status=status,
            stripe_customer_id="cus_existing",
            stripe_subscription_id=stripe_subscription_id,
            current_period_start=PERIOD_START,
            current_period_end=PERIOD_END,
            cancel_at_period_end=status == "canceled_scheduled",
            version=version,
            state_watermark=WATERMARK,
            local_commit_ts=WATERMARK,
            **fields,
        )
        db.add(sub)
        db.commit()
        db.refresh(sub)
        gateway.subscriptions[stripe_subscription_id] = RemoteSubscription(
            id=stripe_subscription_id,
            customer_id="cus_existing",
            status="canceled" if status == "canceled" else ("past_due" if status == "past_due" else "active"),
            price_id=f"price_{plan_key}",
            current_period_start=PERIOD_START,
            current_period_end=PERIOD_END,
            cancel_at_period_end=status == "canceled_scheduled",
            paused=status == "paused",
        )
        return sub

    return _make


def make_event(kind: EventKind, created: int = WATERMARK + 60, event_id: str = "evt_1",
               stripe_subscription_id: str = "sub_existing", event_type: str = "customer.subscription.updated",
               **fields) -> ProcessorEvent:
    return ProcessorEvent(
        id=event_id,
        type=event_type,
        created=created,
        kind=kind,
        stripe_subscription_id=stripe_subscription_id,
        **fields,
    )


def subscription_payload(event_id="evt_1", event_type="customer.subscription.updated", created=WATERMARK + 60,
                         sub_id="sub_existing", status="active", price_id="price_basic",
                         period_start=1_767_225_600, period_end=1_769_904_000,
                         cancel_at_period_end=False, pause_collection=None) -> dict:
    """Webhookペイロード (APIバージョン basil 形式: 期間は items 側)"""
    return {
        "id": event_id,
        "type": event_type,
        "created": created,
        "data": {
            "object": {
                "id": sub_id,
                "object": "subscription",
                "customer": "cus_existing",
                "status": status,
                "cancel_at_period_end": cancel_at_period_end,
                "pause_collection": pause_collection,
                "trial_end": None,
                "items": {
                    "data": [{
                        "id": "si_1",
                        "price": {"id": price_id},
                        "current_period_start": period_start,
                        "current_period_end": period_end,
                    }]
                },
            }
        },
    }


@pytest.fixture
def client(db, gateway):
    from app.main import app

    def _override_db():
        yield db

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    limiter.enabled = False
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    limiter.enabled = True


ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token"}
