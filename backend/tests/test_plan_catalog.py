import pytest

from app.models.plan import SubscriptionPlan
from app.models.plan_price import SubscriptionPlanPrice
from app.schemas.plan import PlanCreate, PlanUpdate
from app.services import plan_catalog
from app.services.errors import ExternalGatewayError, PlanConflict, PlanNotFound
from app.services.payment_gateway import GatewayResult


def _price_rows(db, plan):
    return (
        db.query(SubscriptionPlanPrice)
        .filter(SubscriptionPlanPrice.plan_id == plan.id)
        .order_by(SubscriptionPlanPrice.id)
        .all()
    )


class TestCreatePlan:
    def test_billable_plan_gets_external_price(self, db, gateway):
        plan = plan_catalog.create_plan(db, gateway, PlanCreate(
            key="pro", name="Pro", recurring_price=9900, currency="EUR", features="Reservas\nInformes\n",
        ))

        assert plan.currency == "eur"
        assert plan.stripe_product_id == "prod_pro"
        assert plan.stripe_price_id.startswith("price_pro_")
        assert plan.is_subscribable
        rows = _price_rows(db, plan)
        assert [r.stripe_price_id for r in rows] == [plan.stripe_price_id]
        assert rows[0].unit_amount == 9900
        assert plan_catalog.serialize(plan)["features"] == ["Reservas", "Informes"]

    def test_catalog_only_plan_skips_gateway(self, db, gateway):
        plan = plan_catalog.create_plan(db, gateway, PlanCreate(
            key="free", name="Gratis", recurring_price=0, interval="none",
        ))

        assert plan.stripe_price_id is None
        assert not plan.is_subscribable
        assert gateway.calls == []

    def test_duplicate_key(self, db, gateway, plans):
        with pytest.raises(PlanConflict):
            plan_catalog.create_plan(db, gateway, PlanCreate(key="basic", name="Otro", recurring_price=100))

    def test_gateway_failure_creates_nothing(self, db, gateway):
        gateway.failures["create_product_and_price"] = GatewayResult.failure("Invalid currency", code="invalid_request")

        with pytest.raises(ExternalGatewayError):
            plan_catalog.create_plan(db, gateway, PlanCreate(key="pro", name="Pro", recurring_price=9900))

        assert db.query(SubscriptionPlan).count() == 0


class TestUpdatePlan:
    def test_price_change_mints_new_price_and_archives_old(self, db, gateway, plans):
        plan = plan_catalog.update_plan(db, gateway, "basic", PlanUpdate(recurring_price=3200))

        assert plan.recurring_price == 3200
        assert plan.stripe_price_id.startswith("price_basic_")
        assert gateway.calls_to("archive_price") == [{"price_id": "price_basic"}]
        rows = _price_rows(db, plan)
        assert [(r.stripe_price_id, r.is_active) for r in rows] == [
            ("price_basic", False),
            (plan.stripe_price_id, True),
        ]
        assert rows[0].archived_at is not None
        # 旧価格で課金中の購読のイベントも引き続き解決できる
        assert plan_catalog.plan_key_for_price(db, "price_basic") == "basic"

    def test_archive_failure_is_not_fatal(self, db, gateway, plans):
        gateway.failures["archive_price"] = GatewayResult.failure("No such price")

        plan = plan_catalog.update_plan(db, gateway, "basic", PlanUpdate(recurring_price=3200))

        assert plan.stripe_price_id != "price_basic"
        assert _price_rows(db, plan)[0].is_active is False

    def test_rename_updates_product_only(self, db, gateway, plans):
        plan = plan_catalog.update_plan(db, gateway, "premium", PlanUpdate(name="Premium Plus"))

        assert plan.name == "Premium Plus"
        assert plan.stripe_price_id == "price_premium"
        assert gateway.calls_to("create_price") == []
        assert gateway.calls_to("update_product")[0]["name"] == "Premium Plus"

    def test_unknown_plan(self, db, gateway, plans):
        with pytest.raises(PlanNotFound):
            plan_catalog.update_plan(db, gateway, "enterprise", PlanUpdate(name="x"))


class TestRetirePlan:
    def test_retired_plan_stops_accepting_subscriptions(self, db, gateway, plans, make_subscription):
        sub = make_subscription("premium")

        plan = plan_catalog.retire_plan(db, gateway, "premium")

        assert plan.is_active is False
        assert not plan.is_subscribable
        assert gateway.calls_to("update_product")[0]["active"] is False
        assert "premium" not in [p.key for p in plan_catalog.list_active(db)]
        db.refresh(sub)
        assert sub.plan_key == "premium"
        assert sub.status == "active"
        assert plan_catalog.plan_key_for_price(db, "price_premium") == "premium"


def test_active_plans_in_display_order(db, plans):
    assert [p.key for p in plan_catalog.list_active(db)] == ["trial", "starter", "basic", "premium"]
