from datetime import timedelta
from unittest.mock import MagicMock, patch

from app.core import clock
from app.models.external_event_record import ExternalEventRecord
from app.models.subscription import Subscription
from app.scheduler.event_purger import purge_event_records
from app.scheduler.plan_change_applier import apply_pending_plan_changes
from app.scheduler.reconciliation_pass import run_reconciliation_pass
from tests.conftest import PERIOD_END


def test_plan_change_applier_uses_current_time(db, make_subscription):
    sub_id = make_subscription("premium", pending_plan_key="basic", pending_plan_effective_at=PERIOD_END).id

    with patch("app.scheduler.plan_change_applier.SessionLocal", return_value=db):
        apply_pending_plan_changes()

    sub = db.query(Subscription).filter(Subscription.id == sub_id).one()
    assert sub.plan_key == "basic"
    assert sub.pending_plan_key is None


def test_event_purger_keeps_recent_records(db):
    now = clock.utcnow()
    for event_id, received_at in (("evt_old", now - timedelta(days=45)), ("evt_new", now - timedelta(days=1))):
        db.add(ExternalEventRecord(
            event_id=event_id, event_type="invoice.paid", event_created=0, outcome="applied",
            delivery_count=1, received_at=received_at, last_received_at=received_at,
        ))
    db.commit()

    with patch("app.scheduler.event_purger.SessionLocal", return_value=db):
        purge_event_records()

    assert [r.event_id for r in db.query(ExternalEventRecord).all()] == ["evt_new"]


def test_job_errors_are_logged_not_raised():
    session = MagicMock()
    with patch("app.scheduler.plan_change_applier.SessionLocal", return_value=session), \
            patch("app.scheduler.plan_change_applier.apply_scheduled_plan_changes", side_effect=RuntimeError("boom")):
        apply_pending_plan_changes()

    session.rollback.assert_called_once()
    session.close.assert_called_once()


def test_reconciliation_pass_skipped_without_stripe_key():
    with patch("app.scheduler.reconciliation_pass.settings") as settings, \
            patch("app.scheduler.reconciliation_pass.heal_pending") as heal:
        settings.STRIPE_SECRET_KEY = ""
        run_reconciliation_pass()

    heal.assert_not_called()


def test_reconciliation_pass_runs_batch(db, gateway):
    with patch("app.scheduler.reconciliation_pass.settings") as settings, \
            patch("app.scheduler.reconciliation_pass.SessionLocal", return_value=db), \
            patch("app.scheduler.reconciliation_pass._get_gateway", return_value=gateway), \
            patch("app.scheduler.reconciliation_pass.heal_pending",
                  return_value={"checked": 0, "resolved": 0, "unresolved": 0}) as heal:
        settings.STRIPE_SECRET_KEY = "sk_test"
        settings.RECONCILE_BATCH_SIZE = 25
        run_reconciliation_pass()

    heal.assert_called_once_with(db, gateway, limit=25)
