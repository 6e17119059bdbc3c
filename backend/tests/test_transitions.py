import pytest

from app.models.subscription import SubscriptionStatus as S
from app.services.errors import InvalidTransition
from app.services.processor_events import EventKind
from app.services.transitions import (
    EVENT_TRANSITIONS,
    INTERACTIVE_TRANSITIONS,
    Operation,
    event_action,
    event_target,
    interactive_target,
)


class TestTransitionTables:
    def test_every_event_kind_is_mapped(self):
        assert set(EVENT_TRANSITIONS) == set(EventKind) - {EventKind.UNHANDLED}

    def test_no_transition_leaves_canceled(self):
        for table in list(INTERACTIVE_TRANSITIONS.values()) + list(EVENT_TRANSITIONS.values()):
            assert S.CANCELED not in table

    def test_every_operation_except_create_is_mapped(self):
        assert set(INTERACTIVE_TRANSITIONS) == set(Operation) - {Operation.CREATE}


class TestInteractiveTarget:
    @pytest.mark.parametrize("operation,current,expected", [
        (Operation.PAUSE, S.ACTIVE, S.PAUSED),
        (Operation.RESUME, S.PAUSED, S.ACTIVE),
        (Operation.CANCEL_AT_PERIOD_END, S.TRIALING, S.CANCELED_SCHEDULED),
        (Operation.CANCEL_IMMEDIATELY, S.PAST_DUE, S.CANCELED),
        (Operation.CANCEL_IMMEDIATELY, S.CANCELED_SCHEDULED, S.CANCELED),
        (Operation.CHANGE_PLAN, S.TRIALING, S.TRIALING),
        (Operation.REACTIVATE, S.CANCELED_SCHEDULED, S.ACTIVE),
    ])
    def test_legal(self, operation, current, expected):
        assert interactive_target(operation, current) == expected

    @pytest.mark.parametrize("operation,current", [
        (Operation.PAUSE, S.PAST_DUE),
        (Operation.PAUSE, S.TRIALING),
        (Operation.RESUME, S.ACTIVE),
        (Operation.CANCEL_AT_PERIOD_END, S.CANCELED_SCHEDULED),
        (Operation.CANCEL_AT_PERIOD_END, S.PAST_DUE),
        (Operation.CHANGE_PLAN, S.PAUSED),
        (Operation.REACTIVATE, S.ACTIVE),
    ])
    def test_illegal(self, operation, current):
        with pytest.raises(InvalidTransition) as exc_info:
            interactive_target(operation, current)
        assert exc_info.value.details == {"current_status": current.value, "operation": operation.value}

    def test_canceled_is_terminal(self):
        with pytest.raises(InvalidTransition, match="解約済み"):
            interactive_target(Operation.CANCEL_IMMEDIATELY, S.CANCELED)


class TestEventTarget:
    def test_payment_failed_moves_active_to_past_due(self):
        assert event_target(EventKind.PAYMENT_FAILED, S.ACTIVE) == S.PAST_DUE

    def test_payment_succeeded_converts_trial(self):
        assert event_target(EventKind.PAYMENT_SUCCEEDED, S.TRIALING) == S.ACTIVE

    def test_ended_ignored_once_canceled(self):
        assert event_target(EventKind.ENDED, S.CANCELED) is None

    def test_paused_event_cannot_pause_past_due(self):
        assert event_target(EventKind.PAUSED, S.PAST_DUE) is None

    def test_unhandled_has_no_target(self):
        assert event_target(EventKind.UNHANDLED, S.ACTIVE) is None

    def test_action_names(self):
        assert event_action(EventKind.PAYMENT_SUCCEEDED, S.TRIALING, S.ACTIVE) == "trial_converted"
        assert event_action(EventKind.PAYMENT_SUCCEEDED, S.ACTIVE, S.ACTIVE) == "period_renewed"
        assert event_action(EventKind.ENDED, S.CANCELED_SCHEDULED, S.CANCELED) == "subscription_ended"
        assert event_action(EventKind.ACTIVATED, S.CANCELED_SCHEDULED, S.ACTIVE) == "subscription_reactivated"
