"""
購読の状態遷移表

対話操作 (コントローラ) と外部イベント (Webhook照合) の両方がこの表だけを参照する。
表にない組み合わせは不正な遷移として扱う。
"""
import enum
from typing import Optional

from app.models.subscription import SubscriptionStatus
from app.services.errors import InvalidTransition
from app.services.processor_events import EventKind

S = SubscriptionStatus


class Operation(str, enum.Enum):
    CREATE = "create"
    CHANGE_PLAN = "change_plan"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    CANCEL_IMMEDIATELY = "cancel_immediately"
    REACTIVATE = "reactivate"


# 操作 -> {遷移元: 遷移先}
INTERACTIVE_TRANSITIONS: dict[Operation, dict[SubscriptionStatus, SubscriptionStatus]] = {
    Operation.PAUSE: {S.ACTIVE: S.PAUSED},
    Operation.RESUME: {S.PAUSED: S.ACTIVE},
    Operation.CANCEL_AT_PERIOD_END: {
        S.ACTIVE: S.CANCELED_SCHEDULED,
        S.PAUSED: S.CANCELED_SCHEDULED,
        S.TRIALING: S.CANCELED_SCHEDULED,
    },
    Operation.CANCEL_IMMEDIATELY: {
        S.TRIALING: S.CANCELED,
        S.ACTIVE: S.CANCELED,
        S.PAUSED: S.CANCELED,
        S.PAST_DUE: S.CANCELED,
        S.CANCELED_SCHEDULED: S.CANCELED,
    },
    # プラン変更は状態を変えない
    Operation.CHANGE_PLAN: {S.ACTIVE: S.ACTIVE, S.TRIALING: S.TRIALING},
    # 解約予約の取り消し (トライアル中・一時停止中だった場合は外部の状態に合わせる)
    Operation.REACTIVATE: {S.CANCELED_SCHEDULED: S.ACTIVE},
}

# イベント分類 -> {遷移元: 遷移先}
EVENT_TRANSITIONS: dict[EventKind, dict[SubscriptionStatus, SubscriptionStatus]] = {
    EventKind.PAYMENT_SUCCEEDED: {
        S.TRIALING: S.ACTIVE,
        S.PAST_DUE: S.ACTIVE,
        S.ACTIVE: S.ACTIVE,
    },
    EventKind.PAYMENT_FAILED: {
        S.ACTIVE: S.PAST_DUE,
        S.TRIALING: S.PAST_DUE,
        S.PAST_DUE: S.PAST_DUE,
    },
    EventKind.ACTIVATED: {
        S.TRIALING: S.ACTIVE,
        S.PAST_DUE: S.ACTIVE,
        S.PAUSED: S.ACTIVE,
        # 決済事業者側で解約予約が取り消された
        S.CANCELED_SCHEDULED: S.ACTIVE,
        S.ACTIVE: S.ACTIVE,
    },
    EventKind.TRIAL_UPDATED: {S.TRIALING: S.TRIALING},
    EventKind.PAUSED: {S.ACTIVE: S.PAUSED, S.PAUSED: S.PAUSED},
    EventKind.CANCEL_SCHEDULED: {
        S.ACTIVE: S.CANCELED_SCHEDULED,
        S.PAUSED: S.CANCELED_SCHEDULED,
        S.TRIALING: S.CANCELED_SCHEDULED,
        S.CANCELED_SCHEDULED: S.CANCELED_SCHEDULED,
    },
    EventKind.ENDED: {
        S.TRIALING: S.CANCELED,
        S.ACTIVE: S.CANCELED,
        S.PAUSED: S.CANCELED,
        S.PAST_DUE: S.CANCELED,
        S.CANCELED_SCHEDULED: S.CANCELED,
    },
}

_unmapped = set(EventKind) - set(EVENT_TRANSITIONS) - {EventKind.UNHANDLED}
if _unmapped:
    raise RuntimeError(f"遷移表に未定義のイベント分類があります: {sorted(k.value for k in _unmapped)}")

# 遷移ごとの監査ログ上の操作名
_ACTION_NAMES = {
    (S.TRIALING, S.ACTIVE): "trial_converted",
    (S.PAST_DUE, S.ACTIVE): "payment_recovered",
    (S.PAUSED, S.ACTIVE): "subscription_resumed",
    (S.CANCELED_SCHEDULED, S.ACTIVE): "subscription_reactivated",
    (S.ACTIVE, S.PAST_DUE): "payment_failed",
    (S.TRIALING, S.PAST_DUE): "payment_failed",
    (S.ACTIVE, S.PAUSED): "subscription_paused",
}

_OPERATION_ACTIONS = {
    Operation.CREATE: "subscription_created",
    Operation.CHANGE_PLAN: "plan_changed",
    Operation.PAUSE: "subscription_paused",
    Operation.RESUME: "subscription_resumed",
    Operation.CANCEL_AT_PERIOD_END: "cancel_scheduled",
    Operation.CANCEL_IMMEDIATELY: "subscription_canceled",
    Operation.REACTIVATE: "subscription_reactivated",
}


def interactive_target(operation: Operation, current: SubscriptionStatus) -> SubscriptionStatus:
    """対話操作の遷移先。許可されない場合は InvalidTransition"""
    table = INTERACTIVE_TRANSITIONS[operation]
    if current not in table:
        if current == S.CANCELED:
            message = "解約済みの購読は変更できません。再度購読してください"
        else:
            message = f"現在の状態 ({current.value}) ではこの操作はできません"
        raise InvalidTransition(message, current_status=current.value, operation=operation.value)
    return table[current]


def event_target(kind: EventKind, current: SubscriptionStatus) -> Optional[SubscriptionStatus]:
    """イベントによる遷移先。遷移不可ならNone"""
    return EVENT_TRANSITIONS.get(kind, {}).get(current)


def operation_action(operation: Operation) -> str:
    return _OPERATION_ACTIONS[operation]


def event_action(kind: EventKind, current: SubscriptionStatus, target: SubscriptionStatus) -> str:
    if current == target:
        return "period_renewed" if kind == EventKind.PAYMENT_SUCCEEDED else "subscription_synced"
    if target == S.CANCELED:
        return "subscription_ended"
    if target == S.CANCELED_SCHEDULED:
        return "cancel_scheduled"
    return _ACTION_NAMES.get((current, target), f"{current.value}_to_{target.value}")
