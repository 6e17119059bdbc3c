"""
決済事業者のペイロード (Stripeオブジェクト / Webhook JSON) の解釈

Stripeオブジェクトとdictのどちらでも読めるよう `get_field` 経由でアクセスする。
APIバージョンによって期間・購読IDの位置が異なるため、両方の位置を見る。
"""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from app.core import clock


class EventKind(str, enum.Enum):
    """購読の状態に影響するイベントの分類 (これ以外はUNHANDLED)"""
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    ACTIVATED = "activated"
    TRIAL_UPDATED = "trial_updated"
    PAUSED = "paused"
    CANCEL_SCHEDULED = "cancel_scheduled"
    ENDED = "ended"
    UNHANDLED = "unhandled"


# 決済事業者の側で起きた事実を伝える分類 (後からのローカル変更で打ち消されない)
PROCESSOR_OWNED_KINDS = frozenset({EventKind.PAYMENT_SUCCEEDED, EventKind.PAYMENT_FAILED, EventKind.ENDED})


@dataclass(frozen=True)
class RemoteSubscription:
    """決済事業者側の購読の状態"""
    id: str
    customer_id: Optional[str]
    status: str
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    paused: bool = False


@dataclass(frozen=True)
class ProcessorEvent:
    id: str
    type: str
    created: int
    kind: EventKind
    stripe_subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None


SUBSCRIPTION_EVENT_TYPES = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "customer.subscription.paused",
    "customer.subscription.resumed",
    "customer.subscription.trial_will_end",
}


def get_field(obj: Any, key: str, default=None):
    """dict・Stripeオブジェクトのどちらからもフィールドを取得"""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def id_of(value: Any) -> Optional[str]:
    """展開済みオブジェクトでもID文字列でもIDを返す"""
    if value is None or isinstance(value, str):
        return value
    return get_field(value, "id")


def kind_for_subscription(status: str, cancel_at_period_end: bool, paused: bool) -> EventKind:
    """購読オブジェクトの状態からイベント分類を決める"""
    if status in ("canceled", "incomplete_expired"):
        return EventKind.ENDED
    if status in ("past_due", "unpaid"):
        return EventKind.PAYMENT_FAILED
    if cancel_at_period_end:
        return EventKind.CANCEL_SCHEDULED
    if paused or status == "paused":
        return EventKind.PAUSED
    if status == "trialing":
        return EventKind.TRIAL_UPDATED
    if status == "active":
        return EventKind.ACTIVATED
    # incomplete 等: 初回決済の完了待ち
    return EventKind.UNHANDLED


def remote_subscription_from_payload(obj: Any) -> RemoteSubscription:
    """購読オブジェクトを RemoteSubscription に変換"""
    items = get_field(get_field(obj, "items"), "data") or []
    first_item = items[0] if items else None

    # basil以降は期間が items 側にある
    period_start = get_field(obj, "current_period_start") or get_field(first_item, "current_period_start")
    period_end = get_field(obj, "current_period_end") or get_field(first_item, "current_period_end")

    return RemoteSubscription(
        id=get_field(obj, "id"),
        customer_id=id_of(get_field(obj, "customer")),
        status=get_field(obj, "status") or "",
        price_id=id_of(get_field(first_item, "price")),
        current_period_start=clock.from_timestamp(period_start),
        current_period_end=clock.from_timestamp(period_end),
        trial_end=clock.from_timestamp(get_field(obj, "trial_end")),
        cancel_at_period_end=bool(get_field(obj, "cancel_at_period_end")),
        paused=bool(get_field(obj, "pause_collection")),
    )


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    sub_id = id_of(get_field(invoice, "subscription"))
    if sub_id:
        return sub_id
    details = get_field(get_field(invoice, "parent"), "subscription_details")
    return id_of(get_field(details, "subscription"))


def _invoice_line(invoice: Any):
    lines = get_field(get_field(invoice, "lines"), "data") or []
    return lines[0] if lines else None


def _invoice_line_price(line: Any) -> Optional[str]:
    price = id_of(get_field(line, "price"))
    if price:
        return price
    details = get_field(get_field(line, "pricing"), "price_details")
    return id_of(get_field(details, "price"))


def parse_event(payload: dict) -> ProcessorEvent:
    """検証済みWebhookペイロードを ProcessorEvent に変換

    必須フィールドが欠けている場合は KeyError / TypeError / ValueError を送出する。
    """
    event_id = payload["id"]
    event_type = payload["type"]
    created = int(payload["created"])
    obj = payload["data"]["object"]

    if event_type in SUBSCRIPTION_EVENT_TYPES:
        remote = remote_subscription_from_payload(obj)
        if event_type == "customer.subscription.deleted":
            kind = EventKind.ENDED
        else:
            kind = kind_for_subscription(remote.status, remote.cancel_at_period_end, remote.paused)
        return ProcessorEvent(
            id=event_id,
            type=event_type,
            created=created,
            kind=kind,
            stripe_subscription_id=remote.id,
            price_id=remote.price_id,
            period_start=remote.current_period_start,
            period_end=remote.current_period_end,
            trial_end=remote.trial_end,
            cancel_at_period_end=remote.cancel_at_period_end,
        )

    if event_type == "invoice.paid":
        sub_id = invoice_subscription_id(obj)
        # トライアル開始時の0円請求書は支払い扱いにしない
        if not sub_id or not get_field(obj, "amount_paid"):
            return ProcessorEvent(id=event_id, type=event_type, created=created,
                                  kind=EventKind.UNHANDLED, stripe_subscription_id=sub_id)
        line = _invoice_line(obj)
        period = get_field(line, "period")
        return ProcessorEvent(
            id=event_id,
            type=event_type,
            created=created,
            kind=EventKind.PAYMENT_SUCCEEDED,
            stripe_subscription_id=sub_id,
            price_id=_invoice_line_price(line),
            period_start=clock.from_timestamp(get_field(period, "start")),
            period_end=clock.from_timestamp(get_field(period, "end")),
        )

    if event_type == "invoice.payment_failed":
        return ProcessorEvent(
            id=event_id,
            type=event_type,
            created=created,
            kind=EventKind.PAYMENT_FAILED,
            stripe_subscription_id=invoice_subscription_id(obj),
        )

    return ProcessorEvent(id=event_id, type=event_type, created=created, kind=EventKind.UNHANDLED)


def event_from_remote(remote: RemoteSubscription, event_id: str, created: int) -> ProcessorEvent:
    """照合ジョブ用: 取得した外部状態を合成イベントとして扱う"""
    return ProcessorEvent(
        id=event_id,
        type="reconciliation.sync",
        created=created,
        kind=kind_for_subscription(remote.status, remote.cancel_at_period_end, remote.paused),
        stripe_subscription_id=remote.id,
        price_id=remote.price_id,
        period_start=remote.current_period_start,
        period_end=remote.current_period_end,
        trial_end=remote.trial_end,
        cancel_at_period_end=remote.cancel_at_period_end,
    )
