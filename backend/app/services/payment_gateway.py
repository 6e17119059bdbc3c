"""
決済ゲートウェイの契約

外部決済事業者を呼び出せるのはこのインターフェースの実装だけ。
想定内の失敗は例外ではなく GatewayResult で返す。
"""
import enum
import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, Optional, TypeVar

from app.services.processor_events import RemoteSubscription

T = TypeVar("T")


class GatewayOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # タイムアウト等で外部の処理結果が確定しない
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class GatewayResult(Generic[T]):
    outcome: GatewayOutcome
    value: Optional[T] = None
    retryable: bool = False
    code: Optional[str] = None
    message: str = ""

    @classmethod
    def success(cls, value=None) -> "GatewayResult":
        return cls(GatewayOutcome.SUCCEEDED, value=value)

    @classmethod
    def failure(cls, message: str, retryable: bool = False, code: Optional[str] = None) -> "GatewayResult":
        return cls(GatewayOutcome.FAILED, retryable=retryable, code=code, message=message)

    @classmethod
    def unknown(cls, message: str, code: Optional[str] = None) -> "GatewayResult":
        return cls(GatewayOutcome.UNKNOWN, code=code, message=message)

    @property
    def ok(self) -> bool:
        return self.outcome == GatewayOutcome.SUCCEEDED


@dataclass(frozen=True)
class CreatedSubscription:
    customer_id: str
    subscription: RemoteSubscription
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class InvoiceSummary:
    id: str
    amount: int
    currency: str
    status: str
    created: Optional[datetime]
    pdf_url: Optional[str] = None


@dataclass(frozen=True)
class ExternalPrice:
    product_id: str
    price_id: str


def idempotency_key(business_id: int, operation: str, subscription_ref, target_version: int) -> str:
    """(店舗, 操作, 対象購読, 目標version) から決定的な冪等キーを生成

    同じ論理操作の再試行は必ず同じキーになり、決済事業者側で二重適用されない。
    """
    raw = f"{business_id}:{operation}:{subscription_ref}:{target_version}"
    return f"sub_{hashlib.sha256(raw.encode()).hexdigest()[:40]}"


class PaymentGateway(ABC):
    """外部決済事業者への操作セット"""

    @abstractmethod
    def create_customer_and_subscription(
        self,
        business_id: int,
        name: str,
        email: str,
        price_id: str,
        trial_days: int,
        idempotency_key: str,
        customer_id: Optional[str] = None,
    ) -> GatewayResult[CreatedSubscription]:
        ...

    @abstractmethod
    def change_plan(
        self, stripe_subscription_id: str, new_price_id: str, prorate: bool, idempotency_key: str
    ) -> GatewayResult[RemoteSubscription]:
        ...

    @abstractmethod
    def pause(self, stripe_subscription_id: str, idempotency_key: str) -> GatewayResult[RemoteSubscription]:
        ...

    @abstractmethod
    def resume(self, stripe_subscription_id: str, idempotency_key: str) -> GatewayResult[RemoteSubscription]:
        ...

    @abstractmethod
    def cancel(
        self, stripe_subscription_id: str, immediate: bool, idempotency_key: str
    ) -> GatewayResult[RemoteSubscription]:
        ...

    @abstractmethod
    def reactivate(self, stripe_subscription_id: str, idempotency_key: str) -> GatewayResult[RemoteSubscription]:
        """期間終了時の解約予約を取り消す"""
        ...

    @abstractmethod
    def retrieve_subscription(self, stripe_subscription_id: str) -> GatewayResult[RemoteSubscription]:
        ...

    @abstractmethod
    def list_invoices(self, stripe_subscription_id: str, limit: int = 10) -> GatewayResult[list[InvoiceSummary]]:
        ...

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str) -> GatewayResult[dict]:
        ...

    # プランカタログ (管理操作)

    @abstractmethod
    def create_product_and_price(
        self, plan_key: str, name: str, description: Optional[str],
        unit_amount: int, currency: str, interval: str,
    ) -> GatewayResult[ExternalPrice]:
        ...

    @abstractmethod
    def create_price(
        self, product_id: str, plan_key: str, unit_amount: int, currency: str, interval: str
    ) -> GatewayResult[str]:
        ...

    @abstractmethod
    def archive_price(self, price_id: str) -> GatewayResult[None]:
        ...

    @abstractmethod
    def update_product(
        self, product_id: str, name: Optional[str] = None, description: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> GatewayResult[None]:
        ...
