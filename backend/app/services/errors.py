"""
購読ドメインの例外

コントローラ・照合処理はここで定義した例外のみを送出し、
HTTP層 (app.core.exception_handlers) がステータスコードへ変換する。
"""
from typing import Optional


class SubscriptionError(Exception):
    """購読関連エラーの基底クラス"""

    def __init__(self, message: str, code: str = "SUBSCRIPTION_ERROR", details: dict = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "detail": self.message,
            "details": self.details,
        }


class BusinessNotFound(SubscriptionError):
    def __init__(self, business_id: int):
        super().__init__("店舗が見つかりません", code="BUSINESS_NOT_FOUND", details={"business_id": business_id})


class PlanNotFound(SubscriptionError):
    def __init__(self, plan_key: str):
        super().__init__("プランが見つかりません", code="PLAN_NOT_FOUND", details={"plan_key": plan_key})


class PlanConflict(SubscriptionError):
    """同一キーのプランが既に存在する"""

    def __init__(self, plan_key: str):
        super().__init__("同じキーのプランが既に存在します", code="PLAN_EXISTS", details={"plan_key": plan_key})


class SubscriptionNotFound(SubscriptionError):
    def __init__(self, business_id: int):
        super().__init__("購読が見つかりません", code="SUBSCRIPTION_NOT_FOUND", details={"business_id": business_id})


class InvalidTransition(SubscriptionError):
    """現在の状態では許可されない操作"""

    def __init__(self, message: str, current_status: Optional[str] = None, operation: Optional[str] = None):
        details = {}
        if current_status:
            details["current_status"] = current_status
        if operation:
            details["operation"] = operation
        super().__init__(message, code="INVALID_TRANSITION", details=details)


class ConcurrentModification(SubscriptionError):
    """楽観的排他制御の競合 (他の書き込みが先に確定した)"""

    def __init__(self, message: str = "他の操作と競合しました。最新の状態を確認してください", subscription_id: int = None):
        super().__init__(
            message,
            code="CONCURRENT_MODIFICATION",
            details={"subscription_id": subscription_id} if subscription_id else {},
        )


class ExternalGatewayError(SubscriptionError):
    """決済事業者が操作を拒否した (外部・内部とも変更なし)"""

    def __init__(self, message: str, retryable: bool = False, gateway_code: Optional[str] = None):
        super().__init__(
            message,
            code="EXTERNAL_GATEWAY_ERROR",
            details={"retryable": retryable, "gateway_code": gateway_code},
        )
        self.retryable = retryable
        self.gateway_code = gateway_code


class OperationOutcomeUnknown(SubscriptionError):
    """外部の結果が確定しない。照合ジョブで解消するまで再実行しない"""

    def __init__(self, message: str = "決済システムの処理結果を確認中です。しばらくしてから状態を確認してください",
                 marker_id: Optional[int] = None):
        super().__init__(
            message,
            code="OUTCOME_UNKNOWN",
            details={"reconciliation_id": marker_id} if marker_id else {},
        )
        self.marker_id = marker_id


class Unauthenticated(SubscriptionError):
    """Webhook署名の検証失敗"""

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message, code="UNAUTHENTICATED")


class InvalidEventPayload(SubscriptionError):
    def __init__(self, message: str = "イベントの形式が不正です"):
        super().__init__(message, code="INVALID_EVENT_PAYLOAD")
