"""ドメイン例外・入力検証エラー → HTTPレスポンス変換

利用者に返す結果は succeeded / rejected / unknown のいずれか。
"""
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.core.logging import get_logger
from app.services.errors import (
    BusinessNotFound,
    ConcurrentModification,
    ExternalGatewayError,
    InvalidEventPayload,
    InvalidTransition,
    OperationOutcomeUnknown,
    PlanConflict,
    PlanNotFound,
    SubscriptionError,
    SubscriptionNotFound,
    Unauthenticated,
)

logger = get_logger(__name__)

_STATUS_CODES = {
    BusinessNotFound: 404,
    PlanNotFound: 404,
    SubscriptionNotFound: 404,
    PlanConflict: 409,
    InvalidTransition: 409,
    ConcurrentModification: 409,
    Unauthenticated: 401,
    InvalidEventPayload: 400,
}


def _gateway_status(exc: ExternalGatewayError) -> int:
    if exc.gateway_code in ("card_declined", "expired_card", "insufficient_funds", "incorrect_cvc"):
        return 402
    return 503 if exc.retryable else 502


async def subscription_error_handler(request: Request, exc: SubscriptionError) -> JSONResponse:
    if isinstance(exc, OperationOutcomeUnknown):
        return JSONResponse(
            status_code=202,
            content={"result": "unknown", "detail": exc.message, "code": exc.code, **exc.details},
        )

    if isinstance(exc, ExternalGatewayError):
        status_code = _gateway_status(exc)
    else:
        status_code = _STATUS_CODES.get(type(exc), 400)

    if status_code >= 500:
        logger.error(f"リクエスト失敗: {request.method} {request.url.path} code={exc.code} detail={exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"result": "rejected", "detail": exc.message, "code": exc.code, "details": exc.details},
    )


# --- 入力検証エラー (422) の日本語化 ---

_FIELD_NAMES = {
    "businessId": "店舗ID",
    "business_id": "店舗ID",
    "planKey": "プランキー",
    "plan_key": "プランキー",
    "action": "操作",
    "immediate": "即時解約",
    "key": "プランキー",
    "name": "プラン名",
    "recurring_price": "価格",
    "currency": "通貨",
    "interval": "請求周期",
    "trial_days": "トライアル日数",
    "sort_order": "表示順",
}

# pydantic のエラー種別 -> メッセージ (ctx の値を埋め込む)
_VALIDATION_MESSAGES = {
    "missing": "{field}は必須です",
    "string_too_short": "{field}は{min_length}文字以上で入力してください",
    "string_too_long": "{field}は{max_length}文字以下で入力してください",
    "string_pattern_mismatch": "{field}は英小文字・数字・-・_ で入力してください",
    "int_parsing": "{field}は数値で入力してください",
    "int_type": "{field}は数値で入力してください",
    "greater_than_equal": "{field}は{ge}以上の値を入力してください",
    "less_than_equal": "{field}は{le}以下の値を入力してください",
    "literal_error": "{field}は {expected} のいずれかを指定してください",
    "bool_parsing": "{field}は真偽値で入力してください",
}


def translate_validation_error(err: dict) -> str:
    loc = err.get("loc") or []
    field = str(loc[-1]) if loc else ""
    field_name = _FIELD_NAMES.get(field, field)
    template = _VALIDATION_MESSAGES.get(err.get("type", ""))
    if template is None:
        return f"{field_name}: 入力値が不正です"
    ctx = {k: str(v) for k, v in (err.get("ctx") or {}).items()}
    try:
        return template.format(field=field_name, **ctx)
    except KeyError:
        return f"{field_name}: 入力値が不正です"


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = [translate_validation_error(e) for e in exc.errors()]
    return JSONResponse(
        status_code=422,
        content={
            "result": "rejected",
            "detail": "、".join(messages),
            "code": "VALIDATION_ERROR",
            "details": {"errors": [{"field": ".".join(str(p) for p in e.get("loc", [])), "type": e.get("type")}
                                   for e in exc.errors()]},
        },
    )
