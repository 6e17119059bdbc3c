"""レート制限 (slowapi)

購読変更は外部決済の呼び出しを伴うため、参照より厳しく制限する。
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from app.core.config import settings

SUBSCRIPTION_READ_RATE_LIMIT = "60/minute"
SUBSCRIPTION_WRITE_RATE_LIMIT = "10/minute"
ADMIN_RATE_LIMIT = "30/minute"


def get_client_ip(request: Request) -> str:
    """ロードバランサ経由では X-Forwarded-For の先頭がクライアント"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


# 複数ワーカーで共有する場合は RATE_LIMIT_STORAGE_URI に redis:// を指定
limiter = Limiter(
    key_func=get_client_ip,
    default_limits=["100/minute"],
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "result": "rejected",
            "detail": "リクエスト回数が上限を超えました。しばらく待ってから再度お試しください。",
            "code": "RATE_LIMITED",
            "details": {"limit": str(exc.detail)},
        },
    )
