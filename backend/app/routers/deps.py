"""共通依存関数: 決済ゲートウェイ・管理者認証"""
import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from app.core.config import settings
from app.services.payment_gateway import PaymentGateway
from app.services.stripe_gateway import build_stripe_gateway


def get_gateway(request: Request) -> PaymentGateway:
    """アプリケーション共有の決済ゲートウェイ (初回利用時に生成)"""
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        if not settings.STRIPE_SECRET_KEY:
            raise HTTPException(status_code=503, detail="決済システムが設定されていません")
        gateway = build_stripe_gateway()
        request.app.state.gateway = gateway
    return gateway


async def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
    """管理者トークン必須。不一致なら403"""
    if not settings.ADMIN_API_TOKEN:
        raise HTTPException(status_code=403, detail="管理APIは無効です")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, settings.ADMIN_API_TOKEN):
        raise HTTPException(status_code=403, detail="管理者権限が必要です")
