from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from app.core.config import settings
from app.core.exception_handlers import subscription_error_handler, validation_error_handler
from app.core.logging import setup_logging, get_logger
from app.core.rate_limit import limiter, rate_limit_exceeded_handler
from app.routers import health, subscriptions, webhooks_payment, plans
from app.routers import admin_plans, admin_reconciliation, admin_activity
from app.services.errors import SubscriptionError

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションライフサイクル管理"""
    setup_logging(debug=settings.DEBUG)
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY が未設定です。購読APIは503を返します")
    if not settings.ADMIN_API_TOKEN:
        logger.warning("ADMIN_API_TOKEN が未設定です。管理APIは無効です")
    logger.info(f"アプリケーション起動 (env={settings.ENV})")
    yield
    logger.info("アプリケーション終了")


app = FastAPI(
    title=settings.SITE_NAME,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# レート制限設定
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# 購読ドメインの例外 → rejected / unknown、入力検証エラー → rejected (422)
app.add_exception_handler(SubscriptionError, subscription_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)

# CORS (店舗管理画面から購読APIを呼ぶ)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)

# ルーター登録
app.include_router(health.router)
app.include_router(plans.router)
app.include_router(subscriptions.router)
app.include_router(webhooks_payment.router)
app.include_router(admin_plans.router)
app.include_router(admin_reconciliation.router)
app.include_router(admin_activity.router)
