from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """アプリケーション設定"""

    # データベース
    DATABASE_URL: str = "mysql+pymysql://billing:billingpassword@db:3306/tenant_billing?charset=utf8mb4"

    # Redis (スケジューラのハートビート)
    REDIS_URL: str = "redis://redis:6379/0"
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_PUBLISHABLE_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_API_VERSION: str = "2025-07-30.basil"
    STRIPE_TIMEOUT_SECONDS: int = 20
    STRIPE_MAX_NETWORK_RETRIES: int = 2
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # 購読
    DEFAULT_CURRENCY: str = "eur"
    EVENT_RETENTION_DAYS: int = 30
    RECONCILE_BATCH_SIZE: int = 50

    # 管理API
    ADMIN_API_TOKEN: str = ""

    # サービス設定
    SITE_NAME: str = "Tenant Billing"
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # スケジューラ
    TIMEZONE: str = "Europe/Madrid"

    # 環境
    ENV: str = "development"
    DEBUG: bool = False

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
