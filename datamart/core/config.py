from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except Exception:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")
    frontend_url: str = Field(default="http://localhost:3000", alias="FRONTEND_URL")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="datamart", alias="MONGODB_DB_NAME")
    # Multi-document transactions need a replica set; standalone servers must turn this off
    mongodb_transactions: bool = Field(default=True, alias="MONGODB_TRANSACTIONS")

    # Store retry (transient connectivity / replica elections)
    store_retry_attempts: int = Field(default=3, alias="STORE_RETRY_ATTEMPTS")
    store_retry_base_delay: float = Field(default=1.0, alias="STORE_RETRY_BASE_DELAY")
    store_retry_max_delay: float = Field(default=5.0, alias="STORE_RETRY_MAX_DELAY")

    # Redis (ARQ worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Paystack
    paystack_secret_key: str = Field(default="", alias="PAYSTACK_SECRET_KEY")
    paystack_base_url: str = Field(default="https://api.paystack.co", alias="PAYSTACK_BASE_URL")
    paystack_callback_url: str = Field(default="", alias="PAYSTACK_CALLBACK_URL")
    paystack_timeout_seconds: float = Field(default=10.0, alias="PAYSTACK_TIMEOUT_SECONDS")

    # Deposits
    deposit_fee_percent: float = Field(default=0.0, alias="DEPOSIT_FEE_PERCENT")
    deposit_min_amount: int = Field(default=100, alias="DEPOSIT_MIN_AMOUNT")  # pesewas
    deposit_claim_stale_minutes: int = Field(default=30, alias="DEPOSIT_CLAIM_STALE_MINUTES")
    deposit_reconcile_after_minutes: int = Field(default=5, alias="DEPOSIT_RECONCILE_AFTER_MINUTES")
    deposit_reconcile_batch_size: int = Field(default=50, alias="DEPOSIT_RECONCILE_BATCH_SIZE")

    # Fulfillment providers
    hubnet_base_url: str = Field(
        default="https://console.hubnet.app/live/api/context/business/transaction",
        alias="HUBNET_BASE_URL",
    )
    hubnet_token: str = Field(default="", alias="HUBNET_TOKEN")
    hubnet_referrer: str = Field(default="", alias="HUBNET_REFERRER")
    mtn_hubnet_enabled: bool = Field(default=True, alias="MTN_HUBNET_ENABLED")
    at_hubnet_enabled: bool = Field(default=True, alias="AT_HUBNET_ENABLED")
    provider_timeout_seconds: float = Field(default=10.0, alias="PROVIDER_TIMEOUT_SECONDS")

    # SMS
    sms_enabled: bool = Field(default=False, alias="SMS_ENABLED")
    sms_api_url: str = Field(default="https://sms.arkesel.com/sms/api", alias="SMS_API_URL")
    sms_api_key: str = Field(default="", alias="SMS_API_KEY")
    sms_sender_id: str = Field(default="EL VENDER", alias="SMS_SENDER_ID")
    sms_timeout_seconds: float = Field(default=10.0, alias="SMS_TIMEOUT_SECONDS")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Wallet
    currency: str = "GHS"
    default_low_stock_threshold: int = 10
    reward_period_days: int = 6
    reward_top_count: int = 3


@lru_cache
def get_settings() -> Settings:
    return Settings()
