from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_SECRET = "change-me-in-production-min-32-chars"


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
    secret_key: str = Field(default=_INSECURE_SECRET)

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="advisor_credits", alias="MONGODB_DB_NAME")
    store_timeout_seconds: float = Field(default=5.0, gt=0, alias="STORE_TIMEOUT_SECONDS")

    # Redis (ARQ worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Razorpay webhook + trusted internal callers (only paths that may grant credits)
    razorpay_webhook_secret: str = Field(default="", alias="RAZORPAY_WEBHOOK_SECRET")
    internal_service_token: str = Field(default="", alias="INTERNAL_SERVICE_TOKEN")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: comma-separated
    cors_origins_raw: str = Field(default="http://localhost:3000,http://localhost:5173", alias="CORS_ORIGINS")

    # Ledger
    ledger_max_retries: int = Field(default=3, ge=1, alias="LEDGER_MAX_RETRIES")

    # Purchases: a pending claim older than this is treated as a crashed grant
    purchase_claim_stale_seconds: int = Field(default=300, ge=1, alias="PURCHASE_CLAIM_STALE_SECONDS")

    # Assignments / renewals
    entitlement_tier: str = Field(default="premium", alias="ENTITLEMENT_TIER")
    renewal_lookahead_days: int = Field(default=1, ge=0, alias="RENEWAL_LOOKAHEAD_DAYS")
    renewal_sweep_hour: int = Field(default=2, ge=0, le=23, alias="RENEWAL_SWEEP_HOUR")

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins_raw.split(",") if o.strip()]

    @model_validator(mode="after")
    def _production_secrets(self) -> "Settings":
        if self.env == "production":
            missing = [
                name
                for name, value in (
                    ("SECRET_KEY", self.secret_key != _INSECURE_SECRET),
                    ("RAZORPAY_WEBHOOK_SECRET", bool(self.razorpay_webhook_secret)),
                    ("INTERNAL_SERVICE_TOKEN", bool(self.internal_service_token)),
                )
                if not value
            ]
            if missing:
                raise ValueError(f"Missing production settings: {', '.join(missing)}")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
