from typing import List

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


DEFAULT_COUPON_CODES = ["SAVE10", "FREE15", "DISCOUNT20", "SPECIAL25", "DEAL30"]


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"

    # Storage ("memory://" selects the in-process store)
    DATABASE_URL: str = "sqlite:///./coupons.db"
    LOCK_TIMEOUT_SECONDS: float = 5.0

    # Claim policy
    CLAIM_WINDOW_MINUTES: int = 60
    CLAIM_RETRY_ATTEMPTS: int = 2

    # Seed data
    SEED_ON_STARTUP: bool = True
    SEED_COUPON_CODES: List[str] = DEFAULT_COUPON_CODES

    # Identity
    TRUST_PROXY: bool = True
    BROWSER_COOKIE_MAX_AGE_DAYS: int = 30

    CORS_ORIGINS: List[str] = ["*"]

    LOG_LEVEL: str = "INFO"

    # Claim rate limiting (per client IP)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_MAX_REQUESTS: int = 5
    RATE_LIMIT_WINDOW_SECONDS: int = 3600
    RATE_LIMIT_MAX_CLIENTS: int = 10000

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production"


settings = Settings()
