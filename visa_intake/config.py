import os
from functools import lru_cache
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    def __init__(self):
        self.database_url = os.getenv("DATABASE_URL")
        self.jwt_secret = os.getenv("JWT_SECRET")

        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY")
        self.stripe_publishable_key = os.getenv("STRIPE_PUBLISHABLE_KEY")
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")

        self.gateway_timeout_seconds = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "8"))
        self.gateway_max_attempts = int(os.getenv("GATEWAY_MAX_ATTEMPTS", "3"))
        self.gateway_retry_base_delay = float(os.getenv("GATEWAY_RETRY_BASE_DELAY", "0.5"))

        self.order_ttl_minutes = int(os.getenv("ORDER_TTL_MINUTES", "30"))
        self.reviewer_max_workload = int(os.getenv("REVIEWER_MAX_WORKLOAD", "15"))
        self.allow_fee_waiver = _flag("ALLOW_FEE_WAIVER")
        self.default_currency = os.getenv("DEFAULT_CURRENCY", "inr").lower()

        log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        if log_level not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid LOG_LEVEL {log_level!r}. Must be one of: {VALID_LOG_LEVELS}")
        self.log_level = log_level

        if self.gateway_max_attempts < 1:
            raise ValueError("GATEWAY_MAX_ATTEMPTS must be at least 1")

    @property
    def gateway_configured(self) -> bool:
        return bool(self.stripe_secret_key)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
