from functools import lru_cache
import json
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_cors_origins(value: str) -> list[str]:
    if not value:
        return []

    parsed: list[str]
    raw = value.strip()
    if raw.startswith("["):
        try:
            items = json.loads(raw)
            parsed = [str(item).strip() for item in items if str(item).strip()]
        except (TypeError, ValueError):
            parsed = []
    else:
        parsed = [origin.strip() for origin in raw.split(",") if origin.strip()]

    # Preserve order and remove duplicates.
    return list(dict.fromkeys(parsed))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_name: str = "Hotspot Billing"
    environment: str = "development"
    api_v1_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite:///./hotspot.db"
    db_pool_size: int = 5
    db_max_overflow: int = 5
    db_pool_timeout: int = 15
    db_pool_recycle: int = 1200
    db_pool_pre_ping: bool = True

    # M-Pesa (Daraja)
    mpesa_environment: str = "sandbox"  # sandbox|production
    mpesa_consumer_key: str
    mpesa_consumer_secret: str
    mpesa_shortcode: str
    mpesa_passkey: str
    mpesa_callback_url: str
    mpesa_transaction_type: str = "CustomerPayBillOnline"
    mpesa_country_code: str = "254"
    mpesa_timeout_seconds: int = 15
    mpesa_retry_count: int = 2

    # Payments
    payment_rate_limit: str = "5/minute"
    # Pending payments older than this are swept through the status query.
    pending_payment_timeout_minutes: int = 2

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"
    frontend_base_url: Optional[str] = None
    auto_create_tables: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()
