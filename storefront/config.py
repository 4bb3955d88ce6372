from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

SUPPORTED_PROVIDERS = {"stripe", "square"}


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _int_env(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or not val.strip():
        return default
    try:
        return int(val)
    except ValueError:
        return default


def get_database_url() -> str:
    return _env("DATABASE_URL", "sqlite:///./storefront.db")


def get_payment_provider() -> Optional[str]:
    """Return the configured provider name, or None when payments are off."""
    provider = _env("PAYMENT_PROVIDER").lower()
    return provider if provider in SUPPORTED_PROVIDERS else None


def get_stripe_secret_key() -> str:
    return _env("STRIPE_SECRET_KEY")


def get_stripe_webhook_secret() -> str:
    return _env("STRIPE_WEBHOOK_SECRET")


def get_square_access_token() -> str:
    return _env("SQUARE_ACCESS_TOKEN")


def get_square_location_id() -> str:
    return _env("SQUARE_LOCATION_ID")


def get_square_webhook_signature_key() -> str:
    return _env("SQUARE_WEBHOOK_SIGNATURE_KEY")


def get_square_environment() -> str:
    """Square SDK environment name: production or sandbox (default)."""
    return "production" if _env("SQUARE_ENVIRONMENT", "sandbox").lower() == "production" else "sandbox"


def get_allowed_domain() -> str:
    return _env("ALLOWED_DOMAIN", "localhost")


def get_currency_code() -> str:
    return _env("CURRENCY_CODE", "GBP").upper()


def get_rabbitmq_url() -> str:
    # Empty disables order notifications
    return _env("RABBITMQ_URL")


def get_events_exchange() -> str:
    return _env("EVENTS_EXCHANGE", "storefront.events")


def get_user_service_url() -> str:
    return _env("USER_SERVICE_URL", "http://user-service:8000")


def get_rate_limit_secret() -> str:
    return _env("RATE_LIMIT_SECRET", "storefront-rate-limit-dev-secret")


def get_checkout_max_attempts() -> int:
    return _int_env("CHECKOUT_MAX_ATTEMPTS", 10)


def get_checkout_lockout_minutes() -> int:
    return _int_env("CHECKOUT_LOCKOUT_MINUTES", 30)


def get_sweep_interval_seconds() -> int:
    return _int_env("RESERVATION_SWEEP_INTERVAL_SECONDS", 0)


def get_cors_origins() -> list[str]:
    raw = _env("CORS_ORIGINS", "*")
    return [o.strip() for o in raw.split(",") if o.strip()]


def get_log_level() -> str:
    return _env("LOG_LEVEL", "INFO").upper()
