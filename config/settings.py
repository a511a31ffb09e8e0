"""App settings — loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


def _bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///mealnow.db")

    # Auth (tokens are issued by the account service, we only verify them)
    JWT_SECRET = os.getenv("JWT_SECRET", "mealnow-dev-secret-change-in-prod")

    # Trial allowance + daily cap
    TRIAL_DAYS = int(os.getenv("TRIAL_DAYS", "7"))
    TRIAL_COUNT = int(os.getenv("TRIAL_COUNT", "3"))
    DAILY_USAGE_LIMIT = int(os.getenv("DAILY_USAGE_LIMIT", "20"))
    COMBO_GRACE_SECONDS = int(os.getenv("COMBO_GRACE_SECONDS", "300"))
    DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "UTC")

    # Apple App Store
    BUNDLE_ID = os.getenv("BUNDLE_ID", "com.dreamtracer.todaysmeal")
    APP_STORE_APP_ID = (
        int(os.getenv("APP_STORE_APP_ID")) if os.getenv("APP_STORE_APP_ID") else None
    )
    APPLE_ENVIRONMENT = os.getenv("APPLE_ENVIRONMENT", "Production")  # "Production" or "Sandbox"
    APPLE_ALLOW_SANDBOX_RECEIPTS = _bool("APPLE_ALLOW_SANDBOX_RECEIPTS", "true")
    APPLE_SHARED_SECRET = os.getenv("APPLE_SHARED_SECRET", "")
    APPLE_ROOT_CERTS_DIR = os.getenv("APPLE_ROOT_CERTS_DIR", "certs")
    # OCSP revocation check of the signing certificate (on by default in production)
    APPLE_ONLINE_CHECKS = _bool(
        "APPLE_ONLINE_CHECKS", "true" if APPLE_ENVIRONMENT == "Production" else "false"
    )

    # RevenueCat
    REVENUECAT_WEBHOOK_AUTH_TOKEN = os.getenv("REVENUECAT_WEBHOOK_AUTH_TOKEN", "")

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
