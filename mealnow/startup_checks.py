"""Startup validation — catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys
from pathlib import Path

from config.settings import settings
from mealnow.models.billing import Environment

logger = logging.getLogger(__name__)

_DEFAULT_JWT_SECRET = "mealnow-dev-secret-change-in-prod"


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    if is_prod and settings.JWT_SECRET == _DEFAULT_JWT_SECRET:
        logger.critical("JWT_SECRET is still the default! Set a real secret for production.")
        sys.exit(1)

    if settings.APPLE_ENVIRONMENT not in {e.value for e in Environment}:
        logger.critical(
            "APPLE_ENVIRONMENT must be 'Production' or 'Sandbox', got %r", settings.APPLE_ENVIRONMENT
        )
        sys.exit(1)

    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to * — restrict in production")

    cert_dir = Path(settings.APPLE_ROOT_CERTS_DIR)
    if not cert_dir.is_dir() or not any(cert_dir.iterdir()):
        warnings.append(
            f"No Apple root certificates in {cert_dir} — every App Store payload will be rejected"
        )

    is_apple_prod = settings.APPLE_ENVIRONMENT == Environment.PRODUCTION.value
    if is_apple_prod and not settings.APPLE_ONLINE_CHECKS:
        warnings.append("APPLE_ONLINE_CHECKS is off — revoked signing certificates are accepted")

    if not settings.APPLE_SHARED_SECRET:
        warnings.append("APPLE_SHARED_SECRET not set — legacy receipts verify without a secret")

    if not settings.REVENUECAT_WEBHOOK_AUTH_TOKEN:
        warnings.append("REVENUECAT_WEBHOOK_AUTH_TOKEN not set — RevenueCat webhook is unauthenticated")

    if settings.TRIAL_COUNT < 0 or settings.DAILY_USAGE_LIMIT < 0:
        warnings.append("TRIAL_COUNT / DAILY_USAGE_LIMIT are negative — gated features are closed")

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
