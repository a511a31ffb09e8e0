"""MealNow entitlements API — FastAPI application."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from mealnow.logging_config import setup_logging
setup_logging()

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import settings
from mealnow.api.billing import router as billing_router
from mealnow.api.webhooks import router as webhooks_router
from mealnow.db import engine as db
from mealnow.db.tables import Base
from mealnow.errors import (
    AppStoreUnavailableError, NoEntitlementError, QuotaExceededError, ReceiptVerificationError,
)
from mealnow.middleware.metrics import MetricsMiddleware
from mealnow.middleware.request_id import RequestIDMiddleware

logger = logging.getLogger(__name__)


def _init_sentry() -> None:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        # Receipts and signed payloads must never leave the process
        send_default_pii=False,
        max_request_body_size="never",
    )


if settings.SENTRY_DSN:
    _init_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    from mealnow.startup_checks import validate_settings
    validate_settings()

    import mealnow.db.subscription_tables  # noqa: F401
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Billing tables ready")

    yield

    await db.engine.dispose()
    logger.info("Database connections closed")


app = FastAPI(
    title="MealNow Entitlements API",
    version="0.3.0",
    description="Trial allowance, daily quota and App Store / RevenueCat subscription state for MealNow",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIDMiddleware)

app.include_router(webhooks_router)
app.include_router(billing_router)


@app.get("/health")
async def health():
    return {"status": "ok"}


# ── Error envelopes: {"error": <code>, "message": <text>, ...} ───────────────

def _envelope(status_code: int, error: str, message, headers=None, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, **extra},
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": " → ".join(str(loc) for loc in err["loc"]) if err.get("loc") else "unknown",
            "message": err["msg"],
        }
        for err in exc.errors()
    ]
    return _envelope(422, "validation_error", "Invalid request data", details=details)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    error = exc.detail if isinstance(exc.detail, str) else "error"
    return _envelope(exc.status_code, error, exc.detail, headers=getattr(exc, "headers", None))


@app.exception_handler(QuotaExceededError)
async def quota_exceeded_handler(request: Request, exc: QuotaExceededError):
    return _envelope(
        429, "quota_exceeded", "Daily limit reached. Come back tomorrow.",
        code=exc.code, used=exc.used, limit=exc.limit,
    )


@app.exception_handler(NoEntitlementError)
async def no_entitlement_handler(request: Request, exc: NoEntitlementError):
    return _envelope(
        402, "subscription_required", "Free trial used up. Subscribe to keep going.", code=exc.code
    )


@app.exception_handler(ReceiptVerificationError)
async def receipt_error_handler(request: Request, exc: ReceiptVerificationError):
    return _envelope(400, "receipt_verification_failed", str(exc), apple_status=exc.status)


@app.exception_handler(AppStoreUnavailableError)
async def app_store_unavailable_handler(request: Request, exc: AppStoreUnavailableError):
    return _envelope(502, "app_store_unavailable", "Could not reach the App Store. Please try again.")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return _envelope(500, "internal_error", "Something went wrong. Please try again.")
