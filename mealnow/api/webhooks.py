"""
Billing platform webhooks
---
- POST /webhooks/app-store/production — App Store Server Notifications v2 (Production verifier)
- POST /webhooks/app-store/sandbox    — same, Sandbox verifier
- POST /webhooks/app-store            — legacy route, treated as Production
- POST /webhooks/revenue-cat          — RevenueCat events

Signature failures are acknowledged with 200 so the platform stops retrying
an unfixable payload. Ledger/database failures return 500 so it retries.
"""
from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from mealnow.db.engine import get_session
from mealnow.errors import VerificationError
from mealnow.middleware.metrics import metrics
from mealnow.models.billing import Environment, LedgerOutcome
from mealnow.services import signed_payload
from mealnow.services.subscription_ledger import SubscriptionLedger
from mealnow.services.webhook_router import WebhookRouter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class AppStoreNotificationBody(BaseModel):
    signedPayload: Optional[str] = None


# ── App Store ─────────────────────────────────────────────────────────────────

async def _record_verification_failure(
    session: AsyncSession, error: VerificationError, environment: Environment
) -> None:
    """Audit the rejected payload; a failing audit write must not turn into a retry."""
    try:
        await SubscriptionLedger(session).log_event(
            "app_store",
            None,
            LedgerOutcome.VERIFICATION_FAILED,
            payload={"status": error.status.value, "environment": environment.value},
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("Could not record App Store verification failure")


async def _process_app_store(
    body: AppStoreNotificationBody, environment: Environment, session: AsyncSession
) -> dict:
    if not body.signedPayload:
        logger.warning("Received App Store webhook without signedPayload")
        metrics.record_webhook("app_store", "missing_payload")
        return {"ok": False, "reason": "Missing signedPayload"}

    logger.info(f"Processing App Store webhook. Verifier: {environment.value}")
    # blocking: OCSP lookups go over the network
    verifier = signed_payload.get_verifier(environment)
    decoded = await run_in_threadpool(verifier.verify, body.signedPayload)

    if isinstance(decoded, VerificationError):
        logger.error(f"App Store verification failed ({environment.value}): {decoded}")
        metrics.record_webhook("app_store", LedgerOutcome.VERIFICATION_FAILED.value)
        await _record_verification_failure(session, decoded, environment)
        return {"ok": True, "warning": "Verification failed"}

    logger.info(
        f"Verified App Store notification: {decoded.notification_type} {decoded.subtype or ''} "
        f"txn={decoded.original_transaction_id} product={decoded.product_id}"
    )
    ledger = SubscriptionLedger(session)
    try:
        outcome = await WebhookRouter(ledger).route_app_store(decoded)
        await ledger.log_event(
            "app_store",
            decoded.notification_type,
            outcome,
            external_transaction_id=decoded.original_transaction_id,
            payload=decoded.summary(),
        )
        await session.commit()
    except Exception:
        await session.rollback()
        logger.exception(f"Error processing App Store notification {decoded.notification_uuid}")
        metrics.record_webhook("app_store", "error")
        raise HTTPException(500, "webhook_processing_failed")

    metrics.record_webhook("app_store", outcome.value)
    return {"ok": True, "outcome": outcome.value}


@router.post("/app-store/production")
async def app_store_production(
    body: AppStoreNotificationBody,
    session: AsyncSession = Depends(get_session),
):
    return await _process_app_store(body, Environment.PRODUCTION, session)


@router.post("/app-store/sandbox")
async def app_store_sandbox(
    body: AppStoreNotificationBody,
    session: AsyncSession = Depends(get_session),
):
    return await _process_app_store(body, Environment.SANDBOX, session)


@router.post("/app-store")
async def app_store_default(
    body: AppStoreNotificationBody,
    session: AsyncSession = Depends(get_session),
):
    logger.warning(
        "Received App Store webhook on default route, treating as Production. "
        "Point App Store Connect at /production or /sandbox explicitly."
    )
    return await _process_app_store(body, Environment.PRODUCTION, session)


# ── RevenueCat ────────────────────────────────────────────────────────────────

def _authorized(header: str | None) -> bool:
    expected = settings.REVENUECAT_WEBHOOK_AUTH_TOKEN
    if not expected:
        return True
    return hmac.compare_digest((header or "").encode(), expected.encode())


@router.post("/revenue-cat")
async def revenuecat_webhook(
    body: dict = Body(default={}),
    authorization: Optional[str] = Header(None),
    session: AsyncSession = Depends(get_session),
):
    if not _authorized(authorization):
        logger.warning("Unauthorized RevenueCat webhook attempt")
        metrics.record_webhook("revenuecat", "unauthorized")
        raise HTTPException(401, "Invalid authorization token")

    event = body.get("event")
    if not isinstance(event, dict):
        logger.warning("Received RevenueCat webhook without event data")
        metrics.record_webhook("revenuecat", "missing_event")
        return {"ok": False, "reason": "Missing event"}

    logger.info(f"Received RevenueCat event: {event.get('type')} for user={event.get('app_user_id')}")
    ledger = SubscriptionLedger(session)
    try:
        outcome = await WebhookRouter(ledger).route_revenuecat(event)
        await ledger.log_event(
            "revenuecat",
            event.get("type"),
            outcome,
            external_transaction_id=event.get("original_transaction_id"),
            user_id=event.get("app_user_id"),
            payload={
                "id": event.get("id"),
                "product_id": event.get("product_id"),
                "expiration_at_ms": event.get("expiration_at_ms"),
                "environment": event.get("environment"),
            },
        )
        await session.commit()
    except Exception:
        await session.rollback()
        logger.exception(f"Error processing RevenueCat event {event.get('id')}")
        metrics.record_webhook("revenuecat", "error")
        raise HTTPException(500, "webhook_processing_failed")

    metrics.record_webhook("revenuecat", outcome.value)
    return {"ok": True, "outcome": outcome.value}
