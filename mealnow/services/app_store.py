"""
Client receipt verification
---
Accepts either a StoreKit 2 signed transaction (JWS) or a legacy StoreKit 1
base64 receipt, verifies it, and binds the purchase to the submitting user.

Legacy receipts go to Apple's verifyReceipt: production first, sandbox on
21007, and once more without the shared secret on 21004.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

import httpx
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from mealnow.db.subscription_tables import SubscriptionRow
from mealnow.errors import (
    AppStoreUnavailableError, ReceiptVerificationError, VerificationError, VerificationStatus,
)
from mealnow.models.billing import (
    DecodedTransaction, Environment, LedgerOutcome, SubscriptionStatus, ms_to_dt, now_utc,
)
from mealnow.services import signed_payload
from mealnow.services.subscription_ledger import SubscriptionLedger

logger = logging.getLogger(__name__)

# ── Config ────────────────────────────────────────────────────────────────────

APPLE_VERIFY_URL_PROD = "https://buy.itunes.apple.com/verifyReceipt"
APPLE_VERIFY_URL_SANDBOX = "https://sandbox.itunes.apple.com/verifyReceipt"

STATUS_SANDBOX_RECEIPT = 21007
STATUS_SECRET_MISMATCH = 21004

APPLE_STATUS_MESSAGES = {
    21000: "App Store could not read the JSON",
    21002: "Receipt data malformed",
    21003: "Receipt could not be authenticated",
    21004: "Shared secret mismatch",
    21005: "Apple server unavailable — retry",
    21006: "Receipt valid but subscription expired",
    21007: "Sandbox receipt sent to production",
    21008: "Production receipt sent to sandbox",
    21010: "Account not found",
}


@dataclass(frozen=True)
class VerifiedPurchase:
    original_transaction_id: str
    product_id: str
    expires_at: datetime | None
    auto_renew: bool
    environment: str


# ── Legacy verifyReceipt ──────────────────────────────────────────────────────

async def _call_apple_verify(
    receipt_data: str, shared_secret: str | None, url: str | None = None
) -> tuple[str, dict]:
    """POST a legacy receipt to verifyReceipt.

    Without ``url`` production is tried first and a 21007 answer is retried
    against sandbox. Returns the URL that gave the final answer and its JSON.
    """
    payload: dict = {"receipt-data": receipt_data, "exclude-old-transactions": True}
    if shared_secret:
        payload["password"] = shared_secret

    target = url or APPLE_VERIFY_URL_PROD
    try:
        async with httpx.AsyncClient(timeout=15) as client:
            resp = await client.post(target, json=payload)
            data = resp.json()
            if url is None and data.get("status") == STATUS_SANDBOX_RECEIPT:
                logger.info("Sandbox receipt sent to production, retrying against sandbox")
                target = APPLE_VERIFY_URL_SANDBOX
                resp = await client.post(target, json=payload)
                data = resp.json()
            return target, data
    except (httpx.HTTPError, ValueError) as e:
        logger.exception("Apple receipt verification request failed")
        raise AppStoreUnavailableError(str(e)) from e


async def verify_legacy_receipt(receipt_data: str) -> VerifiedPurchase:
    url, data = await _call_apple_verify(receipt_data, settings.APPLE_SHARED_SECRET)
    if data.get("status") == STATUS_SECRET_MISMATCH:
        logger.warning("verifyReceipt reported shared secret mismatch, retrying without secret")
        url, data = await _call_apple_verify(receipt_data, None, url=url)

    status = data.get("status")
    if status != 0:
        msg = APPLE_STATUS_MESSAGES.get(status, f"Apple verification failed (status {status})")
        raise ReceiptVerificationError(msg, status=status)

    latest_info = data.get("latest_receipt_info") or data.get("receipt", {}).get("in_app", [])
    if not latest_info:
        raise ReceiptVerificationError("No subscription found in receipt", status=status)

    latest = max(latest_info, key=lambda t: int(t.get("expires_date_ms") or 0))
    otid = latest.get("original_transaction_id")
    if not otid or not latest.get("product_id"):
        raise ReceiptVerificationError("Receipt transaction is missing identifiers", status=status)

    auto_renew = False
    for info in data.get("pending_renewal_info", []):
        if info.get("original_transaction_id") == otid:
            auto_renew = str(info.get("auto_renew_status")) == "1"
            break

    return VerifiedPurchase(
        original_transaction_id=otid,
        product_id=latest["product_id"],
        expires_at=ms_to_dt(latest.get("expires_date_ms")),
        auto_renew=auto_renew,
        environment=data.get("environment", Environment.PRODUCTION.value),
    )


# ── StoreKit 2 signed transactions ────────────────────────────────────────────

def _decoded_or_raise(result: DecodedTransaction | VerificationError) -> DecodedTransaction:
    if isinstance(result, VerificationError):
        raise result
    return result


def verify_signed_transaction(signed_transaction: str) -> VerifiedPurchase:
    """Verify with the configured environment; fall back to Sandbox only after
    the signature checked out and the signed environment said Sandbox."""
    primary = Environment(settings.APPLE_ENVIRONMENT)
    result = signed_payload.get_verifier(primary).decode_transaction(signed_transaction)

    if (
        isinstance(result, VerificationError)
        and result.status == VerificationStatus.INVALID_ENVIRONMENT
        and primary == Environment.PRODUCTION
        and settings.APPLE_ALLOW_SANDBOX_RECEIPTS
    ):
        logger.info("Signed transaction is from Sandbox, re-verifying with the Sandbox verifier")
        result = signed_payload.get_verifier(Environment.SANDBOX).decode_transaction(signed_transaction)

    try:
        decoded = _decoded_or_raise(result)
    except VerificationError as e:
        raise ReceiptVerificationError(f"Signed transaction rejected: {e.status.value}") from e

    if not decoded.original_transaction_id or not decoded.product_id:
        raise ReceiptVerificationError("Signed transaction is missing identifiers")

    return VerifiedPurchase(
        original_transaction_id=decoded.original_transaction_id,
        product_id=decoded.product_id,
        expires_at=decoded.expires_at,
        auto_renew=True,
        environment=decoded.environment or primary.value,
    )


# ── Entry point ───────────────────────────────────────────────────────────────

def is_signed_transaction(receipt: str) -> bool:
    return receipt.count(".") == 2


async def verify_and_link_receipt(
    session: AsyncSession, user_id: str, receipt: str
) -> SubscriptionRow:
    """Verify a client receipt and bind it to ``user_id``.

    Links even when the purchase has already expired so later webhooks for
    the transaction can find the user.
    """
    receipt = "".join(receipt.split())
    if not receipt:
        raise ReceiptVerificationError("Empty receipt")

    if is_signed_transaction(receipt):
        purchase = await run_in_threadpool(verify_signed_transaction, receipt)
    else:
        purchase = await verify_legacy_receipt(receipt)

    now = now_utc()
    expired = purchase.expires_at is not None and purchase.expires_at <= now
    status = SubscriptionStatus.EXPIRED if expired else SubscriptionStatus.ACTIVE

    ledger = SubscriptionLedger(session)
    row = await ledger.link_external_subscription(
        user_id,
        purchase.original_transaction_id,
        purchase.product_id,
        status.value,
        purchase.expires_at,
        purchase.auto_renew,
    )
    await ledger.log_event(
        "receipt",
        "receipt_verified",
        LedgerOutcome.APPLIED,
        external_transaction_id=purchase.original_transaction_id,
        user_id=user_id,
        payload={
            "product_id": purchase.product_id,
            "expires_at": purchase.expires_at.isoformat() if purchase.expires_at else None,
            "environment": purchase.environment,
            "status": status.value,
        },
    )
    logger.info(
        f"Receipt verified: user={user_id} txn={purchase.original_transaction_id} "
        f"product={purchase.product_id} status={status.value}"
    )
    return row
