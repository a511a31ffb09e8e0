"""
Webhook router
---
Maps App Store Server Notifications v2 and RevenueCat events onto ledger
calls. Unrecognised types are logged and acknowledged.
"""
from __future__ import annotations

import logging

from mealnow.models.billing import (
    DecodedTransaction, LedgerOutcome, SubscriptionStatus, ms_to_dt,
)
from mealnow.services.subscription_ledger import SubscriptionLedger

logger = logging.getLogger(__name__)

# App Store notificationType -> status written to the ledger
APP_STORE_STATUS = {
    "SUBSCRIBED": SubscriptionStatus.ACTIVE,
    "DID_RENEW": SubscriptionStatus.ACTIVE,
    "EXPIRED": SubscriptionStatus.EXPIRED,
    "DID_FAIL_TO_RENEW": SubscriptionStatus.PAST_DUE,
    "REFUND": SubscriptionStatus.REVOKED,
    "REVOKE": SubscriptionStatus.REVOKED,
    "REVOKED": SubscriptionStatus.REVOKED,
}

REVENUECAT_STATUS = {
    "RENEWAL": SubscriptionStatus.ACTIVE,
    "PRODUCT_CHANGE": SubscriptionStatus.ACTIVE,
    "EXPIRATION": SubscriptionStatus.EXPIRED,
    "BILLING_ISSUE": SubscriptionStatus.PAST_DUE,
}

# Purchases bind the transaction to app_user_id
REVENUECAT_PURCHASES = ("INITIAL_PURCHASE", "NON_RENEWING_PURCHASE")

REVENUECAT_AUTO_RENEW = {
    "CANCELLATION": False,
    "UNCANCELLATION": True,
}


class WebhookRouter:
    def __init__(self, ledger: SubscriptionLedger):
        self.ledger = ledger

    async def route_app_store(self, decoded: DecodedTransaction) -> LedgerOutcome:
        ntype = decoded.notification_type
        otid = decoded.original_transaction_id
        if not otid:
            logger.warning(f"App Store notification {ntype} carries no transaction info")
            return LedgerOutcome.IGNORED

        status = APP_STORE_STATUS.get(ntype)
        if status is SubscriptionStatus.ACTIVE:
            return await self.ledger.upsert_status(
                otid, status.value, decoded.expires_at, decoded.product_id,
                event_at=decoded.signed_at,
            )
        if status is not None:
            return await self.ledger.upsert_status(otid, status.value, event_at=decoded.signed_at)

        if ntype == "DID_CHANGE_RENEWAL_STATUS":
            auto_renew = decoded.auto_renew
            if auto_renew is None:
                auto_renew = decoded.subtype == "AUTO_RENEW_ENABLED"
            return await self.ledger.update_auto_renew(otid, auto_renew, event_at=decoded.signed_at)

        if ntype == "DID_CHANGE_RENEWAL_PREF":
            return await self.ledger.update_auto_renew(otid, True, event_at=decoded.signed_at)

        logger.debug(f"Unhandled App Store notification type: {ntype} {decoded.subtype or ''}")
        return LedgerOutcome.IGNORED

    async def route_revenuecat(self, event: dict) -> LedgerOutcome:
        etype = event.get("type")
        otid = event.get("original_transaction_id")
        expires_at = ms_to_dt(event.get("expiration_at_ms"))
        event_at = ms_to_dt(event.get("event_timestamp_ms"))

        if etype == "TEST":
            logger.info("RevenueCat test webhook received successfully")
            return LedgerOutcome.IGNORED

        if etype not in REVENUECAT_STATUS and etype not in REVENUECAT_AUTO_RENEW \
                and etype not in REVENUECAT_PURCHASES:
            logger.debug(f"Unhandled RevenueCat event type: {etype}")
            return LedgerOutcome.IGNORED

        if not otid:
            logger.warning(f"RevenueCat {etype} event without original_transaction_id")
            return LedgerOutcome.IGNORED

        if etype in REVENUECAT_PURCHASES:
            user_id = event.get("app_user_id")
            if not user_id or not event.get("product_id"):
                logger.warning(f"RevenueCat {etype} for {otid} without app_user_id or product_id")
                return LedgerOutcome.IGNORED
            await self.ledger.link_external_subscription(
                user_id, otid, event.get("product_id"),
                SubscriptionStatus.ACTIVE.value, expires_at, True,
            )
            return LedgerOutcome.APPLIED

        if etype in REVENUECAT_AUTO_RENEW:
            return await self.ledger.update_auto_renew(
                otid, REVENUECAT_AUTO_RENEW[etype], event_at=event_at
            )

        status = REVENUECAT_STATUS[etype]
        if status is SubscriptionStatus.ACTIVE:
            return await self.ledger.upsert_status(
                otid, status.value, expires_at, event.get("product_id"), event_at=event_at
            )
        return await self.ledger.upsert_status(otid, status.value, event_at=event_at)
