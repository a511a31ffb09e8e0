"""
Billing API — client-facing subscription, receipt and usage endpoints.

- POST /api/v1/billing/receipts/verify — StoreKit 2 JWS or legacy receipt
- GET  /api/v1/billing/subscription    — current plan summary
- GET  /api/v1/billing/entitlement     — has_active_subscription
- GET  /api/v1/billing/usage           — usage history, newest first
- GET  /api/v1/billing/stats           — generation / recognition totals
- POST /api/v1/billing/quota/{action}  — consume quota for a gated action
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from mealnow.auth import require_user_id
from mealnow.db.engine import get_session
from mealnow.models.billing import (
    ACTION_WEIGHTS, BillingConfig, SubscriptionSummary, UsageRecordOut, UserStats, as_utc,
)
from mealnow.services.app_store import verify_and_link_receipt
from mealnow.services.entitlements import get_user_subscription, has_active_subscription
from mealnow.services.quota import enforce_quota
from mealnow.services.usage_ledger import get_usage_history, get_user_stats

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


def _config() -> BillingConfig:
    return BillingConfig.from_settings(settings)


class ReceiptVerifyRequest(BaseModel):
    receipt_data: str = Field(..., min_length=1)


@router.post("/receipts/verify", response_model=SubscriptionSummary)
async def verify_receipt(
    req: ReceiptVerifyRequest,
    user_id: str = Depends(require_user_id),
    x_user_timezone: Optional[str] = Header(None),
    session: AsyncSession = Depends(get_session),
):
    """Verify an App Store receipt and bind the purchase to the caller."""
    await verify_and_link_receipt(session, user_id, req.receipt_data)
    await session.commit()
    return await get_user_subscription(session, _config(), user_id, tz=x_user_timezone)


@router.get("/subscription", response_model=Optional[SubscriptionSummary])
async def my_subscription(
    user_id: str = Depends(require_user_id),
    x_user_timezone: Optional[str] = Header(None),
    session: AsyncSession = Depends(get_session),
):
    summary = await get_user_subscription(session, _config(), user_id, tz=x_user_timezone)
    await session.commit()
    return summary


@router.get("/entitlement")
async def my_entitlement(
    user_id: str = Depends(require_user_id),
    session: AsyncSession = Depends(get_session),
):
    return {"active": await has_active_subscription(session, user_id)}


@router.get("/usage")
async def my_usage(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(require_user_id),
    session: AsyncSession = Depends(get_session),
):
    rows = await get_usage_history(session, user_id, limit=limit, offset=offset)
    data = [
        UsageRecordOut(
            id=r.id,
            type=r.type,
            amount=r.amount,
            description=r.description,
            related_id=r.related_id,
            created_at=as_utc(r.created_at),
        )
        for r in rows
    ]
    return {"data": data, "limit": limit, "offset": offset}


@router.get("/stats", response_model=UserStats)
async def my_stats(
    user_id: str = Depends(require_user_id),
    session: AsyncSession = Depends(get_session),
):
    return await get_user_stats(session, user_id)


@router.post("/quota/{action}")
async def consume_quota(
    action: str,
    user_id: str = Depends(require_user_id),
    x_user_timezone: Optional[str] = Header(None),
    session: AsyncSession = Depends(get_session),
):
    """Consume one use of ``action`` for the caller (used by the generation services)."""
    if action not in ACTION_WEIGHTS:
        raise HTTPException(404, f"Unknown action: {action}")
    await enforce_quota(session, _config(), user_id, action, x_user_timezone)
    return {"allowed": True, "action": action}
