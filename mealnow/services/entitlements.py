"""Entitlement evaluator — read path for current access (premium / trial / free)."""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from mealnow.db.subscription_tables import SubscriptionRow
from mealnow.models.billing import (
    BillingConfig, EffectivePlan, Plan, SubscriptionStatus, SubscriptionSummary,
    as_utc, is_premium_plan, now_utc,
)
from mealnow.services.subscription_ledger import SubscriptionLedger
from mealnow.services.usage_ledger import local_midnight, resolve_timezone, units_used_since

logger = logging.getLogger(__name__)


def compute_effective_plan(row: SubscriptionRow, now: datetime) -> EffectivePlan:
    """Lazy trial expiry: a trial past ``end_at`` or out of uses is really ``free``."""
    if row.plan != Plan.TRIAL.value:
        return EffectivePlan(row.plan, False)

    end_at = as_utc(row.end_at)
    expired_by_time = end_at is not None and end_at <= now
    exhausted = (row.remaining_trials or 0) <= 0
    inactive = row.status != SubscriptionStatus.ACTIVE.value
    if expired_by_time or exhausted or inactive:
        return EffectivePlan(Plan.FREE.value, True)
    return EffectivePlan(Plan.TRIAL.value, False)


def is_premium_active(row: SubscriptionRow, now: datetime) -> bool:
    if not is_premium_plan(row.plan) or row.status != SubscriptionStatus.ACTIVE.value:
        return False
    end_at = as_utc(row.end_at)
    return end_at is None or end_at > now


async def has_active_subscription(
    session: AsyncSession, user_id: str, now: datetime | None = None
) -> bool:
    now = now or now_utc()
    row = await SubscriptionLedger(session).get(user_id)
    if row is None:
        return False
    if is_premium_active(row, now):
        return True
    return compute_effective_plan(row, now).plan == Plan.TRIAL.value


async def get_user_subscription(
    session: AsyncSession,
    config: BillingConfig,
    user_id: str,
    tz: str | None = None,
    now: datetime | None = None,
) -> SubscriptionSummary | None:
    """Current plan summary. Persists the same trial->free downgrade as the quota gate."""
    now = now or now_utc()
    ledger = SubscriptionLedger(session)
    row = await ledger.get(user_id)
    if row is None:
        return None

    effective = compute_effective_plan(row, now)
    if effective.requires_persist:
        await ledger.downgrade_to_free(user_id, now)
        row = await ledger.get(user_id)

    premium = is_premium_active(row, now)
    daily_limit = daily_remaining = None
    if premium:
        zone = resolve_timezone(tz, config.default_timezone)
        used = await units_used_since(session, user_id, local_midnight(now, zone))
        daily_limit = config.daily_usage_limit
        daily_remaining = max(config.daily_usage_limit - used, 0)

    return SubscriptionSummary(
        plan=row.plan,
        status=row.status,
        is_premium=premium,
        start_at=as_utc(row.start_at),
        end_at=as_utc(row.end_at),
        remaining_trials=row.remaining_trials or 0,
        daily_limit=daily_limit,
        daily_remaining=daily_remaining,
        app_store_subscription_id=row.external_transaction_id,
        auto_renew=bool(row.auto_renew),
    )
