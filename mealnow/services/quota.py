"""
Quota gate
---
Write path for every gated feature request: decides whether the action is
allowed and records exactly one usage row when it is.

Decision order (first match wins):
1. no subscription row -> seed a trial
2. trial -> lazy downgrade, else atomic decrement (usage amount -1)
3. active premium -> daily cap in the user's local day (usage amount 0),
   with a free follow-up for a recipe generated right after a scan
4. anything else -> not entitled
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from mealnow.auth import require_user_id
from mealnow.db.engine import get_session
from mealnow.errors import NoEntitlementError, QuotaExceededError
from mealnow.middleware.metrics import metrics
from mealnow.models.billing import BillingConfig, Plan, UsageType, action_weight, now_utc
from mealnow.services.entitlements import compute_effective_plan, is_premium_active
from mealnow.services.subscription_ledger import SubscriptionLedger
from mealnow.services.usage_ledger import (
    has_follow_up, latest_usage_since, local_midnight, record_usage, resolve_timezone,
    units_used_since,
)

logger = logging.getLogger(__name__)


class QuotaGate:
    def __init__(self, session: AsyncSession, config: BillingConfig):
        self.session = session
        self.config = config
        self.ledger = SubscriptionLedger(session)

    async def check_and_consume_quota(
        self,
        user_id: str,
        action: str,
        tz: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        now = now or now_utc()
        row = await self.ledger.get_or_create_trial(user_id, self.config, now)

        if row.plan == Plan.TRIAL.value:
            effective = compute_effective_plan(row, now)
            if effective.requires_persist:
                await self.ledger.downgrade_to_free(user_id, now)
            elif await self.ledger.consume_trial(user_id, now):
                await record_usage(
                    self.session, user_id, action, -1,
                    description="Trial use",
                    units=action_weight(action),
                    created_at=now,
                )
                metrics.record_quota("trial")
                return True
            metrics.record_quota("denied")
            return False

        if is_premium_active(row, now):
            await self._consume_daily(user_id, action, tz, now)
            return True

        metrics.record_quota("denied")
        return False

    async def _consume_daily(self, user_id: str, action: str, tz: str | None, now: datetime) -> None:
        if action == UsageType.GENERATE_RECIPE.value:
            since = now - timedelta(seconds=self.config.combo_grace_seconds)
            scan = await latest_usage_since(
                self.session, user_id, UsageType.RECOGNIZE_INGREDIENTS.value, since
            )
            if scan is not None and not await has_follow_up(self.session, user_id, scan.id):
                await record_usage(
                    self.session, user_id, action, 0,
                    description="Included with ingredient scan",
                    related_id=scan.id,
                    units=0,
                    created_at=now,
                )
                metrics.record_quota("combo")
                return

        zone = resolve_timezone(tz, self.config.default_timezone)
        used = await units_used_since(self.session, user_id, local_midnight(now, zone))
        weight = action_weight(action)
        if used + weight > self.config.daily_usage_limit:
            logger.info(
                f"Daily quota exceeded: user={user_id} action={action} "
                f"used={used} limit={self.config.daily_usage_limit}"
            )
            metrics.record_quota("exceeded")
            raise QuotaExceededError(used, self.config.daily_usage_limit)

        await record_usage(
            self.session, user_id, action, 0,
            description="Member benefit",
            units=weight,
            created_at=now,
        )
        metrics.record_quota("premium")


# ── FastAPI integration ───────────────────────────────────────────────────────

async def enforce_quota(
    session: AsyncSession,
    config: BillingConfig,
    user_id: str,
    action: str,
    tz: str | None = None,
) -> None:
    """Run the gate and commit its writes.

    Raises ``NoEntitlementError`` (402) or ``QuotaExceededError`` (429).
    """
    gate = QuotaGate(session, config)
    try:
        allowed = await gate.check_and_consume_quota(user_id, action, tz=tz)
    except QuotaExceededError:
        # keep the self-healed row even when the cap is hit
        await session.commit()
        raise
    await session.commit()
    if not allowed:
        raise NoEntitlementError()


def require_quota(action: str):
    """Dependency factory gating a route on ``action``; yields the user id."""

    async def _guard(
        user_id: str = Depends(require_user_id),
        x_user_timezone: str | None = Header(None),
        session: AsyncSession = Depends(get_session),
    ) -> str:
        await enforce_quota(
            session, BillingConfig.from_settings(settings), user_id, action, x_user_timezone
        )
        return user_id

    return _guard
