"""
Subscription ledger
---
Single mutable row per user: plan, status, expiry, trial counter and the
App Store binding. Every mutation keyed by an original transaction id is a
field-scoped ``UPDATE`` so webhook redelivery and reordering can't corrupt it.
The trial decrement and the lazy trial->free downgrade are conditional
UPDATEs too; nothing here does read-modify-write in Python.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from mealnow.db.subscription_tables import PaymentEventRow, SubscriptionRow
from mealnow.models.billing import (
    PREMIUM_PLANS, BillingConfig, LedgerOutcome, Plan, SubscriptionStatus, UsageType, now_utc,
)
from mealnow.services.ownership import detach_from_other_users
from mealnow.services.usage_ledger import record_usage

logger = logging.getLogger(__name__)


class SubscriptionLedger:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Reads ────────────────────────────────────────────────────────────────

    async def get(self, user_id: str) -> SubscriptionRow | None:
        result = await self.session.execute(
            select(SubscriptionRow)
            .where(SubscriptionRow.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_transaction_id: str) -> SubscriptionRow | None:
        result = await self.session.execute(
            select(SubscriptionRow)
            .where(SubscriptionRow.external_transaction_id == external_transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_active_subscriber_ids(self, now: datetime | None = None) -> list[str]:
        now = now or now_utc()
        result = await self.session.execute(
            select(SubscriptionRow.user_id).where(
                SubscriptionRow.status == SubscriptionStatus.ACTIVE.value,
                SubscriptionRow.plan.in_(sorted(PREMIUM_PLANS)),
                or_(SubscriptionRow.end_at.is_(None), SubscriptionRow.end_at > now),
            )
        )
        return [row[0] for row in result]

    # ── Row creation ─────────────────────────────────────────────────────────

    async def _insert_if_absent(self, user_id: str, **values) -> None:
        """``INSERT ... ON CONFLICT (user_id) DO NOTHING``.

        A concurrent insert for the same user is absorbed; any other unique
        violation (a transaction id already bound elsewhere) still raises.
        """
        dialect = self.session.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        now = values.pop("now")
        stmt = (
            insert(SubscriptionRow)
            .values(
                id=str(uuid.uuid4()),
                user_id=user_id,
                created_at=now,
                updated_at=now,
                **values,
            )
            .on_conflict_do_nothing(index_elements=[SubscriptionRow.user_id])
        )
        await self.session.execute(stmt)

    async def get_or_create_trial(
        self, user_id: str, config: BillingConfig, now: datetime | None = None
    ) -> SubscriptionRow:
        """Self-healing path for accounts created without a subscription row."""
        row = await self.get(user_id)
        if row is not None:
            return row

        now = now or now_utc()
        await self._insert_if_absent(
            user_id,
            now=now,
            plan=Plan.TRIAL.value,
            status=SubscriptionStatus.ACTIVE.value,
            start_at=now,
            end_at=now + timedelta(days=config.trial_days),
            remaining_trials=config.trial_count,
            auto_renew=False,
        )
        row = await self.get(user_id)
        logger.info(f"Seeded trial for user={user_id} trials={row.remaining_trials}")
        return row

    # ── Trial transitions ────────────────────────────────────────────────────

    async def consume_trial(self, user_id: str, now: datetime | None = None) -> bool:
        """Atomically take one trial use. True iff exactly one row changed."""
        now = now or now_utc()
        result = await self.session.execute(
            update(SubscriptionRow)
            .where(
                SubscriptionRow.user_id == user_id,
                SubscriptionRow.plan == Plan.TRIAL.value,
                SubscriptionRow.status == SubscriptionStatus.ACTIVE.value,
                SubscriptionRow.remaining_trials > 0,
                or_(SubscriptionRow.end_at.is_(None), SubscriptionRow.end_at > now),
            )
            .values(remaining_trials=SubscriptionRow.remaining_trials - 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def downgrade_to_free(self, user_id: str, now: datetime | None = None) -> bool:
        """Persist the lazy trial->free transition (no-op if already moved on)."""
        now = now or now_utc()
        result = await self.session.execute(
            update(SubscriptionRow)
            .where(
                SubscriptionRow.user_id == user_id,
                SubscriptionRow.plan == Plan.TRIAL.value,
            )
            .values(plan=Plan.FREE.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Trial ended, downgraded to free: user={user_id}")
        return result.rowcount == 1

    # ── Platform updates keyed by original transaction id ───────────────────

    async def _update_by_external_id(
        self,
        external_transaction_id: str,
        values: dict,
        event_at: datetime | None,
    ) -> LedgerOutcome:
        now = now_utc()
        stmt = update(SubscriptionRow).where(
            SubscriptionRow.external_transaction_id == external_transaction_id
        )
        if event_at is not None:
            stmt = stmt.where(
                or_(
                    SubscriptionRow.last_event_at.is_(None),
                    SubscriptionRow.last_event_at <= event_at,
                )
            )
            values = {**values, "last_event_at": event_at}

        result = await self.session.execute(
            stmt.values(**values, updated_at=now).execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return LedgerOutcome.APPLIED

        exists = await self.session.execute(
            select(func.count(SubscriptionRow.id)).where(
                SubscriptionRow.external_transaction_id == external_transaction_id
            )
        )
        if exists.scalar_one():
            logger.info(
                f"Skipping stale notification for {external_transaction_id} "
                f"(signed {event_at.isoformat() if event_at else '-'})"
            )
            return LedgerOutcome.STALE

        logger.warning(
            f"Webhook received for unknown transaction: {external_transaction_id} "
            f"(status={values.get('status', '-')}), no subscription updated"
        )
        return LedgerOutcome.UNKNOWN_TRANSACTION

    async def upsert_status(
        self,
        external_transaction_id: str,
        status: str,
        expires_at: datetime | None = None,
        plan: str | None = None,
        event_at: datetime | None = None,
    ) -> LedgerOutcome:
        """Set status (and expiry/plan when given) on the bound row.

        Never creates a row: only client-verified receipts create bindings.
        """
        values: dict = {"status": SubscriptionStatus(status).value}
        if expires_at is not None:
            values["end_at"] = expires_at
        if plan:
            values["plan"] = plan
        outcome = await self._update_by_external_id(external_transaction_id, values, event_at)
        if outcome is LedgerOutcome.APPLIED:
            logger.info(f"Updated subscription {external_transaction_id} status to {status}")
        return outcome

    async def update_auto_renew(
        self,
        external_transaction_id: str,
        auto_renew: bool,
        event_at: datetime | None = None,
    ) -> LedgerOutcome:
        outcome = await self._update_by_external_id(
            external_transaction_id, {"auto_renew": bool(auto_renew)}, event_at
        )
        if outcome is LedgerOutcome.APPLIED:
            logger.info(f"Updated subscription {external_transaction_id} auto_renew={auto_renew}")
        return outcome

    # ── Client-verified binding ──────────────────────────────────────────────

    async def link_external_subscription(
        self,
        user_id: str,
        external_transaction_id: str,
        plan: str,
        status: str,
        expires_at: datetime | None,
        auto_renew: bool,
    ) -> SubscriptionRow:
        """Bind a verified purchase to ``user_id``, detaching any previous owner.

        Safe to re-run: a repeated call with the same arguments detaches
        nothing, rewrites the same fields and records no extra usage.
        """
        now = now_utc()
        await detach_from_other_users(self.session, external_transaction_id, user_id, now)

        current = await self.get(user_id)
        binding_changed = (
            current is None or current.external_transaction_id != external_transaction_id
        )

        if current is None:
            await self._insert_if_absent(
                user_id,
                now=now,
                plan=plan,
                status=status,
                start_at=now,
                remaining_trials=0,
                auto_renew=auto_renew,
            )

        values = {
            "external_transaction_id": external_transaction_id,
            "plan": plan,
            "status": SubscriptionStatus(status).value,
            "end_at": expires_at,
            "auto_renew": bool(auto_renew),
            "start_at": func.coalesce(SubscriptionRow.start_at, now),
            "updated_at": now,
        }
        if binding_changed:
            values["last_event_at"] = None
        await self.session.execute(
            update(SubscriptionRow)
            .where(SubscriptionRow.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if binding_changed:
            await record_usage(
                self.session,
                user_id,
                UsageType.SUBSCRIPTION_START.value,
                0,
                description=f"App Store subscription: {plan}",
                related_id=external_transaction_id,
            )
            logger.info(
                f"Linked transaction {external_transaction_id} to user={user_id} "
                f"plan={plan} status={status}"
            )
        return await self.get(user_id)

    # ── Audit log ────────────────────────────────────────────────────────────

    async def log_event(
        self,
        source: str,
        event_type: str | None,
        outcome: LedgerOutcome,
        external_transaction_id: str | None = None,
        user_id: str | None = None,
        payload: dict | None = None,
    ) -> None:
        self.session.add(PaymentEventRow(
            user_id=user_id,
            external_transaction_id=external_transaction_id,
            event_type=event_type or "unknown",
            source=source,
            outcome=outcome.value,
            payload=payload,
        ))
