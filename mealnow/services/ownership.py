"""Ownership reconciler — an original transaction id belongs to one user at a time."""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mealnow.db.subscription_tables import SubscriptionRow
from mealnow.models.billing import Plan, SubscriptionStatus, now_utc

logger = logging.getLogger(__name__)


async def detach_from_other_users(
    session: AsyncSession,
    external_transaction_id: str,
    user_id: str,
    now: datetime | None = None,
) -> int:
    """Unbind ``external_transaction_id`` from every user except ``user_id``.

    Single conditional UPDATE: the previous owner drops to an expired free plan.
    Returns the number of rows detached (0 on a repeated call).
    """
    now = now or now_utc()
    owners = await session.execute(
        select(SubscriptionRow.user_id).where(
            SubscriptionRow.external_transaction_id == external_transaction_id,
            SubscriptionRow.user_id != user_id,
        )
    )
    previous = [row[0] for row in owners]

    result = await session.execute(
        update(SubscriptionRow)
        .where(
            SubscriptionRow.external_transaction_id == external_transaction_id,
            SubscriptionRow.user_id != user_id,
        )
        .values(
            external_transaction_id=None,
            plan=Plan.FREE.value,
            status=SubscriptionStatus.EXPIRED.value,
            end_at=now,
            auto_renew=False,
            last_event_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info(
            f"Detached transaction {external_transaction_id} from {previous} "
            f"before binding to user={user_id}"
        )
    return result.rowcount
