"""Usage ledger — append-only log of billed actions and windowed counting."""
from __future__ import annotations

import logging
from datetime import datetime, time as dtime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mealnow.db.subscription_tables import UsageRecordRow
from mealnow.models.billing import (
    GENERATION_TYPES, NON_QUOTA_TYPES, RECOGNITION_TYPES, UserStats, as_utc, now_utc, usage_units,
)

logger = logging.getLogger(__name__)


async def record_usage(
    session: AsyncSession,
    user_id: str,
    type: str,
    amount: int,
    description: str | None = None,
    related_id: str | None = None,
    units: int | None = None,
    created_at: datetime | None = None,
) -> UsageRecordRow:
    """Append one usage row. ``units`` defaults to the quota weight of ``type``."""
    record = UsageRecordRow(
        user_id=user_id,
        type=type,
        amount=amount,
        units=usage_units(type) if units is None else units,
        description=description,
        related_id=related_id,
        created_at=created_at or now_utc(),
    )
    session.add(record)
    await session.flush()
    return record


async def get_usage_history(
    session: AsyncSession, user_id: str, limit: int = 20, offset: int = 0
) -> list[UsageRecordRow]:
    """Newest first."""
    result = await session.execute(
        select(UsageRecordRow)
        .where(UsageRecordRow.user_id == user_id)
        .order_by(UsageRecordRow.created_at.desc(), UsageRecordRow.id)
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


def resolve_timezone(name: str | None, default: str = "UTC") -> ZoneInfo:
    """IANA zone from the X-User-Timezone header, falling back to ``default``."""
    for candidate in (name, default, "UTC"):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug(f"Unknown timezone {candidate!r}, falling back")
    return ZoneInfo("UTC")


def local_midnight(now: datetime, tz: ZoneInfo) -> datetime:
    """Start of the user's current day, as an aware UTC datetime."""
    local_now = now.astimezone(tz)
    midnight = datetime.combine(local_now.date(), dtime.min, tzinfo=tz)
    return as_utc(midnight)


async def units_used_since(session: AsyncSession, user_id: str, since: datetime) -> int:
    """Sum of quota units spent since ``since``, bookkeeping rows excluded."""
    result = await session.execute(
        select(func.coalesce(func.sum(UsageRecordRow.units), 0)).where(
            UsageRecordRow.user_id == user_id,
            UsageRecordRow.type.notin_(NON_QUOTA_TYPES),
            UsageRecordRow.created_at >= since,
        )
    )
    return int(result.scalar_one())


async def latest_usage_since(
    session: AsyncSession, user_id: str, type: str, since: datetime
) -> UsageRecordRow | None:
    result = await session.execute(
        select(UsageRecordRow)
        .where(
            UsageRecordRow.user_id == user_id,
            UsageRecordRow.type == type,
            UsageRecordRow.created_at >= since,
        )
        .order_by(UsageRecordRow.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def has_follow_up(session: AsyncSession, user_id: str, related_id: str) -> bool:
    result = await session.execute(
        select(func.count(UsageRecordRow.id)).where(
            UsageRecordRow.user_id == user_id,
            UsageRecordRow.related_id == related_id,
        )
    )
    return result.scalar_one() > 0


async def get_user_stats(session: AsyncSession, user_id: str) -> UserStats:
    async def _count(types: tuple[str, ...]) -> int:
        result = await session.execute(
            select(func.count(UsageRecordRow.id)).where(
                UsageRecordRow.user_id == user_id,
                UsageRecordRow.type.in_(types),
            )
        )
        return result.scalar_one()

    last = await session.execute(
        select(func.max(UsageRecordRow.created_at)).where(UsageRecordRow.user_id == user_id)
    )
    return UserStats(
        total_generations=await _count(GENERATION_TYPES),
        total_recognitions=await _count(RECOGNITION_TYPES),
        last_active_at=as_utc(last.scalar_one_or_none()),
    )
