"""
MealNow billing domain types
---
Plan catalog, subscription statuses, quota-bearing actions and the immutable
engine configuration. Everything here is plain data: no database access.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel


# ── Plans & statuses ─────────────────────────────────────────────────────────

class Plan(str, Enum):
    TRIAL = "trial"
    FREE = "free"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    PAST_DUE = "past_due"
    REVOKED = "revoked"


SUBSCRIPTION_PLAN_IDS = ("monthly", "quarterly", "yearly")

SUBSCRIPTION_IAP_SKUS = (
    "com.mealnow.premium.monthly",
    "com.mealnow.premium.quarterly",
    "com.mealnow.premium.yearly",
)

PREMIUM_PLANS = frozenset(SUBSCRIPTION_PLAN_IDS + SUBSCRIPTION_IAP_SKUS)


def is_premium_plan(plan: str | None) -> bool:
    return plan in PREMIUM_PLANS


# ── Usage types ──────────────────────────────────────────────────────────────

class UsageType(str, Enum):
    GENERATE_RECIPE = "generate_recipe"
    RECOGNIZE_INGREDIENTS = "recognize_ingredients"
    GENERATE_SURPRISE_RECIPES = "generate_surprise_recipes"
    DAILY_RECOMMENDATION = "daily_recommendation"
    SUBSCRIPTION_START = "subscription_start"


# Cost of each quota-bearing action against the daily cap
ACTION_WEIGHTS: dict[str, int] = {
    UsageType.GENERATE_RECIPE.value: 1,
    UsageType.RECOGNIZE_INGREDIENTS.value: 1,
    UsageType.GENERATE_SURPRISE_RECIPES.value: 1,
    UsageType.DAILY_RECOMMENDATION.value: 1,
}

DEFAULT_ACTION_WEIGHT = 1

# Bookkeeping rows that never spend quota
NON_QUOTA_TYPES = (UsageType.SUBSCRIPTION_START.value,)

# Legacy type names written by older clients still count in stats
GENERATION_TYPES = ("generate_recipe", "recipe_generation")
RECOGNITION_TYPES = ("recognize_ingredients", "ingredient_recognition")


def action_weight(action: str) -> int:
    return ACTION_WEIGHTS.get(action, DEFAULT_ACTION_WEIGHT)


def usage_units(type: str) -> int:
    """Quota units a usage row of ``type`` spends unless told otherwise."""
    return 0 if type in NON_QUOTA_TYPES else action_weight(type)


# ── Engine configuration ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class BillingConfig:
    trial_days: int = 7
    trial_count: int = 3
    daily_usage_limit: int = 20
    combo_grace_seconds: int = 300
    default_timezone: str = "UTC"

    @classmethod
    def from_settings(cls, settings) -> "BillingConfig":
        return cls(
            trial_days=settings.TRIAL_DAYS,
            trial_count=settings.TRIAL_COUNT,
            daily_usage_limit=settings.DAILY_USAGE_LIMIT,
            combo_grace_seconds=settings.COMBO_GRACE_SECONDS,
            default_timezone=settings.DEFAULT_TIMEZONE,
        )


@dataclass(frozen=True)
class EffectivePlan:
    plan: str
    requires_persist: bool


class LedgerOutcome(str, Enum):
    APPLIED = "applied"
    UNKNOWN_TRANSACTION = "unknown_transaction"
    STALE = "stale"
    IGNORED = "ignored"
    VERIFICATION_FAILED = "verification_failed"


# ── Decoded App Store payloads ───────────────────────────────────────────────

class Environment(str, Enum):
    SANDBOX = "Sandbox"
    PRODUCTION = "Production"


@dataclass(frozen=True)
class DecodedTransaction:
    """Verified contents of a notification or a standalone signed transaction."""
    original_transaction_id: str | None
    transaction_id: str | None = None
    product_id: str | None = None
    expires_at: datetime | None = None
    auto_renew: bool | None = None
    notification_type: str | None = None
    subtype: str | None = None
    notification_uuid: str | None = None
    signed_at: datetime | None = None
    environment: str | None = None

    def summary(self) -> dict:
        return {
            "notification_type": self.notification_type,
            "subtype": self.subtype,
            "notification_uuid": self.notification_uuid,
            "transaction_id": self.transaction_id,
            "original_transaction_id": self.original_transaction_id,
            "product_id": self.product_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "auto_renew": self.auto_renew,
            "environment": self.environment,
        }


# ── API response models ──────────────────────────────────────────────────────

class SubscriptionSummary(BaseModel):
    plan: str
    status: str
    is_premium: bool
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    remaining_trials: int = 0
    daily_limit: Optional[int] = None
    daily_remaining: Optional[int] = None
    app_store_subscription_id: Optional[str] = None
    auto_renew: bool = False


class UsageRecordOut(BaseModel):
    id: str
    type: str
    amount: int
    description: Optional[str] = None
    related_id: Optional[str] = None
    created_at: datetime


class UserStats(BaseModel):
    total_generations: int
    total_recognitions: int
    last_active_at: Optional[datetime] = None


# ── Time helpers ─────────────────────────────────────────────────────────────

def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """SQLite hands datetimes back naive; everything we store is UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def ms_to_dt(ms: int | str | None) -> datetime | None:
    """Convert millisecond timestamp to datetime."""
    if ms in (None, ""):
        return None
    return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)
