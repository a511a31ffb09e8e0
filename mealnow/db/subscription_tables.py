"""Subscription tables — per-user entitlement row, usage ledger and payment event log."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Index, Integer, JSON, String,
)

from mealnow.db.tables import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionRow(Base):
    """One row per user — single source of truth for entitlements."""
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False, unique=True, index=True)

    # trial | free | premium plan id / App Store SKU
    plan = Column(String(100), nullable=False, default="trial")

    # active | expired | past_due | revoked
    status = Column(String(20), nullable=False, default="active")

    start_at = Column(DateTime(timezone=True), nullable=True)
    end_at = Column(DateTime(timezone=True), nullable=True)  # NULL = no fixed expiry

    remaining_trials = Column(Integer, nullable=False, default=0)

    # App Store original transaction id; bound to at most one user
    external_transaction_id = Column(String(255), nullable=True, unique=True, index=True)
    auto_renew = Column(Boolean, nullable=False, default=False)

    # signedDate of the newest platform notification applied to this row
    last_event_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint("remaining_trials >= 0", name="ck_subscriptions_remaining_trials"),
    )


class UsageRecordRow(Base):
    """Append-only log of billed actions."""
    __tablename__ = "usage_records"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False, index=True)

    # generate_recipe | recognize_ingredients | subscription_start | ...
    type = Column(String(50), nullable=False)

    # -1 trial debit, 0 covered by membership
    amount = Column(Integer, nullable=False, default=0)

    # Weight counted against the daily cap (0 for combo follow-ups)
    units = Column(Integer, nullable=False, default=0)

    description = Column(String(255), nullable=True)
    related_id = Column(String(64), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_usage_records_user_created", "user_id", "created_at"),
    )


class PaymentEventRow(Base):
    """Immutable log of every processed notification and client receipt."""
    __tablename__ = "payment_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=True, index=True)
    external_transaction_id = Column(String(255), nullable=True, index=True)

    # SUBSCRIBED | DID_RENEW | INITIAL_PURCHASE | receipt_verified | ...
    event_type = Column(String(100), nullable=False, index=True)

    # app_store | revenuecat | receipt
    source = Column(String(20), nullable=False)

    # applied | unknown_transaction | stale | ignored | verification_failed
    outcome = Column(String(30), nullable=False)

    # Decoded fields only, never the raw signed payload
    payload = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)

    __table_args__ = (
        Index("ix_payment_events_source_type", "source", "event_type"),
    )
