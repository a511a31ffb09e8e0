"""Create subscriptions, usage_records and payment_events.

Revision ID: 3f9a1c2e7b10
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "3f9a1c2e7b10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("plan", sa.String(100), nullable=False, server_default="trial"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remaining_trials", sa.Integer, nullable=False, server_default="0"),
        sa.Column("external_transaction_id", sa.String(255), nullable=True),
        sa.Column("auto_renew", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("remaining_trials >= 0", name="ck_subscriptions_remaining_trials"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=True)
    op.create_index(
        "ix_subscriptions_external_transaction_id", "subscriptions",
        ["external_transaction_id"], unique=True,
    )

    op.create_table(
        "usage_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False, server_default="0"),
        sa.Column("units", sa.Integer, nullable=False, server_default="0"),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("related_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_usage_records_user_id", "usage_records", ["user_id"])
    op.create_index("ix_usage_records_related_id", "usage_records", ["related_id"])
    op.create_index("ix_usage_records_user_created", "usage_records", ["user_id", "created_at"])

    op.create_table(
        "payment_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("external_transaction_id", sa.String(255), nullable=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("outcome", sa.String(30), nullable=False),
        sa.Column("payload", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_payment_events_user_id", "payment_events", ["user_id"])
    op.create_index(
        "ix_payment_events_external_transaction_id", "payment_events", ["external_transaction_id"]
    )
    op.create_index("ix_payment_events_event_type", "payment_events", ["event_type"])
    op.create_index("ix_payment_events_created_at", "payment_events", ["created_at"])
    op.create_index("ix_payment_events_source_type", "payment_events", ["source", "event_type"])


def downgrade() -> None:
    op.drop_table("payment_events")
    op.drop_table("usage_records")
    op.drop_table("subscriptions")
