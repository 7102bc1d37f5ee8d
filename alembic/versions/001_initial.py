"""Initial billing schema.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Tables may already exist when the app started before Alembic ran
(Base.metadata.create_all), so each one is created only if missing.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _missing(name: str) -> bool:
    return name not in sa.inspect(op.get_bind()).get_table_names()


def upgrade() -> None:
    if _missing("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("email", sa.String(), nullable=True, index=True),
            sa.Column("notify_billing", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        )

    if _missing("subscriptions"):
        op.create_table(
            "subscriptions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("owner_id", sa.String(), nullable=False),
            sa.Column("plan", sa.String(32), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("valid_until", sa.DateTime(), nullable=True),
            sa.Column("autopay_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("external_subscription_id", sa.String(), nullable=True),
            sa.Column("expiry_email_sent", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.UniqueConstraint("external_subscription_id", name="uq_subscriptions_external_subscription_id"),
        )
        op.create_index("ix_subscriptions_owner_id", "subscriptions", ["owner_id"], unique=True)

    if _missing("weekly_installment_trackers"):
        op.create_table(
            "weekly_installment_trackers",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "subscription_id",
                sa.Integer(),
                sa.ForeignKey("subscriptions.id", ondelete="CASCADE"),
                nullable=False,
                unique=True,
            ),
            sa.Column("owner_id", sa.String(), nullable=False, index=True),
            sa.Column("week_start_date", sa.DateTime(), nullable=False),
            sa.Column("current_week_start", sa.DateTime(), nullable=False),
            sa.Column("week_number", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("downloads_used", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("week1_paid", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("week2_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("week3_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("week2_paid_at", sa.DateTime(), nullable=True),
            sa.Column("week3_paid_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )

    if _missing("processed_webhook_events"):
        op.create_table(
            "processed_webhook_events",
            sa.Column("event_id", sa.String(255), primary_key=True),
            sa.Column("event_type", sa.String(100), nullable=False, index=True),
            sa.Column("received_at", sa.DateTime(), nullable=False, index=True),
        )

    if _missing("provider_operations"):
        op.create_table(
            "provider_operations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("owner_id", sa.String(), nullable=False, index=True),
            sa.Column("operation", sa.String(50), nullable=False),
            sa.Column("external_id", sa.String(), nullable=False, index=True),
            sa.Column("status", sa.String(20), nullable=False, index=True),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
        )

    if _missing("purchases"):
        op.create_table(
            "purchases",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("owner_id", sa.String(), nullable=True, index=True),
            sa.Column("razorpay_order_id", sa.String(), nullable=True, index=True),
            sa.Column("status", sa.String(), nullable=False, server_default="pending"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )


def downgrade() -> None:
    for table in (
        "purchases",
        "provider_operations",
        "processed_webhook_events",
        "weekly_installment_trackers",
        "subscriptions",
        "users",
    ):
        op.drop_table(table)
