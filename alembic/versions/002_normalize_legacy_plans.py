"""Rewrite legacy plan names stored before the plan enum existed.

Revision ID: 002_normalize_legacy_plans
Revises: 001_initial
Create Date: 2026-10-19

Rows written as 'weekly' were always billed as monthly; 'pongal_weekly' is the
old name of the three-week installment plan. Reads normalize these anyway;
this just makes the stored data match.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "002_normalize_legacy_plans"
down_revision: Union[str, None] = "001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    conn.execute(sa.text("UPDATE subscriptions SET plan = 'monthly' WHERE plan = 'weekly'"))
    conn.execute(sa.text("UPDATE subscriptions SET plan = 'weekly_installment' WHERE plan = 'pongal_weekly'"))


def downgrade() -> None:
    pass
