"""Create the entitlement store tables.

Creates ``tenants``, ``entitlements``, ``billing_events`` and
``retention_sends``.

Revision ID: 001
Revises:
Create Date: 2026-09-28 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("business_name", sa.String(256), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("onboarding_complete", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("site_slug", sa.String(128), nullable=True),
        sa.Column("sms_consent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_tenants_email", "tenants", ["email"])

    op.create_table(
        "entitlements",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, unique=True),
        sa.Column("billing_customer_ref", sa.String(256), nullable=True),
        sa.Column("billing_subscription_ref", sa.String(256), nullable=True),
        sa.Column("phase", sa.String(16), nullable=False, server_default="none"),
        sa.Column("plan", sa.String(16), nullable=False, server_default="none"),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_entitlements_customer_ref", "entitlements", ["billing_customer_ref"])
    op.create_index("ix_entitlements_phase", "entitlements", ["phase"])

    op.create_table(
        "billing_events",
        sa.Column("event_id", sa.String(256), primary_key=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_billing_events_tenant", "billing_events", ["tenant_id"])

    op.create_table(
        "retention_sends",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("step", sa.Integer(), nullable=False),
        sa.Column("destination", sa.String(32), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("succeeded", sa.Boolean(), nullable=False),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("is_manual", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_retention_sends_tenant_step", "retention_sends", ["tenant_id", "step"])
    op.create_index("ix_retention_sends_sent_at", "retention_sends", ["sent_at"])


def downgrade() -> None:
    op.drop_index("ix_retention_sends_sent_at", table_name="retention_sends")
    op.drop_index("ix_retention_sends_tenant_step", table_name="retention_sends")
    op.drop_table("retention_sends")
    op.drop_index("ix_billing_events_tenant", table_name="billing_events")
    op.drop_table("billing_events")
    op.drop_index("ix_entitlements_phase", table_name="entitlements")
    op.drop_index("ix_entitlements_customer_ref", table_name="entitlements")
    op.drop_table("entitlements")
    op.drop_index("ix_tenants_email", table_name="tenants")
    op.drop_table("tenants")
