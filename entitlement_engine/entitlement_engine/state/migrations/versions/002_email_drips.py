"""Add lifecycle email drip storage.

Adds the ``tenants.unsubscribed_from_emails`` opt-out flag and the
``email_sends`` log, unique per ``(tenant_id, email_type)`` so a drip
email can be delivered to a tenant at most once.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    with op.batch_alter_table("tenants") as batch:
        batch.add_column(
            sa.Column("unsubscribed_from_emails", sa.Boolean(), nullable=False, server_default=sa.false())
        )

    op.create_table(
        "email_sends",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("email_type", sa.String(64), nullable=False),
        sa.Column("recipient", sa.String(320), nullable=False),
        sa.Column("provider_ref", sa.String(128), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "email_type", name="uq_email_sends_tenant_type"),
    )


def downgrade() -> None:
    op.drop_table("email_sends")
    with op.batch_alter_table("tenants") as batch:
        batch.drop_column("unsubscribed_from_emails")
