"""add delivery queue table

Revision ID: 0001_delivery_queue
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_delivery_queue"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Persist every outbound notification and background job as one durable row.
    op.create_table(
        "delivery_queue",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("target", sa.String(), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("metadata", sa.Text(), nullable=True),
        sa.Column("business_key", sa.String(), nullable=True),
        sa.Column("discriminator", sa.String(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata_quarantined", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_delivery_queue_status_next_retry",
        "delivery_queue",
        ["status", "next_retry_at"],
        unique=False,
    )
    op.create_index(
        "ix_delivery_queue_kind_target_created",
        "delivery_queue",
        ["kind", "target", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_delivery_queue_status_kind_created",
        "delivery_queue",
        ["status", "kind", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_delivery_queue_owner_updated",
        "delivery_queue",
        ["owner_id", "updated_at"],
        unique=False,
    )
    op.create_index("ix_delivery_queue_business_key", "delivery_queue", ["business_key"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_delivery_queue_business_key", table_name="delivery_queue")
    op.drop_index("ix_delivery_queue_owner_updated", table_name="delivery_queue")
    op.drop_index("ix_delivery_queue_status_kind_created", table_name="delivery_queue")
    op.drop_index("ix_delivery_queue_kind_target_created", table_name="delivery_queue")
    op.drop_index("ix_delivery_queue_status_next_retry", table_name="delivery_queue")
    op.drop_table("delivery_queue")
