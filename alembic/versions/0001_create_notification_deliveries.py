"""Create notification_deliveries table.

Revision ID: 0001
Revises: -
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

_JSON = sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "notification_deliveries",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("recipient_address", sa.String(255), nullable=False),
        sa.Column("subject", sa.String(200), nullable=True),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("template_id", sa.String(64), nullable=True),
        sa.Column("metadata", _JSON, nullable=False),
        sa.Column(
            "priority", sa.String(16), nullable=False, server_default="normal"
        ),
        sa.Column("batch_id", sa.String(64), nullable=True),
        sa.Column(
            "status", sa.String(16), nullable=False, server_default="pending"
        ),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        sa.Column("provider_response", _JSON, nullable=True),
        sa.Column(
            "cost", sa.Numeric(10, 4), nullable=False, server_default="0"
        ),
        sa.Column(
            "currency", sa.String(3), nullable=False, server_default="USD"
        ),
        sa.Column("failure_reason", sa.Text, nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_notification_deliveries_status", "notification_deliveries", ["status"]
    )
    op.create_index(
        "ix_notification_deliveries_provider_message_id",
        "notification_deliveries",
        ["provider_message_id"],
    )
    op.create_index(
        "ix_notification_deliveries_next_retry_at",
        "notification_deliveries",
        ["next_retry_at"],
    )
    op.create_index(
        "ix_notification_deliveries_channel_status",
        "notification_deliveries",
        ["channel", "status"],
    )
    op.create_index(
        "ix_notification_deliveries_batch_id",
        "notification_deliveries",
        ["batch_id"],
    )


def downgrade() -> None:
    op.drop_table("notification_deliveries")
