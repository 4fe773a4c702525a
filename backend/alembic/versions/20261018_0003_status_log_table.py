"""Create the append-only WhatsApp status callback log."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0003"
down_revision = "20261018_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "whatsapp_status_log",
        sa.Column("entry_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("provider_message_id", sa.String(length=256), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("errors_json", sa.Text(), nullable=True),
        sa.Column("recipient_id", sa.String(length=64), nullable=True),
        sa.Column("reported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("message_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("entry_id"),
    )
    op.create_index(
        "ix_whatsapp_status_log_provider_message_id",
        "whatsapp_status_log",
        ["provider_message_id"],
        unique=False,
    )
    op.create_index("ix_whatsapp_status_log_processed", "whatsapp_status_log", ["processed"], unique=False)
    op.create_index("ix_whatsapp_status_log_created_at", "whatsapp_status_log", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_whatsapp_status_log_created_at", table_name="whatsapp_status_log")
    op.drop_index("ix_whatsapp_status_log_processed", table_name="whatsapp_status_log")
    op.drop_index("ix_whatsapp_status_log_provider_message_id", table_name="whatsapp_status_log")
    op.drop_table("whatsapp_status_log")
