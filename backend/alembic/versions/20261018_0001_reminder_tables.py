"""Create client, reminder and client note tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "clients",
        sa.Column("client_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=False),
        sa.Column("vehicle", sa.String(length=256), nullable=True),
        sa.Column("make", sa.String(length=128), nullable=True),
        sa.Column("model", sa.String(length=128), nullable=True),
        sa.Column("registration", sa.String(length=32), nullable=True),
        sa.Column("last_visit_date", sa.Date(), nullable=True),
        sa.Column("facility_id", sa.String(length=128), nullable=True),
        sa.Column("facility_name", sa.String(length=256), nullable=True),
        sa.Column("whatsapp_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("client_id"),
    )
    op.create_index("ix_clients_phone", "clients", ["phone"], unique=False)
    op.create_index("ix_clients_facility_id", "clients", ["facility_id"], unique=False)

    op.create_table(
        "reminders",
        sa.Column("reminder_id", sa.String(length=64), nullable=False),
        sa.Column("client_id", sa.String(length=128), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_reminder_sent", sa.String(length=32), nullable=True),
        sa.Column("last_reminder_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("response_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("follow_up_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("follow_up_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["clients.client_id"]),
        sa.PrimaryKeyConstraint("reminder_id"),
    )
    op.create_index("ix_reminders_client_id", "reminders", ["client_id"], unique=False)
    op.create_index("ix_reminders_due_date", "reminders", ["due_date"], unique=False)
    op.create_index("ix_reminders_status", "reminders", ["status"], unique=False)

    op.create_table(
        "client_notes",
        sa.Column("note_id", sa.String(length=64), nullable=False),
        sa.Column("client_id", sa.String(length=128), nullable=False),
        sa.Column("reminder_id", sa.String(length=64), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("author", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["clients.client_id"]),
        sa.PrimaryKeyConstraint("note_id"),
    )
    op.create_index("ix_client_notes_client_id", "client_notes", ["client_id"], unique=False)
    op.create_index("ix_client_notes_reminder_id", "client_notes", ["reminder_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_client_notes_reminder_id", table_name="client_notes")
    op.drop_index("ix_client_notes_client_id", table_name="client_notes")
    op.drop_table("client_notes")

    op.drop_index("ix_reminders_status", table_name="reminders")
    op.drop_index("ix_reminders_due_date", table_name="reminders")
    op.drop_index("ix_reminders_client_id", table_name="reminders")
    op.drop_table("reminders")

    op.drop_index("ix_clients_facility_id", table_name="clients")
    op.drop_index("ix_clients_phone", table_name="clients")
    op.drop_table("clients")
