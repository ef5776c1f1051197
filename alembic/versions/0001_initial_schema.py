"""sessions, escrow ledger, checkpoints and notifications

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

# SQLAlchemy stores Python enums by member name
session_status = sa.Enum(
    "PENDING", "APPROVED", "REJECTED", "IN_PROGRESS", "COMPLETED", "CANCELLED", "DISPUTED",
    name="sessionstatus",
)
session_mode = sa.Enum("ONLINE", "OFFLINE", "HYBRID", name="sessionmode")
dispute_resolution = sa.Enum("COMPLETE", "CANCEL", "REJECT", name="disputeresolution")
escrow_state = sa.Enum("HELD", "RELEASED", "REFUNDED", name="escrowstate")
transaction_type = sa.Enum("INITIAL", "GRANT", "HOLD", "RELEASE", "REFUND", name="transactiontype")
checkpoint_kind = sa.Enum("CHECKIN", "COMPLETION", name="checkpointkind")

# Credit amounts (credit_amount, available, held, amount) are whole hundredths


def upgrade() -> None:
    op.create_table(
        "sessions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("teacher_id", sa.Integer(), nullable=False),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("skill_reference", sa.String(length=100), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("duration_hours", sa.Numeric(6, 2), nullable=False),
        sa.Column("credit_amount", sa.BigInteger(), nullable=False),
        sa.Column("mode", session_mode, nullable=False),
        sa.Column("scheduled_at", sa.TIMESTAMP(), nullable=True),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("meeting_link", sa.String(length=255), nullable=True),
        sa.Column("status", session_status, nullable=False),
        sa.Column("teacher_checked_in", sa.Boolean(), nullable=False),
        sa.Column("student_checked_in", sa.Boolean(), nullable=False),
        sa.Column("teacher_checked_in_at", sa.TIMESTAMP(), nullable=True),
        sa.Column("student_checked_in_at", sa.TIMESTAMP(), nullable=True),
        sa.Column("teacher_confirmed", sa.Boolean(), nullable=False),
        sa.Column("student_confirmed", sa.Boolean(), nullable=False),
        sa.Column("started_at", sa.TIMESTAMP(), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(), nullable=True),
        sa.Column("credit_held", sa.Boolean(), nullable=False),
        sa.Column("cancelled_by", sa.Integer(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("disputed_by", sa.Integer(), nullable=True),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("dispute_opened_at", sa.TIMESTAMP(), nullable=True),
        sa.Column("dispute_resolution", dispute_resolution, nullable=True),
        sa.Column("dispute_resolved_at", sa.TIMESTAMP(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sessions_id", "sessions", ["id"], unique=False)
    op.create_index("ix_sessions_teacher_id", "sessions", ["teacher_id"], unique=False)
    op.create_index("ix_sessions_student_id", "sessions", ["student_id"], unique=False)
    op.create_index("ix_sessions_status", "sessions", ["status"], unique=False)

    op.create_table(
        "credit_accounts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("available", sa.BigInteger(), nullable=False),
        sa.Column("held", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_credit_accounts_id", "credit_accounts", ["id"], unique=False)
    op.create_index("ix_credit_accounts_user_id", "credit_accounts", ["user_id"], unique=True)

    op.create_table(
        "escrow_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("payer_id", sa.Integer(), nullable=False),
        sa.Column("payee_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("state", escrow_state, nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.func.now(), nullable=True),
        sa.Column("settled_at", sa.TIMESTAMP(), nullable=True),
        sa.ForeignKeyConstraint(["session_id"], ["sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id"),
    )
    op.create_index("ix_escrow_entries_id", "escrow_entries", ["id"], unique=False)
    op.create_index("ix_escrow_entries_payer_id", "escrow_entries", ["payer_id"], unique=False)
    op.create_index("ix_escrow_entries_payee_id", "escrow_entries", ["payee_id"], unique=False)

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("counterparty_id", sa.Integer(), nullable=True),
        sa.Column("session_id", sa.Integer(), nullable=True),
        sa.Column("escrow_id", sa.Integer(), nullable=True),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("timestamp", sa.TIMESTAMP(), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["session_id"], ["sessions.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["escrow_id"], ["escrow_entries.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_credit_transactions_id", "credit_transactions", ["id"], unique=False)
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"], unique=False)
    op.create_index(
        "ix_credit_transactions_counterparty_id", "credit_transactions", ["counterparty_id"], unique=False
    )
    op.create_index("ix_credit_transactions_session_id", "credit_transactions", ["session_id"], unique=False)

    op.create_table(
        "checkpoints",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("kind", checkpoint_kind, nullable=False),
        sa.Column("arrived_a", sa.Boolean(), nullable=False),
        sa.Column("arrived_b", sa.Boolean(), nullable=False),
        sa.Column("fired", sa.Boolean(), nullable=False),
        sa.Column("fired_at", sa.TIMESTAMP(), nullable=True),
        sa.ForeignKeyConstraint(["session_id"], ["sessions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id", "kind", name="uq_checkpoints_session_kind"),
    )
    op.create_index("ix_checkpoints_id", "checkpoints", ["id"], unique=False)
    op.create_index("ix_checkpoints_session_id", "checkpoints", ["session_id"], unique=False)

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("recipient_id", sa.Integer(), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("session_id", sa.Integer(), nullable=True),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("message", sa.String(length=500), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["sessions.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notifications_id", "notifications", ["id"], unique=False)
    op.create_index("ix_notifications_recipient_id", "notifications", ["recipient_id"], unique=False)
    op.create_index("ix_notifications_actor_id", "notifications", ["actor_id"], unique=False)
    op.create_index("ix_notifications_session_id", "notifications", ["session_id"], unique=False)
    op.create_index("ix_notifications_event_type", "notifications", ["event_type"], unique=False)


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("checkpoints")
    op.drop_table("credit_transactions")
    op.drop_table("escrow_entries")
    op.drop_table("credit_accounts")
    op.drop_table("sessions")

    bind = op.get_bind()
    for enum_type in (
        checkpoint_kind, transaction_type, escrow_state,
        dispute_resolution, session_mode, session_status,
    ):
        enum_type.drop(bind, checkfirst=True)
