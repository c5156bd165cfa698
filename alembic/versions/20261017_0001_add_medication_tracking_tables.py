"""add medication tracking tables

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261017_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "medications",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("generic_name", sa.String(length=255), nullable=True),
        sa.Column("dosage", sa.String(length=128), nullable=True),
        sa.Column("frequency", sa.String(length=128), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "category",
            sa.Enum("otc", "prescription", "supplement", name="medication_category"),
            nullable=True,
        ),
        sa.Column("reminder_time", sa.String(length=5), nullable=True),
        sa.Column("reminder_times", sa.JSON(), nullable=False),
        sa.Column(
            "reminder_frequency",
            sa.Enum("daily", "weekly", "monthly", name="reminder_frequency"),
            nullable=False,
            server_default="daily",
        ),
        sa.Column("reminder_days", sa.JSON(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_medications_user_id_active", "medications", ["user_id", "active"], unique=False)

    op.create_table(
        "medication_logs",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("medication_id", sa.String(length=64), nullable=False),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("taken_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status",
            sa.Enum("taken", "skipped", "missed", name="adherence_status"),
            nullable=False,
            server_default="missed",
        ),
        sa.Column(
            "confirmed_via",
            sa.Enum("notification", "manual", "auto", name="confirmed_via"),
            nullable=True,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["medication_id"], ["medications.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_medication_logs_medication_id", "medication_logs", ["medication_id"], unique=False)
    op.create_index(
        "ix_medication_logs_user_medication_scheduled",
        "medication_logs",
        ["user_id", "medication_id", "scheduled_time"],
        unique=False,
    )

    op.create_table(
        "interactions",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("medication_ids", sa.JSON(), nullable=False),
        sa.Column("analysis", sa.JSON(), nullable=False),
        sa.Column(
            "severity",
            sa.Enum("safe", "warning", "critical", name="check_severity"),
            nullable=False,
        ),
        sa.Column("has_warnings", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("checked_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_interactions_user_id_checked_at", "interactions", ["user_id", "checked_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_interactions_user_id_checked_at", table_name="interactions")
    op.drop_table("interactions")

    op.drop_index("ix_medication_logs_user_medication_scheduled", table_name="medication_logs")
    op.drop_index("ix_medication_logs_medication_id", table_name="medication_logs")
    op.drop_table("medication_logs")

    op.drop_index("ix_medications_user_id_active", table_name="medications")
    op.drop_table("medications")

    op.execute("DROP TYPE IF EXISTS check_severity")
    op.execute("DROP TYPE IF EXISTS confirmed_via")
    op.execute("DROP TYPE IF EXISTS adherence_status")
    op.execute("DROP TYPE IF EXISTS reminder_frequency")
    op.execute("DROP TYPE IF EXISTS medication_category")
