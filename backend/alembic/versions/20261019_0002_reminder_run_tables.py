"""Create durable reminder run and checkpoint fire ledger tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "reminder_runs",
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("subscription_id", sa.String(length=64), nullable=False),
        sa.Column("renewal_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("abort_reason", sa.String(length=64), nullable=True),
        sa.Column("next_checkpoint_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("wake_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fired_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_reminder_runs_subscription_id", "reminder_runs", ["subscription_id"], unique=False)
    op.create_index("ix_reminder_runs_status", "reminder_runs", ["status"], unique=False)
    op.create_index("ix_reminder_runs_wake_at", "reminder_runs", ["wake_at"], unique=False)

    op.create_table(
        "reminder_checkpoint_fires",
        sa.Column("idempotency_key", sa.String(length=256), nullable=False),
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("subscription_id", sa.String(length=64), nullable=False),
        sa.Column("label", sa.String(length=64), nullable=False),
        sa.Column("fire_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("fired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.Column("error_code", sa.String(length=128), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["run_id"], ["reminder_runs.run_id"]),
        sa.PrimaryKeyConstraint("idempotency_key"),
    )
    op.create_index(
        "ix_reminder_checkpoint_fires_run_id",
        "reminder_checkpoint_fires",
        ["run_id"],
        unique=False,
    )
    op.create_index(
        "ix_reminder_checkpoint_fires_subscription_id",
        "reminder_checkpoint_fires",
        ["subscription_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_reminder_checkpoint_fires_subscription_id", table_name="reminder_checkpoint_fires")
    op.drop_index("ix_reminder_checkpoint_fires_run_id", table_name="reminder_checkpoint_fires")
    op.drop_table("reminder_checkpoint_fires")
    op.drop_index("ix_reminder_runs_wake_at", table_name="reminder_runs")
    op.drop_index("ix_reminder_runs_status", table_name="reminder_runs")
    op.drop_index("ix_reminder_runs_subscription_id", table_name="reminder_runs")
    op.drop_table("reminder_runs")
