"""Create job coordination tables.

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Creates the runtime tables shared by all scheduled jobs:

- job_locks: one row per held job lock (table-row mutex with TTL)
- job_runs: execution ledger, unique per (job_name, target_date)
- job_run_items: per-dataset progress within a run
- job_heartbeat: latest status per job for liveness checks
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic
revision = "0001_job_coordination_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create coordination tables."""
    op.create_table(
        "job_locks",
        sa.Column("job_name", sa.String(100), primary_key=True, nullable=False),
        sa.Column("locked_until", sa.TIMESTAMP(timezone=False), nullable=False),
        sa.Column("lock_token", sa.String(36), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=False), nullable=False, server_default=sa.text("NOW()")),
    )
    op.create_index("ix_job_locks_locked_until", "job_locks", ["locked_until"])

    op.create_table(
        "job_runs",
        sa.Column("run_id", sa.String(64), primary_key=True, nullable=False),
        sa.Column("job_name", sa.String(100), nullable=False),
        sa.Column("target_date", sa.Date, nullable=True),
        sa.Column("status", sa.String(20), nullable=False),  # running, success, failed
        sa.Column("started_at", sa.TIMESTAMP(timezone=False), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("finished_at", sa.TIMESTAMP(timezone=False), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("meta", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.CheckConstraint("status IN ('running', 'success', 'failed')", name="ck_job_runs_status"),
    )
    # A second run for the same target date signals "already executed".
    op.create_index(
        "uq_job_runs_job_name_target_date",
        "job_runs",
        ["job_name", "target_date"],
        unique=True,
        postgresql_where=sa.text("target_date IS NOT NULL"),
    )
    op.create_index("ix_job_runs_job_started", "job_runs", ["job_name", "started_at"])
    op.create_index("ix_job_runs_status_started", "job_runs", ["status", "started_at"])

    op.create_table(
        "job_run_items",
        sa.Column(
            "run_id",
            sa.String(64),
            sa.ForeignKey("job_runs.run_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("dataset", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("row_count", sa.Integer, nullable=True),
        sa.Column("page_count", sa.Integer, nullable=True),
        sa.Column("started_at", sa.TIMESTAMP(timezone=False), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("finished_at", sa.TIMESTAMP(timezone=False), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("meta", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.PrimaryKeyConstraint("run_id", "dataset", name="pk_job_run_items"),
    )

    op.create_table(
        "job_heartbeat",
        sa.Column("job_name", sa.String(100), primary_key=True, nullable=False),
        sa.Column("last_seen_at", sa.TIMESTAMP(timezone=False), nullable=False),
        sa.Column("last_status", sa.String(20), nullable=False),
        sa.Column("last_run_id", sa.String(64), nullable=True),
        sa.Column("last_target_date", sa.Date, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("meta", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
    )


def downgrade() -> None:
    """Drop coordination tables."""
    op.drop_table("job_heartbeat")
    op.drop_table("job_run_items")
    op.drop_index("ix_job_runs_status_started", table_name="job_runs")
    op.drop_index("ix_job_runs_job_started", table_name="job_runs")
    op.drop_index("uq_job_runs_job_name_target_date", table_name="job_runs")
    op.drop_table("job_runs")
    op.drop_index("ix_job_locks_locked_until", table_name="job_locks")
    op.drop_table("job_locks")
