"""Create job store table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("payload", sa.LargeBinary(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("queue_position", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("unit_id", sa.String(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_transition_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_jobs_status", "jobs", ["status"], unique=False)
    op.create_index("ix_jobs_failure_class", "jobs", ["failure_class"], unique=False)
    op.create_index("idx_jobs_queue", "jobs", ["status", "queue_position"], unique=False)
    op.create_index(
        "idx_jobs_idempotency",
        "jobs",
        ["idempotency_key", "status"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_jobs_idempotency", table_name="jobs")
    op.drop_index("idx_jobs_queue", table_name="jobs")
    op.drop_index("ix_jobs_failure_class", table_name="jobs")
    op.drop_index("ix_jobs_status", table_name="jobs")
    op.drop_table("jobs")
