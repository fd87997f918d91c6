"""Create jobs table for provider job lifecycle records."""

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
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("job_id", sa.Text(), nullable=False),
        sa.Column("slug", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'spawned'")),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("prompt_file", sa.Text(), nullable=False),
        sa.Column("response_file", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("agent_role", sa.Text(), nullable=False),
        sa.Column("spawned_at", sa.Text(), nullable=False),
        sa.Column("completed_at", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("used_fallback", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("fallback_model", sa.Text(), nullable=True),
        sa.Column("killed_by_user", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("provider", "job_id", name="pk_jobs"),
        sa.CheckConstraint(
            "status IN ('spawned', 'running', 'completed', 'failed', 'timeout')",
            name="ck_jobs_status",
        ),
    )
    op.create_index("idx_jobs_status", "jobs", ["status"])
    op.create_index("idx_jobs_provider", "jobs", ["provider"])
    op.create_index("idx_jobs_spawned_at", "jobs", ["spawned_at"])
    op.create_index("idx_jobs_provider_status", "jobs", ["provider", "status"])


def downgrade() -> None:
    op.drop_index("idx_jobs_provider_status", table_name="jobs")
    op.drop_index("idx_jobs_spawned_at", table_name="jobs")
    op.drop_index("idx_jobs_provider", table_name="jobs")
    op.drop_index("idx_jobs_status", table_name="jobs")
    op.drop_table("jobs")
