"""Create rpc_jobs table with expiry, claim, and dedup indexes."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "rpc_jobs",
        sa.Column("job_id", sa.String(), primary_key=True),
        sa.Column("handler_path", sa.String(), nullable=False),
        sa.Column("args_json", sa.Text(), nullable=False),
        sa.Column("args_hash", sa.String(), nullable=False),
        sa.Column("secret", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_rpc_jobs_expires_at", "rpc_jobs", ["expires_at"])
    op.create_index("ix_rpc_jobs_status_created_at", "rpc_jobs", ["status", "created_at"])
    op.create_index(
        "ix_rpc_jobs_handler_args_created_at",
        "rpc_jobs",
        ["handler_path", "args_hash", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_rpc_jobs_handler_args_created_at", table_name="rpc_jobs")
    op.drop_index("ix_rpc_jobs_status_created_at", table_name="rpc_jobs")
    op.drop_index("ix_rpc_jobs_expires_at", table_name="rpc_jobs")
    op.drop_table("rpc_jobs")
