"""Initial schema with queue_jobs and queue_states tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create jobs table
    op.create_table(
        "queue_jobs",
        sa.Column("id", sa.BigInteger, sa.Identity(always=False), nullable=False),
        sa.Column("queue_name", sa.String(100), nullable=False),
        sa.Column("job_name", sa.String(255), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=True),
        sa.Column("priority", sa.Integer, nullable=False, server_default="50"),
        sa.Column("state", sa.String(20), nullable=False, server_default="waiting"),
        sa.Column("progress", sa.Integer, nullable=False, server_default="0"),
        sa.Column("attempts_made", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("backoff", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("timeout_ms", sa.BigInteger, nullable=True),
        sa.Column("available_at", sa.BigInteger, nullable=False),
        sa.Column("lease_owner", sa.String(255), nullable=True),
        sa.Column("lease_token", sa.String(64), nullable=True),
        sa.Column("lease_expires_at", sa.BigInteger, nullable=True),
        sa.Column("reclaim_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.BigInteger, nullable=False),
        sa.Column("processed_at", sa.BigInteger, nullable=True),
        sa.Column("finished_at", sa.BigInteger, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "state IN ('waiting', 'delayed', 'active', 'completed', 'failed')",
            name="ck_queue_jobs_state",
        ),
        sa.CheckConstraint("attempts_made <= max_attempts", name="ck_queue_jobs_attempts"),
    )

    # Create indexes
    op.create_index(
        "ix_queue_jobs_dispatch",
        "queue_jobs",
        ["queue_name", "state", "priority", "available_at", "id"],
    )
    op.create_index(
        "ix_queue_jobs_lease_expiry",
        "queue_jobs",
        ["queue_name", "state", "lease_expires_at"],
    )
    op.create_index(
        "ix_queue_jobs_finished",
        "queue_jobs",
        ["queue_name", "state", "finished_at"],
    )

    # Create partial index for lease polling
    op.execute("""
        CREATE INDEX ix_queue_jobs_poll
        ON queue_jobs (queue_name, priority DESC, available_at, id)
        WHERE state IN ('waiting', 'delayed')
    """)

    # Create queue state table
    op.create_table(
        "queue_states",
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("paused", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("queue_states")

    # Drop indexes
    op.execute("DROP INDEX IF EXISTS ix_queue_jobs_poll")
    op.drop_index("ix_queue_jobs_finished")
    op.drop_index("ix_queue_jobs_lease_expiry")
    op.drop_index("ix_queue_jobs_dispatch")

    # Drop table
    op.drop_table("queue_jobs")
