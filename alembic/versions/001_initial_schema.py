"""Initial schema with job_queue table

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

ENUMS = {
    "queue_type": ("export", "reindex", "import"),
    "job_kind": ("coordinator", "worker"),
    "job_status": ("created", "queued", "running", "completed", "failed", "cancelled"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    # Create enums using raw SQL with IF NOT EXISTS
    for name, values in ENUMS.items():
        labels = ", ".join(f"'{value}'" for value in values)
        op.execute(f"""
            DO $$ BEGIN
                CREATE TYPE {name} AS ENUM ({labels});
            EXCEPTION
                WHEN duplicate_object THEN null;
            END $$;
        """)

    op.create_table(
        "job_queue",
        sa.Column("id", sa.BigInteger, sa.Identity(), nullable=False),
        sa.Column("queue_type", _enum("queue_type"), nullable=False),
        sa.Column("group_id", sa.BigInteger, nullable=False),
        sa.Column("kind", _enum("job_kind"), nullable=False, server_default="worker"),
        sa.Column("status", _enum("job_status"), nullable=False, server_default="queued"),
        sa.Column("definition", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("definition_hash", sa.String(64), nullable=False),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column("version", sa.BigInteger, nullable=False, server_default="1"),
        sa.Column("worker", sa.String(255), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime, nullable=True),
        sa.Column("available_at", sa.DateTime, nullable=True),
        sa.Column("cancel_requested", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("failure_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_failure_count", sa.Integer, nullable=False, server_default="3"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime, nullable=True),
        sa.Column("ended_at", sa.DateTime, nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_index("ix_job_queue_queue_type_status", "job_queue", ["queue_type", "status"])
    op.create_index("ix_job_queue_group_id", "job_queue", ["group_id"])
    op.create_index("ix_job_queue_definition_hash", "job_queue", ["queue_type", "definition_hash"])

    # Partial index for the dequeue scan of queued jobs
    op.execute("""
        CREATE INDEX ix_job_queue_dequeue
        ON job_queue (queue_type, id)
        WHERE status = 'queued'
    """)

    # Partial index for abandoned lease detection
    op.execute("""
        CREATE INDEX ix_job_queue_heartbeat
        ON job_queue (queue_type, heartbeat_at)
        WHERE status = 'running'
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_job_queue_heartbeat")
    op.execute("DROP INDEX IF EXISTS ix_job_queue_dequeue")
    op.drop_index("ix_job_queue_definition_hash")
    op.drop_index("ix_job_queue_group_id")
    op.drop_index("ix_job_queue_queue_type_status")

    op.drop_table("job_queue")

    for name in reversed(list(ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name}")
