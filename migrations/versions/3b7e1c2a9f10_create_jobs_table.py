"""create jobs table

Revision ID: 3b7e1c2a9f10
Revises:
Create Date: 2026-10-19 09:12:41.518204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7e1c2a9f10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("type", sa.Text, nullable=False, comment="Job type identifier"),
        sa.Column("user_id", sa.Text, nullable=False, comment="Owning principal"),
        sa.Column(
            "correlation_id", sa.Text, nullable=False, comment="Trace identifier"
        ),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            comment="Type-specific parameters",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="queued",
            comment="Job status: queued|running|succeeded|failed",
        ),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Number of attempts made",
        ),
        sa.Column("max_attempts", sa.Integer, nullable=False, comment="Attempt ceiling"),
        sa.Column(
            "next_run_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Earliest time to claim",
        ),
        # Worker coordination fields
        sa.Column(
            "locked_by", sa.Text, nullable=True, comment="Worker ID holding the claim"
        ),
        sa.Column(
            "lease_expires_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Claim is reclaimable after this",
        ),
        # Outcome
        sa.Column(
            "result", sa.JSON, nullable=True, comment="Handler result, set on success"
        ),
        sa.Column(
            "error",
            sa.JSON,
            nullable=True,
            comment="Last failure {message, name, cause}",
        ),
        # Timestamps
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("finished_at", sa.TIMESTAMP(timezone=True), nullable=True),
        # Constraints
        sa.CheckConstraint(
            "status IN ('queued', 'running', 'succeeded', 'failed')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint("max_attempts >= 1", name="jobs_max_attempts_check"),
        sa.CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts", name="jobs_attempts_check"
        ),
    )

    # Claim query: queued and due, oldest first
    op.create_index(
        "ix_jobs_status_next_run_at", "jobs", ["status", "next_run_at", "created_at"]
    )
    op.create_index("ix_jobs_user_id_created_at", "jobs", ["user_id", "created_at"])
    op.create_index("ix_jobs_type_status", "jobs", ["type", "status"])
    op.create_index(
        "ix_jobs_correlation_id_created_at", "jobs", ["correlation_id", "created_at"]
    )
    # Lease reclamation
    op.create_index(
        "ix_jobs_status_lease_expires_at", "jobs", ["status", "lease_expires_at"]
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("jobs")
