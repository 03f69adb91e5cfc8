"""create files and jobs tables for post-upload processing

Revision ID: 3b7e1c9d2a40
Revises:
Create Date: 2026-10-18 09:12:41.305118

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7e1c9d2a40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # File metadata owned by the upload service
    op.create_table(
        "files",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("owner_id", sa.BigInteger, nullable=False, comment="Owning user"),
        sa.Column("original_filename", sa.Text, nullable=False),
        sa.Column(
            "storage_key", sa.Text, nullable=False, comment="Object key in blob storage"
        ),
        sa.Column("content_type", sa.Text, nullable=True),
        sa.Column("size", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column(
            "uploaded_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        # Written by OCR jobs
        sa.Column(
            "file_text", sa.Text, nullable=True, comment="Extracted document text"
        ),
        sa.Column("ocr_confidence", sa.Float, nullable=True),
        sa.Column("ocr_model_version", sa.Text, nullable=True),
    )
    op.create_index("ix_files_owner_id", "files", ["owner_id"])
    op.create_index("ix_files_uploaded_at", "files", ["uploaded_at"])

    op.create_table(
        "jobs",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("owner_id", sa.BigInteger, nullable=False, comment="Owning user"),
        sa.Column(
            "file_id", sa.BigInteger, nullable=False, comment="File this job processes"
        ),
        sa.Column(
            "job_type",
            sa.Text,
            nullable=False,
            comment="Job type: ocr|embed|pii_scan|redact|summarize",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="Job status: pending|running|done|failed|dlq",
        ),
        sa.Column(
            "priority",
            sa.SmallInteger,
            nullable=False,
            server_default="5",
            comment="Priority 1-10, lower is higher priority",
        ),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Number of claims so far",
        ),
        sa.Column(
            "max_attempts",
            sa.Integer,
            nullable=False,
            server_default="3",
            comment="Attempts before dead-lettering",
        ),
        sa.Column(
            "next_attempt_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Earliest retry time; null means now",
        ),
        # Worker coordination fields
        sa.Column(
            "locked_by", sa.Text, nullable=True, comment="Worker ID that claimed the job"
        ),
        sa.Column(
            "locked_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When the job was claimed",
        ),
        sa.Column(
            "depends_on_job_id",
            sa.BigInteger,
            nullable=True,
            comment="Job that must be done before this one runs",
        ),
        # Payloads and diagnostics
        sa.Column("input_params", sa.JSON, nullable=True, comment="Handler parameters"),
        sa.Column(
            "output_data",
            sa.JSON,
            nullable=True,
            comment="Handler result or dead letter details",
        ),
        sa.Column("error_message", sa.Text, nullable=True, comment="Last failure"),
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
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        # Constraints
        sa.UniqueConstraint("file_id", "job_type", name="uq_jobs_file_type"),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'done', 'failed', 'dlq')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint(
            "job_type IN ('ocr', 'embed', 'pii_scan', 'redact', 'summarize')",
            name="jobs_type_check",
        ),
        sa.CheckConstraint("priority BETWEEN 1 AND 10", name="jobs_priority_check"),
    )

    # Claim scan and stuck job scan
    op.create_index("ix_jobs_status_next_attempt", "jobs", ["status", "next_attempt_at"])
    op.create_index("ix_jobs_status_locked_at", "jobs", ["status", "locked_at"])
    op.create_index("ix_jobs_owner_id", "jobs", ["owner_id"])
    op.create_index("ix_jobs_depends_on", "jobs", ["depends_on_job_id"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("jobs")
    op.drop_table("files")
