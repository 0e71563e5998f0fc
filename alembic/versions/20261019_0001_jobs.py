"""Jobs table for URL analysis requests."""

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
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("normalized_url", sa.Text(), nullable=True),
        sa.Column("language", sa.String(), nullable=False, server_default="en"),
        sa.Column("status", sa.String(), nullable=False, server_default="Queued"),
        sa.Column("article_title", sa.Text(), nullable=True),
        sa.Column("article_text", sa.Text(), nullable=True),
        sa.Column("article_author", sa.Text(), nullable=True),
        sa.Column("article_source_name", sa.Text(), nullable=True),
        sa.Column("article_preview_image_url", sa.Text(), nullable=True),
        sa.Column("article_publication_date", sa.String(), nullable=True),
        sa.Column("article_canonical_url", sa.Text(), nullable=True),
        sa.Column("analysis_results_json", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("minimal_metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
        sa.CheckConstraint(
            "(status = 'Complete') = (analysis_results_json IS NOT NULL)",
            name="ck_jobs_results_iff_complete",
        ),
        sa.CheckConstraint(
            "(status = 'Failed') = (error_message IS NOT NULL)",
            name="ck_jobs_error_iff_failed",
        ),
    )
    op.create_index("idx_jobs_dedup", "jobs", ["normalized_url", "language", "status"])
    op.create_index("idx_jobs_status_updated", "jobs", ["status", "updated_at"])


def downgrade() -> None:
    op.drop_index("idx_jobs_status_updated", table_name="jobs")
    op.drop_index("idx_jobs_dedup", table_name="jobs")
    op.drop_table("jobs")
