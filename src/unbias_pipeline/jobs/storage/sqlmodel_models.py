"""SQLModel table definitions for the job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class JobRecord(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_dedup", "normalized_url", "language", "status"),
        Index("idx_jobs_status_updated", "status", "updated_at"),
    )

    job_id: str = Field(primary_key=True)
    url: str = Field(sa_column=Column(Text, nullable=False))
    normalized_url: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    language: str = Field(default="en")
    status: str = Field(default="Queued")
    article_title: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    article_text: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    article_author: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    article_source_name: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    article_preview_image_url: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )
    article_publication_date: str | None = Field(default=None)
    article_canonical_url: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    analysis_results_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    minimal_metadata_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
