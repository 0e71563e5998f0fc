"""Job store repository backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlmodel import Session, col, select

from unbias_pipeline.jobs.errors import (
    JobNotFoundError,
    JobTransitionError,
    MissingArticleContentError,
)
from unbias_pipeline.jobs.models import (
    DEFAULT_LANGUAGE,
    AnalysisResults,
    ArticleFields,
    JobStatus,
    JobView,
    SubmissionMetadata,
    is_allowed_transition,
)
from unbias_pipeline.jobs.storage.alembic_runner import upgrade_head
from unbias_pipeline.jobs.storage.common import build_sqlite_engine, ensure_utc, utc_now
from unbias_pipeline.jobs.storage.sqlmodel_models import JobRecord

logger = logging.getLogger(__name__)


class JobRepository:
    """Persistence facade for analysis jobs.

    Every mutation enforces the lifecycle: status only moves forward, terminal
    states are final, results exist only on ``Complete`` and an error message
    only on ``Failed``.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_job(
        self,
        url: str,
        language: str = DEFAULT_LANGUAGE,
        normalized_url: str | None = None,
        metadata: SubmissionMetadata | None = None,
    ) -> JobView:
        """Insert a ``Queued`` job; submission metadata pre-fills article fields."""

        metadata = metadata or SubmissionMetadata()
        now = utc_now()
        with Session(self.engine) as session:
            row = JobRecord(
                job_id=uuid4().hex,
                url=url,
                normalized_url=normalized_url,
                language=language,
                status=JobStatus.QUEUED.value,
                article_title=metadata.title,
                article_author=metadata.author,
                article_source_name=metadata.site_name,
                article_preview_image_url=metadata.preview_image_url,
                article_canonical_url=metadata.canonical_url or url,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("Created job %s for %s (%s)", row.job_id, url, language)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView:
        with Session(self.engine) as session:
            return _to_job_view(self._load(session, job_id))

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        details: dict[str, Any] | None = None,
    ) -> JobView:
        """Move a job to ``status``.

        Terminal statuses delegate to the dedicated methods: ``details`` carries
        the results dict for ``Complete`` and ``{"error": ...}`` for ``Failed``.
        For in-progress statuses ``details`` is merged into the metadata bag.
        """

        if status is JobStatus.COMPLETE:
            if not details:
                raise ValueError("Complete status requires analysis results.")
            return self.update_job_as_complete(job_id, AnalysisResults.from_dict(details))
        if status is JobStatus.FAILED:
            error = (details or {}).get("error")
            if not error:
                raise ValueError("Failed status requires an error message.")
            return self.update_job_as_failed(job_id, str(error))

        with Session(self.engine) as session:
            row = self._load(session, job_id)
            _check_transition(row, status)
            row.status = status.value
            if details:
                metadata = _load_json(row.minimal_metadata_json) or {}
                metadata.update(details)
                row.minimal_metadata_json = _dump_json(metadata)
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def save_extracted_article_content(
        self,
        job_id: str,
        article: ArticleFields,
        minimal_metadata: dict[str, Any],
    ) -> JobView:
        """Write article columns and replace the minimal metadata bag."""

        with Session(self.engine) as session:
            row = self._load(session, job_id)
            if JobStatus(row.status).is_terminal:
                raise JobTransitionError(
                    f"Job {job_id} is {row.status}; article content is frozen.",
                )
            row.article_title = article.title
            row.article_text = article.text
            row.article_author = article.author
            row.article_source_name = article.source_name
            row.article_preview_image_url = article.preview_image_url
            row.article_publication_date = article.publication_date
            row.article_canonical_url = article.canonical_url
            row.minimal_metadata_json = _dump_json(minimal_metadata)
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job_title_and_text(self, job_id: str) -> tuple[str, str]:
        """Return the committed title and text; both must be non-empty."""

        with Session(self.engine) as session:
            row = self._load(session, job_id)
            title = (row.article_title or "").strip()
            text = (row.article_text or "").strip()
        if not title or not text:
            missing = "title" if not title else "text"
            raise MissingArticleContentError(f"Job {job_id} has no stored article {missing}.")
        return title, text

    def update_job_as_complete(self, job_id: str, results: AnalysisResults) -> JobView:
        with Session(self.engine) as session:
            row = self._load(session, job_id)
            _check_transition(row, JobStatus.COMPLETE)
            row.status = JobStatus.COMPLETE.value
            row.analysis_results_json = _dump_json(results.to_dict())
            row.error_message = None
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def update_job_as_failed(self, job_id: str, error_message: str) -> JobView:
        if not error_message:
            raise ValueError("Failed jobs require a non-empty error message.")
        with Session(self.engine) as session:
            row = self._load(session, job_id)
            _check_transition(row, JobStatus.FAILED)
            row.status = JobStatus.FAILED.value
            row.error_message = error_message
            row.analysis_results_json = None
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def find_completed_job_by_normalized_url_and_language(
        self,
        normalized_url: str,
        language: str,
    ) -> JobView | None:
        """Most recent completed job for the same article and language."""

        with Session(self.engine) as session:
            row = session.exec(
                select(JobRecord)
                .where(
                    JobRecord.normalized_url == normalized_url,
                    JobRecord.language == language,
                    JobRecord.status == JobStatus.COMPLETE.value,
                )
                .order_by(col(JobRecord.updated_at).desc())
                .limit(1),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_recent_jobs(self, *, limit: int = 20) -> list[JobView]:
        """Newest completed jobs first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRecord)
                .where(JobRecord.status == JobStatus.COMPLETE.value)
                .order_by(col(JobRecord.updated_at).desc())
                .limit(max(1, limit)),
            ).all()
            return [_to_job_view(row) for row in rows]

    @staticmethod
    def _load(session: Session, job_id: str) -> JobRecord:
        row = session.get(JobRecord, job_id)
        if row is None:
            raise JobNotFoundError(f"Job {job_id} not found.")
        return row


def _check_transition(row: JobRecord, target: JobStatus) -> None:
    current = JobStatus(row.status)
    if not is_allowed_transition(current, target):
        raise JobTransitionError(
            f"Job {row.job_id} cannot move from {current.value} to {target.value}.",
        )


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json(raw: str | None) -> Any:
    if not raw:
        return None
    return json.loads(raw)


def _to_job_view(row: JobRecord) -> JobView:
    results = _load_json(row.analysis_results_json)
    return JobView(
        job_id=row.job_id,
        url=row.url,
        normalized_url=row.normalized_url,
        language=row.language,
        status=JobStatus(row.status),
        article=ArticleFields(
            title=row.article_title,
            text=row.article_text,
            author=row.article_author,
            source_name=row.article_source_name,
            preview_image_url=row.article_preview_image_url,
            publication_date=row.article_publication_date,
            canonical_url=row.article_canonical_url,
        ),
        analysis_results=AnalysisResults.from_dict(results) if results is not None else None,
        error_message=row.error_message,
        minimal_metadata=_load_json(row.minimal_metadata_json) or {},
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )
