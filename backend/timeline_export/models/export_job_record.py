from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from timeline_export.models.base import Base, TimestampMixin
from timeline_export.models.export_job import ExportJob, JobStatus


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ExportJobRecord(Base, TimestampMixin):
    __tablename__ = "export_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Status: queued, processing, completed, failed
    status: Mapped[str] = mapped_column(String(20), default="queued", index=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    stage: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Output
    output_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    output_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    download_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timing
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Error handling
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_category: Mapped[str | None] = mapped_column(String(50), nullable=True)

    export_settings: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    warnings: Mapped[list[str]] = mapped_column(JSON, default=list)

    def __repr__(self) -> str:
        return f"<ExportJobRecord {self.id} ({self.status})>"

    @classmethod
    def from_job(cls, job: ExportJob) -> "ExportJobRecord":
        record = cls(id=job.id, created_at=job.created_at)
        record.apply(job)
        return record

    def apply(self, job: ExportJob) -> None:
        self.status = job.status.value
        self.progress = job.progress
        self.stage = job.stage
        self.output_key = job.output_key
        self.output_path = job.output_path
        self.download_url = job.download_url
        self.started_at = job.started_at
        self.completed_at = job.completed_at
        self.error_message = job.error
        self.error_category = job.error_category
        self.export_settings = dict(job.export_settings)
        self.warnings = list(job.warnings)

    def to_job(self) -> ExportJob:
        return ExportJob(
            id=self.id,
            status=JobStatus(self.status),
            export_settings=dict(self.export_settings or {}),
            progress=self.progress,
            stage=self.stage,
            error=self.error_message,
            error_category=self.error_category,
            download_url=self.download_url,
            output_key=self.output_key,
            output_path=self.output_path,
            warnings=list(self.warnings or []),
            created_at=_aware(self.created_at),
            started_at=_aware(self.started_at),
            completed_at=_aware(self.completed_at),
        )
