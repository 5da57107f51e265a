from timeline_export.models.base import Base
from timeline_export.models.export_job import ExportJob, JobStatus
from timeline_export.models.export_job_record import ExportJobRecord
from timeline_export.models.timeline import (
    ElementType,
    ExportSettings,
    TimelineElement,
    TrackInfo,
)

__all__ = [
    "Base",
    "ExportJob",
    "ExportJobRecord",
    "JobStatus",
    "ElementType",
    "ExportSettings",
    "TimelineElement",
    "TrackInfo",
]
