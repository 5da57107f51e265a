from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    # Accept camelCase from the editor and snake_case from scripts
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Position(_CamelModel):
    x: float = 0
    y: float = 0


class TransitionSpec(_CamelModel):
    type: str = "fade"
    duration: float = 0  # milliseconds


class TimelineClip(_CamelModel):
    """A clip as sent by the timeline editor.

    Ranges and enums are deliberately loose here; the Timeline Validator
    produces the structured error list instead of a 422.
    """

    id: str
    type: str
    track_id: str = Field(alias="trackId")
    asset_id: str | None = Field(default=None, alias="assetId")
    timeline_start_ms: float = Field(alias="timelineStartMs")
    timeline_end_ms: float = Field(alias="timelineEndMs")
    source_start_ms: float | None = Field(default=None, alias="sourceStartMs")
    source_end_ms: float | None = Field(default=None, alias="sourceEndMs")
    speed: float | None = None
    volume: float | None = None
    opacity: float | None = None
    text: str | None = None
    font_size: float | None = Field(default=None, alias="fontSize")
    font_color: str | None = Field(default=None, alias="fontColor")
    font_family: str | None = Field(default=None, alias="fontFamily")
    font_weight: str | int | None = Field(default=None, alias="fontWeight")
    position: Position | None = None
    transition_in: TransitionSpec | None = Field(default=None, alias="transitionIn")
    transition_out: TransitionSpec | None = Field(default=None, alias="transitionOut")
    properties: dict[str, Any] | None = None


class Track(_CamelModel):
    id: str
    index: int = 0
    type: str = "video"
    name: str | None = None
    muted: bool = False


class ExportSettingsPayload(_CamelModel):
    resolution: str
    fps: int
    quality: str
    orientation: str = "portrait"


class ExportStartRequest(_CamelModel):
    clips: list[TimelineClip]
    tracks: list[Track]
    export_settings: ExportSettingsPayload = Field(alias="exportSettings")


class ExportStartResponse(BaseModel):
    success: bool = True
    job_id: str = Field(serialization_alias="jobId")
    message: str = "Export started"
    warnings: list[str] = Field(default_factory=list)


class ExportJobResponse(BaseModel):
    id: str
    status: str
    progress: int
    stage: str | None = None
    error: str | None = None
    error_category: str | None = Field(default=None, serialization_alias="errorCategory")
    download_url: str | None = Field(default=None, serialization_alias="downloadUrl")
    warnings: list[str] = Field(default_factory=list)
    created_at: datetime = Field(serialization_alias="createdAt")
    started_at: datetime | None = Field(default=None, serialization_alias="startedAt")
    completed_at: datetime | None = Field(default=None, serialization_alias="completedAt")
    export_settings: dict[str, Any] = Field(serialization_alias="exportSettings")

    @classmethod
    def from_job(cls, job: Any) -> "ExportJobResponse":
        return cls(
            id=job.id,
            status=job.status.value,
            progress=job.progress,
            stage=job.stage,
            error=job.error,
            error_category=job.error_category,
            download_url=job.download_url,
            warnings=list(job.warnings),
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            export_settings=dict(job.export_settings),
        )


class ErrorInfo(BaseModel):
    code: str
    message: str
    retryable: bool = False
    suggested_fix: str | None = None  # Human-readable fix suggestion
    details: dict[str, Any] = Field(default_factory=dict)


class ExportStatusResponse(BaseModel):
    success: bool = True
    job: ExportJobResponse


class ExportCancelResponse(BaseModel):
    success: bool = True
    message: str
    job: ExportJobResponse
