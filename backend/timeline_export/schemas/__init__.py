from timeline_export.schemas.export import (
    ErrorInfo,
    ExportJobResponse,
    ExportSettingsPayload,
    ExportStartRequest,
    ExportStartResponse,
    TimelineClip,
    Track,
)

__all__ = [
    "ErrorInfo",
    "ExportJobResponse",
    "ExportSettingsPayload",
    "ExportStartRequest",
    "ExportStartResponse",
    "TimelineClip",
    "Track",
]
