"""Custom exceptions for the export engine.

Every failure that can end an export job is an ``ExportError`` subclass.
They carry a machine-readable code (see ``constants/error_codes.py``), an HTTP
status for the API layer and a human-readable message that is copied into the
job's ``error`` field.
"""

from enum import Enum
from typing import Any

from timeline_export.constants.error_codes import get_error_spec
from timeline_export.schemas.export import ErrorInfo


class ExportError(Exception):
    """Base exception for all export engine errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return get_error_spec(self.code).get("retryable", False)

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API response."""
        spec = get_error_spec(self.code)
        return ErrorInfo(
            code=self.code,
            message=self.message,
            retryable=spec.get("retryable", False),
            suggested_fix=spec.get("suggested_fix"),
            details=self.details,
        )


# =============================================================================
# Validation Errors (400)
# =============================================================================


class TimelineValidationError(ExportError):
    """Timeline/settings input was rejected before any side effect."""

    code = "TIMELINE_INVALID"
    status_code = 400
    message = "Timeline validation failed"

    def __init__(self, errors: list[str], warnings: list[str] | None = None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        message = f"Timeline validation failed: {'; '.join(self.errors)}" if self.errors else self.message
        super().__init__(message, details={"errors": self.errors, "warnings": self.warnings})


# =============================================================================
# Job Errors (404/400)
# =============================================================================


class JobNotFoundError(ExportError):
    """Export job not found (unknown or expired)."""

    code = "JOB_NOT_FOUND"
    status_code = 404
    message = "Job not found"

    def __init__(self, job_id: str | None = None):
        message = f"Job not found: {job_id}" if job_id else self.message
        super().__init__(message)


class JobNotReadyError(ExportError):
    """Artifact requested before the job completed."""

    code = "JOB_NOT_READY"
    status_code = 400
    message = "Export not ready for download"

    def __init__(self, job_id: str | None = None, status: str | None = None):
        message = self.message
        if job_id and status:
            message = f"Export {job_id} not ready for download (status: {status})"
        super().__init__(message)


class JobCancelledError(ExportError):
    """Processing stopped because the job was cancelled."""

    code = "JOB_CANCELLED"
    status_code = 409
    message = "Cancelled by user"


# =============================================================================
# Asset Errors
# =============================================================================


class AssetError(ExportError):
    """Base class for asset resolution/download/integrity failures."""

    code = "ASSET_ERROR"
    status_code = 502
    message = "Asset could not be materialized"

    def __init__(self, message: str | None = None, *, asset_id: str | None = None, **kwargs: Any):
        self.asset_id = asset_id
        details = kwargs.pop("details", None) or {}
        if asset_id:
            details.setdefault("asset_id", asset_id)
        super().__init__(message, details=details, **kwargs)


class AssetNotFoundError(AssetError):
    """The storage collaborator has no object for this asset id."""

    code = "ASSET_NOT_FOUND"
    status_code = 404
    message = "Asset not found"

    def __init__(self, asset_id: str | None = None):
        message = f"Asset not found: {asset_id}" if asset_id else self.message
        super().__init__(message, asset_id=asset_id)


class AssetDownloadError(AssetError):
    """A download attempt failed.

    ``retryable`` distinguishes transient failures (5xx, timeouts, connection
    resets) from permanent ones (4xx, bad URL, oversize payload).
    """

    code = "ASSET_DOWNLOAD_FAILED"
    message = "Asset download failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        asset_id: str | None = None,
        transient: bool = True,
        status: int | None = None,
        attempts: int = 0,
    ):
        self.transient = transient
        self.http_status = status
        self.attempts = attempts
        details: dict[str, Any] = {"transient": transient, "attempts": attempts}
        if status is not None:
            details["http_status"] = status
        super().__init__(message, asset_id=asset_id, details=details)


# =============================================================================
# Render Errors
# =============================================================================


class RenderErrorCategory(str, Enum):
    """Engine failure classes, derived from the engine's diagnostic output."""

    CORRUPTED_INPUT = "CorruptedInput"
    MISSING_FILE = "MissingFile"
    PERMISSION_ERROR = "PermissionError"
    UNSUPPORTED_CODEC = "UnsupportedCodec"
    FILTER_ERROR = "FilterError"
    CONVERSION_ERROR = "ConversionError"
    STORAGE_FULL = "StorageFull"
    OUT_OF_MEMORY = "OutOfMemory"
    INVALID_PARAMETERS = "InvalidParameters"
    STARTUP_FAILURE = "StartupFailure"
    UNKNOWN = "Unknown"

    @property
    def error_code(self) -> str:
        snake = "".join(f"_{c}" if c.isupper() else c for c in self.value).lstrip("_")
        return f"RENDER_{snake.upper()}"


class RenderError(ExportError):
    """The external media engine failed. Never retried automatically."""

    status_code = 500
    message = "Render failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        category: RenderErrorCategory = RenderErrorCategory.UNKNOWN,
        diagnostics: str = "",
        return_code: int | None = None,
    ):
        self.category = category
        self.diagnostics = diagnostics
        self.return_code = return_code
        details: dict[str, Any] = {"category": category.value}
        if return_code is not None:
            details["return_code"] = return_code
        if diagnostics:
            # Tail only; full text is kept on the exception for operators
            details["diagnostics"] = diagnostics[-2000:]
        super().__init__(message, code=category.error_code, details=details)


# =============================================================================
# Publish Errors
# =============================================================================


class PublishError(ExportError):
    """Upload or signed-URL issuance failed."""

    code = "PUBLISH_FAILED"
    status_code = 502
    message = "Failed to publish export"


# =============================================================================
# System Errors
# =============================================================================


class InternalError(ExportError):
    """Internal server error."""

    code = "INTERNAL_ERROR"
    status_code = 500
    message = "Internal server error"
