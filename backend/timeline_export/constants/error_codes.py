"""Error codes dictionary for the export API.

Single source of truth for every error code, its retryability and the
suggested recovery. Exception handlers read it to build machine-readable
error responses.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_fix: str


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Validation errors (not retryable, fix input)
    # ==========================================================================
    "TIMELINE_INVALID": {
        "retryable": False,
        "suggested_fix": "Fix the listed clip/track/settings errors and resubmit",
    },
    "VALIDATION_ERROR": {
        "retryable": False,
    },
    # ==========================================================================
    # Job errors
    # ==========================================================================
    "JOB_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "The job may have expired; start a new export",
    },
    "JOB_NOT_READY": {
        "retryable": True,
        "suggested_fix": "Poll GET /export/status/{jobId} until status is completed",
    },
    "JOB_CANCELLED": {
        "retryable": False,
    },
    # ==========================================================================
    # Asset errors
    # ==========================================================================
    "ASSET_NOT_FOUND": {
        "retryable": False,
    },
    "ASSET_DOWNLOAD_FAILED": {
        "retryable": True,
        "suggested_fix": "Check that the asset URL is reachable and resubmit",
    },
    "ASSET_ERROR": {
        "retryable": False,
    },
    # ==========================================================================
    # Render errors (one code per engine failure category)
    # ==========================================================================
    "RENDER_CORRUPTED_INPUT": {
        "retryable": False,
        "suggested_fix": "Re-upload the source media",
    },
    "RENDER_MISSING_FILE": {
        "retryable": True,
    },
    "RENDER_PERMISSION_ERROR": {
        "retryable": False,
    },
    "RENDER_UNSUPPORTED_CODEC": {
        "retryable": False,
        "suggested_fix": "Convert the source media to H.264/AAC",
    },
    "RENDER_FILTER_ERROR": {
        "retryable": False,
    },
    "RENDER_CONVERSION_ERROR": {
        "retryable": False,
    },
    "RENDER_STORAGE_FULL": {
        "retryable": True,
        "suggested_fix": "Retry later; the render host ran out of disk space",
    },
    "RENDER_OUT_OF_MEMORY": {
        "retryable": True,
        "suggested_fix": "Retry later or export at a lower resolution",
    },
    "RENDER_INVALID_PARAMETERS": {
        "retryable": False,
    },
    "RENDER_STARTUP_FAILURE": {
        "retryable": True,
    },
    "RENDER_UNKNOWN": {
        "retryable": False,
    },
    # ==========================================================================
    # Publish / system errors
    # ==========================================================================
    "PUBLISH_FAILED": {
        "retryable": True,
    },
    "INTERNAL_ERROR": {
        "retryable": True,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification by code.

    Args:
        code: The error code

    Returns:
        ErrorCodeSpec with retryable flag and suggested fix
    """
    return ERROR_CODES.get(code, {"retryable": False})


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    spec = get_error_spec(code)
    return spec.get("retryable", False)
