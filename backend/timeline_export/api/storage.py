"""Local storage API endpoints for development."""

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import FileResponse

from timeline_export.api.deps import Storage
from timeline_export.services.storage_service import LocalStorageService

router = APIRouter()

MEDIA_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".m4a": "audio/mp4",
    ".aac": "audio/aac",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
}


def _local(storage) -> LocalStorageService:
    if not isinstance(storage, LocalStorageService):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Local storage not enabled",
        )
    return storage


def _resolve_path(storage: LocalStorageService, storage_key: str):
    try:
        return storage.get_file_path(storage_key)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid storage key")


@router.put("/upload/{storage_key:path}")
async def upload_file(storage_key: str, request: Request, storage: Storage):
    """Store raw request body under a key (seeds assets in development)."""
    local = _local(storage)
    body = await request.body()
    if not body:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No file data provided",
        )
    _resolve_path(local, storage_key)
    local.upload_file_from_bytes(storage_key, body)
    return {"status": "ok", "storage_key": storage_key}


@router.get("/files/{storage_key:path}")
async def get_file(storage_key: str, storage: Storage):
    """Serve files from local storage."""
    local = _local(storage)
    file_path = _resolve_path(local, storage_key)
    if not file_path.is_file():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found",
        )

    media_type = MEDIA_TYPES.get(file_path.suffix.lower(), "application/octet-stream")
    return FileResponse(path=str(file_path), media_type=media_type, filename=file_path.name)
