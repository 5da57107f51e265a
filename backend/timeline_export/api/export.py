"""Export API endpoints."""

import logging
from datetime import datetime, timezone

import httpx
from fastapi import APIRouter, Query
from fastapi.responses import FileResponse, RedirectResponse, StreamingResponse
from starlette.background import BackgroundTask

from timeline_export.api.deps import Orchestrator, Storage
from timeline_export.exceptions import JobNotReadyError, PublishError
from timeline_export.models.export_job import JobStatus
from timeline_export.schemas.export import (
    ExportCancelResponse,
    ExportJobResponse,
    ExportStartRequest,
    ExportStartResponse,
    ExportStatusResponse,
)
from timeline_export.services.storage_service import LocalStorageService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/start", response_model=ExportStartResponse)
async def start_export(request: ExportStartRequest, orchestrator: Orchestrator) -> ExportStartResponse:
    """
    Validate a timeline and queue it for export.

    Returns immediately with the job id; poll ``/status/{job_id}``.
    """
    job = await orchestrator.start(request.clips, request.tracks, request.export_settings)
    return ExportStartResponse(job_id=job.id, warnings=job.warnings)


@router.get("/status/{job_id}", response_model=ExportStatusResponse)
async def get_export_status(job_id: str, orchestrator: Orchestrator) -> ExportStatusResponse:
    job = await orchestrator.status(job_id)
    return ExportStatusResponse(job=ExportJobResponse.from_job(job))


@router.delete("/cancel/{job_id}", response_model=ExportCancelResponse)
async def cancel_export(job_id: str, orchestrator: Orchestrator) -> ExportCancelResponse:
    current = await orchestrator.status(job_id)
    if current.status.is_terminal:
        return ExportCancelResponse(
            message=f"Job already {current.status.value}",
            job=ExportJobResponse.from_job(current),
        )

    job = await orchestrator.cancel(job_id)
    message = "Job cancelled" if job.status is JobStatus.FAILED else f"Job already {job.status.value}"
    return ExportCancelResponse(message=message, job=ExportJobResponse.from_job(job))


@router.get("/download/{job_id}")
async def download_export(
    job_id: str,
    orchestrator: Orchestrator,
    storage: Storage,
    redirect: bool = Query(default=False, description="Redirect to the signed URL instead of proxying"),
):
    """Stream the finished export as an attachment (or redirect to it)."""
    job = await orchestrator.status(job_id)
    if job.status is not JobStatus.COMPLETED or not job.download_url:
        raise JobNotReadyError(job_id, job.status.value)

    if redirect:
        return RedirectResponse(job.download_url, status_code=307)

    filename = f"video-export-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}.mp4"
    headers = {
        "Content-Disposition": f'attachment; filename="{filename}"',
        "Cache-Control": "no-cache",
    }

    if isinstance(storage, LocalStorageService) and job.output_key and storage.file_exists(job.output_key):
        return FileResponse(storage.get_file_path(job.output_key), media_type="video/mp4", headers=headers)

    logger.info(f"[EXPORT {job_id}] Proxying download")
    client = httpx.AsyncClient(follow_redirects=True, timeout=httpx.Timeout(30.0, read=None))
    upstream = await client.send(client.build_request("GET", job.download_url), stream=True)
    if upstream.status_code != 200:
        await upstream.aclose()
        await client.aclose()
        raise PublishError(f"Failed to fetch export: HTTP {upstream.status_code}")

    if upstream.headers.get("content-length"):
        headers["Content-Length"] = upstream.headers["content-length"]

    async def close_upstream() -> None:
        await upstream.aclose()
        await client.aclose()

    return StreamingResponse(
        upstream.aiter_raw(),
        media_type="video/mp4",
        headers=headers,
        background=BackgroundTask(close_upstream),
    )
