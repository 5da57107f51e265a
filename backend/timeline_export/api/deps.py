from typing import Annotated

from fastapi import Depends, Request

from timeline_export.services.export_orchestrator import ExportOrchestrator
from timeline_export.services.storage_service import StorageService, get_storage_service


def get_orchestrator(request: Request) -> ExportOrchestrator:
    return request.app.state.orchestrator


def get_storage(request: Request) -> StorageService:
    return getattr(request.app.state, "storage", None) or get_storage_service()


Orchestrator = Annotated[ExportOrchestrator, Depends(get_orchestrator)]
Storage = Annotated[StorageService, Depends(get_storage)]
