"""Upload of rendered exports and local temp cleanup."""

import asyncio
import logging
import os
import shutil
from collections.abc import Iterable
from dataclasses import dataclass

from timeline_export.config import Settings, get_settings
from timeline_export.exceptions import PublishError, RenderError, RenderErrorCategory

logger = logging.getLogger(__name__)


@dataclass
class PublishedArtifact:
    storage_key: str
    download_url: str
    size: int


def remove_paths(paths: Iterable[str], tag: str = "[PUBLISH]") -> int:
    """Best-effort delete of files/directories. Never raises; returns count removed."""
    removed = 0
    for path in paths:
        if not path:
            continue
        try:
            if os.path.isdir(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
            removed += 1
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"{tag} Failed to clean up {path}: {e}")
    return removed


class ArtifactPublisher:
    def __init__(self, storage, settings: Settings | None = None):
        self.storage = storage
        self.settings = settings or get_settings()

    def storage_key(self, job_id: str) -> str:
        return f"{self.settings.export_key_prefix}/{job_id}.mp4"

    def verify(self, output_path: str) -> int:
        """Size of the rendered file; a missing or empty file is a render failure."""
        try:
            size = os.path.getsize(output_path)
        except OSError as e:
            raise RenderError(
                f"Rendered file is missing: {output_path}",
                category=RenderErrorCategory.MISSING_FILE,
                diagnostics=str(e),
            ) from e
        if size == 0:
            raise RenderError(
                "Rendered file is empty",
                category=RenderErrorCategory.CONVERSION_ERROR,
            )
        return size

    async def publish(self, job_id: str, output_path: str) -> PublishedArtifact:
        """Verify, upload and sign ``output_path``; the local file is removed on success."""
        size = self.verify(output_path)
        key = self.storage_key(job_id)

        logger.info(f"[PUBLISH] Uploading {output_path} ({size} bytes) to {key}")
        try:
            await self.storage.upload_file(output_path, key, content_type="video/mp4")
        except Exception as e:
            raise PublishError(f"Failed to upload export: {e}", details={"storage_key": key}) from e

        try:
            url = await self.storage.get_signed_url(key, expiration_minutes=self.settings.signed_url_ttl_hours * 60)
        except Exception as e:
            raise PublishError(f"Failed to sign export URL: {e}", details={"storage_key": key}) from e

        remove_paths([output_path])
        logger.info(f"[PUBLISH] Published {key}")
        return PublishedArtifact(storage_key=key, download_url=url, size=size)

    async def delete_artifact(self, storage_key: str) -> None:
        """Remove a published export; failures are logged only."""
        try:
            await asyncio.to_thread(self.storage.delete_file, storage_key)
        except Exception as e:
            logger.warning(f"[PUBLISH] Failed to delete {storage_key}: {e}")
