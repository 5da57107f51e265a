"""Turns element asset references into local files for one job."""

import logging
import mimetypes
import os
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlparse

from timeline_export.exceptions import AssetError, AssetNotFoundError
from timeline_export.models.timeline import ElementType, TimelineElement
from timeline_export.services.asset_downloader import AssetDownloader
from timeline_export.services.progress import CancellationToken, Phase, ProgressChannel

logger = logging.getLogger(__name__)

_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")

DEFAULT_EXTENSIONS = {
    ElementType.VIDEO: ".mp4",
    ElementType.AUDIO: ".m4a",
    ElementType.IMAGE: ".png",
    ElementType.GIF: ".gif",
}


class AssetRefKind(Enum):
    STORAGE = "storage"
    EXTERNAL = "external"
    MALFORMED = "malformed"


def classify_asset(element: TimelineElement) -> AssetRefKind:
    """Storage-backed (UUID), external (URL in properties) or malformed."""
    if element.external_url:
        return AssetRefKind.EXTERNAL
    asset_id = element.asset_id or ""
    try:
        uuid.UUID(asset_id)
    except ValueError:
        return AssetRefKind.MALFORMED
    return AssetRefKind.STORAGE


def asset_key(element: TimelineElement) -> str:
    """Key shared by elements that reference the same underlying asset."""
    return element.external_url or element.asset_id or element.id


@dataclass
class ResolvedAssets:
    """Local files for a job, keyed by ``asset_key``."""

    paths: dict[str, str] = field(default_factory=dict)
    skipped: set[str] = field(default_factory=set)
    warnings: list[str] = field(default_factory=list)

    def path_for(self, element: TimelineElement) -> str | None:
        return self.paths.get(asset_key(element))

    @property
    def files(self) -> list[str]:
        return list(self.paths.values())


class AssetResolver:
    def __init__(self, storage, downloader: AssetDownloader, work_dir: str):
        self.storage = storage
        self.downloader = downloader
        self.work_dir = work_dir

    def _dest_path(self, index: int, element: TimelineElement, url: str) -> str:
        ext = os.path.splitext(urlparse(url).path)[1].lower()
        if not ext or len(ext) > 6 or not mimetypes.guess_type(f"x{ext}")[0]:
            ext = DEFAULT_EXTENSIONS.get(element.type, ".bin")
        name = _SAFE_NAME_RE.sub("_", element.asset_id or element.id)[:48]
        return os.path.join(self.work_dir, f"{index:03d}_{name}{ext}")

    async def resolve(
        self,
        element: TimelineElement,
        index: int = 0,
        token: CancellationToken | None = None,
    ) -> str:
        """Download the element's asset and return the local path.

        Raises:
            AssetNotFoundError: storage has no object for the id
            AssetError: malformed reference or download failure
        """
        kind = classify_asset(element)
        if kind is AssetRefKind.MALFORMED:
            raise AssetError(f"Malformed asset id '{element.asset_id}'", asset_id=element.asset_id)
        if kind is AssetRefKind.EXTERNAL:
            url = element.external_url
        else:
            url = await self.storage.fetch_signed_url(element.asset_id)

        dest = self._dest_path(index, element, url)
        result = await self.downloader.download(
            url,
            dest,
            asset_id=element.asset_id or element.id,
            element_type=element.type,
            token=token,
        )
        return result.path

    async def resolve_all(
        self,
        elements: list[TimelineElement],
        token: CancellationToken | None = None,
        progress: ProgressChannel | None = None,
    ) -> ResolvedAssets:
        """Materialize every distinct asset referenced by ``elements``.

        Malformed and not-found references are skipped with a warning; any
        other asset failure propagates and fails the job.
        """
        resolved = ResolvedAssets()
        pending: dict[str, TimelineElement] = {}
        for element in elements:
            if element.type.requires_asset:
                pending.setdefault(asset_key(element), element)

        total = len(pending)
        if progress:
            progress.publish(Phase.DOWNLOAD, 0.0, f"Downloading {total} asset(s)")

        for done, (key, element) in enumerate(pending.items(), start=1):
            if token:
                token.raise_if_cancelled()
            kind = classify_asset(element)
            if kind is AssetRefKind.MALFORMED:
                resolved.skipped.add(key)
                resolved.warnings.append(
                    f"Element '{element.id}' skipped: asset id '{element.asset_id}' is not a valid reference"
                )
                logger.warning(f"[DOWNLOAD] Skipping malformed asset id {element.asset_id!r}")
            else:
                try:
                    resolved.paths[key] = await self.resolve(element, done, token)
                except AssetNotFoundError:
                    resolved.skipped.add(key)
                    resolved.warnings.append(f"Element '{element.id}' skipped: asset '{element.asset_id}' not found")
                    logger.warning(f"[DOWNLOAD] Asset {element.asset_id} not found, skipping")

            if progress:
                progress.publish(Phase.DOWNLOAD, done / total, f"Downloaded {done}/{total} assets")

        return resolved
