"""HTTP asset download with bounded retry.

Each attempt streams the body to ``<dest>.part`` under a per-attempt timeout
and renames it into place once the integrity checks pass. Transient failures
(5xx, 408/429, timeouts, connection errors, truncated bodies) are retried with
exponential backoff; permanent ones (other 4xx, malformed URL, unsupported
scheme, oversize payload) fail on the first attempt.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx
from PIL import Image, UnidentifiedImageError

from timeline_export.config import Settings, get_settings
from timeline_export.exceptions import AssetDownloadError
from timeline_export.models.timeline import ElementType
from timeline_export.services.progress import CancellationToken

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https")
TRANSIENT_STATUS = frozenset({408, 425, 429})

EXPECTED_CONTENT_TYPES: dict[ElementType, tuple[str, ...]] = {
    ElementType.VIDEO: ("video/", "application/octet-stream", "binary/octet-stream"),
    ElementType.AUDIO: ("audio/", "video/", "application/octet-stream", "binary/octet-stream"),
    ElementType.IMAGE: ("image/", "application/octet-stream", "binary/octet-stream"),
    ElementType.GIF: ("image/gif", "application/octet-stream", "binary/octet-stream"),
}


@dataclass
class DownloadResult:
    path: str
    size: int
    content_type: str | None
    attempts: int


def _redact(url: str) -> str:
    # Signed URLs carry credentials in the query string
    return url.split("?", 1)[0][:100]


def check_image(path: str) -> bool:
    """True if Pillow can identify the file as an image."""
    try:
        with Image.open(path) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        logger.warning(f"[DOWNLOAD] {os.path.basename(path)} is not a readable image: {e}")
        return False
    return True


class AssetDownloader:
    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "AssetDownloader":
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        delay = self.settings.download_backoff_base_s * (2 ** (attempt - 1))
        return min(delay, self.settings.download_backoff_max_s)

    async def download(
        self,
        url: str,
        dest_path: str,
        *,
        asset_id: str | None = None,
        element_type: ElementType | None = None,
        token: CancellationToken | None = None,
    ) -> DownloadResult:
        """Download ``url`` to ``dest_path``, retrying transient failures.

        Raises:
            AssetDownloadError: after the final attempt, or immediately for a
                permanent failure. ``attempts`` records how many were made.
            JobCancelledError: if ``token`` is cancelled.
        """
        parsed = urlparse(url)
        if parsed.scheme not in ALLOWED_SCHEMES:
            raise AssetDownloadError(
                f"Unsupported URL scheme '{parsed.scheme}' for asset {asset_id}",
                asset_id=asset_id,
                transient=False,
                attempts=0,
            )
        if not parsed.netloc:
            raise AssetDownloadError(
                f"Malformed URL for asset {asset_id}", asset_id=asset_id, transient=False, attempts=0
            )

        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
            self._owns_client = True

        max_attempts = max(1, self.settings.download_max_attempts)
        for attempt in range(1, max_attempts + 1):
            if token:
                token.raise_if_cancelled()
            try:
                result = await self._bounded_attempt(url, dest_path, asset_id, element_type, token)
            except AssetDownloadError as e:
                e.attempts = attempt
                e.details["attempts"] = attempt
                self._discard(dest_path + ".part")
                if not e.transient or attempt == max_attempts:
                    logger.error(
                        f"[DOWNLOAD] Giving up on {asset_id} after {attempt} attempt(s): {e.message}"
                    )
                    raise
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"[DOWNLOAD] Attempt {attempt}/{max_attempts} for {asset_id} failed: {e.message}; "
                    f"retrying in {delay:.1f}s"
                )
                if token:
                    await token.sleep(delay)
                else:
                    await asyncio.sleep(delay)
                continue
            except BaseException:
                self._discard(dest_path + ".part")
                raise
            result.attempts = attempt
            return result

        raise AssetDownloadError(f"Download failed for asset {asset_id}", asset_id=asset_id, attempts=max_attempts)

    async def _bounded_attempt(
        self,
        url: str,
        dest_path: str,
        asset_id: str | None,
        element_type: ElementType | None,
        token: CancellationToken | None,
    ) -> DownloadResult:
        timeout_s = self.settings.download_timeout_s
        try:
            return await asyncio.wait_for(
                self._attempt(url, dest_path, asset_id, element_type, token), timeout=timeout_s
            )
        except asyncio.TimeoutError as e:
            raise AssetDownloadError(
                f"Download timeout after {timeout_s:g}s for asset {asset_id}",
                asset_id=asset_id,
                transient=True,
            ) from e

    async def _attempt(
        self,
        url: str,
        dest_path: str,
        asset_id: str | None,
        element_type: ElementType | None,
        token: CancellationToken | None,
    ) -> DownloadResult:
        settings = self.settings
        part_path = dest_path + ".part"
        logger.info(f"[DOWNLOAD] Fetching {asset_id} from {_redact(url)}")

        try:
            async with self._client.stream(
                "GET",
                url,
                headers={"User-Agent": settings.download_user_agent},
                timeout=httpx.Timeout(settings.download_timeout_s),
            ) as response:
                status = response.status_code
                if status >= 400:
                    transient = status >= 500 or status in TRANSIENT_STATUS
                    raise AssetDownloadError(
                        f"Download failed for asset {asset_id}: HTTP {status}",
                        asset_id=asset_id,
                        transient=transient,
                        status=status,
                    )

                declared = response.headers.get("content-length")
                expected_size = int(declared) if declared and declared.isdigit() else None
                if expected_size is not None and expected_size > settings.download_max_bytes:
                    raise AssetDownloadError(
                        f"Asset {asset_id} is {expected_size} bytes (limit {settings.download_max_bytes})",
                        asset_id=asset_id,
                        transient=False,
                        status=status,
                    )

                content_type = response.headers.get("content-type")
                received = 0
                with open(part_path, "wb") as f:
                    async for chunk in response.aiter_bytes(settings.download_chunk_size):
                        if token:
                            token.raise_if_cancelled()
                        received += len(chunk)
                        if received > settings.download_max_bytes:
                            raise AssetDownloadError(
                                f"Asset {asset_id} exceeds {settings.download_max_bytes} bytes",
                                asset_id=asset_id,
                                transient=False,
                                status=status,
                            )
                        f.write(chunk)
                wire_bytes = response.num_bytes_downloaded
        except httpx.TimeoutException as e:
            raise AssetDownloadError(
                f"Download timeout after {settings.download_timeout_s:.0f}s for asset {asset_id}",
                asset_id=asset_id,
                transient=True,
            ) from e
        except httpx.InvalidURL as e:
            raise AssetDownloadError(
                f"Malformed URL for asset {asset_id}: {e}", asset_id=asset_id, transient=False
            ) from e
        except httpx.TransportError as e:
            raise AssetDownloadError(
                f"Network error for asset {asset_id}: {e}", asset_id=asset_id, transient=True
            ) from e

        self._verify(part_path, received, wire_bytes, expected_size, asset_id)
        os.replace(part_path, dest_path)
        self._check_plausibility(dest_path, content_type, element_type, asset_id)

        logger.info(f"[DOWNLOAD] Saved {asset_id} ({received} bytes) to {dest_path}")
        return DownloadResult(path=dest_path, size=received, content_type=content_type, attempts=1)

    def _verify(
        self,
        part_path: str,
        received: int,
        wire_bytes: int,
        expected_size: int | None,
        asset_id: str | None,
    ) -> None:
        # Content-Length counts encoded bytes; ``received`` is after decompression
        if received == 0:
            raise AssetDownloadError(f"Empty response body for asset {asset_id}", asset_id=asset_id)
        on_disk = os.path.getsize(part_path)
        if on_disk != received:
            raise AssetDownloadError(
                f"Size mismatch for asset {asset_id}: wrote {on_disk}, received {received}",
                asset_id=asset_id,
            )
        if expected_size is not None and expected_size != wire_bytes:
            raise AssetDownloadError(
                f"Truncated download for asset {asset_id}: {wire_bytes}/{expected_size} bytes",
                asset_id=asset_id,
            )

    def _check_plausibility(
        self,
        path: str,
        content_type: str | None,
        element_type: ElementType | None,
        asset_id: str | None,
    ) -> None:
        if element_type is None:
            return
        expected = EXPECTED_CONTENT_TYPES.get(element_type)
        if expected and content_type and not content_type.lower().startswith(expected):
            logger.warning(
                f"[DOWNLOAD] Asset {asset_id} has content-type {content_type}, "
                f"unexpected for a {element_type.value} element"
            )
        if element_type in (ElementType.IMAGE, ElementType.GIF):
            check_image(path)

    @staticmethod
    def _discard(path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[DOWNLOAD] Could not remove partial file {path}: {e}")
