"""Blob storage collaborators.

Two interchangeable backends with the same async surface:

- ``fetch_signed_url(asset_id)``: read URL for a stored asset
- ``upload_file(local_path, storage_key)``: put a local file
- ``get_signed_url(storage_key, expiration_minutes)``: time-limited read URL

Assets live under ``{asset_key_prefix}/{asset_id}`` (any extension).
"""

import asyncio
import logging
import shutil
from datetime import timedelta
from pathlib import Path

from timeline_export.config import Settings, get_settings
from timeline_export.exceptions import AssetNotFoundError

logger = logging.getLogger(__name__)


class LocalStorageService:
    """Local file storage for development without GCS."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.base_path = Path(self.settings.local_storage_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, storage_key: str) -> Path:
        full_path = (self.base_path / storage_key).resolve()
        if self.base_path.resolve() not in full_path.parents:
            raise ValueError(f"Storage key escapes storage root: {storage_key}")
        full_path.parent.mkdir(parents=True, exist_ok=True)
        return full_path

    def get_public_url(self, storage_key: str) -> str:
        """Get URL for accessing the file."""
        return f"{self.settings.local_storage_base_url.rstrip('/')}/{storage_key}"

    def find_asset_key(self, asset_id: str) -> str | None:
        asset_dir = self.base_path / self.settings.asset_key_prefix
        if not asset_dir.is_dir():
            return None
        for path in sorted(asset_dir.glob(f"{asset_id}*")):
            if path.is_file() and (path.stem == asset_id or path.name == asset_id):
                return path.relative_to(self.base_path).as_posix()
        return None

    async def fetch_signed_url(self, asset_id: str) -> str:
        storage_key = self.find_asset_key(asset_id)
        if storage_key is None:
            raise AssetNotFoundError(asset_id)
        return self.get_public_url(storage_key)

    def upload_file_from_bytes(self, storage_key: str, data: bytes) -> str:
        """Upload file from bytes."""
        full_path = self._get_full_path(storage_key)
        full_path.write_bytes(data)
        return self.get_public_url(storage_key)

    async def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        """Upload from local path."""
        full_path = self._get_full_path(storage_key)
        await asyncio.to_thread(shutil.copy, local_path, str(full_path))
        return self.get_public_url(storage_key)

    async def get_signed_url(self, storage_key: str, expiration_minutes: int = 60) -> str:
        """Get download URL. Local files are not signed."""
        return self.get_public_url(storage_key)

    def delete_file(self, storage_key: str) -> bool:
        """Delete file."""
        full_path = self._get_full_path(storage_key)
        if full_path.exists():
            full_path.unlink()
            return True
        return False

    def file_exists(self, storage_key: str) -> bool:
        """Check if file exists."""
        return self._get_full_path(storage_key).exists()

    def get_file_path(self, storage_key: str) -> Path:
        """Get the actual file path for serving."""
        return self._get_full_path(storage_key)


class GCSStorageService:
    """Google Cloud Storage service for production."""

    def __init__(self, settings: Settings | None = None) -> None:
        from google.auth import compute_engine, default
        from google.auth.transport import requests as auth_requests
        from google.cloud import storage

        self.settings = settings or get_settings()
        self._storage = storage
        self._client = None
        self._bucket = None

        self._credentials, self._project = default()
        self._auth_request = auth_requests.Request()
        self._service_account_email: str | None = None

        # Cloud Run credentials have no private key; signing goes through IAM
        if isinstance(self._credentials, compute_engine.Credentials):
            self._credentials.refresh(self._auth_request)
            self._service_account_email = self._credentials.service_account_email
        elif hasattr(self._credentials, "service_account_email"):
            self._service_account_email = self._credentials.service_account_email

    @property
    def client(self):
        if self._client is None:
            if self.settings.gcs_project_id:
                self._client = self._storage.Client(project=self.settings.gcs_project_id)
            else:
                self._client = self._storage.Client()
        return self._client

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = self.client.bucket(self.settings.gcs_bucket_name)
        return self._bucket

    def _sign(self, storage_key: str, expires: timedelta) -> str:
        if not self._credentials.valid:
            self._credentials.refresh(self._auth_request)
        blob = self.bucket.blob(storage_key)
        return blob.generate_signed_url(
            version="v4",
            expiration=expires,
            method="GET",
            service_account_email=self._service_account_email,
            access_token=self._credentials.token,
        )

    def _find_asset_blob(self, asset_id: str):
        prefix = f"{self.settings.asset_key_prefix}/{asset_id}"
        for blob in self.client.list_blobs(self.bucket, prefix=prefix, max_results=10):
            name = blob.name.rsplit("/", 1)[-1]
            if name == asset_id or name.rsplit(".", 1)[0] == asset_id:
                return blob
        return None

    async def fetch_signed_url(self, asset_id: str) -> str:
        blob = await asyncio.to_thread(self._find_asset_blob, asset_id)
        if blob is None:
            raise AssetNotFoundError(asset_id)
        ttl = timedelta(minutes=self.settings.storage_signed_url_ttl_minutes)
        return await asyncio.to_thread(self._sign, blob.name, ttl)

    async def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        """Upload a local file to GCS."""
        blob = self.bucket.blob(storage_key)
        await asyncio.to_thread(blob.upload_from_filename, local_path, content_type=content_type)
        return f"gs://{self.settings.gcs_bucket_name}/{storage_key}"

    async def get_signed_url(self, storage_key: str, expiration_minutes: int = 60) -> str:
        """Generate a signed download URL."""
        return await asyncio.to_thread(self._sign, storage_key, timedelta(minutes=expiration_minutes))

    def delete_file(self, storage_key: str) -> bool:
        """Delete a file from GCS."""
        blob = self.bucket.blob(storage_key)
        if blob.exists():
            blob.delete()
            return True
        return False

    def file_exists(self, storage_key: str) -> bool:
        """Check if a file exists in GCS."""
        return self.bucket.blob(storage_key).exists()


StorageService = LocalStorageService | GCSStorageService

_storage_service: StorageService | None = None


def get_storage_service() -> StorageService:
    """Process-wide storage backend chosen by ``use_local_storage``."""
    global _storage_service
    if _storage_service is None:
        settings = get_settings()
        _storage_service = LocalStorageService(settings) if settings.use_local_storage else GCSStorageService(settings)
    return _storage_service
