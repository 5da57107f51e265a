import json
from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "Timeline Export API"
    app_version: str = "0.1.0"
    git_hash: str = "unknown"  # Set via GIT_HASH env var at build time
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True

    # Job store. Empty = in-memory registry (single process only)
    database_url: str = ""
    database_echo: bool = False

    # Google Cloud Storage
    gcs_bucket_name: str = "timeline-export-assets"
    gcs_project_id: str = ""
    asset_key_prefix: str = "assets"
    export_key_prefix: str = "exports"

    # Local storage for development (when GCS is not configured)
    use_local_storage: bool = True  # Set to False in production
    local_storage_path: str = "/tmp/timeline-export-storage"
    local_storage_base_url: str = "http://localhost:8000/api/storage/files"

    # CORS - stored as string, parsed via computed property
    cors_origins_raw: str = "http://localhost:3000,http://localhost:5173"

    @computed_field
    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from pipe/comma-separated string or JSON array."""
        v = self.cors_origins_raw
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        # Pipe-separated (for Cloud Run compatibility)
        if "|" in v:
            return [origin.strip() for origin in v.split("|") if origin.strip()]
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Working directory for downloads and render output (partitioned per job)
    export_temp_dir: str = "/tmp/timeline-export"

    # Timeline validation limits
    max_export_elements: int = 500
    max_export_tracks: int = 50
    min_export_fps: int = 24
    max_export_fps: int = 60
    min_element_duration_ms: int = 100

    # Asset download policy
    download_max_attempts: int = 3
    download_timeout_s: float = 30.0
    download_backoff_base_s: float = 1.0
    download_backoff_max_s: float = 8.0
    download_max_bytes: int = 500 * 1024 * 1024
    download_chunk_size: int = 1024 * 1024
    download_user_agent: str = "timeline-export/0.1"

    # Render settings
    render_audio_sample_rate: int = 48000
    render_audio_bitrate: str = "192k"
    render_crf_low: int = 28
    render_crf_medium: int = 23
    render_crf_high: int = 18
    render_preset: str = "medium"
    # Maximum threads for FFmpeg (limits per-thread buffer memory)
    render_threads: int = 2
    render_heartbeat_interval_s: float = 5.0

    # Job lifecycle
    export_concurrency: int = 2
    job_retention_hours: int = 24
    job_sweep_interval_s: int = 3600
    signed_url_ttl_hours: int = 24
    storage_signed_url_ttl_minutes: int = 60

    def crf_for_quality(self, quality: str) -> int:
        return {
            "low": self.render_crf_low,
            "medium": self.render_crf_medium,
            "high": self.render_crf_high,
        }.get(quality, self.render_crf_medium)


@lru_cache
def get_settings() -> Settings:
    return Settings()
