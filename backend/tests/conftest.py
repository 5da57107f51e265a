"""
Pytest fixtures for the export engine tests.

Most tests use fakes for ffmpeg, storage and HTTP and run anywhere.
Tests that shell out to a real ffmpeg binary are marked with
@pytest.mark.requires_ffmpeg; run `pytest -m "not requires_ffmpeg"` to skip them.
"""

import shutil
import tempfile
from pathlib import Path

import pytest

from fakes import MediaServer
from timeline_export.config import Settings
from timeline_export.schemas.export import ExportSettingsPayload, TimelineClip, Track
from timeline_export.services.storage_service import LocalStorageService


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring ffmpeg/ffprobe on PATH (skipped otherwise)"
    )


def _ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


requires_ffmpeg = pytest.mark.skipif(
    not _ffmpeg_available(),
    reason="ffmpeg not available"
)


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="timeline_export_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_output_dir: Path) -> Settings:
    """Settings pointing every directory at the temp dir, with instant retries."""
    return Settings(
        _env_file=None,
        local_storage_path=str(temp_output_dir / "storage"),
        export_temp_dir=str(temp_output_dir / "work"),
        download_backoff_base_s=0,
        download_backoff_max_s=0,
        render_heartbeat_interval_s=0.05,
        export_concurrency=1,
    )


def make_clip(**overrides) -> TimelineClip:
    """Editor clip payload with sensible defaults (camelCase keys)."""
    data = {
        "id": "clip-1",
        "type": "text",
        "trackId": "track-1",
        "timelineStartMs": 0,
        "timelineEndMs": 1000,
        "text": "Hello",
    }
    data.update(overrides)
    return TimelineClip.model_validate(data)


def make_track(track_id: str = "track-1", index: int = 0, **overrides) -> Track:
    data = {"id": track_id, "index": index}
    data.update(overrides)
    return Track.model_validate(data)


def make_export_settings(**overrides) -> ExportSettingsPayload:
    data = {"resolution": "720p", "fps": 30, "quality": "medium"}
    data.update(overrides)
    return ExportSettingsPayload.model_validate(data)


@pytest.fixture
def export_settings() -> ExportSettingsPayload:
    return make_export_settings()


@pytest.fixture
def single_track() -> list[Track]:
    return [make_track()]


@pytest.fixture
def storage(settings: Settings) -> LocalStorageService:
    return LocalStorageService(settings)


@pytest.fixture
def media_server() -> MediaServer:
    """Mock HTTP origin for asset downloads (see fakes.MediaServer)."""
    return MediaServer()
