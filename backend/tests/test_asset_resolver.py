"""Tests for asset reference classification and resolution."""

import uuid
from pathlib import Path

import pytest

from timeline_export.exceptions import AssetDownloadError, AssetError, AssetNotFoundError
from timeline_export.models.timeline import ElementType, TimelineElement
from timeline_export.services.asset_downloader import DownloadResult
from timeline_export.services.asset_resolver import AssetRefKind, AssetResolver, asset_key, classify_asset
from timeline_export.services.progress import Phase, ProgressChannel

KNOWN = str(uuid.uuid4())
MISSING = str(uuid.uuid4())


def _element(element_id: str, asset_id: str | None = None, element_type=ElementType.VIDEO, **props):
    return TimelineElement(
        id=element_id,
        type=element_type,
        track_id="t0",
        timeline_start_ms=0,
        timeline_end_ms=1000,
        asset_id=asset_id,
        properties=props,
    )


class FakeStorage:
    def __init__(self, known: set[str]):
        self.known = known

    async def fetch_signed_url(self, asset_id: str) -> str:
        if asset_id not in self.known:
            raise AssetNotFoundError(asset_id)
        return f"https://storage.example.com/assets/{asset_id}.mp4?sig=1"


class FakeDownloader:
    def __init__(self, fail: Exception | None = None):
        self.calls: list[tuple[str, str]] = []
        self.fail = fail

    async def download(self, url, dest_path, *, asset_id=None, element_type=None, token=None):
        self.calls.append((url, dest_path))
        if self.fail:
            raise self.fail
        Path(dest_path).write_bytes(b"data")
        return DownloadResult(path=dest_path, size=4, content_type=None, attempts=1)


class TestClassification:
    def test_uuid_is_storage(self):
        assert classify_asset(_element("a", KNOWN)) is AssetRefKind.STORAGE

    def test_external_url(self):
        element = _element("a", "external_1", externalAsset={"url": "https://cdn.example.com/x.gif"})

        assert classify_asset(element) is AssetRefKind.EXTERNAL
        assert asset_key(element) == "https://cdn.example.com/x.gif"

    def test_other_ids_are_malformed(self):
        assert classify_asset(_element("a", "not-a-uuid")) is AssetRefKind.MALFORMED
        assert classify_asset(_element("a", None)) is AssetRefKind.MALFORMED


class TestAssetResolver:
    @pytest.mark.asyncio
    async def test_resolve_storage_asset(self, temp_output_dir: Path):
        downloader = FakeDownloader()
        resolver = AssetResolver(FakeStorage({KNOWN}), downloader, str(temp_output_dir))

        path = await resolver.resolve(_element("a", KNOWN), index=1)

        assert path == str(temp_output_dir / f"001_{KNOWN}.mp4")
        assert downloader.calls[0][0].startswith("https://storage.example.com/assets/")

    @pytest.mark.asyncio
    async def test_resolve_malformed_raises(self, temp_output_dir: Path):
        resolver = AssetResolver(FakeStorage(set()), FakeDownloader(), str(temp_output_dir))

        with pytest.raises(AssetError):
            await resolver.resolve(_element("a", "bogus"))

    @pytest.mark.asyncio
    async def test_external_extension_kept(self, temp_output_dir: Path):
        resolver = AssetResolver(FakeStorage(set()), FakeDownloader(), str(temp_output_dir))
        element = _element(
            "g", "external_9", ElementType.GIF, externalAsset={"url": "https://media.example.com/x/anim.gif?x=1"}
        )

        path = await resolver.resolve(element, index=2)

        assert path.endswith("002_external_9.gif")

    @pytest.mark.asyncio
    async def test_resolve_all_skips_unusable_references(self, temp_output_dir: Path):
        downloader = FakeDownloader()
        resolver = AssetResolver(FakeStorage({KNOWN}), downloader, str(temp_output_dir))
        elements = [
            _element("ok", KNOWN),
            _element("same", KNOWN),
            _element("gone", MISSING),
            _element("junk", "junk-id"),
            TimelineElement(id="txt", type=ElementType.TEXT, track_id="t0", timeline_start_ms=0, timeline_end_ms=1, text="x"),
        ]
        channel = ProgressChannel()

        resolved = await resolver.resolve_all(elements, progress=channel)
        channel.close()
        events = [e async for e in channel]

        assert set(resolved.paths) == {KNOWN}
        assert resolved.skipped == {MISSING, "junk-id"}
        assert len(resolved.warnings) == 2
        assert len(downloader.calls) == 1
        assert all(e.phase is Phase.DOWNLOAD for e in events)
        assert [e.fraction for e in events] == [0.0, pytest.approx(1 / 3), pytest.approx(2 / 3), 1.0]

    @pytest.mark.asyncio
    async def test_download_failure_propagates(self, temp_output_dir: Path):
        error = AssetDownloadError("HTTP 500", asset_id=KNOWN, attempts=3)
        resolver = AssetResolver(FakeStorage({KNOWN}), FakeDownloader(fail=error), str(temp_output_dir))

        with pytest.raises(AssetDownloadError):
            await resolver.resolve_all([_element("ok", KNOWN)])
