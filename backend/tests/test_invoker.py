"""
Tests for ffmpeg invocation: failure classification, command line and the
process lifecycle (progress, failure, cancellation).

The lifecycle tests run a small shell script in place of ffmpeg.
"""

import asyncio
import os
import stat
import sys
from pathlib import Path

import pytest

from timeline_export.exceptions import JobCancelledError, RenderError, RenderErrorCategory
from timeline_export.models.timeline import ElementType, ExportSettings, TimelineElement, TrackInfo
from timeline_export.render.graph_builder import FilterGraphBuilder
from timeline_export.render.invoker import (
    RenderInvoker,
    build_command,
    classify_engine_failure,
    parse_progress_seconds,
)
from timeline_export.services.font_resolver import FontResolver
from timeline_export.services.progress import CancellationToken, Phase, ProgressChannel

pytestmark = pytest.mark.skipif(sys.platform.startswith("win"), reason="uses POSIX shell scripts")


def _plan(quality_settings=None):
    element = TimelineElement(
        id="t", type=ElementType.TEXT, track_id="t0", timeline_start_ms=0, timeline_end_ms=2000, text="Hi"
    )
    builder = FilterGraphBuilder(
        quality_settings or ExportSettings(resolution="480p", fps=24, quality="low"),
        [TrackInfo(id="t0", index=0)],
        FontResolver(platform="linux", exists=lambda path: False, verify=False),
        audio_probe=lambda path: False,
    )
    return builder.build([element], {})


def _fake_engine(directory: Path, body: str) -> str:
    script = directory / "fake-ffmpeg"
    script.write_text("#!/bin/sh\n" + body)
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return str(script)


async def _drain(channel: ProgressChannel) -> list:
    channel.close()
    return [event async for event in channel]


class TestClassification:
    @pytest.mark.parametrize(
        "stderr, expected",
        [
            ("write error: No space left on device", RenderErrorCategory.STORAGE_FULL),
            ("Cannot allocate memory", RenderErrorCategory.OUT_OF_MEMORY),
            ("/out/x.mp4: Permission denied", RenderErrorCategory.PERMISSION_ERROR),
            ("/in/a.mp4: No such file or directory", RenderErrorCategory.MISSING_FILE),
            ("No such filter: 'blurx'\nError initializing complex filters.", RenderErrorCategory.FILTER_ERROR),
            ("Unknown encoder 'libx265'", RenderErrorCategory.UNSUPPORTED_CODEC),
            ("moov atom not found\nInvalid data found when processing input", RenderErrorCategory.CORRUPTED_INPUT),
            ("Unrecognized option 'foo'.", RenderErrorCategory.INVALID_PARAMETERS),
            ("Conversion failed!", RenderErrorCategory.CONVERSION_ERROR),
            ("something odd happened", RenderErrorCategory.UNKNOWN),
        ],
    )
    def test_patterns(self, stderr, expected):
        assert classify_engine_failure(stderr, 1) is expected

    def test_first_matching_category_wins(self):
        stderr = "No space left on device\nConversion failed!"

        assert classify_engine_failure(stderr, 1) is RenderErrorCategory.STORAGE_FULL

    def test_killed_without_message_is_oom(self):
        assert classify_engine_failure("", -9) is RenderErrorCategory.OUT_OF_MEMORY
        assert classify_engine_failure("", 137) is RenderErrorCategory.OUT_OF_MEMORY

    def test_shell_could_not_exec(self):
        assert classify_engine_failure("", 127) is RenderErrorCategory.STARTUP_FAILURE

    def test_category_error_codes(self):
        assert RenderErrorCategory.OUT_OF_MEMORY.error_code == "RENDER_OUT_OF_MEMORY"
        assert RenderErrorCategory.CORRUPTED_INPUT.error_code == "RENDER_CORRUPTED_INPUT"


class TestCommand:
    def test_output_encoding_options(self, settings):
        plan = _plan()
        cmd = build_command(plan, "/tmp/out.mp4", "high", settings)

        assert cmd[0] == "ffmpeg"
        assert cmd[-1] == "/tmp/out.mp4"
        assert cmd[cmd.index("-filter_complex") + 1] == plan.filter_complex
        assert cmd[cmd.index("-crf") + 1] == str(settings.render_crf_high)
        assert cmd[cmd.index("-r") + 1] == "24"
        assert cmd[cmd.index("-c:v") + 1] == "libx264"
        assert cmd[cmd.index("-c:a") + 1] == "aac"
        assert cmd[cmd.index("-pix_fmt") + 1] == "yuv420p"
        assert cmd[cmd.index("-movflags") + 1] == "+faststart"
        assert cmd[cmd.index("-t") + 1] == "2.000"
        assert cmd[cmd.index("-progress") + 1] == "pipe:1"
        assert ["-map", "[final_video]"] == cmd[cmd.index("-map"):cmd.index("-map") + 2]

    def test_quality_maps_to_crf(self, settings):
        plan = _plan()

        crf = {}
        for quality in ("low", "medium", "high"):
            cmd = build_command(plan, "o.mp4", quality, settings)
            crf[quality] = int(cmd[cmd.index("-crf") + 1])

        assert crf["low"] > crf["medium"] > crf["high"]

    def test_parse_progress_seconds(self):
        assert parse_progress_seconds("out_time_us=1500000") == 1.5
        assert parse_progress_seconds("out_time_ms=2000000") == 2.0
        assert parse_progress_seconds("out_time_us=N/A") is None
        assert parse_progress_seconds("frame=12") is None


class TestRenderInvoker:
    @pytest.mark.asyncio
    async def test_success_reports_monotonic_progress(self, settings, temp_output_dir):
        settings.ffmpeg_path = _fake_engine(
            temp_output_dir,
            'echo "out_time_us=500000"\n'
            'echo "out_time_us=400000"\n'
            'echo "out_time_us=1000000"\n'
            'echo "progress=end"\n'
            "exit 0\n",
        )
        channel = ProgressChannel()

        result = await RenderInvoker(settings).run(_plan(), "/tmp/out.mp4", "low", channel)
        events = await _drain(channel)

        assert result == "/tmp/out.mp4"
        fractions = [e.fraction for e in events]
        assert all(e.phase is Phase.RENDER for e in events)
        assert fractions == sorted(fractions)
        assert 0.25 in fractions
        assert 0.5 in fractions
        assert fractions[-1] == 1.0

    @pytest.mark.asyncio
    async def test_failure_is_classified(self, settings, temp_output_dir):
        settings.ffmpeg_path = _fake_engine(
            temp_output_dir,
            'echo "[AVFilterGraph] No such filter: \'bogus\'" >&2\n'
            'echo "Error initializing complex filters." >&2\n'
            "exit 1\n",
        )

        with pytest.raises(RenderError) as exc_info:
            await RenderInvoker(settings).run(_plan(), "/tmp/out.mp4", "low")

        error = exc_info.value
        assert error.category is RenderErrorCategory.FILTER_ERROR
        assert error.code == "RENDER_FILTER_ERROR"
        assert error.return_code == 1
        assert "No such filter" in error.diagnostics

    @pytest.mark.asyncio
    async def test_missing_binary_is_startup_failure(self, settings, temp_output_dir):
        settings.ffmpeg_path = str(temp_output_dir / "does-not-exist")

        with pytest.raises(RenderError) as exc_info:
            await RenderInvoker(settings).run(_plan(), "/tmp/out.mp4", "low")

        assert exc_info.value.category is RenderErrorCategory.STARTUP_FAILURE

    @pytest.mark.asyncio
    async def test_cancellation_terminates_process(self, settings, temp_output_dir):
        pid_file = temp_output_dir / "pid"
        settings.ffmpeg_path = _fake_engine(
            temp_output_dir,
            f'echo $$ > "{pid_file}"\n'
            'echo "out_time_us=100000"\n'
            "sleep 30\n",
        )
        token = CancellationToken()
        task = asyncio.create_task(RenderInvoker(settings).run(_plan(), "/tmp/out.mp4", "low", token=token))

        for _ in range(100):
            if pid_file.exists() and pid_file.read_text().strip():
                break
            await asyncio.sleep(0.05)
        token.cancel("Cancelled by user")

        with pytest.raises(JobCancelledError):
            await asyncio.wait_for(task, timeout=10)

        pid = int(pid_file.read_text())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.asyncio
    async def test_already_cancelled_never_starts(self, settings, temp_output_dir):
        marker = temp_output_dir / "started"
        settings.ffmpeg_path = _fake_engine(temp_output_dir, f'touch "{marker}"\n')
        token = CancellationToken()
        token.cancel()

        with pytest.raises(JobCancelledError):
            await RenderInvoker(settings).run(_plan(), "/tmp/out.mp4", "low", token=token)

        assert not marker.exists()
