"""ffmpeg invocation for a compiled ``RenderPlan``.

ffmpeg runs in its own process group with ``-progress pipe:1``; progress lines
on stdout are turned into RENDER-phase events, stderr is collected for failure
classification. Cancelling the job's token terminates the whole group.
"""

import asyncio
import collections
import logging
import os
import signal
import time

from timeline_export.config import Settings, get_settings
from timeline_export.exceptions import JobCancelledError, RenderError, RenderErrorCategory
from timeline_export.render.graph_builder import RenderPlan
from timeline_export.services.progress import CancellationToken, Phase, ProgressChannel

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 400
KILL_GRACE_S = 5.0

# Checked in order; the first matching category wins
FAILURE_PATTERNS: list[tuple[RenderErrorCategory, tuple[str, ...]]] = [
    (RenderErrorCategory.STORAGE_FULL, ("no space left on device", "disk quota exceeded", "file too large")),
    (RenderErrorCategory.OUT_OF_MEMORY, ("cannot allocate memory", "out of memory", "enomem", "memory allocation failed")),
    (RenderErrorCategory.PERMISSION_ERROR, ("permission denied", "operation not permitted", "eacces")),
    (RenderErrorCategory.MISSING_FILE, ("no such file or directory", "file not found")),
    (RenderErrorCategory.FILTER_ERROR, (
        "error initializing complex filters",
        "error parsing filtergraph",
        "invalid filtergraph",
        "no such filter",
        "filter not found",
        "error reinitializing filters",
        "media type mismatch",
        "cannot find a matching stream for unlabeled input pad",
        "output pad",
        "error configuring filter",
    )),
    (RenderErrorCategory.UNSUPPORTED_CODEC, (
        "unknown encoder",
        "unknown decoder",
        "encoder not found",
        "decoder not found",
        "no decoder for",
        "unsupported codec",
        "not currently supported in container",
        "codec not currently supported",
    )),
    (RenderErrorCategory.CORRUPTED_INPUT, (
        "invalid data found when processing input",
        "moov atom not found",
        "could not find codec parameters",
        "corrupt",
        "error while decoding",
        "invalid nal unit",
        "truncated",
    )),
    (RenderErrorCategory.INVALID_PARAMETERS, (
        "invalid argument",
        "option not found",
        "unrecognized option",
        "invalid value",
        "error setting option",
        "unable to parse",
        "invalid frame size",
        "trailing option",
        "missing argument for option",
    )),
    (RenderErrorCategory.CONVERSION_ERROR, (
        "conversion failed",
        "impossible to convert between the formats",
        "error while processing the decoded data",
        "error while filtering",
    )),
]


def classify_engine_failure(stderr: str, return_code: int | None = None) -> RenderErrorCategory:
    """Map ffmpeg diagnostics (and exit status) to a failure category."""
    text = stderr.lower()
    for category, needles in FAILURE_PATTERNS:
        if any(needle in text for needle in needles):
            return category
    # SIGKILL without a message is almost always the OOM killer
    if return_code in (-signal.SIGKILL, 137):
        return RenderErrorCategory.OUT_OF_MEMORY
    if return_code in (126, 127):
        return RenderErrorCategory.STARTUP_FAILURE
    return RenderErrorCategory.UNKNOWN


def build_command(plan: RenderPlan, output_path: str, quality: str, settings: Settings | None = None) -> list[str]:
    settings = settings or get_settings()
    cmd = [settings.ffmpeg_path, "-hide_banner", "-nostdin", "-y"]
    for render_input in plan.inputs:
        cmd.extend(render_input.to_args())
    cmd.extend([
        "-filter_complex", plan.filter_complex,
        "-map", f"[{plan.video_label}]",
        "-map", f"[{plan.audio_label}]",
        "-c:v", "libx264",
        "-preset", settings.render_preset,
        "-crf", str(settings.crf_for_quality(quality)),
        "-pix_fmt", "yuv420p",
        "-r", str(plan.fps),
        "-c:a", "aac",
        "-b:a", settings.render_audio_bitrate,
        "-ar", str(settings.render_audio_sample_rate),
        "-ac", "2",
        "-movflags", "+faststart",
        "-threads", str(settings.render_threads),
        "-t", f"{plan.total_duration_s:.3f}",
        "-progress", "pipe:1",
        "-nostats",
        output_path,
    ])
    return cmd


def parse_progress_seconds(line: str) -> float | None:
    """Seconds rendered so far from one ``-progress`` line, if present."""
    key, _, value = line.partition("=")
    if key not in ("out_time_us", "out_time_ms"):
        return None
    try:
        # ffmpeg reports microseconds under both keys
        return int(value) / 1_000_000
    except ValueError:
        return None


class RenderInvoker:
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    async def run(
        self,
        plan: RenderPlan,
        output_path: str,
        quality: str,
        progress: ProgressChannel | None = None,
        token: CancellationToken | None = None,
        job_tag: str = "",
    ) -> str:
        """Render ``plan`` to ``output_path``.

        Raises:
            RenderError: engine failed to start or exited non-zero
            JobCancelledError: the token was cancelled while rendering
        """
        cmd = build_command(plan, output_path, quality, self.settings)
        logger.info(f"[RENDER{job_tag}] filter_complex: {plan.filter_complex}")
        logger.debug(f"[RENDER{job_tag}] command: {' '.join(cmd)}")

        if token:
            token.raise_if_cancelled()

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise RenderError(
                f"Could not start ffmpeg: {e}",
                category=RenderErrorCategory.STARTUP_FAILURE,
                diagnostics=str(e),
            ) from e

        stderr_tail: collections.deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
        state = {"fraction": 0.0, "last_update": time.monotonic()}
        duration_s = max(plan.total_duration_s, 0.001)

        async def read_stderr() -> None:
            async for raw in proc.stderr:
                stderr_tail.append(raw.decode("utf-8", errors="replace").rstrip())

        async def read_progress() -> None:
            async for raw in proc.stdout:
                line = raw.decode("utf-8", errors="replace").strip()
                seconds = parse_progress_seconds(line)
                if seconds is not None:
                    fraction = min(0.99, seconds / duration_s)
                    if fraction > state["fraction"]:
                        state["fraction"] = fraction
                        state["last_update"] = time.monotonic()
                        if progress:
                            progress.publish(Phase.RENDER, fraction, f"Rendering video ({int(fraction * 100)}%)")

        async def heartbeat() -> None:
            interval = self.settings.render_heartbeat_interval_s
            while True:
                await asyncio.sleep(interval)
                if time.monotonic() - state["last_update"] >= interval and state["fraction"] < 0.95:
                    # Conservative creep while the engine is silent
                    state["fraction"] = min(0.95, state["fraction"] + 0.01)
                    if progress:
                        progress.publish(Phase.RENDER, state["fraction"], "Rendering video")

        async def watch_cancel() -> None:
            await token.wait()
            logger.info(f"[RENDER{job_tag}] Cancellation requested, terminating ffmpeg (pid {proc.pid})")
            await self._terminate(proc)

        helpers = [asyncio.create_task(heartbeat())]
        if token:
            helpers.append(asyncio.create_task(watch_cancel()))
        try:
            await asyncio.gather(read_progress(), read_stderr())
            return_code = await proc.wait()
        except BaseException:
            await self._terminate(proc)
            raise
        finally:
            for task in helpers:
                task.cancel()
            await asyncio.gather(*helpers, return_exceptions=True)

        if token and token.cancelled:
            raise JobCancelledError(token.reason)

        if return_code != 0:
            diagnostics = "\n".join(stderr_tail)
            category = classify_engine_failure(diagnostics, return_code)
            logger.error(f"[RENDER{job_tag}] ffmpeg exited with {return_code} ({category.value}):\n{diagnostics}")
            raise RenderError(
                f"Render failed ({category.value}, exit code {return_code})",
                category=category,
                diagnostics=diagnostics,
                return_code=return_code,
            )

        if progress:
            progress.publish(Phase.RENDER, 1.0, "Render complete")
        logger.info(f"[RENDER{job_tag}] Completed: {output_path}")
        return output_path

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_S)
        except asyncio.TimeoutError:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                return
            await proc.wait()
