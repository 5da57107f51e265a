"""Export job orchestration.

``ExportOrchestrator`` owns the job lifecycle:

    queued -> processing -> completed | failed

``start`` validates synchronously (a rejected timeline never creates a job),
stores a ``queued`` job and puts it on a bounded worker pool. A worker runs
the phases in order (download, configure, render, publish), consuming a
``ProgressChannel`` that maps every phase onto its share of 0-100. Failures
remove the job's temp directory before the job is marked failed.

``cancel`` marks the job failed right away and signals the job's
``CancellationToken``; downloads stop at the next chunk and ffmpeg's process
group is terminated. Cleanup of a cancelled job may complete after the
``failed`` status is already visible.
"""

import asyncio
import logging
import os
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from timeline_export.config import Settings, get_settings
from timeline_export.exceptions import (
    ExportError,
    InternalError,
    JobCancelledError,
    JobNotFoundError,
    RenderError,
    TimelineValidationError,
)
from timeline_export.models.export_job import ExportJob, JobStatus, can_transition
from timeline_export.render.graph_builder import FilterGraphBuilder, RenderPlan
from timeline_export.render.invoker import RenderInvoker
from timeline_export.schemas.export import ExportSettingsPayload, TimelineClip, Track
from timeline_export.services.artifact_publisher import ArtifactPublisher, remove_paths
from timeline_export.services.asset_downloader import AssetDownloader
from timeline_export.services.asset_resolver import AssetResolver
from timeline_export.services.font_resolver import FontResolver
from timeline_export.services.job_store import JobStore
from timeline_export.services.progress import (
    CancellationToken,
    Phase,
    ProgressChannel,
    ProgressTracker,
)
from timeline_export.services.timeline_validator import ValidationReport, validate_timeline
from timeline_export.utils.media_info import get_media_duration, has_audio_track

logger = logging.getLogger(__name__)

CANCEL_MESSAGE = "Cancelled by user"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QueuedExport:
    job_id: str
    report: ValidationReport


class ExportOrchestrator:
    def __init__(
        self,
        store: JobStore,
        storage,
        settings: Settings | None = None,
        *,
        font_resolver: FontResolver | None = None,
        invoker: RenderInvoker | None = None,
        publisher: ArtifactPublisher | None = None,
        downloader_factory: Callable[[], AssetDownloader] | None = None,
        audio_probe: Callable[[str], bool] = has_audio_track,
        duration_probe: Callable[[str], int] = get_media_duration,
    ):
        self.store = store
        self.storage = storage
        self.settings = settings or get_settings()
        self.fonts = font_resolver or FontResolver()
        self.invoker = invoker or RenderInvoker(self.settings)
        self.publisher = publisher or ArtifactPublisher(storage, self.settings)
        self._downloader_factory = downloader_factory or (lambda: AssetDownloader(self.settings))
        self._audio_probe = audio_probe
        self._duration_probe = duration_probe

        self._queue: asyncio.Queue[QueuedExport] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._sweeper: asyncio.Task | None = None
        self._tokens: dict[str, CancellationToken] = {}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def startup(self, run_sweeper: bool = True) -> None:
        await self.store.init()
        await self._fail_interrupted_jobs()
        self._ensure_workers()
        if run_sweeper and self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="export-sweeper")

    async def shutdown(self) -> None:
        for token in self._tokens.values():
            token.cancel("Server shutting down")
        tasks = [*self._workers, *([self._sweeper] if self._sweeper else [])]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._sweeper = None
        await self.store.close()

    def _ensure_workers(self) -> None:
        if self._workers:
            return
        for n in range(max(1, self.settings.export_concurrency)):
            self._workers.append(asyncio.create_task(self._worker(n), name=f"export-worker-{n}"))
        logger.info(f"[EXPORT] Started {len(self._workers)} export worker(s)")

    async def _fail_interrupted_jobs(self) -> None:
        """Jobs left unfinished by a previous process can never complete."""
        for status in (JobStatus.QUEUED, JobStatus.PROCESSING):
            for job in await self.store.list_jobs(status):
                if job.id not in self._tokens:
                    await self.store.update(job.id, self._fail_mutator("Interrupted by server restart"))

    async def _worker(self, n: int) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self.process(item)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    # =========================================================================
    # Operations
    # =========================================================================

    async def start(
        self,
        clips: list[TimelineClip],
        tracks: list[Track],
        export_settings: ExportSettingsPayload,
    ) -> ExportJob:
        """Validate, create a queued job and schedule it.

        Raises:
            TimelineValidationError: the timeline was rejected; no job exists.
        """
        report = validate_timeline(clips, tracks, export_settings, self.settings)
        if not report.valid:
            raise TimelineValidationError(report.errors, report.warnings)

        job = ExportJob(
            id=str(uuid.uuid4()),
            status=JobStatus.QUEUED,
            export_settings=report.settings.to_dict(),
            warnings=list(report.warnings),
            stage="Queued",
        )
        await self.store.create(job)
        self._tokens[job.id] = CancellationToken()
        self._ensure_workers()
        await self._queue.put(QueuedExport(job.id, report))
        logger.info(
            f"[EXPORT {job.id}] Queued: {len(report.corrected_elements)} element(s), "
            f"{job.export_settings['resolution']}@{job.export_settings['fps']}fps"
        )
        return job

    async def status(self, job_id: str) -> ExportJob:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def cancel(self, job_id: str) -> ExportJob:
        """Mark the job failed now and ask in-flight work to stop."""
        job = await self.store.update(job_id, self._fail_mutator(CANCEL_MESSAGE))
        if job is None:
            raise JobNotFoundError(job_id)
        token = self._tokens.get(job_id)
        if token:
            token.cancel(CANCEL_MESSAGE)
        logger.info(f"[EXPORT {job_id}] Cancel requested (status now {job.status.value})")
        return job

    async def sweep(self, now: datetime | None = None) -> int:
        """Remove jobs older than the retention window with their files."""
        cutoff = (now or _now()) - timedelta(hours=self.settings.job_retention_hours)
        removed = await self.store.sweep(cutoff)
        for job in removed:
            token = self._tokens.pop(job.id, None)
            if token:
                token.cancel("Expired")
            remove_paths([job.output_path or "", self._work_dir(job.id)], tag=f"[EXPORT {job.id}]")
            if job.output_key:
                await self.publisher.delete_artifact(job.output_key)
        if removed:
            logger.info(f"[EXPORT] Swept {len(removed)} expired job(s)")
        return len(removed)

    async def job_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in await self.store.list_jobs():
            counts[job.status.value] += 1
        return counts

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.job_sweep_interval_s)
            try:
                await self.sweep()
            except Exception:
                logger.exception("[EXPORT] Sweep failed")

    # =========================================================================
    # State mutators
    # =========================================================================

    @staticmethod
    def _fail_mutator(message: str, category: str | None = None) -> Callable[[ExportJob], bool]:
        def apply(job: ExportJob) -> bool:
            if not can_transition(job.status, JobStatus.FAILED):
                return False
            job.status = JobStatus.FAILED
            job.error = message
            job.error_category = category
            job.stage = "Failed"
            job.download_url = None
            job.completed_at = _now()
            return True

        return apply

    @staticmethod
    def _progress_mutator(percent: int, stage: str | None) -> Callable[[ExportJob], bool]:
        def apply(job: ExportJob) -> bool:
            if job.status is not JobStatus.PROCESSING:
                return False
            job.progress = max(job.progress, min(100, percent))
            job.stage = stage
            return True

        return apply

    def _work_dir(self, job_id: str) -> str:
        return os.path.join(self.settings.export_temp_dir, job_id)

    # =========================================================================
    # Processing
    # =========================================================================

    async def _consume_progress(self, job_id: str, channel: ProgressChannel, tracker: ProgressTracker) -> None:
        async for event in channel:
            if tracker.apply(event):
                await self.store.update(job_id, self._progress_mutator(tracker.percent, tracker.stage))

    async def process(self, item: QueuedExport) -> None:
        job_id = item.job_id
        tag = f"[EXPORT {job_id}]"
        token = self._tokens.setdefault(job_id, CancellationToken())
        work_dir = self._work_dir(job_id)

        def start(job: ExportJob) -> bool:
            if token.cancelled or not can_transition(job.status, JobStatus.PROCESSING):
                return False
            job.status = JobStatus.PROCESSING
            job.started_at = _now()
            job.stage = Phase.VALIDATE.label
            return True

        job = await self.store.update(job_id, start)
        if job is None or job.status is not JobStatus.PROCESSING:
            logger.info(f"{tag} Not started (status: {job.status.value if job else 'deleted'})")
            self._tokens.pop(job_id, None)
            return

        channel = ProgressChannel()
        consumer = asyncio.create_task(self._consume_progress(job_id, channel, ProgressTracker()))
        warnings: list[str] = []
        try:
            os.makedirs(work_dir, exist_ok=True)
            channel.publish(Phase.VALIDATE, 1.0, "Timeline validated")

            artifact, plan_warnings = await self._run_phases(item, work_dir, channel, token, tag)
            warnings.extend(plan_warnings)

            channel.close()
            await consumer
            remove_paths([work_dir], tag=tag)

            def complete(job: ExportJob) -> bool:
                if not can_transition(job.status, JobStatus.COMPLETED):
                    return False
                job.status = JobStatus.COMPLETED
                job.progress = 100
                job.stage = "Completed"
                job.download_url = artifact.download_url
                job.output_key = artifact.storage_key
                job.output_path = None
                job.warnings.extend(warnings)
                job.completed_at = _now()
                return True

            final = await self.store.update(job_id, complete)
            if final is not None and final.status is JobStatus.COMPLETED:
                logger.info(f"{tag} Completed: {artifact.storage_key}")
            else:
                # Cancelled after the upload finished
                await self.publisher.delete_artifact(artifact.storage_key)
        except JobCancelledError:
            logger.info(f"{tag} Stopped after cancellation")
            await self._fail(job_id, work_dir, token.reason or CANCEL_MESSAGE, None, tag)
        except RenderError as e:
            logger.error(f"{tag} Render failed ({e.category.value}): {e.message}")
            await self._fail(job_id, work_dir, e.message, e.category.value, tag)
        except ExportError as e:
            logger.error(f"{tag} Failed ({e.code}): {e.message}")
            await self._fail(job_id, work_dir, e.message, e.code, tag)
        except Exception as e:
            logger.exception(f"{tag} Unexpected failure: {e}")
            await self._fail(job_id, work_dir, f"{InternalError.message}: {e}", InternalError.code, tag)
        finally:
            channel.close()
            if not consumer.done():
                await consumer
            self._tokens.pop(job_id, None)

    async def _fail(self, job_id: str, work_dir: str, message: str, category: str | None, tag: str) -> None:
        remove_paths([work_dir], tag=tag)
        await self.store.update(job_id, self._fail_mutator(message, category))

    async def _run_phases(
        self,
        item: QueuedExport,
        work_dir: str,
        channel: ProgressChannel,
        token: CancellationToken,
        tag: str,
    ):
        report = item.report
        elements = report.corrected_elements or []
        output_settings = report.settings

        # Download
        async with self._downloader_factory() as downloader:
            resolver = AssetResolver(self.storage, downloader, work_dir)
            assets = await resolver.resolve_all(elements, token, channel)
        channel.publish(Phase.DOWNLOAD, 1.0, "Assets ready")
        token.raise_if_cancelled()

        # Configure
        channel.publish(Phase.CONFIGURE, 0.0, Phase.CONFIGURE.label)
        builder = FilterGraphBuilder(
            output_settings,
            report.tracks,
            self.fonts,
            sample_rate=self.settings.render_audio_sample_rate,
            min_duration_ms=self.settings.min_element_duration_ms,
            audio_probe=self._audio_probe,
        )
        plan = await asyncio.to_thread(builder.build, elements, assets.paths)
        output_path = os.path.join(work_dir, "output.mp4")

        def record_output(job: ExportJob) -> bool:
            job.output_path = output_path
            job.warnings.extend(assets.warnings)
            return True

        await self.store.update(item.job_id, record_output)
        channel.publish(Phase.CONFIGURE, 1.0, "Filter graph ready")
        token.raise_if_cancelled()

        # Render
        await self.invoker.run(plan, output_path, output_settings.quality, channel, token, job_tag=f" {item.job_id}")

        # Verify + publish
        channel.publish(Phase.PUBLISH, 0.0, "Verifying export")
        self.publisher.verify(output_path)
        await self._check_duration(output_path, plan, tag)
        token.raise_if_cancelled()
        artifact = await self.publisher.publish(item.job_id, output_path)
        channel.publish(Phase.PUBLISH, 1.0, "Export uploaded")
        return artifact, plan.warnings

    async def _check_duration(self, output_path: str, plan: RenderPlan, tag: str) -> None:
        try:
            actual_ms = await asyncio.to_thread(self._duration_probe, output_path)
        except RuntimeError as e:
            logger.warning(f"{tag} Could not probe rendered duration: {e}")
            return
        frame_ms = 1000 / plan.fps
        if abs(actual_ms - plan.total_duration_ms) > frame_ms:
            logger.warning(
                f"{tag} Rendered duration {actual_ms}ms differs from timeline {plan.total_duration_ms}ms"
            )
