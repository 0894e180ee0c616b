from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from sessioncut.models.export_models import (
    ExportJobResponse,
    ExportJobStatus,
    ExportPlan,
    ExportPreset,
    ExportRequest,
    ExportResult,
)
from sessioncut.operators.timeline_segmenter import build_segments
from sessioncut.render_job.ffmpeg_renderer import (
    ExportCancelledError,
    ExportFailedError,
    FFmpegRenderer,
    NoInputFilesError,
    NoSegmentsError,
    ProgressCallback,
    RenderError,
)

logger = logging.getLogger(__name__)


EXPORT_OUTPUT_DIR = os.getenv("EXPORT_OUTPUT_DIR", "/tmp/sessioncut/exports")
try:
    EXPORT_JOB_HISTORY = max(0, int(os.getenv("EXPORT_JOB_HISTORY", "100")))
except ValueError:
    EXPORT_JOB_HISTORY = 100

TERMINAL_STATUSES = {
    ExportJobStatus.COMPLETED,
    ExportJobStatus.FAILED,
    ExportJobStatus.CANCELLED,
}


class ExportJobNotFoundError(RenderError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Export job not found: {job_id}")


class ExportJobStateError(RenderError):
    pass


def build_export_plan(request: ExportRequest) -> ExportPlan:
    return build_segments(
        request.clips,
        request.focus_events,
        local_peer_id=request.local_peer_id,
        recording_start_ms=request.recording_start_ms,
        recording_end_ms=request.recording_end_ms,
        peer_names=request.peer_names,
    )


def validate_export_plan(plan: ExportPlan) -> None:
    if not plan.segments:
        raise NoSegmentsError()
    if not plan.input_files:
        raise NoInputFilesError()


def run_export(
    renderer: FFmpegRenderer,
    progress_callback: ProgressCallback | None = None,
) -> ExportResult:
    """Run a renderer to its terminal state and describe the outcome."""
    try:
        output_path = renderer.render(progress_callback=progress_callback)
    except ExportCancelledError:
        logger.info("Export to %s cancelled", renderer.output_path)
        return ExportResult(status=ExportJobStatus.CANCELLED)
    except ExportFailedError as e:
        logger.error("Export failed: %s", e)
        return ExportResult(
            status=ExportJobStatus.FAILED,
            error_message=e.detail(),
            filter_complex=e.filter_complex,
            diagnostics=e.diagnostics,
        )
    except RenderError as e:
        logger.error("Export rejected: %s", e)
        return ExportResult(status=ExportJobStatus.FAILED, error_message=str(e))

    return ExportResult(status=ExportJobStatus.COMPLETED, output_path=str(output_path))


@dataclass
class ExportJob:
    job_id: str
    plan: ExportPlan
    preset: ExportPreset
    renderer: FFmpegRenderer
    status: ExportJobStatus = ExportJobStatus.PENDING
    progress: float = 0.0
    result: ExportResult | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    done: threading.Event = field(default_factory=threading.Event)


class ExportJobManager:
    """Runs export jobs on worker threads and tracks their status."""

    def __init__(
        self,
        output_dir: str | Path | None = None,
        max_finished_jobs: int = EXPORT_JOB_HISTORY,
    ):
        self.output_dir = Path(output_dir or EXPORT_OUTPUT_DIR)
        self.max_finished_jobs = max_finished_jobs
        self._jobs: dict[str, ExportJob] = {}
        self._lock = threading.Lock()

    def create_job(self, request: ExportRequest, start: bool = True) -> ExportJob:
        """
        Plan an export and start it in the background.

        Raises:
            TimelineError: The request contains clips that are still open.
            NoSegmentsError: Nothing to export.
            NoInputFilesError: No clip has a finalized asset.
        """
        plan = build_export_plan(request)
        validate_export_plan(plan)

        job_id = str(uuid4())
        preset = ExportPreset.for_profile(request.profile)
        filename = request.output_filename or f"session-{job_id}"
        renderer = FFmpegRenderer(plan, preset, self.output_dir / Path(filename).name)
        job = ExportJob(job_id=job_id, plan=plan, preset=preset, renderer=renderer)

        with self._lock:
            self._evict_finished_jobs()
            self._jobs[job_id] = job
        logger.info(
            "Created export job %s: %d segment(s), %dms",
            job_id,
            len(plan.segments),
            plan.total_duration_ms,
        )

        if start:
            self.start_job(job_id)
        return job

    def start_job(self, job_id: str) -> ExportJob:
        job = self.get_job(job_id)
        worker = threading.Thread(
            target=self._run_job, args=(job,), name=f"export-{job_id[:8]}", daemon=True
        )
        worker.start()
        return job

    def get_job(self, job_id: str) -> ExportJob:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise ExportJobNotFoundError(job_id)
        return job

    def list_jobs(self) -> list[ExportJob]:
        with self._lock:
            return sorted(self._jobs.values(), key=lambda j: j.created_at)

    def cancel_job(self, job_id: str) -> ExportJob:
        job = self.get_job(job_id)
        if job.status in TERMINAL_STATUSES:
            raise ExportJobStateError(
                f"Export job {job_id} already {job.status.value}"
            )
        job.renderer.cancel()
        logger.info("Cancellation requested for export job %s", job_id)
        return job

    def wait(self, job_id: str, timeout: float | None = None) -> ExportJob:
        job = self.get_job(job_id)
        job.done.wait(timeout)
        return job

    def _evict_finished_jobs(self) -> None:
        # Caller holds self._lock
        finished = sorted(
            (job for job in self._jobs.values() if job.status in TERMINAL_STATUSES),
            key=lambda j: j.completed_at or j.created_at,
        )
        excess = len(finished) - self.max_finished_jobs
        for job in finished[:max(0, excess)]:
            del self._jobs[job.job_id]
            logger.debug("Evicted finished export job %s", job.job_id)

    def _run_job(self, job: ExportJob) -> None:
        job.status = ExportJobStatus.PROCESSING

        def _on_progress(value: float) -> None:
            job.progress = value

        try:
            result = run_export(job.renderer, progress_callback=_on_progress)
        except Exception as e:
            logger.exception("Unexpected error in export job %s", job.job_id)
            result = ExportResult(status=ExportJobStatus.FAILED, error_message=str(e))

        job.result = result
        if result.status == ExportJobStatus.COMPLETED:
            job.progress = 1.0
        job.status = result.status
        job.completed_at = datetime.now(timezone.utc)
        job.done.set()
        logger.info("Export job %s finished: %s", job.job_id, result.status.value)


def export_job_to_response(job: ExportJob) -> ExportJobResponse:
    return ExportJobResponse(
        job_id=job.job_id,
        status=job.status,
        progress=job.progress,
        segment_count=len(job.plan.segments),
        total_duration_ms=job.plan.total_duration_ms,
        output_path=str(job.renderer.output_path),
        result=job.result,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


_export_manager: ExportJobManager | None = None


def get_export_manager() -> ExportJobManager:
    global _export_manager
    if _export_manager is None:
        _export_manager = ExportJobManager()
    return _export_manager
