from pathlib import Path

import pytest

from sessioncut.models.export_models import (
    ExportJobStatus,
    ExportPlan,
    ExportProfile,
    ExportRequest,
)
from sessioncut.models.session_models import FocusEvent, SourceType
from sessioncut.operators.export_operator import (
    ExportJobManager,
    ExportJobNotFoundError,
    ExportJobStateError,
    build_export_plan,
    export_job_to_response,
    run_export,
)
from sessioncut.operators.timeline_segmenter import TimelineError
from sessioncut.render_job.ffmpeg_renderer import (
    ExportCancelledError,
    ExportFailedError,
    FFmpegRenderer,
    NoInputFilesError,
    NoSegmentsError,
)


class StubRenderer:
    def __init__(self, outcome=None, output_path="/exports/out.mp4"):
        self.outcome = outcome
        self.output_path = Path(output_path)

    def render(self, progress_callback=None):
        if self.outcome is not None:
            raise self.outcome
        if progress_callback:
            progress_callback(0.5)
        return self.output_path


@pytest.fixture
def request_payload(make_clip) -> ExportRequest:
    return ExportRequest(
        clips=[
            make_clip("a-cam", "alice", SourceType.CAMERA, 0, 3_000),
            make_clip("b-screen", "bob", SourceType.SCREEN, 3_000, 5_000),
        ],
        focus_events=[FocusEvent(global_time_ms=3_000, focused_peer_id="bob")],
        local_peer_id="alice",
        output_filename="standup",
    )


class TestRunExport:
    def test_completed(self):
        result = run_export(StubRenderer())

        assert result.status == ExportJobStatus.COMPLETED
        assert result.output_path == "/exports/out.mp4"

    def test_failed_keeps_graph_and_diagnostics(self):
        error = ExportFailedError(
            "FFmpeg failed (code 1)",
            filter_complex="[0:v]trim=start=0.000[v0]",
            diagnostics="Invalid argument",
        )

        result = run_export(StubRenderer(error))

        assert result.status == ExportJobStatus.FAILED
        assert result.filter_complex == "[0:v]trim=start=0.000[v0]"
        assert result.diagnostics == "Invalid argument"
        assert "Invalid argument" in result.error_message

    def test_cancelled_is_not_failure(self):
        result = run_export(StubRenderer(ExportCancelledError()))

        assert result.status == ExportJobStatus.CANCELLED
        assert result.error_message is None

    def test_rejected_plan(self):
        result = run_export(StubRenderer(NoSegmentsError()))

        assert result.status == ExportJobStatus.FAILED
        assert result.error_message == "Export plan has no segments"


class TestBuildExportPlan:
    def test_uses_request_fields(self, request_payload):
        plan = build_export_plan(request_payload)

        assert [s.focused_peer_id for s in plan.segments] == ["alice", "bob"]
        assert plan.total_duration_ms == 5_000


class TestExportJobManager:
    def test_job_runs_to_completion(self, request_payload, tmp_path, monkeypatch):
        def fake_render(self, progress_callback=None):
            if progress_callback:
                progress_callback(0.4)
            return self.output_path

        monkeypatch.setattr(FFmpegRenderer, "render", fake_render)
        manager = ExportJobManager(output_dir=tmp_path)

        job = manager.create_job(request_payload)
        manager.wait(job.job_id, timeout=5)

        assert job.status == ExportJobStatus.COMPLETED
        assert job.progress == 1.0
        assert job.result.output_path == str(tmp_path / "standup.mp4")
        assert job.completed_at is not None

    def test_webm_profile_sets_extension(self, request_payload, tmp_path):
        request_payload.profile = ExportProfile.WEBM
        manager = ExportJobManager(output_dir=tmp_path)

        job = manager.create_job(request_payload, start=False)

        assert job.status == ExportJobStatus.PENDING
        assert job.renderer.output_path == tmp_path / "standup.webm"
        assert job.preset.video.codec == "libvpx-vp9"

    def test_filename_cannot_escape_output_dir(self, request_payload, tmp_path):
        request_payload.output_filename = "../../etc/evil"
        manager = ExportJobManager(output_dir=tmp_path)

        job = manager.create_job(request_payload, start=False)

        assert job.renderer.output_path.parent == tmp_path

    def test_open_clip_rejected(self, make_clip, tmp_path):
        request = ExportRequest(
            clips=[make_clip("a-cam", "alice", SourceType.CAMERA, 0, None)],
            local_peer_id="alice",
        )

        with pytest.raises(TimelineError):
            ExportJobManager(output_dir=tmp_path).create_job(request, start=False)

    def test_nothing_to_export(self, tmp_path):
        request = ExportRequest(clips=[], local_peer_id="alice")

        with pytest.raises(NoSegmentsError):
            ExportJobManager(output_dir=tmp_path).create_job(request, start=False)

    def test_no_finalized_media(self, make_clip, tmp_path):
        request = ExportRequest(
            clips=[make_clip("a-cam", "alice", SourceType.CAMERA, 0, 1_000, asset_path=None)],
            local_peer_id="alice",
        )

        with pytest.raises(NoInputFilesError):
            ExportJobManager(output_dir=tmp_path).create_job(request, start=False)

    def test_unknown_job(self, tmp_path):
        with pytest.raises(ExportJobNotFoundError):
            ExportJobManager(output_dir=tmp_path).get_job("missing")

    def test_cancel_pending_job(self, request_payload, tmp_path):
        manager = ExportJobManager(output_dir=tmp_path)
        job = manager.create_job(request_payload, start=False)

        manager.cancel_job(job.job_id)
        manager.start_job(job.job_id)
        manager.wait(job.job_id, timeout=5)

        assert job.status == ExportJobStatus.CANCELLED

    def test_cancel_finished_job_rejected(self, request_payload, tmp_path):
        manager = ExportJobManager(output_dir=tmp_path)
        job = manager.create_job(request_payload, start=False)
        job.status = ExportJobStatus.COMPLETED

        with pytest.raises(ExportJobStateError):
            manager.cancel_job(job.job_id)

    def test_response_summarises_plan(self, request_payload, tmp_path):
        manager = ExportJobManager(output_dir=tmp_path)
        job = manager.create_job(request_payload, start=False)

        response = export_job_to_response(job)

        assert response.job_id == job.job_id
        assert response.status == ExportJobStatus.PENDING
        assert response.segment_count == 2
        assert response.total_duration_ms == 5_000
        assert response.progress == 0.0

    def test_list_jobs_in_creation_order(self, request_payload, tmp_path):
        manager = ExportJobManager(output_dir=tmp_path)
        first = manager.create_job(request_payload, start=False)
        second = manager.create_job(request_payload, start=False)

        assert [job.job_id for job in manager.list_jobs()] == [first.job_id, second.job_id]

    def test_oldest_finished_jobs_evicted(self, request_payload, tmp_path):
        manager = ExportJobManager(output_dir=tmp_path, max_finished_jobs=1)
        first = manager.create_job(request_payload, start=False)
        second = manager.create_job(request_payload, start=False)
        first.status = ExportJobStatus.COMPLETED
        second.status = ExportJobStatus.FAILED
        running = manager.create_job(request_payload, start=False)

        assert [job.job_id for job in manager.list_jobs()] == [second.job_id, running.job_id]
        with pytest.raises(ExportJobNotFoundError):
            manager.get_job(first.job_id)

    def test_unfinished_jobs_never_evicted(self, request_payload, tmp_path):
        manager = ExportJobManager(output_dir=tmp_path, max_finished_jobs=0)
        jobs = [manager.create_job(request_payload, start=False) for _ in range(3)]

        assert len(manager.list_jobs()) == len(jobs)


def test_empty_plan_model():
    assert ExportPlan().total_duration_ms == 0
