import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from sessioncut.models.export_models import (
    CancelExportRequest,
    ExportJobCancelResponse,
    ExportJobCreateResponse,
    ExportJobListResponse,
    ExportJobStatus,
    ExportJobStatusResponse,
    ExportPreset,
    ExportPresetsResponse,
    ExportRequest,
)
from sessioncut.operators.export_operator import (
    ExportJobManager,
    ExportJobNotFoundError,
    ExportJobStateError,
    export_job_to_response,
    get_export_manager,
)
from sessioncut.operators.timeline_segmenter import TimelineError
from sessioncut.render_job.ffmpeg_renderer import (
    NoInputFilesError,
    NoSegmentsError,
    RenderError,
)


router = APIRouter(prefix="/exports", tags=["export"])
logger = logging.getLogger(__name__)


@router.get("/presets", response_model=ExportPresetsResponse)
async def list_presets():
    return ExportPresetsResponse(
        ok=True,
        presets=[ExportPreset.mp4_export(), ExportPreset.webm_export()],
    )


@router.post("", response_model=ExportJobCreateResponse, status_code=202)
async def create_export(
    request: ExportRequest,
    manager: ExportJobManager = Depends(get_export_manager),
):
    try:
        job = manager.create_job(request)
        return ExportJobCreateResponse(ok=True, job=export_job_to_response(job))

    except TimelineError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NoSegmentsError:
        raise HTTPException(
            status_code=400,
            detail="Nothing to export: the recording range is empty.",
        )
    except NoInputFilesError:
        raise HTTPException(
            status_code=400,
            detail="Nothing to export: no clip has a finalized media file.",
        )
    except RenderError as e:
        logger.exception("Failed to create export job")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("", response_model=ExportJobListResponse)
async def list_exports(
    manager: ExportJobManager = Depends(get_export_manager),
    status: ExportJobStatus | None = Query(None, description="Filter by status"),
):
    jobs = manager.list_jobs()
    if status is not None:
        jobs = [job for job in jobs if job.status == status]
    return ExportJobListResponse(
        ok=True,
        jobs=[export_job_to_response(job) for job in jobs],
        total=len(jobs),
    )


@router.get("/{job_id}", response_model=ExportJobStatusResponse)
async def get_export_status(
    job_id: str,
    manager: ExportJobManager = Depends(get_export_manager),
):
    try:
        job = manager.get_job(job_id)
    except ExportJobNotFoundError:
        raise HTTPException(status_code=404, detail="Export job not found")

    return ExportJobStatusResponse(ok=True, job=export_job_to_response(job))


@router.post("/{job_id}/cancel", response_model=ExportJobCancelResponse)
async def cancel_export(
    job_id: str,
    request: CancelExportRequest | None = None,
    manager: ExportJobManager = Depends(get_export_manager),
):
    try:
        job = manager.cancel_job(job_id)
    except ExportJobNotFoundError:
        raise HTTPException(status_code=404, detail="Export job not found")
    except ExportJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if request and request.reason:
        logger.info("Export job %s cancelled: %s", job_id, request.reason)
    return ExportJobCancelResponse(ok=True, job=export_job_to_response(job))
