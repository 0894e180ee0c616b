#!/usr/bin/env python3


import argparse
import logging
import os
import signal
import sys
from pathlib import Path

import requests
from dotenv import load_dotenv

from sessioncut.models.export_models import (
    ExportJobStatus,
    ExportManifest,
    ExportPreset,
    ExportProgress,
)
from sessioncut.operators.export_operator import build_export_plan
from sessioncut.render_job.ffmpeg_renderer import (
    ExportCancelledError,
    ExportFailedError,
    FFmpegRenderer,
    RenderError,
)


logger = logging.getLogger("export-job")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Session export job")
    parser.add_argument(
        "--manifest",
        required=True,
        help="Local path to the export manifest JSON",
    )
    parser.add_argument(
        "--job-id",
        required=True,
        help="Export job ID for status reporting",
    )
    return parser.parse_args(argv)


def load_manifest(manifest_path: str) -> ExportManifest:
    path = Path(manifest_path)
    if not path.exists():
        raise ValueError(f"Manifest file not found: {manifest_path}")

    logger.info("Loading manifest from %s", manifest_path)
    return ExportManifest.model_validate_json(path.read_text(encoding="utf-8"))


def report_status(
    callback_url: str | None,
    job_id: str,
    status: ExportJobStatus,
    progress: float = 0.0,
    error_message: str | None = None,
) -> None:
    if not callback_url:
        logger.info("Status: %s, Progress: %.0f%%", status.value, progress * 100)
        return

    payload = ExportProgress(
        job_id=job_id,
        status=status,
        progress=progress,
        error_message=error_message,
    )
    try:
        response = requests.post(
            callback_url, json=payload.model_dump(mode="json"), timeout=10
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Failed to report status: %s", e)


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    args = parse_args(argv)

    job_id = args.job_id
    callback_url = os.environ.get("CALLBACK_URL")

    try:
        manifest = load_manifest(args.manifest)
        callback_url = manifest.callback_url or callback_url
        report_status(callback_url, job_id, ExportJobStatus.PROCESSING, 0.0)

        plan = build_export_plan(manifest.request)
        preset = ExportPreset.for_profile(manifest.request.profile)
        renderer = FFmpegRenderer(plan, preset, manifest.output_path)

        def _cancel(signum, frame):
            logger.info("Received signal %s; cancelling export", signum)
            renderer.cancel()

        last_reported = 0.0

        def progress_callback(progress: float) -> None:
            nonlocal last_reported
            if progress - last_reported >= 0.05 or progress >= 1.0:
                last_reported = progress
                report_status(callback_url, job_id, ExportJobStatus.PROCESSING, progress)

        logger.info("Processing export job %s: %d segment(s)", job_id, len(plan.segments))
        previous_handlers = {
            sig: signal.signal(sig, _cancel) for sig in (signal.SIGTERM, signal.SIGINT)
        }
        try:
            output_path = renderer.render(progress_callback=progress_callback)
        finally:
            for sig, handler in previous_handlers.items():
                signal.signal(sig, handler)

        logger.info("Export complete: %s", output_path)
        report_status(callback_url, job_id, ExportJobStatus.COMPLETED, 1.0)
        return 0

    except ExportCancelledError:
        logger.info("Export job %s cancelled", job_id)
        report_status(callback_url, job_id, ExportJobStatus.CANCELLED)
        return 130

    except ExportFailedError as e:
        logger.error("Export failed: %s", e.detail())
        report_status(callback_url, job_id, ExportJobStatus.FAILED, error_message=e.detail())
        return 1

    except (RenderError, ValueError) as e:
        logger.error("Export failed: %s", e)
        report_status(callback_url, job_id, ExportJobStatus.FAILED, error_message=str(e))
        return 1

    except Exception as e:
        logger.exception("Unexpected error: %s", e)
        report_status(callback_url, job_id, ExportJobStatus.FAILED, error_message=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
