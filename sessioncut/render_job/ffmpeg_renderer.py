from __future__ import annotations

import json
import logging
import os
import queue
import re
import subprocess
import threading
from collections import deque
from pathlib import Path
from typing import Callable

from sessioncut.models.export_models import ExportPlan, ExportPreset, ProbeInfo
from sessioncut.utils.ffmpeg_builder import FFmpegCommand, build_export_command

logger = logging.getLogger("ffmpeg-renderer")


# Stand-in for inputs whose container reports no duration (typical for
# recorder-produced WebM). Only used for bookkeeping, never for trimming.
DEFAULT_PROBE_DURATION_MS = 24 * 60 * 60 * 1000
PROBE_PROGRESS_SHARE = 0.1
STDERR_TAIL_LINES = 400

ProgressCallback = Callable[[float], None]


class RenderError(Exception):
    pass


class NoSegmentsError(RenderError):
    def __init__(self):
        super().__init__("Export plan has no segments")


class NoInputFilesError(RenderError):
    def __init__(self):
        super().__init__("Export plan references no input files")


class ExportFailedError(RenderError):
    def __init__(
        self,
        message: str,
        filter_complex: str | None = None,
        diagnostics: str | None = None,
        returncode: int | None = None,
    ):
        self.filter_complex = filter_complex
        self.diagnostics = diagnostics
        self.returncode = returncode
        super().__init__(message)

    def detail(self) -> str:
        parts = [str(self)]
        if self.filter_complex:
            parts.append(f"Filter:\n{self.filter_complex}")
        if self.diagnostics:
            parts.append(f"Stderr:\n{self.diagnostics}")
        return "\n\n".join(parts)


class ExportCancelledError(RenderError):
    def __init__(self):
        super().__init__("Export cancelled")


class _ProgressDispatcher:
    """Delivers monotonic progress values to a callback from its own thread."""

    def __init__(self, callback: ProgressCallback | None):
        self._callback = callback
        self._queue: queue.Queue[float | None] = queue.Queue()
        self.last = 0.0
        self._thread: threading.Thread | None = None
        if callback is not None:
            self._thread = threading.Thread(
                target=self._run, name="export-progress", daemon=True
            )
            self._thread.start()

    def report(self, value: float) -> None:
        value = min(1.0, max(0.0, value))
        if value <= self.last:
            return
        self.last = value
        if self._thread is not None:
            self._queue.put(value)

    def close(self) -> None:
        if self._thread is None:
            return
        self._queue.put(None)
        self._thread.join(timeout=5)

    def _run(self) -> None:
        while True:
            value = self._queue.get()
            if value is None:
                return
            try:
                self._callback(value)  # type: ignore[misc]
            except Exception:
                logger.exception("Progress callback failed")


def _parse_clock(value: str) -> float | None:
    match = re.match(r"(\d+):(\d+):(\d+(?:\.\d+)?)", value.strip())
    if not match:
        return None
    h, m, s = match.groups()
    return int(h) * 3600 + int(m) * 60 + float(s)


class FFmpegRenderer:
    """
    Runs one export: probes the inputs, compiles the filter graph and drives a
    single ffmpeg process to completion, failure or cancellation.
    """

    def __init__(self, plan: ExportPlan, preset: ExportPreset, output_path: str | Path):
        self.plan = plan
        self.preset = preset
        self.output_path = self._resolve_output_path(Path(output_path))

        self._ffmpeg_bin = os.environ.get("FFMPEG_BIN", "ffmpeg")
        self._ffprobe_bin = os.environ.get("FFPROBE_BIN", "ffprobe")
        self.probes: dict[int, ProbeInfo] = {}
        self.filter_complex: str | None = None
        self._process: subprocess.Popen | None = None
        self._cancelled = threading.Event()
        self._lock = threading.Lock()

    def _resolve_output_path(self, path: Path) -> Path:
        extension = self.preset.file_extension
        if path.suffix.lower() != extension:
            path = path.with_suffix(extension)
        return path

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> bool:
        """Kill the running encoder. Returns False if nothing was running."""
        self._cancelled.set()
        with self._lock:
            process = self._process
        if process is None or process.poll() is not None:
            return False
        try:
            process.kill()
        except OSError as exc:
            logger.warning("Failed to kill ffmpeg: %s", exc)
            return False
        logger.info("Export cancelled; ffmpeg killed")
        return True

    def render(self, progress_callback: ProgressCallback | None = None) -> Path:
        """
        Produce the output file.

        Raises:
            NoSegmentsError: The plan is empty.
            NoInputFilesError: The plan references no media.
            ExportCancelledError: ``cancel()`` was called.
            ExportFailedError: ffmpeg exited unsuccessfully.
        """
        if not self.plan.segments:
            raise NoSegmentsError()
        if not self.plan.input_files:
            raise NoInputFilesError()

        logger.info(
            "Starting export of %d segment(s), %d input(s) to %s",
            len(self.plan.segments),
            len(self.plan.input_files),
            self.output_path,
        )
        dispatcher = _ProgressDispatcher(progress_callback)
        try:
            self.probes = self.probe_inputs(dispatcher)
            self._check_cancelled()

            command = build_export_command(
                self.plan, self.preset, str(self.output_path), self.probes
            )
            self.filter_complex = command.filter_complex
            dispatcher.report(PROBE_PROGRESS_SHARE)

            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            self._execute_ffmpeg(command, dispatcher)

            output_duration = self._probe_output_duration(self.output_path)
            if output_duration is not None:
                logger.info("Output duration: %.3fs", output_duration)
                if output_duration <= 0.05:
                    raise ExportFailedError(
                        "FFmpeg produced zero-duration output",
                        filter_complex=self.filter_complex,
                    )

            dispatcher.report(1.0)
        finally:
            dispatcher.close()

        logger.info("Export complete: %s", self.output_path)
        return self.output_path

    def _check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise ExportCancelledError()

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    def probe_inputs(self, dispatcher: _ProgressDispatcher | None = None) -> dict[int, ProbeInfo]:
        probes: dict[int, ProbeInfo] = {}
        total = len(self.plan.input_files)
        for idx, path in enumerate(self.plan.input_files):
            self._check_cancelled()
            probes[idx] = self._probe_input(path)
            if dispatcher is not None:
                dispatcher.report(PROBE_PROGRESS_SHARE * (idx + 1) / total)
        return probes

    def _probe_input(self, path: str) -> ProbeInfo:
        cmd = [
            self._ffprobe_bin,
            "-v",
            "error",
            "-show_entries",
            "stream=codec_type:format=duration",
            "-of",
            "json",
            path,
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
            data = json.loads(result.stdout)
        except (FileNotFoundError, subprocess.CalledProcessError, json.JSONDecodeError):
            return self._probe_with_ffmpeg(path)

        stream_types = {stream.get("codec_type") for stream in data.get("streams", [])}
        duration_ms = None
        raw_duration = (data.get("format") or {}).get("duration")
        try:
            if raw_duration not in (None, "N/A"):
                duration_ms = round(float(raw_duration) * 1000)
        except (TypeError, ValueError):
            duration_ms = None

        return ProbeInfo(
            has_audio="audio" in stream_types,
            has_video="video" in stream_types,
            duration_ms=duration_ms or DEFAULT_PROBE_DURATION_MS,
        )

    def _probe_with_ffmpeg(self, path: str) -> ProbeInfo:
        cmd = [self._ffmpeg_bin, "-hide_banner", "-i", path]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as exc:
            logger.warning("Could not probe %s: %s; assuming video without audio", path, exc)
            return ProbeInfo(has_audio=False, has_video=True, duration_ms=DEFAULT_PROBE_DURATION_MS)

        output = result.stderr or ""
        has_video = "Video:" in output
        has_audio = "Audio:" in output
        if not has_video and not has_audio:
            logger.warning("Could not probe %s; assuming video without audio", path)
            return ProbeInfo(has_audio=False, has_video=True, duration_ms=DEFAULT_PROBE_DURATION_MS)

        duration_ms = None
        match = re.search(r"Duration: (\d+:\d+:\d+(?:\.\d+)?)", output)
        if match:
            seconds = _parse_clock(match.group(1))
            if seconds:
                duration_ms = round(seconds * 1000)

        return ProbeInfo(
            has_audio=has_audio,
            has_video=has_video,
            duration_ms=duration_ms or DEFAULT_PROBE_DURATION_MS,
        )

    def _probe_output_duration(self, output_path: Path) -> float | None:
        cmd = [
            self._ffprobe_bin,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(output_path),
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
            value = result.stdout.strip()
            if not value or value == "N/A":
                return None
            return float(value)
        except (FileNotFoundError, subprocess.CalledProcessError, ValueError) as exc:
            logger.warning("Failed to probe output duration: %s", exc)
            return None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute_ffmpeg(self, command: FFmpegCommand, dispatcher: _ProgressDispatcher) -> None:
        args = command.to_args(self._ffmpeg_bin)
        cmd = args[:-1] + ["-progress", "pipe:1", "-nostats", args[-1]]

        logger.info("Executing FFmpeg: %s", self._format_command(cmd))
        logger.debug("Filter complex: %s", command.filter_complex)

        timeout_seconds_raw = os.environ.get("FFMPEG_TIMEOUT_SECONDS", "7200")
        try:
            timeout_seconds = max(60, int(timeout_seconds_raw))
        except ValueError:
            timeout_seconds = 7200

        total_seconds = self.plan.total_duration_ms / 1000
        encode_span = 1.0 - PROBE_PROGRESS_SHARE

        self._check_cancelled()
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise ExportFailedError(
                f"Failed to execute FFmpeg: {exc}", filter_complex=command.filter_complex
            ) from exc

        with self._lock:
            self._process = process
        if self._cancelled.is_set():
            process.kill()

        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

        def _drain_stderr() -> None:
            if process.stderr is None:
                return
            for line in process.stderr:
                line = line.rstrip()
                if line:
                    stderr_tail.append(line)

        stderr_thread = threading.Thread(target=_drain_stderr, name="ffmpeg-stderr", daemon=True)
        stderr_thread.start()

        timed_out = False

        def _kill_process_on_timeout() -> None:
            nonlocal timed_out
            timed_out = True
            process.kill()

        timer = threading.Timer(timeout_seconds, _kill_process_on_timeout)
        timer.daemon = True
        timer.start()

        try:
            if process.stdout is not None:
                for line in process.stdout:
                    seconds = self._parse_progress_line(line.strip())
                    if seconds is not None and total_seconds > 0:
                        fraction = min(1.0, seconds / total_seconds)
                        dispatcher.report(PROBE_PROGRESS_SHARE + encode_span * fraction)
            process.wait()
        finally:
            timer.cancel()
            stderr_thread.join(timeout=5)
            with self._lock:
                self._process = None

        diagnostics = "\n".join(stderr_tail)
        if self._cancelled.is_set():
            raise ExportCancelledError()

        if timed_out:
            raise ExportFailedError(
                f"FFmpeg timed out after {timeout_seconds}s",
                filter_complex=command.filter_complex,
                diagnostics=diagnostics,
            )

        if process.returncode != 0:
            raise ExportFailedError(
                f"FFmpeg failed (code {process.returncode})",
                filter_complex=command.filter_complex,
                diagnostics=diagnostics,
                returncode=process.returncode,
            )
        if stderr_tail:
            logger.info("FFmpeg output (tail): %s", "\n".join(list(stderr_tail)[-20:]))

    @staticmethod
    def _parse_progress_line(line: str) -> float | None:
        """Encoded position in seconds from one ``-progress`` line."""
        key, sep, value = line.partition("=")
        if not sep:
            return None
        try:
            # out_time_ms is reported in microseconds as well.
            if key in ("out_time_us", "out_time_ms"):
                return int(value) / 1_000_000
            if key == "out_time":
                return _parse_clock(value)
        except ValueError:
            return None
        return None

    def _format_command(self, cmd: list[str]) -> str:
        text = " ".join(cmd)
        if len(text) > 4000:
            return f"{text[:4000]}... [truncated]"
        return text
