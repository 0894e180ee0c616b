"""
Turns independently recorded clips and focus changes into export segments.

The session timeline is cut at every clip start/end and every focus change.
Adjacent windows that show the same participant with the same set of clips
are merged, so each resulting segment is a maximal window in which the
composition does not change. Segments are contiguous and exactly cover the
recording range.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sessioncut.models.export_models import ExportPlan, Segment, SourceRef
from sessioncut.models.session_models import ClipRecord, FocusEvent, SourceType
from sessioncut.operators.focus_log import FocusLog
from sessioncut.operators.layout_selector import select_layout

logger = logging.getLogger(__name__)


class TimelineError(ValueError):
    pass


class OpenClipError(TimelineError):
    def __init__(self, clip_id: str):
        self.clip_id = clip_id
        super().__init__(f"Clip {clip_id} has no end time; stop it before exporting")


@dataclass
class _Window:
    start_ms: int
    end_ms: int
    peer_id: str
    clips: tuple[ClipRecord, ...]

    @property
    def key(self) -> tuple[str, frozenset[str]]:
        return self.peer_id, frozenset(clip.id for clip in self.clips)


def _validate(clips: Iterable[ClipRecord]) -> list[ClipRecord]:
    closed: list[ClipRecord] = []
    for clip in clips:
        if clip.global_end_time_ms is None:
            raise OpenClipError(clip.id)
        closed.append(clip)
    return sorted(closed, key=lambda c: (c.global_start_time_ms, c.id))


def _recording_bounds(
    clips: list[ClipRecord],
    recording_start_ms: int | None,
    recording_end_ms: int | None,
) -> tuple[int, int] | None:
    start = recording_start_ms
    end = recording_end_ms
    if start is None:
        if not clips:
            return None
        start = min(clip.global_start_time_ms for clip in clips)
    if end is None:
        if not clips:
            return None
        end = max(clip.global_end_time_ms for clip in clips)  # type: ignore[type-var]
    if end <= start:
        return None
    return start, end


def _boundaries(
    start_ms: int, end_ms: int, clips: list[ClipRecord], focus_log: FocusLog
) -> list[int]:
    points = {start_ms, end_ms}
    for clip in clips:
        points.add(clip.global_start_time_ms)
        points.add(clip.global_end_time_ms)  # type: ignore[arg-type]
    points.update(focus_log.change_times())
    return sorted(p for p in points if start_ms <= p <= end_ms)


def _windows(
    boundaries: list[int], clips: list[ClipRecord], focus_log: FocusLog
) -> list[_Window]:
    merged: list[_Window] = []
    for left, right in zip(boundaries, boundaries[1:]):
        peer_id = focus_log.focused_at(left)
        covering = tuple(
            clip
            for clip in clips
            if clip.owner_id == peer_id
            and clip.global_start_time_ms <= left
            and clip.global_end_time_ms >= right  # type: ignore[operator]
        )
        window = _Window(left, right, peer_id, covering)
        if merged and merged[-1].key == window.key:
            merged[-1].end_ms = right
        else:
            merged.append(window)
    return merged


def _pick_clip(
    window: _Window, source_type: SourceType
) -> ClipRecord | None:
    candidates = [clip for clip in window.clips if clip.source_type == source_type]
    if not candidates:
        return None
    if len(candidates) > 1:
        logger.warning(
            "Overlapping %s clips for %s at %d-%dms: %s; using the latest",
            source_type.value,
            window.peer_id,
            window.start_ms,
            window.end_ms,
            ", ".join(clip.id for clip in candidates),
        )
    return max(candidates, key=lambda c: (c.global_start_time_ms, c.id))


class _InputRegistry:
    def __init__(self):
        self.files: list[str] = []
        self._index: dict[str, int] = {}

    def ref(self, clip: ClipRecord | None, window: _Window) -> SourceRef | None:
        if clip is None or not clip.asset_path:
            return None
        index = self._index.get(clip.asset_path)
        if index is None:
            index = len(self.files)
            self.files.append(clip.asset_path)
            self._index[clip.asset_path] = index
        return SourceRef(
            clip_id=clip.id,
            source_index=index,
            trim_start_ms=window.start_ms - clip.global_start_time_ms,
            trim_end_ms=window.end_ms - clip.global_start_time_ms,
        )


def build_segments(
    clips: Iterable[ClipRecord],
    focus_events: Iterable[FocusEvent],
    local_peer_id: str,
    recording_start_ms: int | None = None,
    recording_end_ms: int | None = None,
    peer_names: dict[str, str] | None = None,
) -> ExportPlan:
    """
    Build the export plan for a session.

    Args:
        clips: Clips of every participant. All must be stopped.
        focus_events: Focus log entries, in any order.
        local_peer_id: Participant that ``None`` focus refers to and that is
            focused before the first event.
        recording_start_ms: Start of the exported range (default: first clip start).
        recording_end_ms: End of the exported range (default: last clip end).
        peer_names: Optional display names for segment labels.

    Raises:
        OpenClipError: A clip has not been stopped yet.
    """
    all_clips = _validate(clips)
    focus_log = FocusLog(local_peer_id, focus_events)
    names = peer_names or {}

    bounds = _recording_bounds(all_clips, recording_start_ms, recording_end_ms)
    if bounds is None:
        return ExportPlan()
    start_ms, end_ms = bounds

    usable = []
    for clip in all_clips:
        if clip.global_end_time_ms <= clip.global_start_time_ms:  # type: ignore[operator]
            continue
        if not clip.asset_path:
            logger.warning("Clip %s has no finalized asset; treating it as missing", clip.id)
            continue
        usable.append(clip)

    windows = _windows(_boundaries(start_ms, end_ms, usable, focus_log), usable, focus_log)

    registry = _InputRegistry()
    segments: list[Segment] = []
    for idx, window in enumerate(windows):
        camera = registry.ref(_pick_clip(window, SourceType.CAMERA), window)
        screen = registry.ref(_pick_clip(window, SourceType.SCREEN), window)
        audio = registry.ref(_pick_clip(window, SourceType.AUDIO_ONLY), window)
        segments.append(
            Segment(
                id=f"seg-{idx}",
                start_time_ms=window.start_ms,
                end_time_ms=window.end_ms,
                focused_peer_id=window.peer_id,
                peer_name=names.get(window.peer_id),
                layout=select_layout(camera, screen),
                camera=camera,
                screen=screen,
                audio=audio,
            )
        )

    plan = ExportPlan(segments=segments, input_files=registry.files)
    logger.info(
        "Built %d segment(s) over %dms from %d clip(s)",
        len(plan.segments),
        plan.total_duration_ms,
        len(usable),
    )
    return plan
