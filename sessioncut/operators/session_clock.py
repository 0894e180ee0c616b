from __future__ import annotations

import logging
import statistics
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from sessioncut.models.session_models import (
    ClipRecord,
    ClockSyncSample,
    OriginAnnouncement,
)

logger = logging.getLogger(__name__)


def _wall_clock_ms() -> float:
    return time.time() * 1000


def estimate_clock_offset(samples: Iterable[ClockSyncSample]) -> float:
    """Median offset (host minus local, ms) over a batch of sync samples."""
    offsets = [sample.offset_ms for sample in samples]
    if not offsets:
        raise ValueError("At least one clock sync sample is required")
    return statistics.median(offsets)


@dataclass
class ClockRebase:
    """Constant shift moving provisional timestamps onto the session timeline."""

    shift_ms: int
    applied: bool = False

    def apply(self, clips: Iterable[ClipRecord]) -> int:
        """
        Shift every stamped time of ``clips`` once.

        Only valid for timestamps taken against the provisional origin, so
        it runs at the moment the real origin is established.
        Returns the number of clips moved.
        """
        if self.applied:
            return 0
        moved = 0
        for clip in clips:
            clip.global_start_time_ms += self.shift_ms
            if clip.global_end_time_ms is not None:
                clip.global_end_time_ms += self.shift_ms
            moved += 1
        self.applied = True
        return moved


class SessionClock:
    """
    Maps local wall-clock time onto the session's global timeline.

    The host announces the session origin once; every participant converts
    it into its own clock using the offset measured by clock sync. If local
    capture starts before the announcement arrives, the first reading becomes
    a provisional origin and ``establish`` computes the rebase needed to move
    those timestamps onto the real timeline. Rebase listeners run inside
    ``establish``, before any timestamp is taken against the real origin.
    """

    def __init__(self, time_source: Callable[[], float] | None = None):
        self._time_source = time_source or _wall_clock_ms
        self._clock_offset_ms = 0.0
        self._origin_local_ms: float | None = None
        self._provisional = False
        self._established = False
        self.session_id: str | None = None
        self.rebase: ClockRebase | None = None
        self._rebase_listeners: list[Callable[[ClockRebase], object]] = []

    @property
    def is_established(self) -> bool:
        return self._established

    @property
    def is_provisional(self) -> bool:
        return self._provisional

    @property
    def clock_offset_ms(self) -> float:
        return self._clock_offset_ms

    @property
    def global_origin_local_time_ms(self) -> float | None:
        return self._origin_local_ms

    def on_rebase(self, listener: Callable[[ClockRebase], object]) -> None:
        """Call ``listener`` with the rebase when a late origin arrives."""
        self._rebase_listeners.append(listener)

    def set_clock_offset(self, offset_ms: float) -> None:
        if self._established:
            logger.warning(
                "Clock offset updated after origin was established; ignoring %.1fms",
                offset_ms,
            )
            return
        self._clock_offset_ms = offset_ms

    def sync(self, samples: Iterable[ClockSyncSample]) -> float:
        offset = estimate_clock_offset(samples)
        self.set_clock_offset(offset)
        return offset

    def create_origin(self, session_id: str, host_peer_id: str | None = None) -> OriginAnnouncement:
        """Host side: pick time zero now and establish it locally."""
        announcement = OriginAnnouncement(
            session_id=session_id,
            origin_time_ms=self._time_source(),
            host_peer_id=host_peer_id,
        )
        self._clock_offset_ms = 0.0
        self.establish(announcement)
        return announcement

    def establish(self, announcement: OriginAnnouncement) -> bool:
        """
        Record the session origin. Only the first announcement takes effect.

        Returns:
            True if this call established the origin, False if it was ignored.
        """
        if self._established:
            logger.debug(
                "Ignoring repeated origin announcement for session %s",
                announcement.session_id,
            )
            return False

        origin_local = announcement.origin_time_ms - self._clock_offset_ms
        if self._provisional and self._origin_local_ms is not None:
            shift = round(self._origin_local_ms - origin_local)
            self.rebase = ClockRebase(shift_ms=shift)
            logger.info(
                "Origin for session %s arrived after capture started; rebasing by %dms",
                announcement.session_id,
                shift,
            )

        self._origin_local_ms = origin_local
        self._provisional = False
        self._established = True
        self.session_id = announcement.session_id
        if self.rebase is not None:
            for listener in self._rebase_listeners:
                listener(self.rebase)
        return True

    def now(self) -> int:
        """Current global time in ms."""
        local_now = self._time_source()
        if self._origin_local_ms is None:
            self._origin_local_ms = local_now
            self._provisional = True
            logger.warning("No session origin yet; using first capture as provisional time zero")
        return round(local_now - self._origin_local_ms)

    def to_global(self, local_time_ms: float) -> int:
        if self._origin_local_ms is None:
            raise ValueError("Session clock has no origin")
        return round(local_time_ms - self._origin_local_ms)
