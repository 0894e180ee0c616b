from __future__ import annotations

import bisect
import logging
from typing import Iterable

from sessioncut.models.session_models import FocusEvent

logger = logging.getLogger(__name__)


class FocusLog:
    """Append-only, time-ordered record of who was in focus."""

    def __init__(self, local_peer_id: str, events: Iterable[FocusEvent] | None = None):
        self.local_peer_id = local_peer_id
        self._events: list[FocusEvent] = []
        self._times: list[int] = []
        for event in events or []:
            self.append(event)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(self._events)

    @property
    def events(self) -> list[FocusEvent]:
        return list(self._events)

    def append(self, event: FocusEvent) -> bool:
        """
        Insert an event in time order.

        Events received out of order are placed by timestamp, after any
        existing events at the same instant. An event repeating the latest
        one at its instant is dropped.

        Returns:
            True if the log changed.
        """
        lo = bisect.bisect_left(self._times, event.global_time_ms)
        hi = bisect.bisect_right(self._times, event.global_time_ms)
        if hi > lo and self._events[hi - 1].focused_peer_id == event.focused_peer_id:
            return False
        self._times.insert(hi, event.global_time_ms)
        self._events.insert(hi, event)
        return True

    def resolve_peer(self, peer_id: str | None) -> str:
        return peer_id if peer_id is not None else self.local_peer_id

    def focused_at(self, time_ms: int) -> str:
        """Participant in focus at ``time_ms``; the local participant before any event."""
        idx = bisect.bisect_right(self._times, time_ms)
        if idx == 0:
            return self.local_peer_id
        return self.resolve_peer(self._events[idx - 1].focused_peer_id)

    def change_times(self) -> list[int]:
        return sorted(set(self._times))
