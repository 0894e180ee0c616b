"""
Pydantic models for live session recording.

This module defines the schemas shared between participants:
- Clock origin announcements and clock-sync samples
- Per-source clip records
- Focus change events
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


# =============================================================================
# ENUMS
# =============================================================================


class SourceType(str, Enum):
    """Kind of capture a clip was recorded from."""

    CAMERA = "camera"  # Camera video with microphone audio
    AUDIO_ONLY = "audio-only"  # Microphone while the camera is off
    SCREEN = "screen"  # Shared screen, optionally with system audio


class ClipStatus(str, Enum):
    """Lifecycle state of a locally recorded clip."""

    RECORDING = "recording"  # Capture running, chunks being written
    STOPPING = "stopping"  # End time stamped, draining pending writes
    FINALIZED = "finalized"  # Asset file assembled (or known to be empty)


# =============================================================================
# CLOCK
# =============================================================================


class OriginAnnouncement(BaseModel):
    """Session time zero, broadcast once by the host."""

    session_id: str
    origin_time_ms: float = Field(description="Origin on the host's wall clock, in ms")
    host_peer_id: str | None = None


class ClockSyncSample(BaseModel):
    """One ping/pong exchange with the host, all timestamps in ms."""

    client_send_ms: float
    server_receive_ms: float
    server_send_ms: float
    client_receive_ms: float

    @property
    def offset_ms(self) -> float:
        """Host clock minus local clock, assuming symmetric latency."""
        return (
            (self.server_receive_ms - self.client_send_ms)
            + (self.server_send_ms - self.client_receive_ms)
        ) / 2

    @property
    def round_trip_ms(self) -> float:
        return (self.client_receive_ms - self.client_send_ms) - (
            self.server_send_ms - self.server_receive_ms
        )


# =============================================================================
# CLIPS AND FOCUS
# =============================================================================


class ClipRecord(BaseModel):
    """
    One continuous capture of a single source by a single participant.

    Times are on the session's global timeline. ``global_end_time_ms`` stays
    ``None`` until capture stops and is set exactly once. ``asset_path`` points
    at the finalized media file and is ``None`` when nothing was captured.
    """

    id: str
    owner_id: str
    source_type: SourceType
    global_start_time_ms: int
    global_end_time_ms: int | None = None
    chunk_count: int = Field(default=0, ge=0)
    storage_handle: str | None = Field(
        default=None, description="Key of the clip's chunks in the chunk store"
    )
    asset_path: str | None = Field(
        default=None, description="Finalized media file for this clip"
    )
    status: ClipStatus = ClipStatus.RECORDING

    @property
    def is_open(self) -> bool:
        return self.global_end_time_ms is None

    @property
    def duration_ms(self) -> int | None:
        if self.global_end_time_ms is None:
            return None
        return self.global_end_time_ms - self.global_start_time_ms


class FocusEvent(BaseModel):
    """Focus moved to ``focused_peer_id`` (``None`` means the local participant)."""

    global_time_ms: int
    focused_peer_id: str | None = None
