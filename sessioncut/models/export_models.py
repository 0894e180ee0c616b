"""
Pydantic models for composite export.

This module defines schemas for:
- Derived timeline segments and export plans
- Export presets (container profile, codecs, compositing constants)
- Export job requests, status tracking and results
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from sessioncut.models.session_models import ClipRecord, FocusEvent


# =============================================================================
# ENUMS
# =============================================================================


class ExportLayout(str, Enum):
    """Composition used for a segment."""

    SCREEN_PIP = "screen-pip"  # Screen full frame, camera in a corner
    CAMERA_ONLY = "camera-only"
    SCREEN_ONLY = "screen-only"
    BLANK = "blank"  # Background colour and silence


class ExportProfile(str, Enum):
    """Output container profile."""

    MP4 = "mp4"  # H.264 + AAC
    WEBM = "webm"  # VP9 + Opus


class ExportJobStatus(str, Enum):
    """Status of an export job."""

    PENDING = "pending"  # Job created, worker not started
    PROCESSING = "processing"  # Probing inputs or encoding
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"  # Cancelled by the caller, not a failure


# =============================================================================
# SEGMENTS AND PLANS
# =============================================================================


class SourceRef(BaseModel):
    """A window of one clip, expressed relative to the clip's own start."""

    clip_id: str
    source_index: int = Field(ge=0, description="Index into ExportPlan.input_files")
    trim_start_ms: int = Field(ge=0)
    trim_end_ms: int = Field(ge=0)

    @property
    def duration_ms(self) -> int:
        return self.trim_end_ms - self.trim_start_ms


class Segment(BaseModel):
    """Maximal time window in which the composition does not change."""

    id: str
    start_time_ms: int
    end_time_ms: int
    focused_peer_id: str
    peer_name: str | None = None
    layout: ExportLayout
    camera: SourceRef | None = None
    screen: SourceRef | None = None
    audio: SourceRef | None = Field(
        default=None, description="Audio-only clip covering the segment, if any"
    )

    @property
    def duration_ms(self) -> int:
        return self.end_time_ms - self.start_time_ms


class ExportPlan(BaseModel):
    """Ordered segments plus the distinct input files they reference."""

    segments: list[Segment] = Field(default_factory=list)
    input_files: list[str] = Field(default_factory=list)

    @property
    def total_duration_ms(self) -> int:
        return sum(segment.duration_ms for segment in self.segments)


class ProbeInfo(BaseModel):
    """What ffprobe reported for one input file."""

    has_audio: bool = False
    has_video: bool = True
    duration_ms: int | None = None


# =============================================================================
# EXPORT PRESETS
# =============================================================================


class VideoSettings(BaseModel):
    """Video encoding settings."""

    codec: str = Field(default="libx264", description="ffmpeg video encoder")
    bitrate: str = Field(default="6M", description="Target bitrate e.g. '6M'")
    pixel_format: str = Field(default="yuv420p", description="Pixel format")


class AudioSettings(BaseModel):
    """Audio encoding settings."""

    codec: str = Field(default="aac", description="ffmpeg audio encoder")
    bitrate: str = Field(default="128k", description="Audio bitrate")
    sample_rate: int = Field(default=48000, description="Sample rate in Hz")
    channels: int = Field(default=2, description="Number of audio channels")


class CompositeSettings(BaseModel):
    """Fixed compositing geometry and timing."""

    width: int = Field(default=1920, gt=0)
    height: int = Field(default=1080, gt=0)
    framerate: int = Field(default=30, gt=0)
    pip_size: int = Field(default=160, gt=0, description="Side of the square PiP")
    pip_padding: int = Field(
        default=20, ge=0, description="Distance from the bottom-right corner"
    )
    pip_corner_radius: int = Field(default=32, ge=0)
    pip_corner_exponent: int = Field(
        default=4, gt=0, description="Superellipse exponent for rounded corners"
    )
    transition_ms: int = Field(default=300, ge=0, description="Cross-fade length")
    background_color: str = Field(default="black")

    @property
    def pip_x(self) -> int:
        return self.width - self.pip_size - self.pip_padding

    @property
    def pip_y(self) -> int:
        return self.height - self.pip_size - self.pip_padding


class ExportPreset(BaseModel):
    """Complete export configuration."""

    name: str = Field(description="Preset name")
    profile: ExportProfile = Field(default=ExportProfile.MP4)
    video: VideoSettings = Field(default_factory=VideoSettings)
    audio: AudioSettings = Field(default_factory=AudioSettings)
    composite: CompositeSettings = Field(default_factory=CompositeSettings)

    @property
    def file_extension(self) -> str:
        return f".{self.profile.value}"

    @classmethod
    def mp4_export(cls) -> ExportPreset:
        """H.264/AAC export, plays everywhere."""
        return cls(
            name="MP4 Export",
            profile=ExportProfile.MP4,
            video=VideoSettings(codec="libx264"),
            audio=AudioSettings(codec="aac"),
        )

    @classmethod
    def webm_export(cls) -> ExportPreset:
        """VP9/Opus export, matches the recording container."""
        return cls(
            name="WebM Export",
            profile=ExportProfile.WEBM,
            video=VideoSettings(codec="libvpx-vp9"),
            audio=AudioSettings(codec="libopus"),
        )

    @classmethod
    def for_profile(cls, profile: ExportProfile) -> ExportPreset:
        if profile == ExportProfile.WEBM:
            return cls.webm_export()
        return cls.mp4_export()


# =============================================================================
# RESULTS
# =============================================================================


class ExportResult(BaseModel):
    """Terminal outcome of an export."""

    status: ExportJobStatus
    output_path: str | None = None
    error_message: str | None = None
    filter_complex: str | None = Field(
        default=None, description="Filter graph of a failed export"
    )
    diagnostics: str | None = Field(
        default=None, description="Encoder log of a failed export"
    )


# =============================================================================
# REQUEST MODELS
# =============================================================================


class ExportRequest(BaseModel):
    """Everything needed to reconstruct and export a session."""

    clips: list[ClipRecord] = Field(description="Finalized clips of all participants")
    focus_events: list[FocusEvent] = Field(default_factory=list)
    local_peer_id: str = Field(
        description="Participant that created the session and null focus refers to"
    )
    peer_names: dict[str, str] = Field(
        default_factory=dict, description="Display names keyed by participant id"
    )
    recording_start_ms: int | None = Field(
        default=None, description="Recording start (None = earliest clip start)"
    )
    recording_end_ms: int | None = Field(
        default=None, description="Recording end (None = latest clip end)"
    )
    profile: ExportProfile = Field(default=ExportProfile.MP4)
    output_filename: str | None = Field(
        default=None, description="Output filename (auto-generated if not specified)"
    )


class CancelExportRequest(BaseModel):
    """Request to cancel an export job."""

    reason: str | None = Field(default=None, description="Reason for cancellation")


# =============================================================================
# RESPONSE MODELS
# =============================================================================


class ExportJobResponse(BaseModel):
    """Export job details."""

    job_id: str
    status: ExportJobStatus
    progress: float = Field(ge=0.0, le=1.0, description="Progress fraction")
    segment_count: int = 0
    total_duration_ms: int = 0
    output_path: str | None = None
    result: ExportResult | None = None
    created_at: datetime
    completed_at: datetime | None = None


class ExportJobCreateResponse(BaseModel):
    """Response after creating an export job."""

    ok: bool = True
    job: ExportJobResponse


class ExportJobStatusResponse(BaseModel):
    """Response for export job status check."""

    ok: bool = True
    job: ExportJobResponse


class ExportJobCancelResponse(BaseModel):
    """Response after cancelling an export job."""

    ok: bool = True
    job: ExportJobResponse


class ExportJobListResponse(BaseModel):
    """Response containing list of export jobs."""

    ok: bool = True
    jobs: list[ExportJobResponse]
    total: int


class ExportPresetsResponse(BaseModel):
    """Response containing available export presets."""

    ok: bool = True
    presets: list[ExportPreset]


# =============================================================================
# INTERNAL MODELS (for job processing)
# =============================================================================


class ExportManifest(BaseModel):
    """
    Manifest file passed to the export job CLI.

    Contains the session inputs, the output location and an optional URL
    that receives status updates.
    """

    job_id: str
    request: ExportRequest
    output_path: str
    callback_url: str | None = Field(
        default=None, description="URL to POST status updates"
    )


class ExportProgress(BaseModel):
    """Progress update posted by the export job."""

    job_id: str
    status: ExportJobStatus
    progress: float = Field(ge=0.0, le=1.0)
    message: str | None = None
    error_message: str | None = None
