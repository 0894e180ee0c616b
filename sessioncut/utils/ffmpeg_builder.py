from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sessioncut.models.export_models import (
    ExportLayout,
    ExportPlan,
    ExportPreset,
    ExportProfile,
    ProbeInfo,
    Segment,
    SourceRef,
)

logger = logging.getLogger(__name__)


VIDEO_OUT = "vout"
AUDIO_OUT = "aout"


@dataclass
class InputSpec:
    path: str
    options: list[str] = field(default_factory=list)

    def to_args(self) -> list[str]:
        return [*self.options, "-i", self.path]


@dataclass
class FFmpegCommand:
    inputs: list[InputSpec]
    filter_complex: str
    output_maps: list[str]
    output_options: list[str]
    output_file: str

    def to_args(self, ffmpeg_bin: str = "ffmpeg") -> list[str]:
        args = [ffmpeg_bin, "-hide_banner", "-y"]
        for input_spec in self.inputs:
            args.extend(input_spec.to_args())
        args.extend(["-filter_complex", self.filter_complex])
        for output_map in self.output_maps:
            args.extend(["-map", output_map])
        args.extend(self.output_options)
        args.append(self.output_file)
        return args


def format_seconds(ms: int) -> str:
    """Millisecond count as an ffmpeg time value in seconds."""
    return f"{ms / 1000:.3f}"


def squircle_alpha_expr(radius: int, exponent: int) -> str:
    """
    ``geq`` alpha expression that cuts superellipse corners out of a frame.

    Pixels inside a corner square but outside the curve
    ``|dx|^n + |dy|^n = r^n`` become transparent; everything else stays opaque.
    """
    r = radius
    n = exponent
    limit = r**n
    corners = [
        f"lt(X,{r})*lt(Y,{r})*gt(pow({r}-X,{n})+pow({r}-Y,{n}),{limit})",
        f"gt(X,W-{r})*lt(Y,{r})*gt(pow(X-(W-{r}),{n})+pow({r}-Y,{n}),{limit})",
        f"lt(X,{r})*gt(Y,H-{r})*gt(pow({r}-X,{n})+pow(Y-(H-{r}),{n}),{limit})",
        f"gt(X,W-{r})*gt(Y,H-{r})*gt(pow(X-(W-{r}),{n})+pow(Y-(H-{r}),{n}),{limit})",
    ]
    expr = "255"
    for corner in reversed(corners):
        expr = f"if({corner},0,{expr})"
    return expr


class SegmentsToFFmpeg:
    """
    Compiles an export plan into a single ffmpeg filter graph.

    Every segment gets its own inlined video and audio chain, even when
    several segments read the same input. Video segments are joined with
    cross-fades; audio segments are concatenated back to back, so the final
    video is padded by the total cross-fade overlap to keep both streams the
    same length.
    """

    def __init__(
        self,
        plan: ExportPlan,
        preset: ExportPreset,
        probes: dict[int, ProbeInfo] | None = None,
    ):
        self.plan = plan
        self.preset = preset
        self.probes = probes or {}

        self._video_filters: list[str] = []
        self._audio_filters: list[str] = []
        self._filter_counter = 0

    def build(self, output_path: str) -> FFmpegCommand:
        self._video_filters = []
        self._audio_filters = []
        self._filter_counter = 0

        if not self.plan.segments:
            raise ValueError("Cannot build a filter graph without segments")

        video_labels: list[str] = []
        audio_labels: list[str] = []
        for idx, segment in enumerate(self.plan.segments):
            video_labels.append(self._process_video_segment(segment, idx))
            audio_labels.append(self._process_audio_segment(segment, idx))

        durations = [segment.duration_ms for segment in self.plan.segments]
        self._finish_video(video_labels, durations)
        self._finish_audio(audio_labels)

        return FFmpegCommand(
            inputs=[InputSpec(path=path) for path in self.plan.input_files],
            filter_complex=self._combine_filters(),
            output_maps=[f"[{VIDEO_OUT}]", f"[{AUDIO_OUT}]"],
            output_options=self._build_output_options(),
            output_file=output_path,
        )

    # ------------------------------------------------------------------
    # Video
    # ------------------------------------------------------------------

    def _process_video_segment(self, segment: Segment, idx: int) -> str:
        label = f"v{idx}"
        layout = segment.layout
        camera = self._usable_video(segment.camera)
        screen = self._usable_video(segment.screen)

        if layout == ExportLayout.SCREEN_PIP and screen and camera:
            return self._composite_pip(segment, screen, camera, label)
        if layout == ExportLayout.SCREEN_PIP:
            # One side of the PiP has no video stream; show what is left.
            source = screen or camera
        elif layout == ExportLayout.CAMERA_ONLY:
            source = camera
        elif layout == ExportLayout.SCREEN_ONLY:
            source = screen
        else:
            source = None

        if source is None:
            return self._generate_blank_video(segment, label)

        chain = self._trimmed_frame(source, segment)
        chain.extend(self._segment_tail())
        self._video_filters.append(f"[{source.source_index}:v]{','.join(chain)}[{label}]")
        return label

    def _usable_video(self, ref: SourceRef | None) -> SourceRef | None:
        if ref is None:
            return None
        if not self._probe(ref.source_index).has_video:
            logger.warning("Input %d has no video stream", ref.source_index)
            return None
        return ref

    def _trimmed_frame(self, ref: SourceRef, segment: Segment) -> list[str]:
        composite = self.preset.composite
        width = composite.width
        height = composite.height
        return [
            f"trim=start={format_seconds(ref.trim_start_ms)}:"
            f"duration={format_seconds(segment.duration_ms)}",
            "setpts=PTS-STARTPTS",
            f"scale={width}:{height}:force_original_aspect_ratio=decrease:flags=lanczos,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:color={composite.background_color}",
            "setsar=1",
        ]

    def _segment_tail(self) -> list[str]:
        return [
            f"format={self.preset.video.pixel_format}",
            f"fps={self.preset.composite.framerate}",
        ]

    def _composite_pip(
        self, segment: Segment, screen: SourceRef, camera: SourceRef, label: str
    ) -> str:
        composite = self.preset.composite
        size = composite.pip_size
        base_label = f"{label}_base"
        pip_label = f"{label}_pip"

        base_chain = self._trimmed_frame(screen, segment)
        self._video_filters.append(
            f"[{screen.source_index}:v]{','.join(base_chain)}[{base_label}]"
        )

        alpha = squircle_alpha_expr(composite.pip_corner_radius, composite.pip_corner_exponent)
        pip_chain = [
            f"trim=start={format_seconds(camera.trim_start_ms)}:"
            f"duration={format_seconds(segment.duration_ms)}",
            "setpts=PTS-STARTPTS",
            f"scale={size}:{size}:force_original_aspect_ratio=increase",
            f"crop={size}:{size}",
            "setsar=1",
            "format=rgba",
            f"geq=r='r(X,Y)':g='g(X,Y)':b='b(X,Y)':a='{alpha}'",
        ]
        self._video_filters.append(
            f"[{camera.source_index}:v]{','.join(pip_chain)}[{pip_label}]"
        )

        tail = ",".join(self._segment_tail())
        self._video_filters.append(
            f"[{base_label}][{pip_label}]overlay={composite.pip_x}:{composite.pip_y}:"
            f"format=auto,{tail}[{label}]"
        )
        return label

    def _generate_blank_video(self, segment: Segment, label: str) -> str:
        composite = self.preset.composite
        tail = ",".join(self._segment_tail())
        self._video_filters.append(
            f"color=c={composite.background_color}:s={composite.width}x{composite.height}:"
            f"d={format_seconds(segment.duration_ms)}:r={composite.framerate},"
            f"setsar=1,{tail}[{label}]"
        )
        return label

    def _finish_video(self, labels: list[str], durations: list[int]) -> None:
        result = labels[0]
        overlap_ms = 0
        if len(labels) > 1:
            result, overlap_ms = self._apply_video_transitions(labels, durations)

        pixel_format = self.preset.video.pixel_format
        if overlap_ms > 0:
            self._video_filters.append(
                f"[{result}]tpad=stop_mode=clone:stop_duration={format_seconds(overlap_ms)},"
                f"format={pixel_format}[{VIDEO_OUT}]"
            )
        else:
            self._video_filters.append(f"[{result}]format={pixel_format}[{VIDEO_OUT}]")

    def _apply_video_transitions(
        self, labels: list[str], durations: list[int]
    ) -> tuple[str, int]:
        """
        Chain segments with cross-fades.

        Each fade starts where the assembled stream would otherwise end, minus
        the fade length. Returns the final label and the total overlap.
        """
        framerate = self.preset.composite.framerate
        transition_ms = self.preset.composite.transition_ms

        result = labels[0]
        result_ms = durations[0]
        overlap_ms = 0
        for i in range(1, len(labels)):
            out_label = f"vx{self._filter_counter}"
            self._filter_counter += 1

            fade_ms = max(0, min(transition_ms, durations[i - 1], durations[i]))
            if fade_ms > 0:
                offset_ms = max(0, result_ms - fade_ms)
                self._video_filters.append(
                    f"[{result}][{labels[i]}]xfade=transition=fade:"
                    f"duration={format_seconds(fade_ms)}:offset={format_seconds(offset_ms)},"
                    f"fps={framerate}[{out_label}]"
                )
                result_ms = result_ms + durations[i] - fade_ms
                overlap_ms += fade_ms
            else:
                self._video_filters.append(
                    f"[{result}][{labels[i]}]concat=n=2:v=1:a=0[{out_label}]"
                )
                result_ms += durations[i]
            result = out_label

        return result, overlap_ms

    # ------------------------------------------------------------------
    # Audio
    # ------------------------------------------------------------------

    def _audio_source(self, segment: Segment) -> SourceRef | None:
        candidates: list[SourceRef | None] = []
        if segment.layout in (ExportLayout.SCREEN_PIP, ExportLayout.CAMERA_ONLY):
            candidates.append(segment.camera)
        candidates.append(segment.audio)
        if segment.layout in (ExportLayout.SCREEN_PIP, ExportLayout.SCREEN_ONLY):
            candidates.append(segment.screen)

        for ref in candidates:
            if ref is not None and self._probe(ref.source_index).has_audio:
                return ref
        return None

    def _process_audio_segment(self, segment: Segment, idx: int) -> str:
        label = f"a{idx}"
        source = self._audio_source(segment)
        if source is None:
            return self._generate_silence(segment, label)

        audio = self.preset.audio
        duration = format_seconds(segment.duration_ms)
        filters = [
            f"atrim=start={format_seconds(source.trim_start_ms)}:duration={duration}",
            "asetpts=PTS-STARTPTS",
            f"aresample={audio.sample_rate}",
            f"aformat=sample_rates={audio.sample_rate}:channel_layouts={self._channel_layout()}",
            "apad",
            f"atrim=duration={duration}",
        ]
        self._audio_filters.append(f"[{source.source_index}:a]{','.join(filters)}[{label}]")
        return label

    def _generate_silence(self, segment: Segment, label: str) -> str:
        self._audio_filters.append(
            f"anullsrc=r={self.preset.audio.sample_rate}:cl={self._channel_layout()},"
            f"atrim=duration={format_seconds(segment.duration_ms)}[{label}]"
        )
        return label

    def _finish_audio(self, labels: list[str]) -> None:
        if len(labels) == 1:
            self._audio_filters.append(
                f"[{labels[0]}]aresample={self.preset.audio.sample_rate}[{AUDIO_OUT}]"
            )
            return
        inputs = "".join(f"[{label}]" for label in labels)
        self._audio_filters.append(
            f"{inputs}concat=n={len(labels)}:v=0:a=1[{AUDIO_OUT}]"
        )

    def _channel_layout(self) -> str:
        return "stereo" if self.preset.audio.channels == 2 else "mono"

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _probe(self, index: int) -> ProbeInfo:
        return self.probes.get(index) or ProbeInfo()

    def _combine_filters(self) -> str:
        return ";".join(self._video_filters + self._audio_filters)

    def _build_output_options(self) -> list[str]:
        video = self.preset.video
        audio = self.preset.audio
        options = [
            "-c:v",
            video.codec,
            "-b:v",
            video.bitrate,
            "-pix_fmt",
            video.pixel_format,
            "-r",
            str(self.preset.composite.framerate),
            "-c:a",
            audio.codec,
            "-b:a",
            audio.bitrate,
            "-ar",
            str(audio.sample_rate),
            "-ac",
            str(audio.channels),
        ]
        if self.preset.profile == ExportProfile.MP4:
            options.extend(["-movflags", "+faststart"])
        else:
            options.extend(["-row-mt", "1", "-deadline", "good"])
        return options


def build_export_command(
    plan: ExportPlan,
    preset: ExportPreset,
    output_path: str,
    probes: dict[int, ProbeInfo] | None = None,
) -> FFmpegCommand:
    return SegmentsToFFmpeg(plan, preset, probes).build(output_path)
