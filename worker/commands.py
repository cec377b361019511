"""
FFmpeg argument builders.

Pure functions: given a validated job input, its resolved sources and an
already-chosen encoder, produce the exact argument vector and output path.
Whether to use a hardware or software encoder is decided elsewhere.
"""
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from config import WorkerSettings
from errors import ArgumentBuildError
from inputs import (
    AudioTrack,
    ConcatInput,
    JobSpec,
    Resize,
    SimpleEditInput,
    TextOverlay,
    TimedPlanInput,
)

logger = logging.getLogger(__name__)

SOFTWARE_ENCODER = "libx264"
HARDWARE_ENCODERS = ("h264_nvenc", "h264_vaapi", "h264_qsv")

SPEED_RANGE = (0.25, 4.0)
DIMENSION_RANGE = (100, 4096)
VOLUME_RANGE = (0.0, 2.0)

AUDIO_SAMPLE_RATE = 44100

# transition name -> xfade transition
TRANSITIONS = {
    "fade": "fade",
    "wipe": "wipeleft",
    "whip-pan": "wipeleft",
    "slide": "slideleft",
    "zoom": "circlecrop",
}
DEFAULT_TRANSITION = "fade"


@dataclass(frozen=True)
class SourceInfo:
    """A resolved local input and what probing learned about it."""
    path: Path
    duration: Optional[float] = None
    has_audio: Optional[bool] = None


@dataclass(frozen=True)
class RenderCommand:
    args: list[str]
    output_path: Path
    encoder: str
    expected_duration: float


def is_hardware_encoder(encoder: str) -> bool:
    return encoder in HARDWARE_ENCODERS


def clamp(value: float, bounds: tuple[float, float]) -> float:
    low, high = bounds
    return max(low, min(high, value))


def _num(value: float) -> str:
    """Compact decimal form for filter expressions and flags (2.0 -> '2')."""
    return format(float(value), "g")


# ============================================================================
# Encoder-specific pieces
# ============================================================================

def _hw_input_args(encoder: str, worker_settings: WorkerSettings) -> list[str]:
    """Device setup that has to precede the inputs."""
    if encoder == "h264_vaapi":
        return ["-vaapi_device", worker_settings.vaapi_device]
    if encoder == "h264_qsv":
        return [
            "-init_hw_device", f"qsv=hw,child_device={worker_settings.vaapi_device}",
            "-filter_hw_device", "hw",
        ]
    return []


def _upload_filters(encoder: str) -> list[str]:
    """Pixel-format / upload stage the encoder needs at the end of the video chain."""
    if encoder == "h264_vaapi":
        return ["format=nv12", "hwupload"]
    if encoder == "h264_qsv":
        return ["format=nv12", "hwupload=extra_hw_frames=64"]
    if encoder == "h264_nvenc":
        return ["format=yuv420p"]
    return []


def _video_codec_args(encoder: str, worker_settings: WorkerSettings) -> list[str]:
    quality = str(worker_settings.video_quality)
    if encoder == "h264_nvenc":
        return ["-c:v", "h264_nvenc", "-preset", worker_settings.nvenc_preset, "-rc", "vbr", "-cq", quality]
    if encoder == "h264_vaapi":
        return ["-c:v", "h264_vaapi", "-qp", quality]
    if encoder == "h264_qsv":
        return ["-c:v", "h264_qsv", "-preset", worker_settings.qsv_preset, "-global_quality", quality]
    return [
        "-c:v", SOFTWARE_ENCODER,
        "-preset", worker_settings.software_preset,
        "-crf", quality,
        "-pix_fmt", "yuv420p",
    ]


def _output_args(
    encoder: str,
    mute: bool,
    output_path: Path,
    worker_settings: WorkerSettings,
) -> list[str]:
    args = _video_codec_args(encoder, worker_settings)
    if mute:
        args.append("-an")
    else:
        args.extend(["-c:a", "aac", "-b:a", worker_settings.audio_bitrate])
    if not is_hardware_encoder(encoder):
        # Some hardware muxing paths reject the second faststart pass.
        args.extend(["-movflags", "+faststart"])
    args.append(str(output_path))
    return args


def _base_args(encoder: str, worker_settings: WorkerSettings) -> list[str]:
    return [worker_settings.ffmpeg_path, "-y", "-hide_banner", "-nostdin"] + _hw_input_args(
        encoder, worker_settings
    )


# ============================================================================
# Filter helpers
# ============================================================================

def speed_filters(speed: Optional[float]) -> tuple[Optional[str], Optional[str]]:
    """Return (video, audio) retiming filters for a playback-speed multiplier."""
    if speed is None:
        return None, None
    speed = clamp(speed, SPEED_RANGE)
    if speed == 1:
        return None, None
    return f"setpts={_num(1 / speed)}*PTS", atempo_chain(speed)


def atempo_chain(speed: float) -> str:
    """atempo stages, each within the 0.5-2.0 range every ffmpeg build accepts."""
    factors = []
    remaining = speed
    while remaining > 2.0:
        factors.append(2.0)
        remaining /= 2.0
    while remaining < 0.5:
        factors.append(0.5)
        remaining /= 0.5
    factors.append(remaining)
    return ",".join(f"atempo={_num(f)}" for f in factors)


def scale_filter(width: Optional[int], height: Optional[int]) -> Optional[str]:
    """Fixed-size scale; a missing dimension follows the aspect ratio."""
    if width is None and height is None:
        return None
    w = int(clamp(int(width), DIMENSION_RANGE)) if width is not None else -2
    h = int(clamp(int(height), DIMENSION_RANGE)) if height is not None else -2
    return f"scale={w}:{h}"


def fit_filter(width: int, height: int) -> str:
    """Scale into a width x height frame, letterboxing instead of stretching."""
    w = int(clamp(int(width), DIMENSION_RANGE))
    h = int(clamp(int(height), DIMENSION_RANGE))
    return (
        f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
        f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2,setsar=1"
    )


def volume_filter(volume: Optional[float]) -> Optional[str]:
    if volume is None:
        return None
    return f"volume={_num(clamp(volume, VOLUME_RANGE))}"


def _escape_filter_value(text: str) -> str:
    # option-level escaping, then filtergraph-level escaping of the result
    value = re.sub(r"([\\':])", r"\\\1", text)
    return re.sub(r"([\\'\[\],;])", r"\\\1", value)


def _position(value) -> str:
    return _num(value) if isinstance(value, (int, float)) else value


def drawtext_filter(overlay: TextOverlay) -> str:
    """drawtext shown between the overlay's timeline start and end."""
    options = []
    if overlay.font_file:
        options.append(f"fontfile={_escape_filter_value(overlay.font_file)}")
    options.extend([
        f"text={_escape_filter_value(overlay.content)}",
        "expansion=none",
        f"fontsize={overlay.font_size}",
        f"fontcolor={overlay.color}",
        f"x={_position(overlay.x)}",
        f"y={_position(overlay.y)}",
    ])
    if overlay.box:
        options.extend(["box=1", f"boxcolor={overlay.box_color or 'black@0.5'}", "boxborderw=5"])

    start = overlay.timeline_start_ms / 1000
    if overlay.timeline_end_ms is None:
        options.append(f"enable='gte(t,{_num(start)})'")
    else:
        options.append(f"enable='between(t,{_num(start)},{_num(overlay.timeline_end_ms / 1000)})'")
    return "drawtext=" + ":".join(options)


def audio_track_filter(track: AudioTrack) -> str:
    """Trim a track, shift it to its timeline position and set its level."""
    trim = f"atrim=start={_num(track.trim_start_ms / 1000)}"
    if track.timeline_end_ms is not None:
        duration = (track.timeline_end_ms - track.timeline_start_ms) / 1000
        if duration <= 0:
            raise ArgumentBuildError(
                f"audio track {track.asset_url}: timeline_end_ms must be after timeline_start_ms"
            )
        trim += f":duration={_num(duration)}"
    chain = [trim, "asetpts=PTS-STARTPTS"]
    delay = int(round(track.timeline_start_ms))
    if delay > 0:
        chain.append(f"adelay={delay}|{delay}")
    chain.append(f"volume={_num(clamp(track.volume, VOLUME_RANGE))}")
    return ",".join(chain)


def _effective_speed(speed: Optional[float]) -> float:
    return clamp(speed, SPEED_RANGE) if speed is not None else 1.0


def _target_size(resize: Optional[Resize], spec: JobSpec) -> tuple[Optional[int], Optional[int]]:
    if resize is not None:
        return resize.width, resize.height
    return spec.output_format.width, spec.output_format.height


def _trim_window(start: Optional[float], end: Optional[float], label: str) -> tuple[float, Optional[float]]:
    """Convert a (start, end) pair into (start, duration)."""
    start = max(0.0, start or 0.0)
    if end is None:
        return start, None
    if end <= start:
        raise ArgumentBuildError(f"{label}: end ({_num(end)}s) must be after start ({_num(start)}s)")
    return start, end - start


# ============================================================================
# Builders
# ============================================================================

def build_simple_edit(
    spec: SimpleEditInput,
    sources: Sequence[SourceInfo],
    encoder: str,
    output_path: Path,
    worker_settings: WorkerSettings,
) -> RenderCommand:
    """Single clip: trim, retime, resize, audio volume/mute."""
    if not sources:
        raise ArgumentBuildError("No resolved source for simple edit")
    source = sources[0]
    cmd = _base_args(encoder, worker_settings)

    start, duration = 0.0, None
    if spec.trim is not None:
        start, duration = _trim_window(spec.trim.start, spec.trim.end, "trim")
    # Seek and duration are input options so retiming applies to the trimmed range.
    if start > 0:
        cmd.extend(["-ss", _num(start)])
    if duration is not None:
        cmd.extend(["-t", _num(duration)])
    cmd.extend(["-i", str(source.path)])

    video_speed, audio_speed = speed_filters(spec.speed)
    width, height = _target_size(spec.resize, spec)
    video_filters = [f for f in (video_speed, scale_filter(width, height)) if f]
    video_filters.extend(_upload_filters(encoder))
    if video_filters:
        cmd.extend(["-vf", ",".join(video_filters)])

    mute = spec.audio.mute
    if not mute and source.has_audio is not False:
        audio_filters = [f for f in (audio_speed, volume_filter(spec.audio.volume)) if f]
        if audio_filters:
            cmd.extend(["-af", ",".join(audio_filters)])

    cmd.extend(_output_args(encoder, mute, output_path, worker_settings))

    speed = _effective_speed(spec.speed)
    if duration is None and source.duration:
        duration = max(0.0, source.duration - start)
    expected = (duration / speed) if duration else worker_settings.default_expected_duration
    return RenderCommand(cmd, output_path, encoder, expected)


def build_timed_plan(
    spec: TimedPlanInput,
    sources: Sequence[SourceInfo],
    encoder: str,
    output_path: Path,
    worker_settings: WorkerSettings,
) -> RenderCommand:
    """ExecutionPlan: trim/retime every segment from its own asset, join in order,
    then lay text overlays and audio tracks on top.

    ``sources`` line up with ``spec.asset_refs()``.
    """
    plan = spec.plan
    if not plan.timeline:
        raise ArgumentBuildError("Execution plan has no timeline segments")
    refs = [url for url, _ in spec.asset_refs()]
    if len(sources) != len(refs):
        raise ArgumentBuildError(
            f"Execution plan needs {len(refs)} resolved asset(s), got {len(sources)}"
        )
    input_index = {url: i for i, url in enumerate(refs)}
    segment_inputs = [input_index[segment.asset_url] for segment in plan.timeline]

    mute = spec.audio.mute
    tracks = []
    for i, track in enumerate(plan.audio_tracks):
        if mute or not track.asset_url:
            continue
        idx = input_index[track.asset_url]
        if sources[idx].has_audio is False:
            logger.warning(f"Audio track {i} ({track.asset_url}) has no audio stream, skipping")
            continue
        tracks.append((i, track, idx))
    # Explicit audio tracks replace the segments' own audio.
    segment_audio = (
        not mute
        and not tracks
        and all(sources[idx].has_audio is True for idx in segment_inputs)
    )

    size = plan.output_format
    width, height = (size.width, size.height) if size else (None, None)
    if (width is None or height is None) and len(set(segment_inputs)) > 1:
        # concat needs every segment at one frame size
        width = width or worker_settings.concat_width
        height = height or worker_settings.concat_height
    fit = fit_filter(width, height) if width is not None and height is not None else None

    cmd = _base_args(encoder, worker_settings)
    for source in sources:
        cmd.extend(["-i", str(source.path)])

    graph = []
    concat_inputs = []
    expected_total = 0.0
    expected_known = True
    for i, segment in enumerate(plan.timeline):
        idx = segment_inputs[i]
        start_ms = segment.trim_start_ms or 0.0
        end_ms = segment.trim_end_ms
        start, duration = _trim_window(
            start_ms / 1000, end_ms / 1000 if end_ms is not None else None, f"segment {i}"
        )
        trim = f"start={_num(start)}" + (f":duration={_num(duration)}" if duration is not None else "")
        video_speed, audio_speed = speed_filters(segment.speed_multiplier)

        video_chain = [f"trim={trim}", "setpts=PTS-STARTPTS"] + [f for f in (video_speed, fit) if f]
        graph.append(f"[{idx}:v]{','.join(video_chain)}[v{i}]")
        concat_inputs.append(f"[v{i}]")
        if segment_audio:
            audio_chain = [f"atrim={trim}", "asetpts=PTS-STARTPTS"] + ([audio_speed] if audio_speed else [])
            graph.append(f"[{idx}:a]{','.join(audio_chain)}[a{i}]")
            concat_inputs.append(f"[a{i}]")

        speed = _effective_speed(segment.speed_multiplier)
        if duration is None and sources[idx].duration:
            duration = max(0.0, sources[idx].duration - start)
        if duration is None:
            expected_known = False
        else:
            expected_total += duration / speed

    count = len(plan.timeline)
    if count > 1:
        graph.append(
            f"{''.join(concat_inputs)}concat=n={count}:v=1:a={1 if segment_audio else 0}"
            + ("[vcat][acat]" if segment_audio else "[vcat]")
        )
        video_label, audio_label = "vcat", "acat"
    else:
        video_label, audio_label = "v0", "a0"

    final_filters = [drawtext_filter(overlay) for overlay in plan.text_overlays]
    final_filters.extend(_upload_filters(encoder))
    if final_filters:
        graph.append(f"[{video_label}]{','.join(final_filters)}[vout]")
        video_label = "vout"

    with_audio = segment_audio
    if tracks:
        for i, track, idx in tracks:
            graph.append(f"[{idx}:a]{audio_track_filter(track)}[at{i}]")
        if len(tracks) > 1:
            mix_inputs = "".join(f"[at{i}]" for i, _, _ in tracks)
            graph.append(f"{mix_inputs}amix=inputs={len(tracks)}:duration=longest[amix]")
            audio_label = "amix"
        else:
            audio_label = f"at{tracks[0][0]}"
        with_audio = True

    volume = volume_filter(spec.audio.volume) if with_audio else None
    if volume:
        graph.append(f"[{audio_label}]{volume}[aout]")
        audio_label = "aout"

    cmd.extend(["-filter_complex", ";".join(graph), "-map", f"[{video_label}]"])
    if with_audio:
        cmd.extend(["-map", f"[{audio_label}]"])
    if tracks:
        # tracks may run past the last segment
        cmd.append("-shortest")
    cmd.extend(_output_args(encoder, not with_audio, output_path, worker_settings))

    if plan.validation and plan.validation.total_duration_ms:
        expected = plan.validation.total_duration_ms / 1000
    elif expected_known and expected_total > 0:
        expected = expected_total
    else:
        expected = worker_settings.default_expected_duration
    return RenderCommand(cmd, output_path, encoder, expected)


def build_concat(
    spec: ConcatInput,
    sources: Sequence[SourceInfo],
    encoder: str,
    output_path: Path,
    worker_settings: WorkerSettings,
) -> RenderCommand:
    """Multi-source: normalize every input, then chain transitions between neighbours."""
    if not sources:
        raise ArgumentBuildError("No source files resolved for multi-source job")

    width = int(clamp(spec.output_format.width or worker_settings.concat_width, DIMENSION_RANGE))
    height = int(clamp(spec.output_format.height or worker_settings.concat_height, DIMENSION_RANGE))
    fps = worker_settings.concat_fps
    clip = spec.clip_duration or worker_settings.concat_clip_duration
    fade = worker_settings.transition_duration
    if len(sources) > 1 and clip <= fade:
        raise ArgumentBuildError(
            f"clipDuration ({_num(clip)}s) must be longer than the transition ({_num(fade)}s)"
        )
    cap = worker_settings.concat_max_duration
    if spec.max_duration:
        cap = min(cap, spec.max_duration)
    with_audio = not spec.audio.mute

    cmd = _base_args(encoder, worker_settings)
    for source in sources:
        cmd.extend(["-i", str(source.path)])

    graph = []
    for i, source in enumerate(sources):
        graph.append(
            f"[{i}:v]{fit_filter(width, height)},fps={fps},format=yuv420p,"
            f"tpad=stop_mode=clone:stop_duration={_num(clip)},"
            f"trim=duration={_num(clip)},setpts=PTS-STARTPTS[v{i}]"
        )
        if with_audio:
            if source.has_audio:
                graph.append(
                    f"[{i}:a]aformat=sample_rates={AUDIO_SAMPLE_RATE}:channel_layouts=stereo,"
                    f"apad,atrim=duration={_num(clip)},asetpts=PTS-STARTPTS[a{i}]"
                )
            else:
                graph.append(
                    f"anullsrc=channel_layout=stereo:sample_rate={AUDIO_SAMPLE_RATE},"
                    f"atrim=duration={_num(clip)}[a{i}]"
                )

    video_label, audio_label = "v0", "a0"
    for i in range(1, len(sources)):
        name = spec.transitions[(i - 1) % len(spec.transitions)] if spec.transitions else DEFAULT_TRANSITION
        transition = TRANSITIONS.get(name.lower())
        if transition is None:
            logger.warning(f"Unknown transition '{name}', using {DEFAULT_TRANSITION}")
            transition = TRANSITIONS[DEFAULT_TRANSITION]
        offset = i * clip - i * fade
        graph.append(
            f"[{video_label}][v{i}]xfade=transition={transition}:"
            f"duration={_num(fade)}:offset={_num(offset)}[vx{i}]"
        )
        video_label = f"vx{i}"
        if with_audio:
            graph.append(f"[{audio_label}][a{i}]acrossfade=d={_num(fade)}[ax{i}]")
            audio_label = f"ax{i}"

    upload = _upload_filters(encoder)
    if upload:
        graph.append(f"[{video_label}]{','.join(upload)}[vout]")
        video_label = "vout"
    volume = volume_filter(spec.audio.volume) if with_audio else None
    if volume:
        graph.append(f"[{audio_label}]{volume}[aout]")
        audio_label = "aout"

    cmd.extend(["-filter_complex", ";".join(graph), "-map", f"[{video_label}]"])
    if with_audio:
        cmd.extend(["-map", f"[{audio_label}]"])
    cmd.extend(["-t", _num(cap)])
    cmd.extend(_output_args(encoder, not with_audio, output_path, worker_settings))

    natural = len(sources) * clip - (len(sources) - 1) * fade
    return RenderCommand(cmd, output_path, encoder, min(natural, cap))


_BUILDERS = {
    SimpleEditInput: build_simple_edit,
    TimedPlanInput: build_timed_plan,
    ConcatInput: build_concat,
}


def build_command(
    spec: JobSpec,
    sources: Sequence[SourceInfo],
    encoder: str,
    output_path: Path,
    worker_settings: WorkerSettings,
) -> RenderCommand:
    """Build the FFmpeg command for a job input."""
    return _BUILDERS[type(spec)](spec, sources, encoder, output_path, worker_settings)
