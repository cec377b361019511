"""
Argument builder tests. These never spawn anything.
"""

from pathlib import Path

import pytest

from commands import (
    SourceInfo,
    atempo_chain,
    build_command,
    build_concat,
    build_simple_edit,
    build_timed_plan,
    speed_filters,
)
from config import WorkerSettings
from errors import ArgumentBuildError
from inputs import ConcatInput, SimpleEditInput, TimedPlanInput

OUTPUT = Path("/data/outputs/job.mp4")


@pytest.fixture
def cfg() -> WorkerSettings:
    return WorkerSettings(ffmpeg_path="ffmpeg")


def value_after(args, flag):
    return args[args.index(flag) + 1]


def simple(**payload) -> SimpleEditInput:
    payload.setdefault("sourcePath", "/data/uploads/clip.mp4")
    return SimpleEditInput.model_validate(payload)


SOURCE = [SourceInfo(Path("/data/uploads/clip.mp4"), duration=10.0, has_audio=True)]


class TestSimpleEdit:

    def test_trim_uses_seek_and_duration(self, cfg):
        command = build_simple_edit(simple(trim={"start": 2, "end": 7}), SOURCE, "libx264", OUTPUT, cfg)
        args = command.args
        assert value_after(args, "-ss") == "2"
        assert value_after(args, "-t") == "5"
        assert "-to" not in args
        # seek and duration apply to the input
        assert args.index("-ss") < args.index("-i")
        assert args.index("-t") < args.index("-i")
        assert command.expected_duration == 5

    def test_trim_end_before_start(self, cfg):
        with pytest.raises(ArgumentBuildError):
            build_simple_edit(simple(trim={"start": 7, "end": 2}), SOURCE, "libx264", OUTPUT, cfg)

    def test_no_seek_for_zero_start(self, cfg):
        args = build_simple_edit(simple(trim={"start": 0, "end": 4}), SOURCE, "libx264", OUTPUT, cfg).args
        assert "-ss" not in args
        assert value_after(args, "-t") == "4"

    def test_speed_retimes_video_and_audio(self, cfg):
        command = build_simple_edit(simple(speed=2.0), SOURCE, "libx264", OUTPUT, cfg)
        assert value_after(command.args, "-vf") == "setpts=0.5*PTS"
        assert value_after(command.args, "-af") == "atempo=2"
        assert command.expected_duration == 5

    def test_speed_is_clamped(self, cfg):
        args = build_simple_edit(simple(speed=10), SOURCE, "libx264", OUTPUT, cfg).args
        assert value_after(args, "-vf") == "setpts=0.25*PTS"
        assert value_after(args, "-af") == "atempo=2,atempo=2"

    def test_resize_is_clamped(self, cfg):
        args = build_simple_edit(
            simple(resize={"width": 50, "height": 5000}), SOURCE, "libx264", OUTPUT, cfg
        ).args
        assert value_after(args, "-vf") == "scale=100:4096"

        args = build_simple_edit(
            simple(resize={"width": 0, "height": 50}), SOURCE, "libx264", OUTPUT, cfg
        ).args
        assert value_after(args, "-vf") == "scale=100:100"

    def test_single_output_dimension_keeps_aspect(self, cfg):
        args = build_simple_edit(simple(outputFormat={"width": 0}), SOURCE, "libx264", OUTPUT, cfg).args
        assert value_after(args, "-vf") == "scale=100:-2"

    def test_zero_speed_is_clamped_in_the_duration_estimate(self, cfg):
        command = build_simple_edit(simple(speed=0), SOURCE, "libx264", OUTPUT, cfg)
        assert value_after(command.args, "-vf") == "setpts=4*PTS"
        assert command.expected_duration == 40

    def test_output_format_size_used_without_resize(self, cfg):
        args = build_simple_edit(
            simple(outputFormat={"width": 720, "height": 1280}), SOURCE, "libx264", OUTPUT, cfg
        ).args
        assert value_after(args, "-vf") == "scale=720:1280"

    def test_volume_is_clamped(self, cfg):
        args = build_simple_edit(simple(audio={"volume": 3}), SOURCE, "libx264", OUTPUT, cfg).args
        assert value_after(args, "-af") == "volume=2"

    def test_mute_drops_audio(self, cfg):
        args = build_simple_edit(
            simple(audio={"mute": True, "volume": 1.5}, speed=2), SOURCE, "libx264", OUTPUT, cfg
        ).args
        assert "-an" in args
        assert "-af" not in args
        assert "-c:a" not in args

    def test_source_without_audio_gets_no_audio_filters(self, cfg):
        silent = [SourceInfo(Path("/data/uploads/clip.mp4"), duration=10.0, has_audio=False)]
        args = build_simple_edit(simple(speed=2), silent, "libx264", OUTPUT, cfg).args
        assert "-af" not in args

    def test_software_encoder_flags(self, cfg):
        args = build_simple_edit(simple(), SOURCE, "libx264", OUTPUT, cfg).args
        assert args[:2] == ["ffmpeg", "-y"]
        assert value_after(args, "-c:v") == "libx264"
        assert value_after(args, "-crf") == "23"
        assert value_after(args, "-movflags") == "+faststart"
        assert value_after(args, "-c:a") == "aac"
        assert args[-1] == str(OUTPUT)
        assert "-vf" not in args

    def test_nvenc_flags(self, cfg):
        args = build_simple_edit(simple(), SOURCE, "h264_nvenc", OUTPUT, cfg).args
        assert value_after(args, "-c:v") == "h264_nvenc"
        assert value_after(args, "-preset") == "p4"
        assert value_after(args, "-vf") == "format=yuv420p"
        assert "-movflags" not in args

    def test_vaapi_flags(self, cfg):
        args = build_simple_edit(
            simple(resize={"width": 1280, "height": 720}), SOURCE, "h264_vaapi", OUTPUT, cfg
        ).args
        assert args.index("-vaapi_device") < args.index("-i")
        assert value_after(args, "-vf") == "scale=1280:720,format=nv12,hwupload"
        assert value_after(args, "-qp") == "23"

    def test_expected_duration_falls_back_to_default(self, cfg):
        unknown = [SourceInfo(Path("/data/uploads/clip.mp4"))]
        command = build_simple_edit(simple(), unknown, "libx264", OUTPUT, cfg)
        assert command.expected_duration == cfg.default_expected_duration


class TestSpeedFilters:

    def test_normal_speed_is_a_no_op(self):
        assert speed_filters(1.0) == (None, None)
        assert speed_filters(None) == (None, None)

    def test_slow_motion(self):
        video, audio = speed_filters(0.25)
        assert video == "setpts=4*PTS"
        assert audio == "atempo=0.5,atempo=0.5"

    def test_atempo_stages_stay_in_range(self):
        assert atempo_chain(3.0) == "atempo=2,atempo=1.5"


def plan(timeline, **extra) -> TimedPlanInput:
    payload = {"sourceUrl": "https://cdn.example.com/in.mp4", "plan": {"timeline": timeline, **extra}}
    return TimedPlanInput.model_validate(payload)


class TestTimedPlan:

    def test_segments_are_trimmed_and_joined(self, cfg):
        spec = plan([
            {"trim_start_ms": 1000, "trim_end_ms": 3000},
            {"trim_start_ms": 5000, "trim_end_ms": 9000, "speed_multiplier": 2},
        ])
        silent = [SourceInfo(Path("/tmp/in.mp4"), has_audio=False)]
        command = build_timed_plan(spec, silent, "libx264", OUTPUT, cfg)
        graph = value_after(command.args, "-filter_complex")

        assert "[0:v]trim=start=1:duration=2,setpts=PTS-STARTPTS[v0]" in graph
        assert "[0:v]trim=start=5:duration=4,setpts=PTS-STARTPTS,setpts=0.5*PTS[v1]" in graph
        assert "[v0][v1]concat=n=2:v=1:a=0[vcat]" in graph
        assert value_after(command.args, "-map") == "[vcat]"
        assert "-an" in command.args
        assert command.expected_duration == 4

    def test_audio_branches_when_source_has_audio(self, cfg):
        spec = plan([{"trim_start_ms": 0, "trim_end_ms": 2000}, {"trim_start_ms": 4000, "trim_end_ms": 6000}])
        command = build_timed_plan(spec, SOURCE, "libx264", OUTPUT, cfg)
        graph = value_after(command.args, "-filter_complex")

        assert "[0:a]atrim=start=0:duration=2,asetpts=PTS-STARTPTS[a0]" in graph
        assert "[v0][a0][v1][a1]concat=n=2:v=1:a=1[vcat][acat]" in graph
        maps = [command.args[i + 1] for i, arg in enumerate(command.args) if arg == "-map"]
        assert maps == ["[vcat]", "[acat]"]

    def test_output_size_and_validation_duration(self, cfg):
        spec = plan(
            [{"trim_start_ms": 0, "trim_end_ms": 1000}],
            output_format={"width": 1080, "height": 1920},
            validation={"total_duration_ms": 7500},
        )
        command = build_timed_plan(spec, SOURCE, "h264_nvenc", OUTPUT, cfg)
        graph = value_after(command.args, "-filter_complex")

        assert (
            "[0:v]trim=start=0:duration=1,setpts=PTS-STARTPTS,"
            "scale=1080:1920:force_original_aspect_ratio=decrease,"
            "pad=1080:1920:(ow-iw)/2:(oh-ih)/2,setsar=1[v0]"
        ) in graph
        assert "[v0]format=yuv420p[vout]" in graph
        assert value_after(command.args, "-map") == "[vout]"
        assert command.expected_duration == 7.5

    def test_each_segment_reads_its_own_asset(self, cfg):
        spec = TimedPlanInput.model_validate({"plan": {
            "timeline": [
                {"asset_url": "https://cdn.example.com/a.mp4", "trim_start_ms": 0, "trim_end_ms": 2000},
                {"asset_url": "https://cdn.example.com/b.mp4", "trim_start_ms": 1000, "trim_end_ms": 3000},
                {"asset_url": "https://cdn.example.com/a.mp4", "trim_start_ms": 4000, "trim_end_ms": 5000},
            ],
            "output_format": {"width": 720, "height": 1280},
        }})
        sources = [
            SourceInfo(Path("/data/temp/job_asset_0.mp4"), 10.0, True),
            SourceInfo(Path("/data/temp/job_asset_1.mp4"), 10.0, True),
        ]
        command = build_timed_plan(spec, sources, "libx264", OUTPUT, cfg)
        graph = value_after(command.args, "-filter_complex")

        inputs = [command.args[i + 1] for i, arg in enumerate(command.args) if arg == "-i"]
        assert inputs == ["/data/temp/job_asset_0.mp4", "/data/temp/job_asset_1.mp4"]
        assert "[0:v]trim=start=0:duration=2," in graph
        assert "[1:v]trim=start=1:duration=2," in graph
        assert "[0:v]trim=start=4:duration=1," in graph
        assert "[1:a]atrim=start=1:duration=2,asetpts=PTS-STARTPTS[a1]" in graph
        assert "concat=n=3:v=1:a=1[vcat][acat]" in graph
        assert graph.count("pad=720:1280") == 3
        assert command.expected_duration == 5

    def test_mixed_assets_are_normalized_without_output_size(self, cfg):
        spec = TimedPlanInput.model_validate({"plan": {"timeline": [
            {"asset_url": "https://cdn.example.com/a.mp4", "trim_end_ms": 1000},
            {"asset_url": "https://cdn.example.com/b.mp4", "trim_end_ms": 1000},
        ]}})
        sources = [SourceInfo(Path("/tmp/a.mp4"), has_audio=False), SourceInfo(Path("/tmp/b.mp4"), has_audio=False)]
        graph = value_after(build_timed_plan(spec, sources, "libx264", OUTPUT, cfg).args, "-filter_complex")
        assert graph.count("pad=1080:1920") == 2

    def test_asset_count_must_match(self, cfg):
        spec = TimedPlanInput.model_validate({"plan": {"timeline": [
            {"asset_url": "https://cdn.example.com/a.mp4"},
            {"asset_url": "https://cdn.example.com/b.mp4"},
        ]}})
        with pytest.raises(ArgumentBuildError, match="2 resolved asset"):
            build_timed_plan(spec, SOURCE, "libx264", OUTPUT, cfg)

    def test_audio_tracks_replace_segment_audio(self, cfg):
        spec = plan(
            [{"trim_start_ms": 0, "trim_end_ms": 4000}],
            audio_tracks=[
                {"asset_url": "https://cdn.example.com/music.mp3", "trim_start_ms": 1000,
                 "timeline_start_ms": 0, "timeline_end_ms": 4000, "volume": 0.3},
                {"asset_url": "https://cdn.example.com/vo.mp3",
                 "timeline_start_ms": 500, "timeline_end_ms": 2500, "volume": 3},
            ],
        )
        sources = SOURCE + [
            SourceInfo(Path("/data/temp/job_asset_1.mp3"), 60.0, True),
            SourceInfo(Path("/data/temp/job_asset_2.mp3"), 5.0, True),
        ]
        command = build_timed_plan(spec, sources, "libx264", OUTPUT, cfg)
        graph = value_after(command.args, "-filter_complex")

        assert command.args.count("-i") == 3
        assert "[0:a]" not in graph
        assert "[1:a]atrim=start=1:duration=4,asetpts=PTS-STARTPTS,volume=0.3[at0]" in graph
        assert "[2:a]atrim=start=0:duration=2,asetpts=PTS-STARTPTS,adelay=500|500,volume=2[at1]" in graph
        assert "[at0][at1]amix=inputs=2:duration=longest[amix]" in graph
        maps = [command.args[i + 1] for i, arg in enumerate(command.args) if arg == "-map"]
        assert maps == ["[v0]", "[amix]"]
        assert "-shortest" in command.args

    def test_silent_audio_track_falls_back_to_segment_audio(self, cfg):
        spec = plan(
            [{"trim_start_ms": 0, "trim_end_ms": 1000}],
            audio_tracks=[{"asset_url": "https://cdn.example.com/clip.mp4"}],
        )
        sources = SOURCE + [SourceInfo(Path("/data/temp/job_asset_1.mp4"), 5.0, False)]
        command = build_timed_plan(spec, sources, "libx264", OUTPUT, cfg)
        graph = value_after(command.args, "-filter_complex")
        assert "[0:a]atrim=start=0:duration=1,asetpts=PTS-STARTPTS[a0]" in graph
        assert "amix" not in graph
        assert "-shortest" not in command.args

    def test_text_overlays(self, cfg):
        spec = plan(
            [{"trim_start_ms": 0, "trim_end_ms": 5000}],
            text_overlays=[
                {"content": "Sale: it's on", "timeline_start_ms": 1000, "timeline_end_ms": 3000,
                 "font_size": 64, "color": "yellow", "x": 20, "y": "h-th-20", "box": True},
                {"content": "Forever", "timeline_start_ms": 4000},
            ],
        )
        command = build_timed_plan(spec, SOURCE, "libx264", OUTPUT, cfg)
        graph = value_after(command.args, "-filter_complex")

        assert (
            "[v0]drawtext=text=Sale\\\\: it\\\\\\'s on:expansion=none:fontsize=64:fontcolor=yellow:"
            "x=20:y=h-th-20:box=1:boxcolor=black@0.5:boxborderw=5:enable='between(t,1,3)',"
            "drawtext=text=Forever:expansion=none:fontsize=48:fontcolor=white:"
            "x=(w-text_w)/2:y=h-text_h-40:enable='gte(t,4)'[vout]"
        ) in graph
        assert value_after(command.args, "-map") == "[vout]"

    def test_zero_speed_is_clamped_in_the_duration_estimate(self, cfg):
        spec = plan([{"trim_start_ms": 0, "trim_end_ms": 2000, "speed_multiplier": 0}])
        command = build_timed_plan(spec, SOURCE, "libx264", OUTPUT, cfg)
        assert "setpts=4*PTS" in value_after(command.args, "-filter_complex")
        assert command.expected_duration == 8

    def test_volume_stays_inside_the_graph(self, cfg):
        spec = TimedPlanInput.model_validate({
            "sourceUrl": "https://cdn.example.com/in.mp4",
            "audio": {"volume": 0.5},
            "plan": {"timeline": [{"trim_start_ms": 0, "trim_end_ms": 1000}]},
        })
        command = build_timed_plan(spec, SOURCE, "libx264", OUTPUT, cfg)
        assert "[a0]volume=0.5[aout]" in value_after(command.args, "-filter_complex")
        assert "-af" not in command.args

    def test_empty_timeline(self, cfg):
        with pytest.raises(ArgumentBuildError):
            build_timed_plan(plan([]), SOURCE, "libx264", OUTPUT, cfg)


def concat(urls=3, **extra) -> ConcatInput:
    payload = {"sourceUrls": [f"https://cdn.example.com/{i}.mp4" for i in range(urls)], **extra}
    return ConcatInput.model_validate(payload)


def concat_sources(count, has_audio=True):
    return [SourceInfo(Path(f"/data/temp/job_src_{i}.mp4"), 3.0, has_audio) for i in range(count)]


class TestConcat:

    def test_inputs_are_normalized_before_transitions(self, cfg):
        command = build_concat(concat(), concat_sources(3), "libx264", OUTPUT, cfg)
        graph = value_after(command.args, "-filter_complex")

        assert command.args.count("-i") == 3
        assert graph.count("scale=1080:1920:force_original_aspect_ratio=decrease") == 3
        assert graph.count("pad=1080:1920") == 3
        assert "fps=30" in graph
        assert graph.index("[v2]") < graph.index("xfade")

    def test_transitions_and_offsets(self, cfg):
        command = build_concat(
            concat(transitions=["wipe", "bogus"]), concat_sources(3), "libx264", OUTPUT, cfg
        )
        graph = value_after(command.args, "-filter_complex")

        assert "[v0][v1]xfade=transition=wipeleft:duration=0.5:offset=2.5[vx1]" in graph
        assert "[vx1][v2]xfade=transition=fade:duration=0.5:offset=5[vx2]" in graph
        assert "[a0][a1]acrossfade=d=0.5[ax1]" in graph
        assert "[ax1][a2]acrossfade=d=0.5[ax2]" in graph
        assert command.expected_duration == 8

    def test_default_transition_is_fade(self, cfg):
        graph = value_after(
            build_concat(concat(2), concat_sources(2), "libx264", OUTPUT, cfg).args, "-filter_complex"
        )
        assert "xfade=transition=fade" in graph

    def test_duration_cap(self, cfg):
        command = build_concat(concat(maxDuration=4), concat_sources(3), "libx264", OUTPUT, cfg)
        assert value_after(command.args, "-t") == "4"
        assert command.expected_duration == 4

        command = build_concat(concat(), concat_sources(3), "libx264", OUTPUT, cfg)
        assert value_after(command.args, "-t") == "30"

    def test_silent_inputs_get_generated_audio(self, cfg):
        graph = value_after(
            build_concat(concat(2), concat_sources(2, has_audio=False), "libx264", OUTPUT, cfg).args,
            "-filter_complex",
        )
        assert graph.count("anullsrc=channel_layout=stereo:sample_rate=44100") == 2

    def test_mute(self, cfg):
        command = build_concat(concat(audio={"mute": True}), concat_sources(3), "libx264", OUTPUT, cfg)
        graph = value_after(command.args, "-filter_complex")
        assert "acrossfade" not in graph
        assert "-an" in command.args

    def test_hardware_upload_stage(self, cfg):
        command = build_concat(concat(2), concat_sources(2), "h264_vaapi", OUTPUT, cfg)
        graph = value_after(command.args, "-filter_complex")
        assert "[vx1]format=nv12,hwupload[vout]" in graph
        assert value_after(command.args, "-map") == "[vout]"

    def test_clip_must_outlast_transition(self, cfg):
        with pytest.raises(ArgumentBuildError):
            build_concat(concat(clipDuration=0.5), concat_sources(3), "libx264", OUTPUT, cfg)


def test_build_command_dispatches_on_input_type(cfg):
    spec = simple(speed=2.0)
    assert build_command(spec, SOURCE, "libx264", OUTPUT, cfg) == build_simple_edit(
        spec, SOURCE, "libx264", OUTPUT, cfg
    )
