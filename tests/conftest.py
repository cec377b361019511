"""
Pytest fixtures for the render worker tests.

FFmpeg is replaced by a small executable script whose behavior is read from
``ffmpeg.json`` next to it on every invocation, so a test can switch it
between success, failure, hanging and bogus output:

    fail_encoders: list of ``-c:v`` values that exit 1
    hang:          sleep instead of encoding (for timeouts)
    write_output:  create the output file (default true)
    output_bytes:  size of the output file (default 1024)
    steps:         number of ``time=`` progress lines (default 3)
    step_delay:    seconds between progress lines

Each encode invocation is appended to ``calls.jsonl``.
"""

import json
import sys
from pathlib import Path

import httpx
import pytest

from config import WorkerSettings, init_directories
from scheduler import RenderScheduler
from sources import SourceResolver


FAKE_FFMPEG_SCRIPT = r'''
import json
import sys
import time
from pathlib import Path

HERE = Path(__file__).parent
args = sys.argv[1:]
config_file = HERE / "ffmpeg.json"
config = json.loads(config_file.read_text()) if config_file.exists() else {}

if "-version" in args:
    print("ffmpeg version 6.1-fake Copyright (c) 2000-2023 the FFmpeg developers")
    sys.exit(0)

if "-encoders" in args:
    print("Encoders:")
    print(" V....D libx264              libx264 H.264 / AVC / MPEG-4 AVC")
    for name in config.get("encoders", ["h264_nvenc"]):
        print(f" V....D {name:<20} fake hardware encoder")
    print(" A....D aac                  AAC (Advanced Audio Coding)")
    sys.exit(0)

with (HERE / "calls.jsonl").open("a") as f:
    f.write(json.dumps(args) + "\n")

encoder = args[args.index("-c:v") + 1] if "-c:v" in args else None
if encoder in config.get("fail_encoders", []):
    sys.stderr.write(f"[{encoder} @ 0x55d0] No capable devices found\n")
    sys.stderr.write("Error while opening encoder for output stream #0:0\n")
    sys.exit(1)

if config.get("hang"):
    time.sleep(60)
    sys.exit(0)

for step in range(1, config.get("steps", 3) + 1):
    sys.stderr.write(
        f"frame={step * 30} fps=30 q=23.0 size=256kB time=00:00:{step:02d}.00 "
        f"bitrate=1000.0kbits/s speed=1.0x\r"
    )
    sys.stderr.flush()
    time.sleep(config.get("step_delay", 0))
sys.stderr.write("\n")

if config.get("write_output", True):
    Path(args[-1]).write_bytes(b"\0" * config.get("output_bytes", 1024))
sys.exit(config.get("exit_code", 0))
'''


class FakeFFmpeg:
    """Handle on the fake ffmpeg executable."""

    def __init__(self, root: Path):
        root.mkdir(parents=True, exist_ok=True)
        self.script = root / "fake_ffmpeg.py"
        self.path = root / "ffmpeg"
        self.config_file = root / "ffmpeg.json"
        self.calls_file = root / "calls.jsonl"
        self.script.write_text(FAKE_FFMPEG_SCRIPT)
        self.path.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{self.script}" "$@"\n')
        self.path.chmod(0o755)
        self.configure()

    def configure(self, **config):
        self.config_file.write_text(json.dumps(config))

    @property
    def calls(self) -> list[list[str]]:
        if not self.calls_file.exists():
            return []
        return [json.loads(line) for line in self.calls_file.read_text().splitlines() if line]

    @property
    def encoders_used(self) -> list[str]:
        return [args[args.index("-c:v") + 1] for args in self.calls]


@pytest.fixture
def fake_ffmpeg(tmp_path: Path) -> FakeFFmpeg:
    return FakeFFmpeg(tmp_path / "bin")


@pytest.fixture
def worker_settings(tmp_path: Path, fake_ffmpeg: FakeFFmpeg) -> WorkerSettings:
    """Settings rooted in a temp dir, with ffprobe deliberately missing."""
    settings = WorkerSettings(
        data_dir=tmp_path / "data",
        log_dir=tmp_path / "logs",
        ffmpeg_path=str(fake_ffmpeg.path),
        ffprobe_path=str(tmp_path / "bin" / "missing-ffprobe"),
        nvidia_smi_path=str(tmp_path / "bin" / "missing-nvidia-smi"),
        default_expected_duration=4.0,
        job_timeout=10,
        cleanup_interval_seconds=0,
    )
    init_directories(settings)
    return settings


@pytest.fixture
def source_file(worker_settings: WorkerSettings) -> Path:
    """A local source file inside the uploads directory."""
    path = worker_settings.upload_dir / "clip.mp4"
    path.write_bytes(b"not really a video")
    return path


def remote_handler(request: httpx.Request) -> httpx.Response:
    """Serves any URL except paths ending in ``missing.mp4`` (404) or ``empty.mp4``."""
    if request.url.path.endswith("missing.mp4"):
        return httpx.Response(404)
    if request.url.path.endswith("empty.mp4"):
        return httpx.Response(200, content=b"")
    return httpx.Response(200, content=b"remote-video-bytes")


@pytest.fixture
def mock_transport() -> httpx.MockTransport:
    return httpx.MockTransport(remote_handler)


@pytest.fixture
def resolver(worker_settings: WorkerSettings, mock_transport: httpx.MockTransport) -> SourceResolver:
    return SourceResolver(worker_settings, transport=mock_transport)


@pytest.fixture
def make_scheduler(worker_settings: WorkerSettings, resolver: SourceResolver):
    """Factory for schedulers that share the test settings and mock downloads."""
    def _make(**kwargs) -> RenderScheduler:
        kwargs.setdefault("resolver", resolver)
        return RenderScheduler(worker_settings, **kwargs)
    return _make


@pytest.fixture
async def scheduler(make_scheduler):
    """A started single-slot scheduler using the software encoder."""
    sched = make_scheduler()
    await sched.start()
    yield sched
    await sched.stop()
