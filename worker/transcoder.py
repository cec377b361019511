"""
FlowScale Render Worker - FFmpeg process runner with encoder fallback
"""
import asyncio
import json
import logging
import re
import shlex
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from config import WorkerSettings, settings
from commands import RenderCommand, SourceInfo, SOFTWARE_ENCODER, is_hardware_encoder
from errors import ProcessFailure, RenderTimeoutError, parse_ffmpeg_error
from jobs import Job

logger = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r"time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
LINE_SPLIT = re.compile(r"[\r\n]+")
STDERR_TAIL_LINES = 40

ProgressCallback = Callable[[Job], None]


@dataclass
class RenderResult:
    """Outcome of a successful encoder attempt."""
    output_path: Path
    size_bytes: int
    encoder: str


class ProgressTracker:
    """Turns ffmpeg ``time=`` markers into (percent, eta) pairs."""

    def __init__(
        self,
        expected_seconds: float,
        eta_min_progress: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.expected_seconds = expected_seconds if expected_seconds > 0 else 1.0
        self.eta_min_progress = eta_min_progress
        self._clock = clock
        self.started = clock()

    @staticmethod
    def parse_time(line: str) -> Optional[float]:
        matches = TIME_PATTERN.findall(line)
        if not matches:
            return None
        hours, minutes, seconds = matches[-1]
        return int(hours) * 3600 + int(minutes) * 60 + float(seconds)

    def update(self, line: str) -> Optional[tuple[int, Optional[float]]]:
        current = self.parse_time(line)
        if current is None:
            return None

        # 100 is reserved for a verified successful exit.
        percent = min(99, round(current / self.expected_seconds * 100))

        eta = None
        if percent > self.eta_min_progress and current > 0:
            elapsed = self._clock() - self.started
            if elapsed > 0:
                remaining = max(0.0, self.expected_seconds - current)
                eta = round(elapsed / current * remaining, 1)
        return percent, eta


class FFmpegTranscoder:
    """Executes one FFmpeg attempt and enforces its post-conditions."""

    def __init__(self, worker_settings: Optional[WorkerSettings] = None):
        self.settings = worker_settings or settings
        self.ffmpeg_path = self.settings.ffmpeg_path
        self.ffprobe_path = self.settings.ffprobe_path

    async def probe_input(self, input_path: str) -> dict:
        """Get media information using ffprobe."""
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            input_path
        ]

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=30)

            if proc.returncode == 0:
                return json.loads(stdout.decode())
            else:
                logger.warning(f"ffprobe failed for {input_path}: {stderr.decode()[-300:]}")
                return {}
        except asyncio.TimeoutError:
            logger.warning(f"ffprobe timed out for {input_path}")
            proc.kill()
            await proc.wait()
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"ffprobe error for {input_path}: {e}")
            return {}

    async def probe_source(self, path: Path) -> SourceInfo:
        """Duration and audio presence; unknown fields stay None."""
        info = await self.probe_input(str(path))
        if not info:
            return SourceInfo(path)
        try:
            duration = float(info.get("format", {}).get("duration") or 0) or None
        except (TypeError, ValueError):
            duration = None
        streams = info.get("streams", [])
        has_audio = any(stream.get("codec_type") == "audio" for stream in streams)
        return SourceInfo(path, duration, has_audio)

    async def run(
        self,
        job: Job,
        command: RenderCommand,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> RenderResult:
        """Spawn ffmpeg, follow its progress and verify the output it claims to have written."""
        output_path = command.output_path
        output_path.parent.mkdir(parents=True, exist_ok=True)
        # A leftover file from an earlier attempt must not pass the output check.
        output_path.unlink(missing_ok=True)

        logger.info(f"[{job.job_id}] Starting render ({command.encoder}): {shlex.join(command.args)}")
        tracker = ProgressTracker(command.expected_duration, self.settings.eta_min_progress)
        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

        try:
            process = await asyncio.create_subprocess_exec(
                *command.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProcessFailure(f"Failed to start FFmpeg: {e}", "SPAWN_ERROR")

        timeout = self.settings.job_timeout
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    process.wait(),
                    self._drain_stderr(process, job, tracker, stderr_tail, progress_callback),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            await self._kill(process)
            job.append_log(f"[Timeout] FFmpeg killed after {timeout:g}s")
            logger.error(f"[{job.job_id}] FFmpeg timeout after {timeout:g}s")
            raise RenderTimeoutError(timeout)
        except asyncio.CancelledError:
            await self._kill(process)
            logger.info(f"[{job.job_id}] Render cancelled")
            raise

        returncode = process.returncode
        if returncode != 0:
            tail = "\n".join(stderr_tail)
            info = parse_ffmpeg_error(tail)
            logger.error(f"[{job.job_id}] FFmpeg exited with code {returncode}: {info.describe()}")
            raise ProcessFailure(
                f"FFmpeg exited with code {returncode}: {info.describe()}",
                returncode=returncode,
                stderr_tail=tail,
            )

        # Exit code 0 alone is not trusted.
        if not output_path.exists():
            raise ProcessFailure("FFmpeg completed but output file not found", "NO_OUTPUT", returncode)
        size = output_path.stat().st_size
        if size == 0:
            raise ProcessFailure(
                "FFmpeg completed but output file is empty (0 bytes)", "EMPTY_OUTPUT", returncode
            )

        logger.info(f"[{job.job_id}] Render completed ({size} bytes, {command.encoder})")
        return RenderResult(output_path=output_path, size_bytes=size, encoder=command.encoder)

    async def _drain_stderr(
        self,
        process: asyncio.subprocess.Process,
        job: Job,
        tracker: ProgressTracker,
        stderr_tail: deque,
        progress_callback: Optional[ProgressCallback],
    ) -> None:
        """Read stderr until EOF; ffmpeg separates stats updates with '\\r'."""
        buffer = ""
        while True:
            chunk = await process.stderr.read(4096)
            if not chunk:
                break
            buffer += chunk.decode(errors="replace")
            *lines, buffer = LINE_SPLIT.split(buffer)
            for line in lines:
                self._handle_line(line, job, tracker, stderr_tail, progress_callback)
        if buffer:
            self._handle_line(buffer, job, tracker, stderr_tail, progress_callback)

    def _handle_line(
        self,
        line: str,
        job: Job,
        tracker: ProgressTracker,
        stderr_tail: deque,
        progress_callback: Optional[ProgressCallback],
    ) -> None:
        line = line.strip()
        if not line:
            return
        job.append_log(line)
        stderr_tail.append(line)
        if self.settings.log_ffmpeg_output:
            logger.debug(f"[{job.job_id}] {line}")

        update = tracker.update(line)
        if update is None:
            return
        percent, eta = update
        if job.update_progress(percent, eta) and progress_callback:
            progress_callback(job)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()


class EncoderFallbackPolicy:
    """Runs an attempt with the preferred encoder and, if a hardware encoder
    fails, exactly one more with the software encoder."""

    def __init__(self, transcoder: FFmpegTranscoder, software_encoder: str = SOFTWARE_ENCODER):
        self.transcoder = transcoder
        self.software_encoder = software_encoder

    async def execute(
        self,
        job: Job,
        preferred_encoder: str,
        build: Callable[[str], RenderCommand],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> RenderResult:
        try:
            return await self._attempt(job, build, preferred_encoder, progress_callback)
        except (ProcessFailure, RenderTimeoutError) as e:
            if not is_hardware_encoder(preferred_encoder):
                raise
            logger.warning(f"[{job.job_id}] GPU render failed ({e.message}). Falling back to CPU.")
            job.append_log(f"[Warning] GPU render failed: {e.message}")
            job.append_log(f"[Fallback] Retrying with CPU ({self.software_encoder})...")
            return await self._attempt(job, build, self.software_encoder, progress_callback)

    async def _attempt(
        self,
        job: Job,
        build: Callable[[str], RenderCommand],
        encoder: str,
        progress_callback: Optional[ProgressCallback],
    ) -> RenderResult:
        command = build(encoder)
        job.command_line = list(command.args)
        job.attempts += 1
        job.append_log(f"[Command] {shlex.join(command.args)}")
        return await self.transcoder.run(job, command, progress_callback)
