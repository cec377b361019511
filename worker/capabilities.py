"""
Encoder capability detection.

Runs once at startup: confirms the ffmpeg binary works, picks the preferred
H.264 encoder and sizes the concurrency gate.
"""
import glob
import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from typing import Optional

from config import WorkerSettings, settings
from errors import EncoderUnavailableError
from commands import SOFTWARE_ENCODER, HARDWARE_ENCODERS, is_hardware_encoder

logger = logging.getLogger(__name__)

ENCODER_LINE = re.compile(r"^\s*[VAS][A-Z.]{5}\s+(\S+)")

# hw_accel setting -> encoder, in "auto" preference order
_HW_PREFERENCE = [("nvenc", "h264_nvenc"), ("vaapi", "h264_vaapi"), ("qsv", "h264_qsv")]


@dataclass
class EngineCapabilities:
    ffmpeg_path: str
    ffmpeg_version: str
    encoders: set[str] = field(default_factory=set)
    preferred_encoder: str = SOFTWARE_ENCODER
    gpu_count: int = 0
    cpu_cores: int = 1

    @property
    def gpu_available(self) -> bool:
        return is_hardware_encoder(self.preferred_encoder) and self.gpu_count > 0

    def concurrency(self, override: Optional[int] = None) -> int:
        """One slot per GPU, else a quarter of the CPU cores (at least one).

        An override never exceeds the GPU count when a hardware encoder is in use.
        """
        if override:
            return min(override, self.gpu_count) if self.gpu_available else override
        if self.gpu_available:
            return self.gpu_count
        return max(1, self.cpu_cores // 4)


def _run(cmd: list[str], timeout: float = 10) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)


def detect_ffmpeg_version(ffmpeg_path: str) -> str:
    """Return the ffmpeg version string or raise EncoderUnavailableError."""
    try:
        result = _run([ffmpeg_path, "-version"], timeout=5)
    except (OSError, subprocess.SubprocessError) as e:
        raise EncoderUnavailableError(f"FFmpeg binary not available ({ffmpeg_path}): {e}")
    if result.returncode != 0:
        raise EncoderUnavailableError(
            f"FFmpeg binary not usable ({ffmpeg_path}): exited with code {result.returncode}"
        )
    m = re.search(r"ffmpeg version (\S+)", result.stdout)
    return m.group(1) if m else "unknown"


def list_encoders(ffmpeg_path: str) -> set[str]:
    try:
        result = _run([ffmpeg_path, "-hide_banner", "-encoders"])
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Failed to list encoders, defaulting to {SOFTWARE_ENCODER}: {e}")
        return set()
    encoders = set()
    for line in result.stdout.splitlines():
        m = ENCODER_LINE.match(line)
        if m:
            encoders.add(m.group(1))
    return encoders


def choose_encoder(hw_accel: str, encoders: set[str]) -> str:
    if hw_accel == "none":
        return SOFTWARE_ENCODER
    for name, encoder in _HW_PREFERENCE:
        if hw_accel in ("auto", name) and encoder in encoders:
            return encoder
    if hw_accel != "auto":
        logger.warning(f"Requested hw_accel={hw_accel} but its encoder is not available")
    return SOFTWARE_ENCODER


def count_gpus(encoder: str, worker_settings: WorkerSettings) -> int:
    """Number of devices usable by ``encoder`` (0 for the software encoder)."""
    if encoder == "h264_nvenc":
        try:
            result = _run([
                worker_settings.nvidia_smi_path,
                "--query-gpu=name", "--format=csv,noheader"
            ])
            if result.returncode == 0:
                names = [line for line in result.stdout.splitlines() if line.strip()]
                if names:
                    return len(names)
        except (OSError, subprocess.SubprocessError) as e:
            logger.info(f"nvidia-smi unavailable: {e}")
        # The encoder is compiled in; assume a single device.
        return 1
    if encoder in HARDWARE_ENCODERS:
        nodes = glob.glob("/dev/dri/renderD*")
        return max(1, len(nodes))
    return 0


def detect_capabilities(worker_settings: Optional[WorkerSettings] = None) -> EngineCapabilities:
    worker_settings = worker_settings or settings
    version = detect_ffmpeg_version(worker_settings.ffmpeg_path)
    logger.info(f"[FFmpeg] Found: {worker_settings.ffmpeg_path} (version {version})")

    encoders = list_encoders(worker_settings.ffmpeg_path)
    preferred = choose_encoder(worker_settings.hw_accel, encoders)
    if is_hardware_encoder(preferred):
        logger.info(f"[FFmpeg] GPU acceleration: ENABLED ({preferred})")
    else:
        logger.info(f"[FFmpeg] GPU acceleration: NOT AVAILABLE (using {SOFTWARE_ENCODER})")

    caps = EngineCapabilities(
        ffmpeg_path=worker_settings.ffmpeg_path,
        ffmpeg_version=version,
        encoders=encoders,
        preferred_encoder=preferred,
        gpu_count=count_gpus(preferred, worker_settings),
        cpu_cores=os.cpu_count() or 1,
    )
    logger.info(
        f"[Queue] Concurrency={caps.concurrency(worker_settings.max_concurrent_jobs)} "
        f"(GPUs={caps.gpu_count}, CPU cores={caps.cpu_cores})"
    )
    return caps
