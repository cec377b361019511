"""
FlowScale Render Worker - Configuration
"""
import logging
import sys
from pathlib import Path
from typing import Optional, Literal
from pydantic import Field
from pydantic_settings import BaseSettings


class WorkerSettings(BaseSettings):
    """Configuration for the render worker service."""

    # Server settings
    host: str = Field(default="0.0.0.0", description="Host to bind to")
    port: int = Field(default=3000, description="Port to listen on")
    workers: int = Field(default=1, description="Number of uvicorn workers")

    # FFmpeg settings
    ffmpeg_path: str = Field(
        default="ffmpeg",
        description="Path to FFmpeg executable"
    )
    ffprobe_path: str = Field(
        default="ffprobe",
        description="Path to FFprobe executable"
    )
    nvidia_smi_path: str = Field(
        default="nvidia-smi",
        description="Path to nvidia-smi, used to count NVENC-capable GPUs"
    )

    # Hardware acceleration
    hw_accel: Literal["auto", "nvenc", "vaapi", "qsv", "none"] = Field(
        default="auto",
        description="Hardware encoder preference (auto picks the first available)"
    )
    vaapi_device: str = Field(
        default="/dev/dri/renderD128",
        description="Render node used by VAAPI and QSV"
    )

    # Encoder tuning
    software_preset: str = Field(default="fast", description="libx264 preset")
    nvenc_preset: str = Field(default="p4", description="NVENC preset (p1-p7)")
    qsv_preset: str = Field(default="veryfast", description="QSV preset")
    video_quality: int = Field(
        default=23,
        ge=1,
        le=51,
        description="CRF / CQ / QP depending on the encoder (lower = better)"
    )
    audio_bitrate: str = Field(default="128k", description="AAC bitrate")

    # Paths
    data_dir: Path = Field(
        default=Path("./data"),
        description="Root for uploads/, outputs/, temp/ and projects/"
    )
    log_dir: Path = Field(
        default=Path("./logs"),
        description="Directory for worker logs"
    )
    # Example: RENDER_WORKER_EXTRA_ALLOWED_DIRS="/var/www/flowscale;/mnt/media"
    extra_allowed_dirs: Optional[str] = Field(
        default=None,
        description="Additional roots for client-supplied paths, semicolon-delimited"
    )

    # Job settings
    max_concurrent_jobs: Optional[int] = Field(
        default=None,
        ge=1,
        description="Concurrency slots; detected from GPUs / CPU cores when unset"
    )
    max_queue_depth: int = Field(
        default=100,
        ge=1,
        description="Pending jobs accepted before submissions are rejected"
    )
    max_jobs_retained: int = Field(
        default=100,
        ge=1,
        description="Job records kept for status polling"
    )
    job_timeout: float = Field(
        default=600,
        description="Wall-clock ceiling for one encoder attempt, in seconds"
    )
    download_timeout: float = Field(
        default=120,
        description="HTTP timeout for remote source downloads, in seconds"
    )
    max_download_bytes: int = Field(
        default=200 * 1024 * 1024,
        description="Remote sources larger than this are rejected"
    )
    logs_tail_lines: int = Field(
        default=50,
        ge=1,
        description="Number of log lines kept in a job's tail view"
    )

    # Progress reporting
    default_expected_duration: float = Field(
        default=30.0,
        description="Output duration assumed when it cannot be derived, in seconds"
    )
    eta_min_progress: int = Field(
        default=5,
        description="ETA is reported only once progress exceeds this percentage"
    )

    # Multi-source concatenation
    concat_width: int = Field(default=1080, description="Normalized concat width")
    concat_height: int = Field(default=1920, description="Normalized concat height")
    concat_fps: int = Field(default=30, description="Normalized concat frame rate")
    concat_clip_duration: float = Field(
        default=3.0,
        description="Seconds taken from each concat input"
    )
    transition_duration: float = Field(
        default=0.5,
        description="Length of each transition between concat inputs"
    )
    concat_max_duration: float = Field(
        default=30.0,
        description="Hard cap on concat output duration, in seconds"
    )

    # Cleanup
    cleanup_temp_after_hours: float = Field(
        default=2,
        description="Delete stray scratch files older than this many hours"
    )
    cleanup_interval_seconds: float = Field(
        default=1800,
        description="How often the scratch sweeper runs (0 disables it)"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)"
    )
    log_ffmpeg_output: bool = Field(
        default=False,
        description="Mirror FFmpeg stderr lines to the worker log at DEBUG"
    )

    class Config:
        env_prefix = "RENDER_WORKER_"
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def upload_dir(self) -> Path:
        return self.data_dir / "uploads"

    @property
    def output_dir(self) -> Path:
        return self.data_dir / "outputs"

    @property
    def temp_dir(self) -> Path:
        return self.data_dir / "temp"

    @property
    def projects_dir(self) -> Path:
        return self.data_dir / "projects"

    def allowed_dirs(self) -> list[Path]:
        """Roots a client-supplied local path may live under."""
        dirs = [self.upload_dir, self.output_dir, self.temp_dir]
        if self.extra_allowed_dirs:
            for entry in self.extra_allowed_dirs.split(";"):
                entry = entry.strip()
                if entry:
                    dirs.append(Path(entry))
        return dirs


# Global settings instance
settings = WorkerSettings()


def init_directories(worker_settings: Optional[WorkerSettings] = None):
    """Create necessary directories.

    Resolves data_dir/log_dir to absolute paths so that output paths handed
    to ffmpeg never depend on the worker's cwd.
    """
    worker_settings = worker_settings or settings
    worker_settings.data_dir = worker_settings.data_dir.resolve()
    worker_settings.log_dir = worker_settings.log_dir.resolve()
    for directory in (
        worker_settings.upload_dir,
        worker_settings.output_dir,
        worker_settings.temp_dir,
        worker_settings.projects_dir,
        worker_settings.log_dir,
    ):
        directory.mkdir(parents=True, exist_ok=True)


def configure_logging(worker_settings: Optional[WorkerSettings] = None):
    """Send logs to stdout and log_dir/worker.log."""
    worker_settings = worker_settings or settings
    worker_settings.log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, worker_settings.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(worker_settings.log_dir / "worker.log")
        ]
    )
