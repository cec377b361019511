"""
Render worker error types.

Every failure carries a stable ``code`` so it can be recorded on a job
and returned to polling clients as ``{code, message}``.
"""
from dataclasses import dataclass
from typing import Optional


class RenderError(Exception):
    """Base exception for all render-worker failures."""

    code = "EXECUTION_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(RenderError):
    """A submission was rejected before any job was created."""

    code = "VALIDATION_ERROR"


class QueueOverflowError(RenderError):
    """The pending list is full."""

    code = "QUEUE_OVERFLOW"

    def __init__(self, depth: int):
        self.depth = depth
        super().__init__(
            f"Server is currently overloaded ({depth} jobs pending). Please try again later."
        )


class JobNotFoundError(RenderError):
    """Raised when a job id is unknown or has been evicted."""

    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class SourceUnavailableError(RenderError):
    code = "SOURCE_UNAVAILABLE"


class ArgumentBuildError(RenderError):
    code = "ARGUMENT_BUILD_ERROR"


class EncoderUnavailableError(RenderError):
    code = "FFMPEG_UNAVAILABLE"


class ProcessFailure(RenderError):
    """An encoder attempt failed: non-zero exit, missing/empty output or spawn error."""

    code = "FFMPEG_EXIT_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        returncode: Optional[int] = None,
        stderr_tail: str = "",
    ):
        super().__init__(message, code)
        self.returncode = returncode
        self.stderr_tail = stderr_tail


class RenderTimeoutError(RenderError):
    """An encoder attempt exceeded the wall-clock ceiling and was killed."""

    code = "TIMEOUT_ERROR"

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"FFmpeg timeout after {timeout:g}s")


# ============================================================================
# FFmpeg stderr classification
# ============================================================================

@dataclass
class FFmpegErrorInfo:
    category: str
    code: str
    message: str
    details: Optional[str] = None

    def describe(self) -> str:
        return f"{self.message}: {self.details}" if self.details else self.message


def parse_ffmpeg_error(stderr: str) -> FFmpegErrorInfo:
    """Map FFmpeg stderr output to a human-readable failure category."""
    if not stderr or not stderr.strip():
        return FFmpegErrorInfo("FFMPEG_ERROR", "FFMPEG_ERROR_UNKNOWN", "FFmpeg failed with no output")

    lower = stderr.lower()

    if "unknown codec" in lower or "codec not found" in lower or "unknown encoder" in lower:
        return FFmpegErrorInfo(
            "FFMPEG_ERROR", "FFMPEG_INVALID_CODEC",
            "Requested codec not supported", _last_error_line(stderr)
        )
    if "encoding failed" in lower or ("encoder" in lower and "error" in lower):
        return FFmpegErrorInfo(
            "FFMPEG_ERROR", "FFMPEG_ENCODING_FAILED",
            "Video encoding failed", _last_error_line(stderr)
        )
    if "invalid data" in lower or "invalid file" in lower or "moov atom not found" in lower:
        return FFmpegErrorInfo(
            "INPUT_ERROR", "INPUT_FILE_CORRUPTED",
            "Source file is corrupted or invalid", _last_error_line(stderr)
        )
    if "could not write header" in lower or "incompatible" in lower:
        return FFmpegErrorInfo(
            "FFMPEG_ERROR", "FFMPEG_INCOMPATIBLE_FORMATS",
            "Input formats are incompatible", _last_error_line(stderr)
        )
    if "pts" in lower and ("dts" in lower or "timestamp" in lower):
        return FFmpegErrorInfo(
            "FFMPEG_ERROR", "FFMPEG_AUDIO_SYNC_ERROR",
            "Audio/video synchronization failed", "Timestamp mismatch detected"
        )
    if "permission denied" in lower or "access denied" in lower:
        return FFmpegErrorInfo(
            "STORAGE_ERROR", "STORAGE_WRITE_FAILED",
            "Permission denied writing output file", _last_error_line(stderr)
        )
    if "no space" in lower or "disk full" in lower:
        return FFmpegErrorInfo("STORAGE_ERROR", "STORAGE_DISK_FULL", "Server disk space full")
    if "out of memory" in lower or "cannot allocate" in lower:
        return FFmpegErrorInfo(
            "RESOURCE_ERROR", "RESOURCE_OUT_OF_MEMORY",
            "Insufficient memory to process video", _last_error_line(stderr)
        )

    return FFmpegErrorInfo(
        "FFMPEG_ERROR", "FFMPEG_ERROR_UNKNOWN",
        "FFmpeg processing failed", _last_error_line(stderr)
    )


def _last_error_line(stderr: str) -> str:
    """Last line mentioning an error, else the last non-empty line."""
    lines = [line.strip() for line in stderr.splitlines() if line.strip()]
    for line in reversed(lines):
        lowered = line.lower()
        if "error" in lowered or "failed" in lowered or "invalid" in lowered:
            return line
    return lines[-1] if lines else "Unknown FFmpeg error"
