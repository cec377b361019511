"""
Error taxonomy and FFmpeg stderr classification tests.
"""

import pytest

from errors import (
    JobNotFoundError,
    ProcessFailure,
    QueueOverflowError,
    RenderTimeoutError,
    ValidationError,
    parse_ffmpeg_error,
)


def test_error_codes_and_payload():
    assert ValidationError("bad").to_dict() == {"code": "VALIDATION_ERROR", "message": "bad"}
    assert ValidationError("no source", "MISSING_SOURCE").code == "MISSING_SOURCE"
    assert JobNotFoundError("abc").message == "Job abc not found"
    assert QueueOverflowError(100).code == "QUEUE_OVERFLOW"
    assert RenderTimeoutError(600).message == "FFmpeg timeout after 600s"
    assert ProcessFailure("x", "EMPTY_OUTPUT").code == "EMPTY_OUTPUT"
    assert ProcessFailure("x").code == "FFMPEG_EXIT_ERROR"


@pytest.mark.parametrize(
    "stderr, code",
    [
        ("[h264_nvenc @ 0x1] Unknown encoder 'h264_nvenc'", "FFMPEG_INVALID_CODEC"),
        ("Error while opening encoder for output stream #0:0", "FFMPEG_ENCODING_FAILED"),
        ("input.mp4: Invalid data found when processing input", "INPUT_FILE_CORRUPTED"),
        ("[mov @ 0x2] moov atom not found", "INPUT_FILE_CORRUPTED"),
        ("Could not write header for output file #0", "FFMPEG_INCOMPATIBLE_FORMATS"),
        ("out.mp4: Permission denied", "STORAGE_WRITE_FAILED"),
        ("av_interleaved_write_frame(): No space left on device", "STORAGE_DISK_FULL"),
        ("Cannot allocate memory", "RESOURCE_OUT_OF_MEMORY"),
        ("something odd happened", "FFMPEG_ERROR_UNKNOWN"),
        ("", "FFMPEG_ERROR_UNKNOWN"),
    ],
)
def test_parse_ffmpeg_error(stderr, code):
    assert parse_ffmpeg_error(stderr).code == code


def test_details_use_the_last_error_line():
    stderr = "frame=10 time=00:00:01.00\nError opening output file out.mp4\nConversion failed!"
    info = parse_ffmpeg_error(stderr)
    assert info.details == "Conversion failed!"
    assert info.describe() == f"{info.message}: Conversion failed!"
