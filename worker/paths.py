"""
Path safety for client-supplied local paths.
"""
import logging
import os
from pathlib import Path, PurePath
from typing import Iterable

from errors import ValidationError

logger = logging.getLogger(__name__)


def sanitize_path(value: str, allowed_dirs: Iterable[Path]) -> Path:
    """Return ``value`` as a normalized absolute path under one of ``allowed_dirs``.

    The file itself need not exist yet; existence is checked when the job runs.
    """
    if not value or not isinstance(value, str):
        raise ValidationError("Source path must be a non-empty string", "INVALID_PATH")

    if ".." in PurePath(value).parts:
        logger.warning(f"Rejected path with traversal segment: {value}")
        raise ValidationError("Invalid or inaccessible source path", "INVALID_PATH")

    if not os.path.isabs(value):
        raise ValidationError("Source path must be absolute", "INVALID_PATH")

    normalized = Path(os.path.normpath(value))
    for root in allowed_dirs:
        root = Path(os.path.normpath(os.path.abspath(root)))
        if normalized == root or normalized.is_relative_to(root):
            return normalized

    logger.warning(f"Rejected path outside allowed directories: {value}")
    raise ValidationError("Invalid or inaccessible source path", "INVALID_PATH")
