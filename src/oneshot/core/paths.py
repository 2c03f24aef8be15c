"""Filesystem checks for backup destinations."""

import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

# Characters Windows refuses in any path component.
_INVALID_CHARS_RE = re.compile(r'[<>"|?*\x00-\x1f]')
_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def is_network_path(path: str) -> bool:
    """True for UNC-style paths such as ``\\\\server\\share``."""
    return path.startswith("\\\\") or path.startswith("//")


def is_valid_path_syntax(path: str) -> bool:
    """
    Check a destination path for characters Windows would reject.

    A colon is only accepted as the drive separator (``D:\\Backups``).
    """
    if not path or not path.strip():
        return False
    if _INVALID_CHARS_RE.search(path):
        return False
    rest = path[2:] if _DRIVE_RE.match(path) else path
    return ":" not in rest


def path_exists(path: str) -> bool:
    return Path(path).exists()


def is_directory(path: str) -> bool:
    return Path(path).is_dir()


def create_directory(path: str) -> None:
    """
    Create a directory and any missing parents.

    Raises:
        OSError: If the directory cannot be created
    """
    logger.info("Creating backup destination %s", path)
    Path(path).mkdir(parents=True, exist_ok=True)
