"""
App name and static-bundle archive validation.

Everything here runs before the first mutation of a deployment, so a
rejection needs no rollback.
"""
import logging
import os
import re
import zipfile
from pathlib import Path, PurePosixPath

from dockhand.core.config import settings
from dockhand.core.exceptions import InvalidAppNameError, InvalidArchiveError

logger = logging.getLogger(__name__)

APP_NAME_PATTERN = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
APP_NAME_MIN_LENGTH = 3
APP_NAME_MAX_LENGTH = 50


def validate_app_name(name: str) -> None:
    """
    Check an app name against the naming grammar.

    Names are lowercase alphanumeric segments joined by single hyphens,
    3 to 50 characters long.

    Raises:
        InvalidAppNameError: If the name does not match
    """
    if not name or not APP_NAME_MIN_LENGTH <= len(name) <= APP_NAME_MAX_LENGTH:
        raise InvalidAppNameError(
            name, f"App name must be between {APP_NAME_MIN_LENGTH} and {APP_NAME_MAX_LENGTH} characters"
        )
    if not APP_NAME_PATTERN.match(name):
        raise InvalidAppNameError(
            name, "App name must contain only lowercase letters, numbers, and hyphens"
        )


def _format_size(size: int) -> str:
    for unit, factor in (("GB", 1024 ** 3), ("MB", 1024 ** 2), ("KB", 1024)):
        if size >= factor and size % factor == 0:
            return f"{size // factor}{unit}"
    return f"{size} bytes"


def _is_unsafe_entry(entry_name: str) -> bool:
    path = PurePosixPath(entry_name.replace("\\", "/"))
    return path.is_absolute() or ".." in path.parts


def validate_archive(archive_path: str, entry_point: str = None, max_size: int = None) -> None:
    """
    Validate an uploaded static bundle.

    Args:
        archive_path: Path to the uploaded ZIP archive
        entry_point: File that must exist at the archive root (default from settings)
        max_size: Size ceiling in bytes (default from settings)

    Raises:
        InvalidArchiveError: If the archive is missing, oversized, unreadable,
            contains traversal entries, or lacks a root entry point
    """
    entry_point = entry_point or settings.ENTRY_POINT_FILE
    max_size = max_size or settings.MAX_ARCHIVE_SIZE

    if not os.path.isfile(archive_path):
        raise InvalidArchiveError(archive_path, "Uploaded archive not found")

    if os.path.getsize(archive_path) > max_size:
        raise InvalidArchiveError(archive_path, f"ZIP file exceeds {_format_size(max_size)} limit")

    try:
        with zipfile.ZipFile(archive_path) as archive:
            names = archive.namelist()
    except zipfile.BadZipFile as e:
        raise InvalidArchiveError(archive_path, f"Invalid ZIP archive: {e}")

    if any(_is_unsafe_entry(name) for name in names):
        raise InvalidArchiveError(archive_path, "Zip contains malicious path traversal")

    if entry_point not in names:
        raise InvalidArchiveError(
            archive_path, f"ZIP must contain {entry_point} at the root level"
        )


def extract_archive(archive_path: str, dest_dir: str) -> Path:
    """
    Extract a validated archive into ``dest_dir`` (created if missing).

    Returns:
        The destination directory
    """
    dest = Path(dest_dir)
    dest.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(archive_path) as archive:
        archive.extractall(dest)
    logger.debug(f"Extracted {archive_path} to {dest}")
    return dest
