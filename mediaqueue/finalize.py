"""
File-system helpers for placing finished downloads.

Covers output name allocation, locating the artifact yt-dlp produced in a
job's scratch directory, and moving it into the download directory.
"""
import errno
import os
import re
import shutil
import logging
from pathlib import Path
from typing import Iterable, Optional

from .constants import (
    FALLBACK_FILE_NAME, INCOMPLETE_SUFFIX, MAX_FILE_NAME_LENGTH, SCRATCH_FILE_STEM
)
from .exceptions import FinalizeError
from .jobs import DownloadMode

logger = logging.getLogger(__name__)

_UNSAFE_CHARS_RE = re.compile(r'[\\/:*?"<>|\x00-\x1f]')
_CROSS_DEVICE_ERRNOS = {errno.EXDEV, errno.EEXIST}


def sanitize_file_name(raw_name: str) -> str:
    """Turns a title into a file-system safe base name."""
    collapsed = ' '.join(raw_name.split())
    replaced = _UNSAFE_CHARS_RE.sub('_', collapsed)
    trimmed = replaced.strip().rstrip('. ')
    if not trimmed:
        return FALLBACK_FILE_NAME
    return trimmed[:MAX_FILE_NAME_LENGTH].rstrip('. ') or FALLBACK_FILE_NAME


def build_unique_output_path(download_dir: Path, title: str, mode: DownloadMode,
                             reserved: Iterable[str] = ()) -> Path:
    """
    Picks `<title>.<ext>`, or `<title> (n).<ext>` on collision.

    Args:
        download_dir: The directory the file will be placed in.
        title: The job title, sanitized here.
        mode: The download mode, which determines the extension.
        reserved: Output paths already claimed by active jobs.

    Returns:
        A path that neither exists on disk nor is reserved.
    """
    base = sanitize_file_name(title)
    reserved_paths = {str(path) for path in reserved}
    suffix = 0
    while True:
        label = f" ({suffix})" if suffix else ""
        candidate = download_dir / f"{base}{label}.{mode.extension}"
        if not candidate.exists() and str(candidate) not in reserved_paths:
            return candidate
        suffix += 1


def resolve_downloaded_file(scratch_dir: Path, expected_ext: str) -> Path:
    """
    Finds the artifact yt-dlp produced for a job.

    The output template is `media.%(ext)s`, so `media.<ext>` is checked first.
    Otherwise the most recently modified file with the expected extension wins.

    Raises:
        FinalizeError: If no candidate file exists.
    """
    prioritized = scratch_dir / f"{SCRATCH_FILE_STEM}.{expected_ext}"
    if prioritized.is_file():
        return prioritized

    try:
        entries = list(scratch_dir.iterdir())
    except OSError as e:
        raise FinalizeError(f"Could not read the temporary folder: {e}") from e

    candidates = []
    for entry in entries:
        if not entry.is_file() or entry.suffix.lower() != f".{expected_ext.lower()}":
            continue
        try:
            candidates.append((entry.stat().st_mtime, entry))
        except OSError:
            continue
    if not candidates:
        raise FinalizeError("The finished file was not found in the temporary folder.")
    candidates.sort(key=lambda item: item[0], reverse=True)
    return candidates[0][1]


def move_file_with_fallback(source: Path, destination: Path):
    """
    Renames `source` to `destination`, copying across file systems when needed.

    Raises:
        FinalizeError: If the move fails for any other reason.
    """
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        os.rename(source, destination)
        return
    except OSError as e:
        if e.errno not in _CROSS_DEVICE_ERRNOS:
            raise FinalizeError(f"Could not move the file: {e}") from e
        logger.info(f"Rename across devices failed ({e}); copying {source.name} instead.")

    try:
        shutil.copy2(source, destination)
        source.unlink()
    except OSError as e:
        raise FinalizeError(f"Could not copy the file: {e}") from e


def remove_directory_safe(path: Path):
    shutil.rmtree(path, ignore_errors=True)


def incomplete_marker_path(destination: Path) -> Path:
    return destination.with_name(destination.name + INCOMPLETE_SUFFIX)


def write_incomplete_marker(destination: Path, job_id: str):
    marker = incomplete_marker_path(destination)
    marker.parent.mkdir(parents=True, exist_ok=True)
    marker.write_text(job_id, encoding='utf-8')


def clear_incomplete_marker(destination: Path):
    try:
        incomplete_marker_path(destination).unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove finalize marker for {destination}: {e}")


def read_marker_job_id(marker: Path) -> Optional[str]:
    try:
        return marker.read_text(encoding='utf-8').strip() or None
    except (OSError, UnicodeDecodeError):
        return None
