"""
Parses yt-dlp output lines into job progress fields.

yt-dlp is started with `--newline`, so every progress update arrives as its own
line, e.g. `[download]  42.5% of 10.00MiB at 1.20MiB/s ETA 00:05`.
"""
import re
from typing import Optional

from .constants import PROGRESS_EPSILON
from .jobs import DownloadJob, JobStatus

ERROR_MARKERS = ('ERROR:', 'HTTP Error')
RATE_MARKER = ' at '
ETA_MARKER = ' ETA'

_PERCENT_RE = re.compile(r'(\d+(?:\.\d+)?)%')


def parse_progress_percent(line: str) -> Optional[float]:
    match = _PERCENT_RE.search(line)
    if not match:
        return None
    try:
        return min(max(float(match.group(1)), 0.0), 100.0)
    except ValueError:
        return None


def parse_speed(line: str) -> Optional[str]:
    """Returns the text between the rate marker and the ETA marker, if both are present."""
    start = line.find(RATE_MARKER)
    end = line.find(ETA_MARKER)
    if start == -1 or end == -1 or end <= start + len(RATE_MARKER):
        return None
    speed = line[start + len(RATE_MARKER):end].strip()
    return speed or None


def parse_eta(line: str) -> Optional[str]:
    marker = ETA_MARKER + ' '
    index = line.find(marker)
    if index == -1:
        return None
    eta = line[index + len(marker):].strip()
    return eta or None


def is_error_line(line: str) -> bool:
    return any(marker in line for marker in ERROR_MARKERS)


def apply_output_line(job: DownloadJob, raw_line: str) -> bool:
    """
    Applies one line of tool output to a job.

    Only jobs that are queued or downloading accept output; a paused or canceled
    job ignores whatever the dying process still prints.

    Args:
        job: The job to mutate in place.
        raw_line: One line from stdout or stderr.

    Returns:
        True if any externally visible field changed.
    """
    line = raw_line.strip()
    if not line:
        return False
    if job.status not in (JobStatus.QUEUED, JobStatus.DOWNLOADING):
        return False

    changed = job.append_log(line)

    if is_error_line(line) and job.error_message != line:
        job.error_message = line
        changed = True

    percent = parse_progress_percent(line)
    if percent is not None:
        if job.status != JobStatus.DOWNLOADING:
            job.status = JobStatus.DOWNLOADING
            job.progress_percent = percent
            changed = True
        elif percent - job.progress_percent > PROGRESS_EPSILON:
            # Progress only moves forward within an attempt.
            job.progress_percent = percent
            changed = True

    speed = parse_speed(line)
    if speed is not None and job.speed_text != speed:
        job.speed_text = speed
        changed = True

    eta = parse_eta(line)
    if eta is not None and job.eta_text != eta:
        job.eta_text = eta
        changed = True

    return changed
