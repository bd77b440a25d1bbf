"""
Defines the data models for download jobs and queue snapshots.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .constants import MAX_LOG_LINES_PER_JOB


class DownloadMode(str, Enum):
    """Whether a job keeps the video stream or extracts audio only."""
    VIDEO = 'video'
    AUDIO = 'audio'

    @property
    def extension(self) -> str:
        return 'mp3' if self is DownloadMode.AUDIO else 'mp4'


class JobStatus(str, Enum):
    """Lifecycle status of a download job."""
    QUEUED = 'queued'
    DOWNLOADING = 'downloading'
    PAUSED = 'paused'
    CANCELED = 'canceled'
    COMPLETED = 'completed'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_transition_to(self, target: 'JobStatus') -> bool:
        """Returns True if moving from this status to `target` is allowed."""
        return target in ALLOWED_TRANSITIONS[self]


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED
})

# Jobs in these statuses neither block duplicates nor reserve their output path.
INACTIVE_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.FAILED, JobStatus.CANCELED})

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.DOWNLOADING, JobStatus.PAUSED, JobStatus.CANCELED, JobStatus.FAILED}),
    JobStatus.DOWNLOADING: frozenset({
        JobStatus.QUEUED, JobStatus.PAUSED, JobStatus.CANCELED, JobStatus.COMPLETED, JobStatus.FAILED
    }),
    JobStatus.PAUSED: frozenset({JobStatus.QUEUED, JobStatus.CANCELED}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED, JobStatus.CANCELED}),
    JobStatus.CANCELED: frozenset({JobStatus.QUEUED}),
    JobStatus.COMPLETED: frozenset(),
}


class DownloadJob(BaseModel):
    """
    Represents a single download task.

    Attributes:
        job_id: A unique, immutable identifier for the job.
        title: The display title, also the base of the output file name.
        url: The canonicalized source URL.
        mode: Video or audio extraction.
        quality_id: The yt-dlp format expression chosen by the user.
        status: The current lifecycle status.
        progress_percent: Download progress between 0 and 100.
        speed_text: Last transfer rate reported by yt-dlp.
        eta_text: Last ETA reported by yt-dlp.
        output_path: Final file location, set only once the job is completed.
        error_message: Last error seen for this job.
        retry_count: Number of retries consumed.
        download_log: The most recent output lines of the tool.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str = Field(alias='id', frozen=True)
    title: str
    thumbnail_url: Optional[str] = None
    url: str
    mode: DownloadMode
    quality_id: str
    status: JobStatus = JobStatus.QUEUED
    progress_percent: float = 0.0
    speed_text: Optional[str] = None
    eta_text: Optional[str] = None
    output_path: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    download_log: List[str] = Field(default_factory=list)

    def append_log(self, line: str) -> bool:
        """
        Appends a line to the bounded log, collapsing consecutive duplicates.

        Returns:
            True if the log changed.
        """
        if self.download_log and self.download_log[-1] == line:
            return False
        self.download_log.append(line)
        overflow = len(self.download_log) - MAX_LOG_LINES_PER_JOB
        if overflow > 0:
            del self.download_log[:overflow]
        return True

    def clear_transfer_state(self):
        self.speed_text = None
        self.eta_text = None


class QueueSnapshot(BaseModel):
    """A full, consistent copy of the queue, published after every change."""
    items: List[DownloadJob] = Field(default_factory=list)

    def get(self, job_id: str) -> Optional[DownloadJob]:
        return next((job for job in self.items if job.job_id == job_id), None)

    def count(self, status: JobStatus) -> int:
        return sum(1 for job in self.items if job.status == status)
