"""
Owns the job collection and settings, and every mutation made to them.

All mutations run under one `StateLock`. A mutation that changes what observers
can see persists the collection and then publishes a full snapshot before the
lock is released, so a published snapshot is always already on disk.
"""
import uuid
import asyncio
import logging
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, List, Optional

from .config import ConfigManager, Settings
from .exceptions import DuplicateJobError, FinalizeError, JobNotFoundError
from .finalize import build_unique_output_path
from .jobs import DownloadJob, DownloadMode, INACTIVE_STATUSES, JobStatus, QueueSnapshot
from .output_parser import apply_output_line
from .persistence import JobRepository
from .retry import should_retry
from .urls import canonicalize_url

CANCELED_MESSAGE = "Canceled by user"
INTERRUPTED_MESSAGE = "Interrupted while moving the finished file"

# Raised before anything is mutated, or by task cancellation; these leave the data intact.
UNPOISONED_ERRORS = (asyncio.CancelledError, JobNotFoundError, DuplicateJobError)


class StateLock:
    """
    An asyncio lock that survives a holder failing halfway through a mutation.

    If the body of `hold()` raises anything other than `UNPOISONED_ERRORS`, the
    lock is released as usual but flagged as poisoned. The next holder logs the
    recovery and carries on with the data as it was left.
    """

    def __init__(self, name: str):
        self.name = name
        self._lock = asyncio.Lock()
        self._poisoned = False
        self.logger = logging.getLogger(__name__)

    @property
    def poisoned(self) -> bool:
        return self._poisoned

    def locked(self) -> bool:
        return self._lock.locked()

    def _recover(self):
        if self._poisoned:
            self.logger.warning(f"Recovering '{self.name}' state left behind by a failed mutation.")
            self._poisoned = False

    @asynccontextmanager
    async def hold(self):
        async with self._lock:
            self._recover()
            try:
                yield
            except UNPOISONED_ERRORS:
                raise
            except BaseException:
                self._poisoned = True
                raise

    @contextmanager
    def try_hold(self) -> Iterator[bool]:
        """
        Enters without waiting. Yields False if another task holds the lock.

        The body must not await: it runs to completion on the event loop thread,
        so no other task can take the lock while it executes.
        """
        if self._lock.locked():
            yield False
            return
        self._recover()
        try:
            yield True
        except UNPOISONED_ERRORS:
            raise
        except BaseException:
            self._poisoned = True
            raise


class SnapshotBroadcaster:
    """Push channel delivering every published queue snapshot to subscribers."""

    def __init__(self):
        self._queues: List[asyncio.Queue] = []
        self._listeners: List[Callable[[QueueSnapshot], None]] = []
        self.logger = logging.getLogger(__name__)

    def subscribe(self) -> 'asyncio.Queue[QueueSnapshot]':
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._queues:
            self._queues.remove(queue)

    def add_listener(self, listener: Callable[[QueueSnapshot], None]):
        self._listeners.append(listener)

    def publish(self, snapshot: QueueSnapshot):
        for queue in self._queues:
            queue.put_nowait(snapshot)
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception:
                self.logger.exception("Snapshot listener raised an exception:")


class QueueStateManager:
    """The single owner of the job collection and the settings."""

    def __init__(self, repository: JobRepository, config_manager: ConfigManager,
                 jobs: Optional[List[DownloadJob]] = None, settings: Optional[Settings] = None,
                 broadcaster: Optional[SnapshotBroadcaster] = None):
        """
        Initializes the QueueStateManager.

        Args:
            repository: Persists the job collection.
            config_manager: Persists the settings.
            jobs: The initial collection, usually loaded from disk.
            settings: The initial settings, usually loaded from disk.
            broadcaster: The channel snapshots are published to.
        """
        self.repository = repository
        self.config_manager = config_manager
        self.broadcaster = broadcaster or SnapshotBroadcaster()
        self.logger = logging.getLogger(__name__)
        self._jobs: List[DownloadJob] = list(jobs or [])
        self._settings: Settings = settings or Settings()
        self._lock = StateLock('queue')
        self._worker_running = False

    @classmethod
    def load(cls, repository: JobRepository, config_manager: ConfigManager,
             broadcaster: Optional[SnapshotBroadcaster] = None) -> 'QueueStateManager':
        """Builds a manager from the state files, never failing on bad files."""
        jobs = repository.load()
        settings = config_manager.load()
        return cls(repository, config_manager, jobs=jobs, settings=settings, broadcaster=broadcaster)

    # --- Internal helpers (callers hold the lock) ---

    def _find(self, job_id: str) -> Optional[DownloadJob]:
        return next((job for job in self._jobs if job.job_id == job_id), None)

    def _require(self, job_id: str) -> DownloadJob:
        job = self._find(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _snapshot(self) -> QueueSnapshot:
        return QueueSnapshot(items=[job.model_copy(deep=True) for job in self._jobs])

    async def _commit(self) -> QueueSnapshot:
        await self.repository.save(self._jobs)
        snapshot = self._snapshot()
        self.broadcaster.publish(snapshot)
        return snapshot

    def _transition(self, job: DownloadJob, target: JobStatus) -> bool:
        if job.status == target:
            return False
        if not job.status.can_transition_to(target):
            self.logger.warning(f"Ignoring transition {job.status.value} -> {target.value} for job {job.job_id}")
            return False
        job.status = target
        return True

    def _find_duplicate(self, url: str, mode: DownloadMode, quality_id: str) -> Optional[DownloadJob]:
        return next((
            job for job in self._jobs
            if job.url == url and job.mode == mode and job.quality_id == quality_id
            and job.status not in INACTIVE_STATUSES
        ), None)

    # --- Reads ---

    async def list_all(self) -> QueueSnapshot:
        async with self._lock.hold():
            return self._snapshot()

    async def get(self, job_id: str) -> Optional[DownloadJob]:
        async with self._lock.hold():
            job = self._find(job_id)
            return job.model_copy(deep=True) if job else None

    async def get_settings(self) -> Settings:
        async with self._lock.hold():
            return self._settings.model_copy()

    async def find_duplicate(self, url: str, mode: DownloadMode, quality_id: str) -> Optional[DownloadJob]:
        """Returns a live job with the same canonical URL, mode and quality id."""
        canonical = canonicalize_url(url)
        async with self._lock.hold():
            job = self._find_duplicate(canonical, DownloadMode(mode), quality_id)
            return job.model_copy(deep=True) if job else None

    async def is_stopped(self, job_id: str) -> bool:
        """True if the job was paused, canceled or removed."""
        async with self._lock.hold():
            job = self._find(job_id)
            return job is None or job.status in (JobStatus.PAUSED, JobStatus.CANCELED)

    # --- Caller mutations ---

    async def enqueue(self, url: str, mode: DownloadMode, quality_id: str, title: Optional[str] = None,
                      thumbnail_url: Optional[str] = None, force: bool = False) -> str:
        """
        Adds a new queued job.

        Raises:
            DuplicateJobError: If an equivalent live job exists and `force` is False.

        Returns:
            The new job id.
        """
        canonical = canonicalize_url(url)
        mode = DownloadMode(mode)
        async with self._lock.hold():
            if not force:
                duplicate = self._find_duplicate(canonical, mode, quality_id)
                if duplicate is not None:
                    raise DuplicateJobError(
                        f"'{duplicate.title}' is already in the queue.", duplicate.output_path
                    )
            job = DownloadJob(
                job_id=str(uuid.uuid4()),
                title=(title or '').strip() or canonical,
                thumbnail_url=thumbnail_url,
                url=canonical,
                mode=mode,
                quality_id=quality_id,
            )
            self._jobs.append(job)
            await self._commit()
            self.logger.info(f"Queued {job.job_id}: {job.title} ({mode.value}, {quality_id})")
            return job.job_id

    async def update_status(self, job_id: str, status: JobStatus, **changes: Any) -> bool:
        """
        Moves a job to `status` if the transition table allows it.

        Args:
            job_id: The job to update.
            status: The target status.
            **changes: Extra fields to set when the transition is applied.

        Returns:
            True if the job changed.
        """
        async with self._lock.hold():
            job = self._require(job_id)
            if not self._transition(job, JobStatus(status)):
                return False
            for field_name, value in changes.items():
                setattr(job, field_name, value)
            await self._commit()
            return True

    async def pause(self, job_id: str) -> bool:
        async with self._lock.hold():
            job = self._require(job_id)
            if not self._transition(job, JobStatus.PAUSED):
                return False
            job.clear_transfer_state()
            await self._commit()
            return True

    async def resume(self, job_id: str) -> bool:
        async with self._lock.hold():
            job = self._require(job_id)
            if not self._transition(job, JobStatus.QUEUED):
                return False
            job.error_message = None
            job.clear_transfer_state()
            await self._commit()
            return True

    async def cancel(self, job_id: str) -> bool:
        async with self._lock.hold():
            job = self._require(job_id)
            if not self._transition(job, JobStatus.CANCELED):
                return False
            job.error_message = CANCELED_MESSAGE
            job.clear_transfer_state()
            await self._commit()
            return True

    async def remove_terminal(self) -> QueueSnapshot:
        """Removes completed, failed and canceled jobs."""
        async with self._lock.hold():
            before = len(self._jobs)
            self._jobs = [job for job in self._jobs if not job.status.is_terminal]
            self.logger.info(f"Cleared {before - len(self._jobs)} finished item(s) from the queue.")
            return await self._commit()

    async def remove_by_output_path(self, path: str) -> QueueSnapshot:
        async with self._lock.hold():
            self._jobs = [job for job in self._jobs if job.output_path != path]
            return await self._commit()

    async def set_settings(self, settings: Settings) -> Settings:
        async with self._lock.hold():
            self._settings = settings.model_copy()
            await self.config_manager.save(self._settings)
            self.broadcaster.publish(self._snapshot())
            return self._settings.model_copy()

    async def fail_interrupted(self, job_ids: List[str] = (), output_paths: List[str] = ()) -> int:
        """Forces jobs whose finalize step was interrupted to failed, whatever their status."""
        async with self._lock.hold():
            count = 0
            for job in self._jobs:
                if job.job_id in job_ids or (job.output_path and job.output_path in output_paths):
                    job.status = JobStatus.FAILED
                    job.output_path = None
                    job.error_message = INTERRUPTED_MESSAGE
                    job.clear_transfer_state()
                    count += 1
            if count:
                await self._commit()
            return count

    # --- Worker mutations ---

    async def acquire_worker_slot(self) -> bool:
        """Claims the single worker slot if it is free and there is queued work."""
        async with self._lock.hold():
            if self._worker_running:
                return False
            if not any(job.status == JobStatus.QUEUED for job in self._jobs):
                return False
            self._worker_running = True
            return True

    def release_worker_slot(self):
        self._worker_running = False

    async def claim_next(self) -> Optional[DownloadJob]:
        """
        Marks the first queued job as downloading and returns a copy of it.

        Releases the worker slot when nothing is queued, in the same critical
        section, so a concurrent enqueue either is seen here or starts a new worker.
        """
        async with self._lock.hold():
            job = next((job for job in self._jobs if job.status == JobStatus.QUEUED), None)
            if job is None:
                self._worker_running = False
                return None
            self._transition(job, JobStatus.DOWNLOADING)
            job.progress_percent = 0.0
            job.clear_transfer_state()
            await self._commit()
            return job.model_copy(deep=True)

    async def begin_attempt(self, job_id: str) -> bool:
        """Puts the job back into downloading for a new attempt. False if it was stopped."""
        async with self._lock.hold():
            job = self._find(job_id)
            if job is None or job.status not in (JobStatus.QUEUED, JobStatus.DOWNLOADING):
                return False
            if job.status == JobStatus.QUEUED or job.progress_percent:
                job.status = JobStatus.DOWNLOADING
                job.progress_percent = 0.0
                job.clear_transfer_state()
                await self._commit()
            return True

    async def allocate_output_path(self, job_id: str) -> Path:
        """Picks a unique target path in the download directory for a job."""
        async with self._lock.hold():
            job = self._require(job_id)
            reserved = [
                other.output_path for other in self._jobs
                if other.output_path and other.job_id != job_id and other.status not in INACTIVE_STATUSES
            ]
            return build_unique_output_path(self._settings.download_dir, job.title, job.mode, reserved)

    def try_apply_output(self, job_id: str, line: str) -> bool:
        """
        Applies one output line to a job without waiting for the lock.

        Progress is best-effort: if the lock is busy the line is dropped and the
        next one brings the job up to date. Changes are published but not
        persisted.

        Returns:
            True if a snapshot was published.
        """
        with self._lock.try_hold() as acquired:
            if not acquired:
                return False
            job = self._find(job_id)
            if job is None or not apply_output_line(job, line):
                return False
            self.broadcaster.publish(self._snapshot())
            return True

    async def record_attempt_failure(self, job_id: str, error: Optional[str], attempt: int,
                                     max_retries: int) -> bool:
        """
        Records a failed attempt and decides whether to retry.

        Returns:
            True if the job was re-queued for another attempt.
        """
        async with self._lock.hold():
            job = self._find(job_id)
            if job is None or job.status in (JobStatus.PAUSED, JobStatus.CANCELED):
                return False
            job.error_message = error or job.error_message or "Download failed"
            job.clear_transfer_state()
            if should_retry(attempt, max_retries):
                job.retry_count = attempt + 1
                self._transition(job, JobStatus.QUEUED)
                retry = True
            else:
                self._transition(job, JobStatus.FAILED)
                retry = False
            await self._commit()
            return retry

    async def fail(self, job_id: str, message: str) -> bool:
        async with self._lock.hold():
            job = self._find(job_id)
            if job is None or not self._transition(job, JobStatus.FAILED):
                return False
            job.error_message = message
            job.clear_transfer_state()
            await self._commit()
            return True

    async def complete_with(self, job_id: str, finalize: Callable[[], Awaitable[Path]]) -> bool:
        """
        Runs `finalize` under the lock and records the outcome.

        Holding the lock keeps a concurrent pause or cancel from interleaving with
        the move. A job that was stopped before this point is left untouched.

        Args:
            job_id: The job being finalized.
            finalize: Moves the artifact into place and returns the final path.
                Raises FinalizeError on failure.

        Returns:
            True if the job is now completed.
        """
        async with self._lock.hold():
            job = self._find(job_id)
            if job is None or job.status not in (JobStatus.QUEUED, JobStatus.DOWNLOADING):
                return False
            try:
                output_path = await finalize()
            except FinalizeError as e:
                self._transition(job, JobStatus.FAILED)
                job.error_message = str(e)
                job.clear_transfer_state()
                await self._commit()
                return False
            job.status = JobStatus.COMPLETED
            job.progress_percent = 100.0
            job.output_path = str(output_path)
            job.error_message = None
            job.clear_transfer_state()
            await self._commit()
            return True
