"""The single background worker that drains the download queue."""
import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional

from .constants import SCRATCH_FILE_STEM, TEMP_DOWNLOAD_DIR
from .dependencies import DependencyManager
from .exceptions import FinalizeError
from .finalize import (
    clear_incomplete_marker, move_file_with_fallback, remove_directory_safe, resolve_downloaded_file,
    write_incomplete_marker
)
from .jobs import DownloadJob, DownloadMode
from .process import ProcessSupervisor
from .retry import retry_delay_seconds
from .state import QueueStateManager


def select_format_expression(mode: DownloadMode, quality_id: str) -> str:
    """Video formats get the best audio stream merged in unless the id already names one."""
    if mode == DownloadMode.VIDEO and '+' not in quality_id:
        return f'{quality_id}+bestaudio/best'
    return quality_id


def build_download_command(job: DownloadJob, yt_dlp_path: str, scratch_dir: Path,
                           ffmpeg_location: Optional[str] = None) -> List[str]:
    """Builds the full yt-dlp command list for one job."""
    output_template = scratch_dir / f'{SCRATCH_FILE_STEM}.%(ext)s'
    command = [
        yt_dlp_path, '--no-playlist', '--newline', '--progress',
        '-f', select_format_expression(job.mode, job.quality_id),
        '-o', str(output_template),
    ]
    if ffmpeg_location:
        command.extend(['--ffmpeg-location', ffmpeg_location])
    if job.mode == DownloadMode.AUDIO:
        command.extend(['-x', '--audio-format', 'mp3'])
    else:
        command.extend(['--merge-output-format', 'mp4', '--recode-video', 'mp4'])
    command.append(job.url)
    return command


class DownloadWorker:
    """Runs queued jobs one at a time, oldest first, until nothing is queued."""

    def __init__(self, state: QueueStateManager, supervisor: ProcessSupervisor, dependencies: DependencyManager,
                 temp_root: Path = TEMP_DOWNLOAD_DIR, backoff: Callable[[int], float] = retry_delay_seconds):
        """
        Initializes the DownloadWorker.

        Args:
            state: The queue state manager every job change goes through.
            supervisor: Runs and terminates yt-dlp processes.
            dependencies: Resolves executables and waits for them to be ready.
            temp_root: Parent of the per-job scratch directories.
            backoff: Maps the 1-based retry number to the delay before that retry.
        """
        self.state = state
        self.supervisor = supervisor
        self.dependencies = dependencies
        self.temp_root = temp_root
        self.backoff = backoff
        self.logger = logging.getLogger(__name__)
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start_if_needed(self) -> bool:
        """Starts the worker if it is not running and a job is queued."""
        if not await self.state.acquire_worker_slot():
            return False
        self.logger.info("Download worker started.")
        self._task = asyncio.create_task(self._run(), name='download-worker')
        self._task.add_done_callback(self._worker_done)
        return True

    def _worker_done(self, task: asyncio.Task):
        # A normal exit already gave the slot back inside claim_next.
        if task.cancelled():
            self.logger.info("Download worker cancelled.")
            self.state.release_worker_slot()
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("Download worker crashed:", exc_info=exc)
            self.state.release_worker_slot()

    async def stop(self):
        """Cancels the worker; an in-flight process is terminated by the supervisor."""
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _run(self):
        while True:
            job = await self.state.claim_next()
            if job is None:
                self.logger.info("Queue is empty. Download worker stopping.")
                return
            try:
                await self._process_job(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.exception(f"Unexpected error while processing job {job.job_id}")
                await self.state.fail(job.job_id, f"Unexpected error: {e}")

    async def _process_job(self, job: DownloadJob):
        """Runs every attempt of one job, then finalizes or fails it."""
        self.logger.info(f"Starting job {job.job_id}: {job.title}")
        reason = await self.dependencies.ensure_ready()
        if reason is not None:
            self.logger.error(f"Job {job.job_id} cannot start: {reason}")
            await self.state.fail(job.job_id, reason)
            return

        settings = await self.state.get_settings()
        destination = await self.state.allocate_output_path(job.job_id)
        scratch_dir = self.temp_root / job.job_id
        await asyncio.to_thread(scratch_dir.mkdir, parents=True, exist_ok=True)
        try:
            command = build_download_command(
                job, self.dependencies.resolve_executable('yt-dlp'), scratch_dir, self._ffmpeg_location()
            )
            await self._run_attempts(job, command, scratch_dir, destination, settings.max_retries)
        finally:
            await asyncio.to_thread(remove_directory_safe, scratch_dir)

    async def _run_attempts(self, job: DownloadJob, command: List[str], scratch_dir: Path, destination: Path,
                            max_retries: int):
        attempt = 0
        while True:
            if not await self.state.begin_attempt(job.job_id):
                self.logger.info(f"Job {job.job_id} was stopped before attempt {attempt + 1}.")
                return

            outcome = await self.supervisor.run_job(
                job.job_id, command, lambda line: self.state.try_apply_output(job.job_id, line)
            )
            if await self.state.is_stopped(job.job_id):
                self.logger.info(f"Job {job.job_id} was paused or canceled while downloading.")
                return

            if outcome.ok:
                await self._finalize(job, scratch_dir, destination)
                return

            self.logger.warning(f"Attempt {attempt + 1} for job {job.job_id} failed: {outcome.error}")
            if not await self.state.record_attempt_failure(job.job_id, outcome.error, attempt, max_retries):
                self.logger.error(f"Job {job.job_id} failed after {attempt + 1} attempt(s).")
                return
            delay = self.backoff(attempt + 1)
            self.logger.info(f"Retrying job {job.job_id} in {delay:g}s.")
            await asyncio.sleep(delay)
            attempt += 1

    async def _finalize(self, job: DownloadJob, scratch_dir: Path, destination: Path):
        async def move_into_place() -> Path:
            source = await asyncio.to_thread(resolve_downloaded_file, scratch_dir, job.mode.extension)
            try:
                await asyncio.to_thread(write_incomplete_marker, destination, job.job_id)
            except OSError as e:
                raise FinalizeError(f"Could not prepare the download folder: {e}") from e
            try:
                await asyncio.to_thread(move_file_with_fallback, source, destination)
            except FinalizeError:
                await asyncio.to_thread(clear_incomplete_marker, destination)
                raise
            return destination

        if await self.state.complete_with(job.job_id, move_into_place):
            await asyncio.to_thread(clear_incomplete_marker, destination)
            self.logger.info(f"Job {job.job_id} completed: {destination}")
        else:
            self.logger.error(f"Job {job.job_id} could not be finalized.")

    def _ffmpeg_location(self) -> Optional[str]:
        resolved = Path(self.dependencies.resolve_executable('ffmpeg'))
        if resolved.is_absolute():
            return str(resolved.parent)
        return None
