"""
Defines the main AppController class, which orchestrates the application's logic.
"""
import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel

from .config import ConfigManager, Settings
from .constants import INCOMPLETE_SUFFIX, QUEUE_FILE, SETTINGS_FILE, TEMP_DOWNLOAD_DIR
from .dependencies import DependencyManager
from .finalize import read_marker_job_id, remove_directory_safe
from .jobs import DownloadMode, JobStatus, QueueSnapshot
from .metadata import URLInfoExtractor
from .persistence import JobRepository
from .retry import retry_delay_seconds
from .state import QueueStateManager, SnapshotBroadcaster
from .worker import DownloadWorker


class DiagnosticsResult(BaseModel):
    yt_dlp_available: bool
    ffmpeg_available: bool
    download_path_writable: bool
    message: str


class AppController:
    """The central controller for the application's business logic."""

    def __init__(self, queue_file: Path = QUEUE_FILE, settings_file: Path = SETTINGS_FILE,
                 temp_root: Path = TEMP_DOWNLOAD_DIR, dependencies: Optional[DependencyManager] = None,
                 backoff: Callable[[int], float] = retry_delay_seconds):
        """
        Initializes the AppController.

        Loads the job collection and settings from disk; unreadable files fall
        back to their backups and then to defaults.

        Args:
            queue_file: Where the job collection is persisted.
            settings_file: Where the settings are persisted.
            temp_root: Parent of the per-job scratch directories.
            dependencies: Resolves and bootstraps yt-dlp and FFmpeg. Its process
                supervisor is also used for downloads.
            backoff: Delay schedule between attempts, in seconds.
        """
        self.logger = logging.getLogger(__name__)
        self.temp_root = temp_root
        self.config_manager = ConfigManager(settings_file)
        self.broadcaster = SnapshotBroadcaster()
        self.state = QueueStateManager.load(JobRepository(queue_file), self.config_manager, self.broadcaster)

        self.dependencies = dependencies or DependencyManager(event_callback=self._on_manager_event)
        self.supervisor = self.dependencies.supervisor
        self.worker = DownloadWorker(self.state, self.supervisor, self.dependencies, temp_root, backoff)
        self.url_extractor = URLInfoExtractor(self.dependencies)
        self.dependency_listener: Optional[Callable[[Dict[str, Any]], None]] = None
        self._background_tasks: Set[asyncio.Task] = set()

    async def start(self, resume_queue: bool = True, recover: bool = True):
        """
        Recovers from an unclean shutdown and starts the worker if work is queued.

        Args:
            resume_queue: If False, jobs left queued stay idle until the next
                enqueue or resume.
            recover: If False, interrupted moves and the scratch root are left
                alone. One-shot commands that never download pass False.
        """
        if recover:
            settings = await self.state.get_settings()
            await self._recover_interrupted_moves(settings.download_dir)
            await asyncio.to_thread(remove_directory_safe, self.temp_root)
            await asyncio.to_thread(self.temp_root.mkdir, parents=True, exist_ok=True)
        if resume_queue:
            await self.worker.start_if_needed()

    async def _recover_interrupted_moves(self, download_dir: Path):
        """Deletes half-moved files left behind by a crash and fails their jobs."""
        if not await asyncio.to_thread(download_dir.is_dir):
            return
        markers = await asyncio.to_thread(lambda: list(download_dir.glob(f'*{INCOMPLETE_SUFFIX}')))
        if not markers:
            return

        job_ids: List[str] = []
        output_paths: List[str] = []
        for marker in markers:
            destination = marker.with_name(marker.name[:-len(INCOMPLETE_SUFFIX)])
            job_id = await asyncio.to_thread(read_marker_job_id, marker)
            if job_id and await self._completed_at(job_id, destination):
                # The move finished and was recorded; only the marker is stale.
                await self._unlink_logged(marker)
                continue
            if job_id:
                job_ids.append(job_id)
            else:
                output_paths.append(str(destination))
            self.logger.warning(f"Found interrupted move to {destination}; removing the partial file.")
            await self._unlink_logged(destination)
            await self._unlink_logged(marker)

        count = await self.state.fail_interrupted(job_ids, output_paths)
        self.logger.info(f"Marked {count} interrupted job(s) as failed.")

    async def _unlink_logged(self, path: Path):
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            self.logger.error(f"Could not delete {path}: {e}")

    async def _completed_at(self, job_id: str, destination: Path) -> bool:
        job = await self.state.get(job_id)
        return job is not None and job.status == JobStatus.COMPLETED and job.output_path == str(destination)

    def _handle_task_exception(self, task: asyncio.Task) -> None:
        """Callback to log exceptions from fire-and-forget tasks."""
        self._background_tasks.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Expected
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    def _terminate_in_background(self, job_id: str):
        task = asyncio.create_task(self.supervisor.terminate(job_id), name=f'terminate-{job_id}')
        self._background_tasks.add(task)
        task.add_done_callback(self._handle_task_exception)

    async def _on_manager_event(self, event: Tuple[str, Any]):
        """Handles events from backend managers."""
        msg_type, value = event
        handler_map = {
            'dependency_progress': self._handle_dependency_progress,
        }
        handler = handler_map.get(msg_type)
        if handler:
            await handler(value)
        else:
            self.logger.warning(f"Unhandled manager event type: {msg_type}")

    async def _handle_dependency_progress(self, value: Dict[str, Any]):
        if self.dependency_listener:
            self.dependency_listener(value)

    # --- Queue operations ---

    def subscribe(self) -> 'asyncio.Queue[QueueSnapshot]':
        """Returns a queue that receives every published snapshot."""
        return self.broadcaster.subscribe()

    def unsubscribe(self, queue: asyncio.Queue):
        self.broadcaster.unsubscribe(queue)

    async def lookup_title(self, url: str) -> str:
        return await self.url_extractor.lookup_title(url)

    async def check_duplicate(self, url: str, mode: DownloadMode, quality_id: str) -> Tuple[bool, Optional[str]]:
        """
        Checks whether enqueuing would create a duplicate.

        Returns:
            A tuple of (is_duplicate, existing_output_path).
        """
        existing = await self.state.find_duplicate(url, mode, quality_id)
        if existing is None:
            return False, None
        return True, existing.output_path

    async def enqueue(self, url: str, mode: DownloadMode, quality_id: str, title: Optional[str] = None,
                      thumbnail_url: Optional[str] = None, force: bool = False) -> QueueSnapshot:
        """
        Queues a download and makes sure the worker is running.

        Raises:
            DuplicateJobError: If an equivalent job is live and `force` is False.
        """
        await self.state.enqueue(url, mode, quality_id, title=title, thumbnail_url=thumbnail_url, force=force)
        await self.worker.start_if_needed()
        return await self.state.list_all()

    async def pause(self, job_id: str) -> QueueSnapshot:
        if await self.state.pause(job_id):
            self._terminate_in_background(job_id)
        return await self.state.list_all()

    async def resume(self, job_id: str) -> QueueSnapshot:
        if await self.state.resume(job_id):
            await self.worker.start_if_needed()
        return await self.state.list_all()

    async def cancel(self, job_id: str) -> QueueSnapshot:
        if await self.state.cancel(job_id):
            self._terminate_in_background(job_id)
        return await self.state.list_all()

    async def resume_queue(self) -> bool:
        """Starts the worker for jobs left queued by a previous run."""
        return await self.worker.start_if_needed()

    async def clear_terminal(self) -> QueueSnapshot:
        return await self.state.remove_terminal()

    async def get_snapshot(self) -> QueueSnapshot:
        return await self.state.list_all()

    async def get_settings(self) -> Settings:
        return await self.state.get_settings()

    async def set_settings(self, changes: Dict[str, Any]) -> Settings:
        """
        Validates and saves new settings.

        Args:
            changes: Field values to change, by field name or camelCase alias.

        Raises:
            pydantic.ValidationError: If a value is not acceptable.
        """
        current = await self.state.get_settings()
        merged = {**current.model_dump(), **changes}
        new_settings = Settings.model_validate(merged)
        saved = await self.state.set_settings(new_settings)
        self.logger.info("Settings have been saved.")
        return saved

    async def delete_output(self, path: str) -> QueueSnapshot:
        """Deletes a finished file and removes every job that produced it."""
        try:
            await asyncio.to_thread(Path(path).unlink, missing_ok=True)
        except OSError as e:
            self.logger.error(f"Could not delete {path}: {e}")
            raise
        return await self.state.remove_by_output_path(path)

    async def run_diagnostics(self) -> DiagnosticsResult:
        """Probes yt-dlp, FFmpeg and the download directory."""
        yt_dlp_version, ffmpeg_version = await asyncio.gather(
            self.dependencies.get_version('yt-dlp'),
            self.dependencies.get_version('ffmpeg'),
        )
        settings = await self.state.get_settings()
        writable, write_error = await self._check_writable(settings.download_dir)

        parts = [
            f"yt-dlp: {yt_dlp_version or 'not found'}",
            f"FFmpeg: {'found' if ffmpeg_version else 'not found'}",
            f"Download folder: {'writable' if writable else f'not writable ({write_error})'}",
        ]
        return DiagnosticsResult(
            yt_dlp_available=yt_dlp_version is not None,
            ffmpeg_available=ffmpeg_version is not None,
            download_path_writable=writable,
            message="; ".join(parts),
        )

    async def _check_writable(self, directory: Path) -> Tuple[bool, Optional[str]]:
        test_file = directory / f".writetest_{os.getpid()}"
        try:
            await asyncio.to_thread(directory.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(test_file.touch)
            await asyncio.to_thread(test_file.unlink)
        except OSError as e:
            return False, str(e)
        return True, None

    async def shutdown(self):
        """Handles application shutdown logic."""
        self.logger.info("Application closing.")
        await self.worker.stop()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
