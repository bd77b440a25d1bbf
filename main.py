"""
Main entry point for the mediaqueue command line.

This script loads the settings, sets up logging, builds the AppController and
runs the requested command on an asyncio event loop.
"""

import sys
import logging
import asyncio
from types import TracebackType
from typing import Awaitable, Callable, Dict, Optional, Tuple, Type

import rich_click as click
from pydantic import ValidationError

from mediaqueue._version import __version__
from mediaqueue.config import ConfigManager
from mediaqueue.constants import INSTANCE_LOCK_FILE, LOG_DIR, SETTINGS_FILE
from mediaqueue.controller import AppController
from mediaqueue.exceptions import DuplicateJobError, InstanceLockedError, JobNotFoundError
from mediaqueue.instance import InstanceLock
from mediaqueue.jobs import DownloadJob, DownloadMode, JobStatus, QueueSnapshot
from mediaqueue.logging_config import setup_logging

click.rich_click.TEXT_MARKUP = "markdown"

DEFAULT_QUALITY = {
    DownloadMode.VIDEO: 'bestvideo',
    DownloadMode.AUDIO: 'bestaudio',
}


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


def _run(command: Callable[[AppController], Awaitable[None]], resume_queue: bool = False, recover: bool = False,
         read_only: bool = False):
    """
    Runs one command against a freshly started controller.

    The command holds the instance lock while it runs. A read-only command still
    runs when another process holds it, without logging to the shared log file.

    Args:
        command: The coroutine function to run with the controller.
        resume_queue: Start the worker for jobs left queued by a previous run.
        recover: Clean up interrupted moves and the scratch root first.
        read_only: The command never changes the queue or the settings.
    """
    instance_lock: Optional[InstanceLock] = InstanceLock(INSTANCE_LOCK_FILE)
    try:
        instance_lock.acquire()
    except InstanceLockedError as e:
        if not read_only:
            raise click.ClickException(f"{e} Wait for it to finish or stop it first.")
        click.echo(f"{e} Showing the last saved state.", err=True)
        instance_lock = None

    try:
        _run_locked(command, resume_queue, recover, log_to_file=instance_lock is not None)
    finally:
        if instance_lock is not None:
            instance_lock.release()


def _run_locked(command: Callable[[AppController], Awaitable[None]], resume_queue: bool, recover: bool,
                log_to_file: bool):
    settings = ConfigManager(SETTINGS_FILE).load()
    if log_to_file:
        setup_logging(settings.log_level, LOG_DIR)
    sys.excepthook = handle_exception

    async def main_with_exception_handler():
        """Wrapper to set the asyncio exception handler for the running loop."""
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(handle_async_exception)
        controller = AppController()
        controller.dependency_listener = _echo_dependency_progress
        try:
            await controller.start(resume_queue=resume_queue, recover=recover)
            await command(controller)
        finally:
            await controller.shutdown()

    try:
        asyncio.run(main_with_exception_handler())
    except KeyboardInterrupt:
        logging.info("Application interrupted by user.")
        click.echo("Interrupted. Unfinished jobs will continue on the next run.")


def _echo_dependency_progress(value: Dict[str, object]):
    phase = value.get('phase')
    if phase in ('downloading_yt_dlp', 'checking_yt_dlp', 'checking_ffmpeg'):
        return
    if value.get('error'):
        click.echo(f"Dependencies: {phase} ({value['error']})", err=True)
    else:
        click.echo(f"Dependencies: {phase}")


def _describe(job: DownloadJob) -> str:
    line = f"[{job.status.value:>11}] {job.title}"
    if job.status == JobStatus.DOWNLOADING:
        line += f" {job.progress_percent:5.1f}%"
        if job.speed_text:
            line += f" at {job.speed_text}"
        if job.eta_text:
            line += f" ETA {job.eta_text}"
    elif job.status == JobStatus.COMPLETED and job.output_path:
        line += f" -> {job.output_path}"
    elif job.status == JobStatus.FAILED and job.error_message:
        line += f" ({job.error_message}; retries: {job.retry_count})"
    return line


def _is_idle(snapshot: QueueSnapshot) -> bool:
    return snapshot.count(JobStatus.QUEUED) == 0 and snapshot.count(JobStatus.DOWNLOADING) == 0


async def _follow_until_idle(controller: AppController, queue: asyncio.Queue):
    """Prints a line for every job whose visible state changed, until nothing is left to do."""
    last_seen: Dict[str, str] = {}
    snapshot = await controller.get_snapshot()
    while True:
        for job in snapshot.items:
            line = _describe(job)
            if last_seen.get(job.job_id) != line:
                last_seen[job.job_id] = line
                click.echo(line)
        if _is_idle(snapshot):
            return
        snapshot = await queue.get()


@click.group()
@click.version_option(version=__version__, prog_name="mediaqueue")
def cli() -> None:
    """Queue and run yt-dlp downloads."""


@cli.command("download")
@click.argument("urls", nargs=-1, required=True)
@click.option("--mode", type=click.Choice([m.value for m in DownloadMode]), default=DownloadMode.VIDEO.value,
              show_default=True, help="Download video (mp4) or extract audio (mp3).")
@click.option("--quality", "quality_id", default=None, help="yt-dlp format id. Defaults to the best available.")
@click.option("--title", default=None, help="Title used for the file name. Looked up when omitted.")
@click.option("--force", is_flag=True, help="Queue even if the same download is already queued or done.")
def download(urls: Tuple[str, ...], mode: str, quality_id: Optional[str], title: Optional[str], force: bool) -> None:
    """Queue one or more URLs and download them."""
    download_mode = DownloadMode(mode)
    quality = quality_id or DEFAULT_QUALITY[download_mode]

    async def command(controller: AppController):
        queue = controller.subscribe()
        try:
            for url in urls:
                job_title = title or await controller.lookup_title(url)
                try:
                    await controller.enqueue(url, download_mode, quality, title=job_title, force=force)
                except DuplicateJobError as e:
                    where = f" Existing file: {e.existing_output_path}" if e.existing_output_path else ""
                    click.echo(f"Skipped {url}: {e}{where} Use --force to download again.", err=True)
            await _follow_until_idle(controller, queue)
        finally:
            controller.unsubscribe(queue)

    _run(command, recover=True)


@cli.command("resume")
@click.argument("job_ids", nargs=-1)
def resume(job_ids: Tuple[str, ...]) -> None:
    """Re-queue paused, failed or canceled jobs by id, then process the queue."""

    async def command(controller: AppController):
        queue = controller.subscribe()
        try:
            for job_id in job_ids:
                try:
                    await controller.resume(job_id)
                except JobNotFoundError:
                    click.echo(f"No job with id {job_id}.", err=True)
            await controller.resume_queue()
            await _follow_until_idle(controller, queue)
        finally:
            controller.unsubscribe(queue)

    _run(command, recover=True)


@cli.command("pause")
@click.argument("job_id")
def pause(job_id: str) -> None:
    """Pause a queued job."""

    async def command(controller: AppController):
        try:
            await controller.pause(job_id)
        except JobNotFoundError:
            raise click.ClickException(f"No job with id {job_id}.")

    _run(command)


@cli.command("cancel")
@click.argument("job_id")
def cancel(job_id: str) -> None:
    """Cancel a job."""

    async def command(controller: AppController):
        try:
            await controller.cancel(job_id)
        except JobNotFoundError:
            raise click.ClickException(f"No job with id {job_id}.")

    _run(command)


@cli.command("status")
def status() -> None:
    """Show every job in the queue."""

    async def command(controller: AppController):
        snapshot = await controller.get_snapshot()
        if not snapshot.items:
            click.echo("The queue is empty.")
            return
        for job in snapshot.items:
            click.echo(f"{job.job_id}  {_describe(job)}")

    _run(command, read_only=True)


@cli.command("clear")
def clear() -> None:
    """Remove completed, failed and canceled jobs from the queue."""

    async def command(controller: AppController):
        before = len((await controller.get_snapshot()).items)
        after = len((await controller.clear_terminal()).items)
        click.echo(f"Removed {before - after} finished job(s).")

    _run(command)


@cli.command("delete")
@click.argument("path")
def delete(path: str) -> None:
    """Delete a downloaded file and forget the jobs that produced it."""

    async def command(controller: AppController):
        try:
            await controller.delete_output(path)
        except OSError as e:
            raise click.ClickException(f"Could not delete {path}: {e}")
        click.echo(f"Deleted {path}")

    _run(command)


@cli.command("diagnostics")
def diagnostics() -> None:
    """Check that yt-dlp, FFmpeg and the download folder are usable."""
    results = []

    async def command(controller: AppController):
        results.append(await controller.run_diagnostics())

    _run(command)
    if results:
        click.echo(results[0].message)
        if not (results[0].yt_dlp_available and results[0].ffmpeg_available and results[0].download_path_writable):
            sys.exit(1)


@cli.command("settings")
@click.option("--download-dir", default=None, help="Folder finished files are moved to.")
@click.option("--max-retries", type=int, default=None, help="Retries per job after the first attempt (0-10).")
@click.option("--language", default=None, help="Interface language code.")
@click.option("--log-level", default=None, help="File log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).")
def settings(download_dir: Optional[str], max_retries: Optional[int], language: Optional[str],
             log_level: Optional[str]) -> None:
    """Show or change the settings."""
    changes = {
        key: value for key, value in (
            ('download_dir', download_dir), ('max_retries', max_retries),
            ('language', language), ('log_level', log_level),
        ) if value is not None
    }

    async def command(controller: AppController):
        if changes:
            try:
                current = await controller.set_settings(changes)
            except ValidationError as e:
                error_details = e.errors()[0]
                field, msg = error_details['loc'][0], error_details['msg']
                raise click.ClickException(f"Error in field '{field}': {msg}")
        else:
            current = await controller.get_settings()
        for key, value in current.model_dump(by_alias=True).items():
            click.echo(f"{key}: {value}")

    _run(command)


if __name__ == "__main__":
    cli()
