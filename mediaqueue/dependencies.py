"""Resolves, checks and installs the yt-dlp and FFmpeg executables."""
import os
import sys
import shutil
import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, Optional, Tuple

import aiohttp
import aiofiles
import requests
from packaging.version import InvalidVersion, parse

from .constants import (
    BUNDLED_BIN_DIR, COMMON_BINARY_DIRS, DEPENDENCY_WAIT_TIMEOUT, DIAGNOSTICS_COMMAND_TIMEOUT,
    MANAGED_BIN_DIR, REQUEST_HEADERS, REQUEST_TIMEOUTS, YT_DLP_LATEST_API_URL, YT_DLP_URLS,
    YT_DLP_VERSION_CHECK_TIMEOUT
)
from .exceptions import DependencyError
from .process import ProcessSupervisor

EventCallback = Callable[[Tuple[str, Any]], Coroutine[Any, Any, None]]


def executable_name(name: str) -> str:
    return f'{name}.exe' if sys.platform == 'win32' else name


def normalize_version(raw: str) -> str:
    lines = raw.strip().splitlines()
    return lines[0].strip().lstrip('v') if lines else ''


def is_outdated(installed: str, latest: str) -> bool:
    """True if `latest` is a newer release than `installed`. Unparseable versions compare by text."""
    try:
        return parse(latest) > parse(installed)
    except InvalidVersion:
        return installed != latest


def fetch_latest_yt_dlp_version() -> Optional[str]:
    """Asks GitHub for the latest yt-dlp release tag. Returns None on any failure."""
    logger = logging.getLogger(__name__)
    try:
        response = requests.get(YT_DLP_LATEST_API_URL, headers=REQUEST_HEADERS, timeout=REQUEST_TIMEOUTS)
        response.raise_for_status()
        data = response.json()
    except requests.exceptions.RequestException as e:
        logger.warning(f"Failed to check the latest yt-dlp release: {e}")
        return None
    except ValueError as e:
        logger.warning(f"Could not parse the GitHub release response: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Unexpected API response type: {type(data)}")
        return None
    return normalize_version(str(data.get('tag_name') or '')) or None


class DependencyManager:
    """Makes sure yt-dlp and FFmpeg can be run before a download starts."""
    DOWNLOAD_RETRY_ATTEMPTS = 3

    def __init__(self, supervisor: Optional[ProcessSupervisor] = None, managed_bin_dir: Path = MANAGED_BIN_DIR,
                 bundled_bin_dir: Optional[Path] = BUNDLED_BIN_DIR, event_callback: Optional[EventCallback] = None):
        """
        Initializes the DependencyManager.

        Args:
            supervisor: Used for version checks. One sharing this manager's PATH is
                created when omitted.
            managed_bin_dir: Where downloaded executables are installed.
            bundled_bin_dir: Executables shipped next to the application.
            event_callback: The async function to call with bootstrap status events.
        """
        self.managed_bin_dir = managed_bin_dir
        self.bundled_bin_dir = bundled_bin_dir
        self.event_callback = event_callback
        self.supervisor = supervisor or ProcessSupervisor(self.managed_path_env)
        self.logger = logging.getLogger(__name__)
        self.phase = 'idle'
        self.ready = False
        self.last_error: Optional[str] = None
        self._bootstrap_task: Optional[asyncio.Task] = None

    # --- Executable resolution ---

    def managed_executable_path(self, name: str) -> Path:
        return self.managed_bin_dir / executable_name(name)

    def resolve_executable(self, name: str) -> str:
        """
        Finds the executable to invoke for a logical tool name.

        Search order: managed install, bundled install, PATH, well-known
        directories, and finally the bare name.
        """
        managed = self.managed_executable_path(name)
        if managed.is_file():
            return str(managed)
        if self.bundled_bin_dir is not None:
            bundled = self.bundled_bin_dir / executable_name(name)
            if bundled.is_file():
                return str(bundled)
        on_path = shutil.which(name)
        if on_path:
            return on_path
        for base_dir in COMMON_BINARY_DIRS:
            candidate = base_dir / executable_name(name)
            if candidate.is_file():
                return str(candidate)
        return executable_name(name)

    def managed_path_env(self) -> Dict[str, str]:
        """A copy of os.environ with the managed binary directory first on PATH."""
        env = os.environ.copy()
        current = env.get('PATH', '')
        env['PATH'] = os.pathsep.join(filter(None, [str(self.managed_bin_dir), current]))
        return env

    # --- Version checks ---

    async def get_version(self, name: str, timeout: float = DIAGNOSTICS_COMMAND_TIMEOUT) -> Optional[str]:
        """Returns the first line of `<tool> --version`, or None if it does not run."""
        flag = '-version' if name == 'ffmpeg' else '--version'
        result = await self.supervisor.run_capture([self.resolve_executable(name), flag], timeout=timeout)
        if not result.ok:
            return None
        return normalize_version(result.stdout) or None

    # --- Readiness ---

    async def _set_phase(self, phase: str, progress: Optional[int] = None, error: Optional[str] = None):
        if phase != self.phase:
            self.logger.info(f"Dependency bootstrap: {phase}" + (f" ({error})" if error else ""))
        self.phase = phase
        if self.event_callback:
            await self.event_callback(('dependency_progress', {
                'phase': phase, 'progress': progress, 'error': error, 'in_progress': phase not in ('ready', 'failed')
            }))

    async def ensure_ready(self, timeout: float = DEPENDENCY_WAIT_TIMEOUT) -> Optional[str]:
        """
        Waits until yt-dlp and FFmpeg are runnable.

        Concurrent callers share one bootstrap. A failed bootstrap is retried by
        the next call.

        Returns:
            None when ready, otherwise a human-readable reason.
        """
        if self.ready:
            return None
        if self._bootstrap_task is None or self._bootstrap_task.done():
            self._bootstrap_task = asyncio.create_task(self._bootstrap(), name='dependency-bootstrap')
            self._bootstrap_task.add_done_callback(self._consume_bootstrap_result)
        try:
            await asyncio.wait_for(asyncio.shield(self._bootstrap_task), timeout=timeout)
        except asyncio.TimeoutError:
            return "Timed out waiting for yt-dlp and FFmpeg to become ready."
        except DependencyError as e:
            return str(e)
        return None

    @staticmethod
    def _consume_bootstrap_result(task: asyncio.Task):
        # Failures are reported through ensure_ready; only mark them retrieved here.
        if not task.cancelled():
            task.exception()

    async def _bootstrap(self):
        try:
            await self._set_phase('preparing', 5)
            await self._ensure_yt_dlp()
            await self._ensure_ffmpeg()
        except DependencyError as e:
            self.last_error = str(e)
            await self._set_phase('failed', error=str(e))
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            self.last_error = f"Could not install yt-dlp: {e}"
            await self._set_phase('failed', error=self.last_error)
            raise DependencyError(self.last_error) from e
        self.ready = True
        self.last_error = None
        await self._set_phase('ready', 100)

    async def _ensure_yt_dlp(self):
        await self._set_phase('checking_yt_dlp', 15)
        managed = self.managed_executable_path('yt-dlp')
        installed = await self.get_version('yt-dlp', timeout=YT_DLP_VERSION_CHECK_TIMEOUT)

        if installed and self.resolve_executable('yt-dlp') != str(managed):
            # A system or bundled copy works; use it as-is.
            return
        if installed:
            latest = await asyncio.to_thread(fetch_latest_yt_dlp_version)
            if latest is None or not is_outdated(installed, latest):
                return
            self.logger.info(f"Managed yt-dlp {installed} is older than {latest}; updating.")

        await self.install_yt_dlp()
        if await self.get_version('yt-dlp', timeout=YT_DLP_VERSION_CHECK_TIMEOUT) is None:
            raise DependencyError("yt-dlp was installed but cannot be executed.")

    async def _ensure_ffmpeg(self):
        await self._set_phase('checking_ffmpeg', 86)
        if await self.get_version('ffmpeg') is None:
            raise DependencyError("FFmpeg was not found. Please install it and try again.")

    async def install_yt_dlp(self) -> Path:
        """Downloads the platform build of yt-dlp into the managed binary directory."""
        url = YT_DLP_URLS.get(sys.platform, YT_DLP_URLS['linux'])
        target = self.managed_executable_path('yt-dlp')
        partial = target.with_name(target.name + '.part')
        await asyncio.to_thread(self.managed_bin_dir.mkdir, parents=True, exist_ok=True)
        await self._set_phase('downloading_yt_dlp', 20)

        async with aiohttp.ClientSession() as session:
            await self._download_file(session, url, partial)

        await asyncio.to_thread(os.replace, partial, target)
        if sys.platform != 'win32':
            await asyncio.to_thread(target.chmod, 0o755)
        self.logger.info(f"Installed yt-dlp to {target}")
        return target

    async def _download_file(self, session: aiohttp.ClientSession, url: str, save_path: Path):
        """Downloads a file as a single stream, with retries."""
        for attempt in range(self.DOWNLOAD_RETRY_ATTEMPTS):
            try:
                timeout = aiohttp.ClientTimeout(total=None, sock_read=60)
                async with session.get(url, headers={'User-Agent': REQUEST_HEADERS['User-Agent']}, timeout=timeout) as r:
                    r.raise_for_status()
                    total_size = int(r.headers.get('Content-Length', 0))
                    bytes_downloaded, last_reported = 0, -1
                    async with aiofiles.open(save_path, 'wb') as f_out:
                        async for chunk in r.content.iter_chunked(64 * 1024):
                            await f_out.write(chunk)
                            bytes_downloaded += len(chunk)
                            if total_size > 0:
                                progress = 20 + int(bytes_downloaded / total_size * 60)
                                if progress != last_reported:
                                    last_reported = progress
                                    await self._set_phase('downloading_yt_dlp', progress)
                return
            except aiohttp.ClientError as e:
                self.logger.error(f"yt-dlp download error on attempt {attempt + 1}: {e}")
                if attempt < self.DOWNLOAD_RETRY_ATTEMPTS - 1:
                    await asyncio.sleep(2 ** attempt)
                else:
                    raise
