"""Spawns, monitors and terminates external tool processes."""
import os
import sys
import signal
import asyncio
import logging
import subprocess
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from .constants import (
    READER_JOIN_TIMEOUT, SUBPROCESS_CREATION_FLAGS, TERMINATE_POLL_ATTEMPTS, TERMINATE_POLL_INTERVAL
)
from .output_parser import is_error_line

STREAM_LIMIT = 1024 * 1024
STDERR_TAIL_LINES = 5


@dataclass
class CaptureResult:
    """Result of a run-and-capture command. `code` is -1 when the command timed out."""
    code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.code == 0 and not self.timed_out


@dataclass
class ProcessOutcome:
    """How one download attempt ended."""
    ok: bool
    return_code: Optional[int]
    error: Optional[str] = None


@dataclass
class ActiveProcess:
    job_id: str
    process: asyncio.subprocess.Process


def _process_group_kwargs() -> Dict[str, Any]:
    """Starts the child in its own process group so the whole tree can be signalled."""
    if sys.platform == 'win32':
        return {'creationflags': SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP}
    return {'preexec_fn': os.setsid}


class ProcessSupervisor:
    """Runs yt-dlp for one job at a time and can stop it on request."""

    def __init__(self, env_provider: Optional[Callable[[], Dict[str, str]]] = None):
        """
        Initializes the ProcessSupervisor.

        Args:
            env_provider: Returns the environment for child processes, typically a
                copy of os.environ with the managed binary directory first on PATH.
        """
        self.env_provider = env_provider
        self.logger = logging.getLogger(__name__)
        self._active: Optional[ActiveProcess] = None
        self._active_lock = asyncio.Lock()

    def _env(self) -> Optional[Dict[str, str]]:
        return self.env_provider() if self.env_provider else None

    async def active_job_id(self) -> Optional[str]:
        async with self._active_lock:
            return self._active.job_id if self._active else None

    async def _spawn(self, command: Sequence[str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._env(),
            limit=STREAM_LIMIT,
            **_process_group_kwargs()
        )

    async def run_job(self, job_id: str, command: List[str], on_line: Callable[[str], Any]) -> ProcessOutcome:
        """
        Runs one download attempt and streams its output to `on_line`.

        The process is registered as the active process while it runs, so a
        concurrent `terminate(job_id)` can find it. Waiting for exit holds no lock.

        Args:
            job_id: The job this process belongs to.
            command: The full command line.
            on_line: Called with every non-empty stdout and stderr line.

        Returns:
            A ProcessOutcome; spawn errors are reported as a failed outcome.
        """
        try:
            process = await self._spawn(command)
        except FileNotFoundError:
            self.logger.error(f"Executable not found: {command[0]}")
            return ProcessOutcome(False, None, f"Executable not found: {command[0]}")
        except OSError as e:
            self.logger.error(f"Could not start {command[0]}: {e}")
            return ProcessOutcome(False, None, f"Could not start {command[0]}: {e}")

        self.logger.info(f"Started process {process.pid} for job {job_id}")
        async with self._active_lock:
            self._active = ActiveProcess(job_id, process)

        error_lines: List[str] = []
        stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)

        def forward(line: str):
            if is_error_line(line):
                error_lines.append(line)
            on_line(line)

        readers = [
            asyncio.create_task(self._pump_lines(process.stdout, job_id, forward)),
            asyncio.create_task(self._pump_lines(process.stderr, job_id, forward, stderr_tail)),
        ]
        try:
            return_code = await process.wait()
            await self._join_readers(readers)
        except asyncio.CancelledError:
            self.logger.info(f"Job {job_id} interrupted; stopping process {process.pid}.")
            await self._terminate_with_grace(process)
            for reader in readers:
                reader.cancel()
            raise
        finally:
            await self._clear_active(process)

        self.logger.info(f"Process {process.pid} for job {job_id} exited with code {return_code}")
        if return_code == 0:
            return ProcessOutcome(True, 0)
        if error_lines:
            error = error_lines[-1]
        elif stderr_tail:
            error = stderr_tail[-1]
        else:
            error = f"yt-dlp exited with code {return_code}"
        return ProcessOutcome(False, return_code, error)

    async def _pump_lines(self, stream: asyncio.StreamReader, job_id: str, on_line: Callable[[str], Any],
                          sink: Optional[Deque[str]] = None):
        """Reads a stream line by line until EOF."""
        while True:
            try:
                line_bytes = await stream.readline()
            except ValueError:
                self.logger.warning(f"[{job_id}] Skipping over-long output line.")
                continue
            if not line_bytes:
                break
            clean_line = line_bytes.decode('utf-8', 'replace').strip()
            if not clean_line:
                continue
            self.logger.debug(f"[{job_id}] {clean_line}")
            if sink is not None:
                sink.append(clean_line)
            try:
                on_line(clean_line)
            except Exception:
                self.logger.exception(f"Output handler failed for job {job_id}:")

    async def _join_readers(self, readers: List[asyncio.Task]):
        # A grandchild that inherited the pipes can keep them open after exit.
        _, pending = await asyncio.wait(readers, timeout=READER_JOIN_TIMEOUT)
        for reader in pending:
            reader.cancel()

    async def _clear_active(self, process: asyncio.subprocess.Process):
        async with self._active_lock:
            if self._active is not None and self._active.process is process:
                self._active = None

    async def terminate(self, job_id: Optional[str] = None) -> bool:
        """
        Stops the active process, if it belongs to `job_id` (or any job when None).

        Best-effort and idempotent: an already finished or unknown process is a no-op.

        Returns:
            True if a process was found and signalled.
        """
        async with self._active_lock:
            active = self._active
            if active is None or (job_id is not None and active.job_id != job_id):
                return False
            self._active = None
        self.logger.info(f"Terminating process {active.process.pid} for job {active.job_id}...")
        await self._terminate_with_grace(active.process)
        return True

    async def _terminate_with_grace(self, process: asyncio.subprocess.Process):
        """Sends an interrupt, waits up to 500 ms, then kills the process group."""
        if process.returncode is not None:
            return
        if self._send_interrupt(process):
            for _ in range(TERMINATE_POLL_ATTEMPTS):
                if process.returncode is not None:
                    return
                await asyncio.sleep(TERMINATE_POLL_INTERVAL)
        if process.returncode is not None:
            return
        self.logger.warning(f"Process {process.pid} still running after grace period; forcing termination.")
        await self._force_kill(process)

    def _send_interrupt(self, process: asyncio.subprocess.Process) -> bool:
        try:
            if sys.platform == 'win32':
                process.send_signal(signal.CTRL_BREAK_EVENT)
            else:
                # setsid made the child the leader of its own group.
                os.killpg(process.pid, signal.SIGINT)
            return True
        except (ProcessLookupError, OSError) as e:
            self.logger.debug(f"Interrupt for process {process.pid} failed: {e}")
            return False

    async def _force_kill(self, process: asyncio.subprocess.Process):
        try:
            if sys.platform == 'win32':
                await asyncio.to_thread(
                    subprocess.run, ['taskkill', '/F', '/T', '/PID', str(process.pid)],
                    capture_output=True, creationflags=SUBPROCESS_CREATION_FLAGS
                )
            else:
                os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, OSError) as e:
            self.logger.debug(f"Group kill for process {process.pid} failed: {e}")
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            pass  # Already gone
        try:
            await asyncio.wait_for(process.wait(), timeout=1.0)
        except asyncio.TimeoutError:
            self.logger.error(f"Process {process.pid} did not exit after kill.")

    async def run_capture(self, command: Sequence[str], timeout: Optional[float] = None) -> CaptureResult:
        """
        Runs a short command and captures its output.

        Args:
            command: The command and its arguments.
            timeout: Seconds before the process is killed. None waits forever.

        Returns:
            A CaptureResult. On timeout `code` is -1, `timed_out` is True and the
            output read so far is kept. Spawn failures give code 1 with the error
            text as stderr.
        """
        try:
            process = await self._spawn(command)
        except OSError as e:
            return CaptureResult(1, '', str(e))

        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        readers = [
            asyncio.create_task(self._drain(process.stdout, stdout_chunks)),
            asyncio.create_task(self._drain(process.stderr, stderr_chunks)),
        ]

        def decoded(chunks: List[bytes]) -> str:
            return b''.join(chunks).decode('utf-8', 'replace')

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"Command timed out after {timeout}s: {command[0]}")
            await self._force_kill(process)
            await self._join_readers(readers)
            return CaptureResult(-1, decoded(stdout_chunks), decoded(stderr_chunks), timed_out=True)
        except asyncio.CancelledError:
            await self._force_kill(process)
            for reader in readers:
                reader.cancel()
            raise

        await self._join_readers(readers)
        return CaptureResult(process.returncode, decoded(stdout_chunks), decoded(stderr_chunks))

    @staticmethod
    async def _drain(stream: asyncio.StreamReader, chunks: List[bytes]):
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            chunks.append(chunk)
