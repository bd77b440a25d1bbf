"""Tests for the process supervisor, run against real child processes."""

import sys
import asyncio

import pytest

from conftest import posix_only
from mediaqueue.process import ProcessSupervisor

PY = sys.executable


class TestRunCapture:
    """Test the run-and-capture primitive."""

    @pytest.mark.asyncio
    async def test_captures_output_and_code(self):
        supervisor = ProcessSupervisor()
        result = await supervisor.run_capture(
            [PY, '-c', 'import sys; print("out"); print("err", file=sys.stderr); sys.exit(3)']
        )
        assert result.code == 3
        assert result.stdout.strip() == "out"
        assert result.stderr.strip() == "err"
        assert not result.ok

    @pytest.mark.asyncio
    async def test_timeout_keeps_partial_output(self):
        supervisor = ProcessSupervisor()
        result = await supervisor.run_capture(
            [PY, '-c', 'import time; print("started", flush=True); time.sleep(30)'], timeout=1.0
        )
        assert result.timed_out
        assert result.code == -1
        assert "started" in result.stdout

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        supervisor = ProcessSupervisor()
        result = await supervisor.run_capture([str(tmp_path / 'does-not-exist')])
        assert result.code == 1
        assert not result.ok


class TestRunJob:
    """Test supervised download attempts."""

    @pytest.mark.asyncio
    async def test_lines_from_both_streams_are_forwarded(self):
        supervisor = ProcessSupervisor()
        lines = []
        outcome = await supervisor.run_job(
            'job', [PY, '-c', 'import sys; print("one"); print("two", file=sys.stderr)'], lines.append
        )
        assert outcome.ok
        assert sorted(lines) == ["one", "two"]
        assert await supervisor.active_job_id() is None

    @pytest.mark.asyncio
    async def test_error_line_becomes_outcome_error(self):
        supervisor = ProcessSupervisor()
        script = 'import sys; print("ERROR: first", file=sys.stderr); print("trailing", file=sys.stderr); sys.exit(1)'
        outcome = await supervisor.run_job('job', [PY, '-c', script], lambda line: None)
        assert not outcome.ok
        assert outcome.return_code == 1
        assert outcome.error == "ERROR: first"

    @pytest.mark.asyncio
    async def test_exit_code_message_without_output(self):
        supervisor = ProcessSupervisor()
        outcome = await supervisor.run_job('job', [PY, '-c', 'import sys; sys.exit(2)'], lambda line: None)
        assert outcome.error == "yt-dlp exited with code 2"

    @pytest.mark.asyncio
    async def test_spawn_failure_is_an_outcome(self, tmp_path):
        supervisor = ProcessSupervisor()
        outcome = await supervisor.run_job('job', [str(tmp_path / 'nope')], lambda line: None)
        assert not outcome.ok
        assert outcome.return_code is None
        assert "not found" in outcome.error

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_stop_reading(self):
        supervisor = ProcessSupervisor()
        seen = []

        def handler(line):
            seen.append(line)
            raise ValueError("bad handler")

        outcome = await supervisor.run_job('job', [PY, '-c', 'print("a"); print("b")'], handler)
        assert outcome.ok
        assert seen == ["a", "b"]


@posix_only
class TestTerminate:
    """Test cooperative and forced termination."""

    @pytest.mark.asyncio
    async def test_terminate_stops_the_matching_job(self):
        supervisor = ProcessSupervisor()
        started = asyncio.Event()

        def on_line(line):
            started.set()

        script = 'import time\nwhile True:\n    print("tick", flush=True)\n    time.sleep(0.05)'
        task = asyncio.create_task(supervisor.run_job('job-1', [PY, '-c', script], on_line))
        await asyncio.wait_for(started.wait(), timeout=10)

        assert not await supervisor.terminate('other-job')
        assert await supervisor.terminate('job-1')
        outcome = await asyncio.wait_for(task, timeout=10)

        assert not outcome.ok
        assert not await supervisor.terminate('job-1')

    @pytest.mark.asyncio
    async def test_ignored_interrupt_is_escalated(self):
        supervisor = ProcessSupervisor()
        started = asyncio.Event()
        script = (
            'import signal, time\n'
            'signal.signal(signal.SIGINT, signal.SIG_IGN)\n'
            'print("ready", flush=True)\n'
            'time.sleep(30)'
        )
        task = asyncio.create_task(supervisor.run_job('job-1', [PY, '-c', script], lambda line: started.set()))
        await asyncio.wait_for(started.wait(), timeout=10)

        assert await supervisor.terminate('job-1')
        outcome = await asyncio.wait_for(task, timeout=10)
        assert outcome.return_code is not None and outcome.return_code != 0

    @pytest.mark.asyncio
    async def test_cancelling_run_job_kills_the_process(self):
        supervisor = ProcessSupervisor()
        started = asyncio.Event()
        script = 'import time\nprint("ready", flush=True)\ntime.sleep(30)'
        task = asyncio.create_task(supervisor.run_job('job-1', [PY, '-c', script], lambda line: started.set()))
        await asyncio.wait_for(started.wait(), timeout=10)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert await supervisor.active_job_id() is None
