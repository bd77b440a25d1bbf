"""Tests for the controller: recovery, settings, diagnostics and file deletion."""

import json

import pytest
from pydantic import ValidationError

from conftest import posix_only, wait_for_snapshot
from mediaqueue.controller import AppController
from mediaqueue.jobs import DownloadJob, DownloadMode, JobStatus
from mediaqueue.persistence import dump_jobs
from mediaqueue.state import INTERRUPTED_MESSAGE


def write_state(tmp_path, download_dir, jobs):
    state_dir = tmp_path / 'state'
    state_dir.mkdir(exist_ok=True)
    (state_dir / 'queue_state.json').write_text(dump_jobs(jobs), encoding='utf-8')
    (state_dir / 'settings.json').write_text(
        json.dumps({'downloadDir': str(download_dir), 'maxRetries': 0}), encoding='utf-8'
    )


def make_controller(tmp_path, dependencies):
    return AppController(
        queue_file=tmp_path / 'state' / 'queue_state.json',
        settings_file=tmp_path / 'state' / 'settings.json',
        temp_root=tmp_path / 'scratch',
        dependencies=dependencies,
        backoff=lambda attempt: 0,
    )


class TestStartupRecovery:
    """Test what happens when the application starts after a crash."""

    @pytest.mark.asyncio
    async def test_interrupted_move_fails_job_and_removes_partial(self, tmp_path, download_dir, fake_dependencies):
        job = DownloadJob(job_id='job-1', title='Clip', url='https://example.com/v', mode=DownloadMode.VIDEO,
                          quality_id='22', status=JobStatus.DOWNLOADING)
        write_state(tmp_path, download_dir, [job])
        (download_dir / 'Clip.mp4').write_bytes(b'half')
        (download_dir / 'Clip.mp4.incomplete').write_text('job-1', encoding='utf-8')
        stale_scratch = tmp_path / 'scratch' / 'old-job'
        stale_scratch.mkdir(parents=True)

        app = make_controller(tmp_path, fake_dependencies)
        await app.start(resume_queue=False)
        try:
            recovered = (await app.get_snapshot()).get('job-1')
            assert recovered.status == JobStatus.FAILED
            assert recovered.error_message == INTERRUPTED_MESSAGE
            assert not (download_dir / 'Clip.mp4').exists()
            assert not (download_dir / 'Clip.mp4.incomplete').exists()
            assert not stale_scratch.exists()
        finally:
            await app.shutdown()

    @pytest.mark.asyncio
    async def test_stale_marker_of_completed_job_keeps_file(self, tmp_path, download_dir, fake_dependencies):
        output = download_dir / 'Clip.mp4'
        job = DownloadJob(job_id='job-1', title='Clip', url='https://example.com/v', mode=DownloadMode.VIDEO,
                          quality_id='22', status=JobStatus.COMPLETED, output_path=str(output),
                          progress_percent=100.0)
        write_state(tmp_path, download_dir, [job])
        output.write_bytes(b'full')
        (download_dir / 'Clip.mp4.incomplete').write_text('job-1', encoding='utf-8')

        app = make_controller(tmp_path, fake_dependencies)
        await app.start(resume_queue=False)
        try:
            assert (await app.get_snapshot()).get('job-1').status == JobStatus.COMPLETED
            assert output.read_bytes() == b'full'
            assert not (download_dir / 'Clip.mp4.incomplete').exists()
        finally:
            await app.shutdown()

    @posix_only
    @pytest.mark.asyncio
    async def test_downloading_job_is_resumed(self, tmp_path, download_dir, fake_dependencies):
        job = DownloadJob(job_id='job-1', title='Clip', url='https://example.com/ok', mode=DownloadMode.VIDEO,
                          quality_id='22', status=JobStatus.DOWNLOADING, progress_percent=40.0)
        write_state(tmp_path, download_dir, [job])

        app = make_controller(tmp_path, fake_dependencies)
        await app.start()
        try:
            snapshot = await wait_for_snapshot(app, lambda s: s.get('job-1').status == JobStatus.COMPLETED)
            assert snapshot.get('job-1').output_path == str(download_dir / 'Clip.mp4')
        finally:
            await app.shutdown()

    @pytest.mark.asyncio
    async def test_resume_queue_false_leaves_jobs_queued(self, tmp_path, download_dir, fake_dependencies):
        job = DownloadJob(job_id='job-1', title='Clip', url='https://example.com/ok', mode=DownloadMode.VIDEO,
                          quality_id='22')
        write_state(tmp_path, download_dir, [job])

        app = make_controller(tmp_path, fake_dependencies)
        await app.start(resume_queue=False)
        try:
            assert not app.worker.is_running
            assert (await app.get_snapshot()).get('job-1').status == JobStatus.QUEUED
        finally:
            await app.shutdown()

    @pytest.mark.asyncio
    async def test_start_without_recovery_leaves_files_alone(self, tmp_path, download_dir, fake_dependencies):
        job = DownloadJob(job_id='job-1', title='Clip', url='https://example.com/v', mode=DownloadMode.VIDEO,
                          quality_id='22')
        write_state(tmp_path, download_dir, [job])
        (download_dir / 'Clip.mp4').write_bytes(b'half')
        (download_dir / 'Clip.mp4.incomplete').write_text('job-1', encoding='utf-8')
        live_scratch = tmp_path / 'scratch' / 'job-2'
        live_scratch.mkdir(parents=True)
        (live_scratch / 'media.mp4.part').write_bytes(b'partial')

        app = make_controller(tmp_path, fake_dependencies)
        await app.start(resume_queue=False, recover=False)
        try:
            assert (await app.get_snapshot()).get('job-1').status == JobStatus.QUEUED
            assert (download_dir / 'Clip.mp4.incomplete').exists()
            assert (live_scratch / 'media.mp4.part').read_bytes() == b'partial'
        finally:
            await app.shutdown()


class TestOperations:
    """Test the operations exposed to the command line."""

    @posix_only
    @pytest.mark.asyncio
    async def test_check_duplicate_reports_existing_file(self, controller):
        url = "https://www.youtube.com/watch?v=ok123"
        await controller.enqueue(url, DownloadMode.VIDEO, "22", title="Clip")
        snapshot = await wait_for_snapshot(controller, lambda s: s.count(JobStatus.COMPLETED) == 1)

        is_duplicate, existing = await controller.check_duplicate("https://youtu.be/ok123", DownloadMode.VIDEO, "22")
        assert is_duplicate
        assert existing == snapshot.items[0].output_path
        assert await controller.check_duplicate(url, DownloadMode.AUDIO, "22") == (False, None)

    @posix_only
    @pytest.mark.asyncio
    async def test_delete_output_removes_file_and_jobs(self, controller):
        await controller.enqueue("https://example.com/ok", DownloadMode.VIDEO, "22", title="Clip")
        snapshot = await wait_for_snapshot(controller, lambda s: s.count(JobStatus.COMPLETED) == 1)
        output_path = snapshot.items[0].output_path

        snapshot = await controller.delete_output(output_path)
        assert snapshot.items == []
        assert not (controller.state.repository.load())

    @pytest.mark.asyncio
    async def test_delete_missing_file_is_fine(self, controller, download_dir):
        snapshot = await controller.delete_output(str(download_dir / 'gone.mp4'))
        assert snapshot.items == []

    @posix_only
    @pytest.mark.asyncio
    async def test_clear_terminal(self, controller):
        snapshot = await controller.enqueue("https://example.com/slow", DownloadMode.VIDEO, "22")
        job_id = snapshot.items[0].job_id
        await controller.cancel(job_id)

        assert (await controller.clear_terminal()).items == []

    @pytest.mark.asyncio
    async def test_set_settings(self, controller, tmp_path):
        settings = await controller.set_settings({'max_retries': 50, 'language': 'fr'})
        assert settings.max_retries == 10
        assert settings.language == 'fr'

        saved = json.loads((tmp_path / 'state' / 'settings.json').read_text(encoding='utf-8'))
        assert saved['maxRetries'] == 10
        assert (await controller.get_settings()).language == 'fr'

    @pytest.mark.asyncio
    async def test_set_settings_rejects_bad_log_level(self, controller):
        with pytest.raises(ValidationError):
            await controller.set_settings({'log_level': 'chatty'})
        assert (await controller.get_settings()).log_level == 'INFO'

    @posix_only
    @pytest.mark.asyncio
    async def test_lookup_title(self, controller):
        assert await controller.lookup_title("https://example.com/video") == "Fake Title"
        assert await controller.lookup_title(" https://example.com/notitle ") == "https://example.com/notitle"

    @posix_only
    @pytest.mark.asyncio
    async def test_diagnostics(self, controller):
        result = await controller.run_diagnostics()
        assert result.yt_dlp_available
        assert result.download_path_writable
        assert "yt-dlp: 2024.08.06" in result.message
