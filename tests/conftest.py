import sys
import asyncio
import textwrap
from pathlib import Path
from typing import Callable, Optional

import pytest

from mediaqueue.controller import AppController
from mediaqueue.dependencies import DependencyManager
from mediaqueue.jobs import QueueSnapshot

posix_only = pytest.mark.skipif(sys.platform == 'win32', reason="Uses a shebang script as a fake yt-dlp")

FAKE_YT_DLP = textwrap.dedent('''\
    #!{python}
    """Stands in for yt-dlp. Behaviour is picked by words in the URL."""
    import sys
    import time
    from pathlib import Path

    args = sys.argv[1:]
    if '--version' in args:
        print('2024.08.06')
        sys.exit(0)

    url = args[-1]
    with open({attempts_log!r}, 'a', encoding='utf-8') as log:
        log.write(url + '\\n')

    if '--get-title' in args:
        if 'notitle' in url:
            print('ERROR: [generic] Unsupported URL: ' + url, file=sys.stderr)
            sys.exit(1)
        print('Fake Title')
        sys.exit(0)

    if 'fail' in url:
        print('[download]  10.0% of 1.00MiB at 1.00MiB/s ETA 00:01', flush=True)
        print('ERROR: [generic] Unable to download webpage: HTTP Error 404', file=sys.stderr, flush=True)
        sys.exit(1)

    if 'slow' in url:
        percent = 0.0
        while True:
            percent = min(percent + 0.5, 99.0)
            print(f'[download] {{percent:5.1f}}% of 10.00MiB at 1.00MiB/s ETA 00:09', flush=True)
            time.sleep(0.05)

    if 'nofile' in url:
        sys.exit(0)

    template = args[args.index('-o') + 1]
    ext = 'mp3' if '-x' in args else 'mp4'
    for percent in (25.0, 50.0, 100.0):
        print(f'[download] {{percent:5.1f}}% of 1.00MiB at 2.00MiB/s ETA 00:00', flush=True)
    Path(template.replace('%(ext)s', ext)).write_bytes(b'media-bytes')
    sys.exit(0)
''')


class FakeDependencies(DependencyManager):
    """A DependencyManager that is always ready and points yt-dlp at a script."""

    def __init__(self, yt_dlp_path: Path, bin_dir: Path, ready_error: Optional[str] = None):
        super().__init__(managed_bin_dir=bin_dir, bundled_bin_dir=None)
        self.yt_dlp_path = yt_dlp_path
        self.ready_error = ready_error
        self.ready_calls = 0

    async def ensure_ready(self, timeout: float = 60) -> Optional[str]:
        self.ready_calls += 1
        return self.ready_error

    def resolve_executable(self, name: str) -> str:
        if name == 'yt-dlp':
            return str(self.yt_dlp_path)
        return name


@pytest.fixture
def fake_yt_dlp(tmp_path) -> Path:
    """Writes the fake yt-dlp script and returns its path."""
    script = tmp_path / 'fake-yt-dlp'
    script.write_text(FAKE_YT_DLP.format(python=sys.executable, attempts_log=str(tmp_path / 'attempts.log')),
                      encoding='utf-8')
    script.chmod(0o755)
    return script


@pytest.fixture
def attempts(tmp_path) -> Callable[[str], int]:
    """Counts how often the fake yt-dlp was started for URLs containing a word."""
    def count(word: str) -> int:
        log = tmp_path / 'attempts.log'
        if not log.exists():
            return 0
        return sum(1 for line in log.read_text(encoding='utf-8').splitlines() if word in line)
    return count


@pytest.fixture
def download_dir(tmp_path) -> Path:
    path = tmp_path / 'downloads'
    path.mkdir()
    return path


@pytest.fixture
def fake_dependencies(fake_yt_dlp, tmp_path) -> FakeDependencies:
    return FakeDependencies(fake_yt_dlp, tmp_path / 'bin')


@pytest.fixture
async def controller(tmp_path, fake_dependencies, download_dir):
    """A started AppController wired to the fake yt-dlp, with no retry delays."""
    app = AppController(
        queue_file=tmp_path / 'state' / 'queue_state.json',
        settings_file=tmp_path / 'state' / 'settings.json',
        temp_root=tmp_path / 'scratch',
        dependencies=fake_dependencies,
        backoff=lambda attempt: 0,
    )
    await app.set_settings({'download_dir': str(download_dir), 'max_retries': 2})
    await app.start()
    yield app
    await app.shutdown()


async def wait_for_snapshot(app: AppController, predicate: Callable[[QueueSnapshot], bool],
                            timeout: float = 15.0) -> QueueSnapshot:
    """Polls the controller until `predicate` holds for a snapshot."""
    async def poll() -> QueueSnapshot:
        while True:
            snapshot = await app.get_snapshot()
            if predicate(snapshot):
                return snapshot
            await asyncio.sleep(0.02)
    return await asyncio.wait_for(poll(), timeout=timeout)
