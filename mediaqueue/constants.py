"""
Defines application-wide constants, paths, and tuning values.

This module centralizes configuration for paths, URLs, and subprocess behavior,
adapting to whether the application is running from source or as a frozen executable.
"""

import os
import sys
import subprocess
from pathlib import Path

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    # If the application is run as a bundle, the PyInstaller bootloader
    # sets the app path to the executable's directory.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'mediaqueue').
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for state to avoid permission issues.
USER_DATA_DIR: Path = Path(os.environ.get('MEDIAQUEUE_HOME', Path.home() / '.mediaqueue'))
QUEUE_FILE: Path = USER_DATA_DIR / 'queue_state.json'
SETTINGS_FILE: Path = USER_DATA_DIR / 'settings.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
TEMP_DOWNLOAD_DIR: Path = USER_DATA_DIR / 'tmp-downloads'
INSTANCE_LOCK_FILE: Path = USER_DATA_DIR / 'mediaqueue.lock'
MANAGED_BIN_DIR: Path = USER_DATA_DIR / 'bin'
BUNDLED_BIN_DIR: Path = APP_PATH / 'bin'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Queue and Worker Tuning ---
MAX_LOG_LINES_PER_JOB = 120
RETRY_DELAY_TABLE_MS = (2000, 5000, 10000, 15000)
MAX_RETRIES_LIMIT = 10
DEFAULT_MAX_RETRIES = 3
PROGRESS_EPSILON = 1e-9
SCRATCH_FILE_STEM = 'media'
INCOMPLETE_SUFFIX = '.incomplete'
MAX_FILE_NAME_LENGTH = 160
FALLBACK_FILE_NAME = 'download'

# --- Process Supervision ---
TERMINATE_POLL_ATTEMPTS = 10
TERMINATE_POLL_INTERVAL = 0.05  # seconds
READER_JOIN_TIMEOUT = 5.0  # seconds
DIAGNOSTICS_COMMAND_TIMEOUT = 10.0
YT_DLP_VERSION_CHECK_TIMEOUT = 5.0
TITLE_LOOKUP_TIMEOUT = 15.0
DEPENDENCY_WAIT_TIMEOUT = 60.0

# --- External Tools ---
YT_DLP_URLS = {
    'win32': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp.exe',
    'linux': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp_linux',
    'darwin': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp_macos'
}
YT_DLP_LATEST_API_URL = 'https://api.github.com/repos/yt-dlp/yt-dlp/releases/latest'
REQUEST_HEADERS = {
    'User-Agent': 'mediaqueue',
    'Accept': 'application/vnd.github+json'
}
REQUEST_TIMEOUTS = (5, 10)  # (connect_timeout, read_timeout)

if sys.platform == 'win32':
    COMMON_BINARY_DIRS = (
        Path('C:/Program Files/yt-dlp'),
        Path('C:/Program Files/ffmpeg/bin'),
        Path('C:/Windows/System32'),
    )
else:
    COMMON_BINARY_DIRS = (
        Path('/opt/homebrew/bin'),
        Path('/usr/local/bin'),
        Path('/usr/bin'),
        Path('/bin'),
    )
