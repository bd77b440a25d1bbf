"""
Configures the application's logging setup.

This module sets up a root logger that directs messages to a rotating file log,
the console, and optionally a queue for an embedding UI.
"""

import sys
import queue
import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import Optional

from .constants import LOG_DIR


def rotate_latest_log(log_dir: Path) -> Path:
    """
    Renames an existing `latest.log` to a timestamped file.

    Returns:
        The path of the (now free) `latest.log`.
    """
    latest_log_path = log_dir / 'latest.log'
    if latest_log_path.exists():
        try:
            mod_time = latest_log_path.stat().st_mtime
            timestamp_str = datetime.fromtimestamp(mod_time).strftime('%Y-%m-%d_%H-%M-%S')

            archive_log_path = log_dir / f"{timestamp_str}.log"
            latest_log_path.rename(archive_log_path)
        except OSError as e:
            print(f"Error rotating log file: {e}", file=sys.stderr)
    return latest_log_path


def setup_logging(file_log_level_str: str = 'INFO', log_dir: Path = LOG_DIR,
                  log_queue: Optional[queue.Queue] = None, console_level_str: str = 'WARNING'):
    """
    Configures the root logger for file, console and optional queue logging.

    Implements a "Minecraft-style" log rotation where `latest.log` is renamed
    to a timestamped file on application startup.

    Args:
        file_log_level_str: The minimum logging level for the file handler (e.g., 'INFO').
        log_dir: Directory holding `latest.log` and its archives.
        log_queue: If given, every record is also sent here for display elsewhere.
        console_level_str: The minimum logging level printed to stderr.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    latest_log_path = rotate_latest_log(log_dir)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all levels at the root

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    log_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s'
    )

    file_log_level = getattr(logging, file_log_level_str.upper(), logging.INFO)
    file_handler = logging.FileHandler(str(latest_log_path), encoding='utf-8')
    file_handler.setLevel(file_log_level)
    file_handler.setFormatter(log_formatter)
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, console_level_str.upper(), logging.WARNING))
    console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
    root_logger.addHandler(console_handler)

    if log_queue is not None:
        queue_handler = logging.handlers.QueueHandler(log_queue)
        queue_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(queue_handler)

    logging.info("--- Logging initialized ---")
    logging.debug(f"File log level set to: {logging.getLevelName(file_log_level)}")
