"""
Crash-safe JSON state files.

Every save writes a temporary sibling and renames it over the real file, then
refreshes a `.bak` copy the same way. Loading falls back from the primary file
to the backup, and reports nothing found if both are unreadable.
"""
import os
import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

import aiofiles
import aiofiles.os
from pydantic import TypeAdapter

from .jobs import DownloadJob, JobStatus

T = TypeVar('T')

_JOB_LIST_ADAPTER = TypeAdapter(List[DownloadJob])


class JsonStateFile:
    """One JSON document on disk with an atomic writer and a backup copy."""

    def __init__(self, path: Path):
        """
        Initializes the JsonStateFile.

        Args:
            path: The location of the primary file.
        """
        self.path = path
        self.backup_path = path.with_name(path.name + '.bak')
        self.logger = logging.getLogger(__name__)

    def load(self, parse: Callable[[str], T]) -> Optional[T]:
        """
        Reads and parses the primary file, falling back to the backup.

        Args:
            parse: Turns the file text into a value. Any ValueError it raises
                (including JSON and pydantic validation errors) counts as corruption.

        Returns:
            The parsed value, or None if neither file could be used.
        """
        for candidate in (self.path, self.backup_path):
            try:
                text = candidate.read_text(encoding='utf-8')
            except FileNotFoundError:
                continue
            except (OSError, UnicodeDecodeError) as e:
                self.logger.warning(f"Could not read {candidate}: {e}")
                continue
            try:
                value = parse(text)
            except ValueError as e:
                self.logger.error(f"Could not parse {candidate}: {e}")
                continue
            if candidate == self.backup_path:
                self.logger.warning(f"Recovered state from backup {candidate}")
            return value
        return None

    async def save(self, content: str) -> bool:
        """
        Writes `content` atomically to the primary file and then to the backup.

        Returns:
            True if the primary file was written. Failures are logged, not raised.
        """
        try:
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
            await self._write_atomic(self.path, content)
        except OSError as e:
            self.logger.error(f"Error saving {self.path}: {e}")
            return False
        try:
            await self._write_atomic(self.backup_path, content)
        except OSError as e:
            self.logger.warning(f"Error refreshing backup {self.backup_path}: {e}")
        return True

    async def _write_atomic(self, target: Path, content: str):
        temp_path = target.with_name(target.name + '.tmp')
        async with aiofiles.open(temp_path, 'w', encoding='utf-8') as f:
            await f.write(content)
            await f.flush()
            await asyncio.to_thread(os.fsync, f.fileno())
        await aiofiles.os.replace(temp_path, target)


def parse_jobs(text: str) -> List[DownloadJob]:
    """Parses a persisted job list. Interrupted downloads come back as queued."""
    jobs = _JOB_LIST_ADAPTER.validate_json(text)
    for job in jobs:
        if job.status == JobStatus.DOWNLOADING:
            job.status = JobStatus.QUEUED
    return jobs


def dump_jobs(jobs: List[DownloadJob]) -> str:
    return _JOB_LIST_ADAPTER.dump_json(jobs, by_alias=True, indent=2).decode('utf-8')


class JobRepository:
    """Loads and saves the job collection."""

    def __init__(self, path: Path):
        self.state_file = JsonStateFile(path)

    def load(self) -> List[DownloadJob]:
        jobs = self.state_file.load(parse_jobs)
        return jobs if jobs is not None else []

    async def save(self, jobs: List[DownloadJob]) -> bool:
        return await self.state_file.save(dump_jobs(jobs))
