"""
Keeps two mediaqueue processes from working on the same state files.

Each process holds its queue in memory and rewrites the state file from it, so
a second process would silently overwrite the first one's changes. The lock is
an OS-level file lock, which the OS drops when the holder exits, so a crashed
process never leaves a stale lock behind.
"""
import os
import sys
import logging
from pathlib import Path
from typing import Optional

from .exceptions import InstanceLockedError

if sys.platform == 'win32':
    import msvcrt
else:
    import fcntl


def _lock_fd(fd: int):
    if sys.platform == 'win32':
        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
    else:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_fd(fd: int):
    if sys.platform == 'win32':
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)


class InstanceLock:
    """An exclusive, non-blocking lock on a file."""

    def __init__(self, path: Path):
        self.path = path
        self.logger = logging.getLogger(__name__)
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self):
        """
        Takes the lock without waiting.

        Raises:
            InstanceLockedError: If another holder has it.
        """
        if self._fd is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_CREAT | os.O_RDWR, 0o644)
        try:
            _lock_fd(fd)
        except OSError:
            os.close(fd)
            raise InstanceLockedError(str(self.path))
        self._fd = fd
        self.logger.debug(f"Acquired instance lock {self.path}")

    def release(self):
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            _unlock_fd(fd)
        except OSError as e:
            self.logger.warning(f"Could not unlock {self.path}: {e}")
        finally:
            os.close(fd)

    def __enter__(self) -> 'InstanceLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()
