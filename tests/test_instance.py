"""Tests for the single-instance lock."""

import sys

import pytest

from mediaqueue.exceptions import InstanceLockedError
from mediaqueue.instance import InstanceLock

flock_only = pytest.mark.skipif(sys.platform == 'win32', reason="Relies on flock semantics between descriptors")


class TestInstanceLock:
    """Test that only one holder can use the state files at a time."""

    def test_acquire_creates_lock_file(self, tmp_path):
        path = tmp_path / 'state' / 'mediaqueue.lock'
        with InstanceLock(path) as lock:
            assert lock.held
            assert path.exists()
        assert not lock.held

    @flock_only
    def test_second_holder_is_refused(self, tmp_path):
        path = tmp_path / 'mediaqueue.lock'
        first = InstanceLock(path)
        first.acquire()
        try:
            with pytest.raises(InstanceLockedError) as excinfo:
                InstanceLock(path).acquire()
            assert str(path) in str(excinfo.value)
        finally:
            first.release()

    @flock_only
    def test_lock_is_free_after_release(self, tmp_path):
        path = tmp_path / 'mediaqueue.lock'
        with InstanceLock(path):
            pass
        second = InstanceLock(path)
        second.acquire()
        assert second.held
        second.release()

    def test_release_twice_is_harmless(self, tmp_path):
        lock = InstanceLock(tmp_path / 'mediaqueue.lock')
        lock.acquire()
        lock.release()
        lock.release()
        assert not lock.held
