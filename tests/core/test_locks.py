"""Tests for shipyard.core.locks.FileLock."""

from __future__ import annotations

import os
import time

import pytest

from shipyard.core.errors import LockTimeout
from shipyard.core.locks import FileLock


class TestFileLock:
    """Acquire, release and stale-lock handling."""

    def test_acquire_creates_file_with_owner(self, tmp_path):
        lock = FileLock(tmp_path / "locks" / "app-demo.lock", owner="run-1")
        lock.acquire()
        try:
            assert lock.held
            assert lock.path.read_text() == "run-1"
            assert lock.holder() == "run-1"
        finally:
            lock.release()
        assert not lock.path.exists()

    def test_context_manager(self, tmp_path):
        path = tmp_path / "registry.lock"
        with FileLock(path) as lock:
            assert lock.is_locked()
        assert not path.exists()

    def test_second_holder_times_out(self, tmp_path):
        path = tmp_path / "app-demo.lock"
        with FileLock(path, owner="first"):
            contender = FileLock(path, timeout=0.05, poll_interval=0.01)
            with pytest.raises(LockTimeout) as exc_info:
                contender.acquire()
        assert exc_info.value.context.metadata["holder"] == "first"

    def test_stale_lock_is_broken(self, tmp_path):
        path = tmp_path / "app-demo.lock"
        path.write_text("crashed-run")
        old = time.time() - 600
        os.utime(path, (old, old))

        lock = FileLock(path, timeout=0.1, stale_after=300, owner="new-run")
        lock.acquire()
        assert lock.holder() == "new-run"
        lock.release()

    def test_is_locked_false_when_stale(self, tmp_path):
        path = tmp_path / "app-demo.lock"
        path.write_text("x")
        old = time.time() - 600
        os.utime(path, (old, old))
        assert FileLock(path, stale_after=300).is_locked() is False

    def test_release_without_acquire_is_noop(self, tmp_path):
        FileLock(tmp_path / "x.lock").release()

    def test_release_tolerates_removed_file(self, tmp_path):
        lock = FileLock(tmp_path / "x.lock")
        lock.acquire()
        lock.path.unlink()
        lock.release()
        assert not lock.held
