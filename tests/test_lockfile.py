"""Tests for the single-instance lock."""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

from ralphloop import lockfile
from ralphloop.lockfile import AlreadyRunningError

HOLDER_SCRIPT = """
import fcntl, sys, time
handle = open(sys.argv[1], "a+")
fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
print("locked", flush=True)
sys.stdin.read()
"""


class TestLockfile:
    """Tests for acquire/release."""

    def test_acquire_writes_pid(self, tmp_path: Path) -> None:
        path = tmp_path / ".ralph.lock"
        with lockfile.acquire(path) as lock:
            assert lock.held
            assert path.read_text().strip() == str(os.getpid())

    def test_second_acquire_fails(self, tmp_path: Path) -> None:
        path = tmp_path / ".ralph.lock"
        first = lockfile.acquire(path)
        try:
            with pytest.raises(AlreadyRunningError) as exc_info:
                lockfile.acquire(path)
            assert "already running" in str(exc_info.value)
            assert str(path) in str(exc_info.value)
        finally:
            first.release()

    def test_release_allows_reacquire(self, tmp_path: Path) -> None:
        path = tmp_path / ".ralph.lock"
        lockfile.acquire(path).release()

        lock = lockfile.acquire(path)
        assert lock.held
        lock.release()

    def test_release_is_idempotent(self, tmp_path: Path) -> None:
        lock = lockfile.acquire(tmp_path / ".ralph.lock")
        lock.release()
        lock.release()
        assert not lock.held

    def test_file_kept_after_release(self, tmp_path: Path) -> None:
        path = tmp_path / ".ralph.lock"
        lockfile.acquire(path).release()
        assert path.exists()

    def test_stale_file_does_not_block(self, tmp_path: Path) -> None:
        """A lockfile left by a dead process holds no lock."""
        path = tmp_path / ".ralph.lock"
        path.write_text("99999\n")
        with lockfile.acquire(path) as lock:
            assert lock.held

    def test_held_by_other_process(self, tmp_path: Path) -> None:
        path = tmp_path / ".ralph.lock"
        holder = subprocess.Popen(
            [sys.executable, "-c", HOLDER_SCRIPT, str(path)],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            text=True,
        )
        try:
            assert holder.stdout.readline().strip() == "locked"
            with pytest.raises(AlreadyRunningError):
                lockfile.acquire(path)
        finally:
            holder.stdin.close()
            holder.wait(timeout=10)

        # The kernel releases the lock once the holder exits.
        with lockfile.acquire(path) as lock:
            assert lock.held
