"""Single-instance guard built on an advisory flock.

The kernel drops the lock when the owning process exits for any reason, so
a crashed controller never leaves a stale lock behind.
"""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import IO, Optional

logger = logging.getLogger(__name__)


class AlreadyRunningError(Exception):
    """Raised when another process already holds the lock."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(
            f"another instance of ralph is already running (lockfile: {path}). Aborting."
        )


class LockHandle:
    """An exclusive lock held on ``path`` until released."""

    def __init__(self, path: Path, handle: IO[str]):
        self.path = path
        self._handle: Optional[IO[str]] = handle

    @property
    def held(self) -> bool:
        return self._handle is not None

    def release(self) -> None:
        """Unlock and close the lockfile. Safe to call twice.

        The file stays on disk so every contender locks the same inode.
        """
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as exc:
            logger.warning(f"Failed to release lock {self.path}: {exc}")
        finally:
            handle.close()
        logger.debug(f"Released lock {self.path}")

    def __enter__(self) -> LockHandle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def acquire(path: Path) -> LockHandle:
    """Take the lock without blocking.

    Raises:
        AlreadyRunningError: If another holder has the lock.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = open(path, "a+", encoding="utf-8")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        handle.close()
        raise AlreadyRunningError(path) from None

    handle.seek(0)
    handle.truncate()
    handle.write(f"{os.getpid()}\n")
    handle.flush()
    logger.debug(f"Acquired lock {path}")
    return LockHandle(path, handle)
