"""SIGINT/SIGTERM handling for the loop.

Signals only request a shutdown. The controller polls the request between
retry attempts and at iteration boundaries, so an agent invocation already
in flight always runs to completion first.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from enum import Enum
from pathlib import Path
from types import FrameType
from typing import Callable, List, Optional

from .claude_runner import SCRATCH_PREFIX

logger = logging.getLogger(__name__)

FORCED_EXIT_CODE = 130


class ShutdownState(str, Enum):
    RUNNING = "running"
    REQUESTED = "shutdown_requested"
    EXITED = "exited"


class ShutdownManager:
    """Tracks shutdown requests and installs the signal handlers."""

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, force_exit: Optional[Callable[[int], None]] = None):
        self.event = threading.Event()
        self.state = ShutdownState.RUNNING
        self.signal_name: Optional[str] = None
        self._force_exit = force_exit or os._exit
        self._previous: dict[int, object] = {}

    @property
    def requested(self) -> bool:
        return self.event.is_set()

    def install(self) -> None:
        """Install handlers for SIGINT and SIGTERM (main thread only)."""
        for signum in self.SIGNALS:
            self._previous[signum] = signal.signal(signum, self._handle)

    def restore(self) -> None:
        """Put back whatever handlers were installed before."""
        for signum, previous in self._previous.items():
            signal.signal(signum, previous)
        self._previous.clear()

    def request(self, signal_name: str = "request") -> None:
        """Mark shutdown requested. A second request forces an immediate exit."""
        if self.state is ShutdownState.REQUESTED:
            logger.warning(f"Received {signal_name} again; exiting immediately")
            self._force_exit(FORCED_EXIT_CODE)
            return
        if self.state is ShutdownState.EXITED:
            return
        self.signal_name = signal_name
        self.state = ShutdownState.REQUESTED
        self.event.set()
        logger.warning(
            f"Received {signal_name}; finishing the current invocation before shutting down"
        )

    def mark_exited(self) -> None:
        self.state = ShutdownState.EXITED

    def _handle(self, signum: int, frame: Optional[FrameType]) -> None:
        self.request(signal.Signals(signum).name)


def remove_scratch_files(directory: Path) -> List[Path]:
    """Delete output-capture files left behind in ``directory``."""
    removed = []
    if not directory.is_dir():
        return removed
    for path in directory.glob(f"{SCRATCH_PREFIX}*"):
        if path.is_file():
            try:
                path.unlink()
                removed.append(path)
            except OSError as e:
                logger.warning(f"Could not remove scratch file {path}: {e}")
    return removed
