"""Retention pruning for run logs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Sequence

logger = logging.getLogger(__name__)

# Only files matching these patterns belong to the rotator.
RUN_LOG_PATTERNS = ("run_*.log", "once_*.log")


def owned_logs(directory: Path, patterns: Sequence[str] = RUN_LOG_PATTERNS) -> List[Path]:
    """List rotator-owned log files, newest first by modification time."""
    if not directory.is_dir():
        return []
    files = {path for pattern in patterns for path in directory.glob(pattern) if path.is_file()}
    return sorted(files, key=lambda p: p.stat().st_mtime, reverse=True)


def rotate_logs(
    directory: Path,
    keep: int,
    patterns: Sequence[str] = RUN_LOG_PATTERNS,
) -> List[Path]:
    """Delete all but the ``keep`` newest owned log files.

    Args:
        directory: Logs directory.
        keep: Number of files to retain. 0 keeps everything.
        patterns: Glob patterns identifying owned files.

    Returns:
        The deleted paths.
    """
    if keep == 0:
        return []

    deleted = []
    for path in owned_logs(directory, patterns)[keep:]:
        try:
            path.unlink()
            deleted.append(path)
        except OSError as e:
            logger.warning(f"Could not delete old log {path}: {e}")

    if deleted:
        logger.debug(f"Rotated {len(deleted)} old log file(s) in {directory}")
    return deleted
