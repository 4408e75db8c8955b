"""Task ledger derived from PRD.md and progress.txt.

The ledger is never cached: every query re-reads both files, because the
agent rewrites them while it runs. A task counts as done only when the
completion log holds a line that equals ``"[DONE] <task text>"`` exactly.
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"

PROGRESS_HEADER = (
    "# Progress Tracker\n"
    "# Each completed task is logged here by the agent.\n"
    "# Format: [DONE] Task description\n"
)

_TASK_LINE = re.compile(r"^- \[[ x]\] (.*)$")


@dataclass(frozen=True)
class Task:
    """A declared task. Identity is the exact text."""

    text: str


@dataclass(frozen=True)
class LedgerCounts:
    """Totals derived from the ledger."""

    total: int
    completed: int

    @property
    def remaining(self) -> int:
        return self.total - self.completed


class LedgerError(Exception):
    """Raised when the task list cannot be read."""

    pass


class TaskLedger:
    """Read-only view over the task list and the completion log."""

    def __init__(self, prd_path: Path, progress_path: Path):
        self.prd_path = prd_path
        self.progress_path = progress_path

    def tasks(self) -> List[Task]:
        """Return declared tasks in file order, dropping repeated texts.

        Raises:
            LedgerError: If the task list does not exist.
        """
        if not self.prd_path.exists():
            raise LedgerError(f"{self.prd_path.name} not found.")

        seen: set[str] = set()
        tasks = []
        for line in self.prd_path.read_text(encoding="utf-8").splitlines():
            match = _TASK_LINE.match(line)
            if match and match.group(1) not in seen:
                seen.add(match.group(1))
                tasks.append(Task(match.group(1)))
        return tasks

    def completion_records(self) -> set[str]:
        """Return the set of full completion lines currently on disk."""
        if not self.progress_path.exists():
            return set()
        lines = self.progress_path.read_text(encoding="utf-8").splitlines()
        return {line for line in lines if line.startswith(DONE_MARKER)}

    def is_done(self, task: Task, records: Optional[set[str]] = None) -> bool:
        """Check a task against the completion log by full-line equality."""
        if records is None:
            records = self.completion_records()
        return f"{DONE_MARKER} {task.text}" in records

    def partition(self) -> tuple[List[Task], List[Task]]:
        """Split declared tasks into (completed, remaining), both in file order."""
        records = self.completion_records()
        completed, remaining = [], []
        for task in self.tasks():
            (completed if self.is_done(task, records) else remaining).append(task)
        return completed, remaining

    def next_pending(self) -> Optional[Task]:
        """Return the first task not yet done, or None when all are done."""
        _, remaining = self.partition()
        return remaining[0] if remaining else None

    def counts(self) -> LedgerCounts:
        completed, remaining = self.partition()
        return LedgerCounts(total=len(completed) + len(remaining), completed=len(completed))

    def done_count(self) -> int:
        """Number of declared tasks currently marked done.

        Returns 0 instead of raising when the task list has vanished, since
        the agent may be mid-rewrite of PRD.md.
        """
        try:
            return self.counts().completed
        except LedgerError:
            logger.warning(f"{self.prd_path.name} is missing; treating done count as 0")
            return 0

    def last_completed(self) -> Optional[str]:
        """Text of the most recent [DONE] line in the completion log."""
        if not self.progress_path.exists():
            return None
        prefix = f"{DONE_MARKER} "
        for line in reversed(self.progress_path.read_text(encoding="utf-8").splitlines()):
            if line.startswith(prefix) and line[len(prefix):].strip():
                return line[len(prefix):]
        return None

    def ensure_progress_file(self) -> None:
        """Create the completion log with its header if it does not exist."""
        if not self.progress_path.exists():
            self.progress_path.write_text(PROGRESS_HEADER, encoding="utf-8")
            logger.info(f"Created {self.progress_path.name}")

    def archive_and_reset(self, archive_dir: Path) -> Path:
        """Copy the completion log to a timestamped archive, then reset it.

        The copy happens first so a failed archive leaves the log intact.

        Returns:
            Path of the archive file.
        """
        archive_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        archive_path = archive_dir / f"progress_archive_{timestamp}.txt"
        suffix = 1
        while archive_path.exists():
            archive_path = archive_dir / f"progress_archive_{timestamp}_{suffix}.txt"
            suffix += 1

        if self.progress_path.exists():
            shutil.copy2(self.progress_path, archive_path)
        else:
            archive_path.write_text(PROGRESS_HEADER, encoding="utf-8")
        self.progress_path.write_text(PROGRESS_HEADER, encoding="utf-8")
        return archive_path
