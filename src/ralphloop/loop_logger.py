"""Run logging for the ralph loop.

Every controller invocation owns one timestamped log file in ``logs/``.
Controller messages reach it through a logging handler; captured agent
output is appended to it directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "ralphloop"


@dataclass
class RunStats:
    """Statistics for one controller run."""

    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    iterations: int = 0
    max_iterations: int = 0
    tasks_completed: int = 0
    failed_iterations: int = 0
    invocations: int = 0
    attempts: int = 0
    credit_waits: int = 0
    planning_cycles: int = 0
    planning_failures: int = 0
    publishes: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "iterations": self.iterations,
            "max_iterations": self.max_iterations,
            "tasks_completed": self.tasks_completed,
            "failed_iterations": self.failed_iterations,
            "invocations": self.invocations,
            "attempts": self.attempts,
            "credit_waits": self.credit_waits,
            "planning": {
                "cycles": self.planning_cycles,
                "failures": self.planning_failures,
            },
            "publishes": self.publishes,
        }


def format_duration(seconds: float) -> str:
    """Render seconds as e.g. ``1h 02m 03s``."""
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


class RunLog:
    """Log file for a single controller run."""

    def __init__(self, log_dir: Path, prefix: str = "run"):
        """Create the log file and start teeing package log records into it.

        Args:
            log_dir: Directory for log files.
            prefix: File name prefix, ``run`` for the loop and ``once`` for single runs.
        """
        self.log_dir = log_dir
        self.log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.path = self.log_dir / f"{prefix}_{timestamp}.log"
        self.path.touch()

        self._handler: Optional[logging.FileHandler] = logging.FileHandler(
            self.path, encoding="utf-8"
        )
        self._handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(message)s", "%Y-%m-%d %H:%M:%S")
        )
        self._handler.setLevel(logging.INFO)
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        package_logger.addHandler(self._handler)
        # The file records INFO even when the console is quieter; undone in close().
        self._previous_level: Optional[int] = None
        if package_logger.getEffectiveLevel() > logging.INFO:
            self._previous_level = package_logger.level
            package_logger.setLevel(logging.INFO)

        logger.info(f"Run log: {self.path}")

    def write_output(self, text: str) -> None:
        """Append raw agent output."""
        if self._handler is not None:
            self._handler.flush()
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(text)

    def close(self) -> None:
        """Detach the file handler. Safe to call twice."""
        if self._handler is None:
            return
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        package_logger.removeHandler(self._handler)
        if self._previous_level is not None:
            package_logger.setLevel(self._previous_level)
        self._handler.close()
        self._handler = None

    def print_summary(self, stats: RunStats, reason: str, console: Optional[Console] = None) -> None:
        """Print the end-of-run summary and record it in the log file."""
        lines = [
            f"Exit reason: {reason}",
            f"Elapsed: {format_duration(stats.duration_seconds)}",
            f"Iterations: {stats.iterations}/{stats.max_iterations}",
            f"Tasks completed: {stats.tasks_completed}",
            f"Failed iterations: {stats.failed_iterations}",
            f"Agent calls: {stats.invocations} ({stats.attempts} attempts, {stats.credit_waits} credit waits)",
            f"Planning cycles: {stats.planning_cycles} ({stats.planning_failures} failed)",
            f"Publishes: {stats.publishes}",
            f"Log file: {self.path}",
        ]
        (console or Console()).print(Panel("\n".join(lines), title="Ralph run summary"))
        for line in lines[:-1]:
            logger.info(line)
