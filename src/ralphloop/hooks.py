"""Operator-supplied hook commands fired at loop lifecycle events.

Hooks are trusted shell expressions taken from configuration. Event
variables are exported into the hook's environment before it runs.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

ITERATION_START = "iteration-start"


class ExitReason(str, Enum):
    """Why the loop terminated; exported to the exit hook as RALPH_EXIT_REASON."""

    COMPLETE = "complete"
    STALL = "stall"
    MAX_ITERATIONS = "max_iterations"
    SIGNAL = "signal"


@dataclass(frozen=True)
class HookCommand:
    """A shell command run with extra environment bindings."""

    command: str

    def run(self, variables: Mapping[str, str], cwd: Optional[Path] = None) -> int:
        env = {**os.environ, **{name: str(value) for name, value in variables.items()}}
        completed = subprocess.run(self.command, shell=True, env=env, cwd=cwd)
        return completed.returncode


class HookDispatcher:
    """Fires the iteration-start and exit hooks.

    The exit hook fires at most once per dispatcher; later calls are ignored.
    A failing hook is logged and never stops the loop.
    """

    def __init__(
        self,
        iteration_hook: Optional[str] = None,
        exit_hook: Optional[str] = None,
        cwd: Optional[Path] = None,
    ):
        self.hooks: dict[str, HookCommand] = {}
        if iteration_hook:
            self.hooks[ITERATION_START] = HookCommand(iteration_hook)
        if exit_hook:
            self.hooks["exit"] = HookCommand(exit_hook)
        self.cwd = cwd
        self.exit_reason: Optional[ExitReason] = None

    def fire(self, event: str, variables: Mapping[str, str]) -> None:
        """Run the hook configured for ``event`` (``iteration-start`` or ``exit:<reason>``)."""
        hook = self.hooks.get(event.split(":", 1)[0])
        if hook is None:
            return

        logger.debug(f"Firing {event} hook: {hook.command}")
        try:
            returncode = hook.run(variables, cwd=self.cwd)
        except OSError as e:
            logger.warning(f"{event} hook could not be started: {e}")
            return
        if returncode != 0:
            logger.warning(f"{event} hook exited with code {returncode}")

    def iteration_start(self, iteration: int, max_iterations: int) -> None:
        self.fire(
            ITERATION_START,
            {"RALPH_CURRENT_ITER": str(iteration), "RALPH_MAX_ITER": str(max_iterations)},
        )

    def exit(self, reason: ExitReason) -> bool:
        """Fire the exit hook for ``reason``. Returns False if it already fired."""
        if self.exit_reason is not None:
            logger.debug(f"Exit hook already fired ({self.exit_reason.value}); ignoring {reason.value}")
            return False
        self.exit_reason = reason
        self.fire(f"exit:{reason.value}", {"RALPH_EXIT_REASON": reason.value})
        return True
