"""Iteration controller: the top-level ralph loop.

The controller acquires the project lock, then repeatedly invokes the agent
through :class:`ClaudeRunner`, measuring progress against the task ledger
after every call. Completed work is handed to the publisher. When the agent
reports that every task is done, a planning call regenerates the task list
and the completion log is archived and reset for the next cycle. The loop
ends when the iteration budget runs out, progress stalls, or a signal asks
it to stop.
"""

from __future__ import annotations

import logging
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Callable, Optional, Protocol, Sequence

from rich.console import Console

from . import lockfile
from .claude_runner import ClaudeRunner, InvocationResult, QuotaWaitExceeded, build_claude_command
from .config import RalphConfig
from .hooks import ExitReason, HookDispatcher
from .ledger import TaskLedger
from .log_rotation import rotate_logs
from .loop_logger import RunLog, RunStats
from .prompts import load_agent_prompt, plan_prompt, signals_completion
from .publisher import GitPublisher, NullPublisher, Publisher, PublishError
from .shutdown import ShutdownManager, remove_scratch_files
from .stall import StallAction, StallDetector

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """Process exit statuses."""

    OK = 0
    ERROR = 1
    PREFLIGHT = 2
    LOCKED = 3
    STALLED = 4
    QUOTA_EXHAUSTED = 5
    AGENT_FAILED = 6
    TIMEOUT = 124


class PreflightError(Exception):
    """Raised when a required tool or input file is missing."""

    pass


class Invoker(Protocol):
    def invoke(self, command: Sequence[str]) -> InvocationResult: ...


@dataclass
class RunState:
    """Mutable state for one controller run."""

    max_iterations: int
    stall: StallDetector
    iteration: int = 0
    cycle_completed: bool = False
    last_result: Optional[InvocationResult] = None


@dataclass
class RunOutcome:
    """How a run ended."""

    exit_code: ExitCode
    reason: Optional[ExitReason] = None
    message: Optional[str] = None
    stats: RunStats = field(default_factory=RunStats)


class IterationController:
    """Drives the agent toward the declared task list."""

    def __init__(
        self,
        config: RalphConfig,
        runner: Optional[Invoker] = None,
        publisher: Optional[Publisher] = None,
        hooks: Optional[HookDispatcher] = None,
        shutdown: Optional[ShutdownManager] = None,
        console: Optional[Console] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        self.config = config
        self.ledger = TaskLedger(config.prd_file, config.progress_file)
        self.hooks = hooks or HookDispatcher(
            iteration_hook=config.iter_hook,
            exit_hook=config.complete_hook,
            cwd=config.project_dir,
        )
        self.shutdown = shutdown or ShutdownManager()
        self.console = console or Console()
        self._runner = runner
        self._publisher = publisher
        self._which = which
        self.run_log: Optional[RunLog] = None
        self.stats = RunStats()
        self.state: Optional[RunState] = None

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def preflight(self) -> None:
        """Check required tools and inputs.

        Raises:
            PreflightError: With a message naming what is missing.
        """
        tools = ["claude"] if self.config.no_git else ["claude", "git"]
        for tool in tools:
            if self._which(tool) is None:
                raise PreflightError(
                    f"'{tool}' not found in PATH. Please install it and ensure it is on your PATH."
                )
        if not self.config.prd_file.is_file():
            raise PreflightError(
                f"{self.config.prd_file.name} not found in {self.config.project_dir}. "
                "Please run ralph from the project root."
            )

    def _build_publisher(self) -> Publisher:
        if self._publisher is not None:
            return self._publisher
        if self.config.no_git:
            return NullPublisher()
        try:
            return GitPublisher(
                self.config.project_dir,
                base_branch=self.config.base_branch,
                no_pr=self.config.no_pr,
                author_name=self.config.git_name,
                author_email=self.config.git_email,
                github_repo=self.config.github_repo,
                github_token=self.config.github_token,
                exclude=(f"/{self.config.lock_file.name}", f"/{self.config.logs_dir.name}/"),
            )
        except PublishError as e:
            raise PreflightError(f"{e} (set RALPH_NO_GIT=1 to disable publishing)") from e

    def _build_runner(self) -> Invoker:
        if self._runner is not None:
            return self._runner
        return ClaudeRunner(
            max_retries=self.config.max_retries,
            retry_delay=self.config.retry_delay,
            timeout=self.config.timeout,
            max_credit_waits=self.config.max_credit_waits,
            credit_wait_seconds=self.config.credit_wait_seconds,
            scratch_dir=self.config.logs_dir,
            cwd=self.config.project_dir,
            output_sink=self._echo_output,
            cancel_event=self.shutdown.event,
        )

    def _echo_output(self, text: str) -> None:
        self.console.out(text, end="", highlight=False)
        if self.run_log is not None:
            self.run_log.write_output(text)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, max_iterations: int, single: bool = False) -> RunOutcome:
        """Run the loop.

        Args:
            max_iterations: Iteration budget.
            single: Single-iteration mode: one invocation, and a failed
                invocation is reflected in the exit code.

        Returns:
            RunOutcome with the exit code and reason.

        Raises:
            PreflightError: If required tools or inputs are missing.
            lockfile.AlreadyRunningError: If another instance holds the lock.
        """
        self.preflight()
        with lockfile.acquire(self.config.lock_file):
            publisher = self._build_publisher()
            try:
                return self._run_locked(publisher, max_iterations, single)
            finally:
                publisher.close()

    def _run_locked(self, publisher: Publisher, max_iterations: int, single: bool) -> RunOutcome:
        install_signals = threading.current_thread() is threading.main_thread()
        if install_signals:
            self.shutdown.install()
        try:
            rotate_logs(self.config.logs_dir, self.config.log_keep)
            self.run_log = RunLog(self.config.logs_dir, prefix="once" if single else "run")
            self.ledger.ensure_progress_file()
            runner = self._build_runner()

            self.stats = RunStats(max_iterations=max_iterations)
            self.state = RunState(
                max_iterations=max_iterations,
                stall=StallDetector(self.config.max_stalls),
            )
            try:
                reason = self._iterate(runner, publisher, single)
            except QuotaWaitExceeded as e:
                logger.error(str(e))
                self.stats.end_time = datetime.now()
                return RunOutcome(ExitCode.QUOTA_EXHAUSTED, message=str(e), stats=self.stats)

            return self._terminate(reason, single)
        finally:
            if install_signals:
                self.shutdown.restore()
            if self.run_log is not None:
                self.run_log.close()

    # ------------------------------------------------------------------
    # Iterating
    # ------------------------------------------------------------------

    def _iterate(self, runner: Invoker, publisher: Publisher, single: bool) -> ExitReason:
        state = self.state
        agent_command = build_claude_command(
            load_agent_prompt(self.config.prompt_file),
            self.config.allowed_tools,
            self.config.claude_model,
        )

        for i in range(1, state.max_iterations + 1):
            if self.shutdown.requested:
                return ExitReason.SIGNAL

            state.iteration = i
            self.stats.iterations = i
            label = "single iteration" if single else f"iteration {i}"

            self.hooks.iteration_start(i, state.max_iterations)
            logger.info(f"=== Ralph iteration {i}/{state.max_iterations} ===")

            done_before = self.ledger.done_count()
            result = self._invoke(runner, agent_command)
            state.last_result = result

            if self.shutdown.requested:
                return ExitReason.SIGNAL

            if not result.success:
                self.stats.failed_iterations += 1
                logger.warning(
                    f"Skipping iteration {i} after {result.attempts} failed attempt(s) "
                    f"(last exit code {result.exit_code})."
                )
                state.cycle_completed = False
                continue

            done_after = self.ledger.done_count()
            if done_after > done_before:
                self.stats.tasks_completed += done_after - done_before
            if state.stall.observe(done_before, done_after) is StallAction.ABORT:
                return ExitReason.STALL

            self._publish_iteration(publisher, label)

            if signals_completion(result.output):
                state.cycle_completed = self._replan(runner, publisher, label)
            else:
                state.cycle_completed = False

        return ExitReason.COMPLETE if state.cycle_completed else ExitReason.MAX_ITERATIONS

    def _invoke(self, runner: Invoker, command: Sequence[str]) -> InvocationResult:
        result = runner.invoke(command)
        self.stats.invocations += 1
        self.stats.attempts += result.attempts
        self.stats.credit_waits += result.credit_waits
        return result

    def _publish_iteration(self, publisher: Publisher, label: str) -> None:
        last_done = self.ledger.last_completed()
        message = f"ralph: {last_done} ({label})" if last_done else f"ralph: completed task ({label})"
        self._publish(publisher, "ralph/iter", message, f"Automated PR from Ralph {label}.")

    def _publish(self, publisher: Publisher, branch_hint: str, message: str, body: str) -> None:
        result = publisher.publish(branch_hint, message, body)
        if result.published:
            self.stats.publishes += 1

    def _replan(self, runner: Invoker, publisher: Publisher, label: str) -> bool:
        """Regenerate the task list and start a new completion cycle.

        Returns:
            True if the planning call succeeded and the completion log was reset.
        """
        logger.info(f"=== All tasks complete ({label}). Generating new tasks... ===")
        self.stats.planning_cycles += 1

        command = build_claude_command(
            plan_prompt(self.config.plan_prompt),
            self.config.allowed_tools,
            self.config.claude_model,
        )
        result = self._invoke(runner, command)
        if not result.success:
            self.stats.planning_failures += 1
            logger.error(
                f"Planning call failed after {result.attempts} attempt(s) "
                f"(exit code {result.exit_code}); leaving "
                f"{self.config.progress_file.name} intact for the next cycle."
            )
            return False

        archive = self.ledger.archive_and_reset(self.config.logs_dir)
        logger.info(
            f"Archived {self.config.progress_file.name} to {archive} and reset for new cycle."
        )
        self._publish(
            publisher,
            "ralph/cycle-rewrite",
            f"ralph: rewrite PRD.md tasks for next cycle ({label})",
            f"Automated cycle rewrite from Ralph {label}.",
        )
        return True

    # ------------------------------------------------------------------
    # Terminating
    # ------------------------------------------------------------------

    def _terminate(self, reason: ExitReason, single: bool) -> RunOutcome:
        """Summarize, fire the exit hook and pick the exit code. Runs once per run."""
        state = self.state
        self.stats.end_time = datetime.now()

        if reason is ExitReason.SIGNAL:
            logger.warning(
                f"Shutting down on {self.shutdown.signal_name or 'signal'} "
                f"at iteration {state.iteration}/{state.max_iterations}"
            )
            for path in remove_scratch_files(self.config.logs_dir):
                logger.debug(f"Removed scratch file {path}")
        elif reason is ExitReason.MAX_ITERATIONS and not single:
            logger.info(f"=== Reached max iterations ({state.max_iterations}) ===")

        self.run_log.print_summary(self.stats, reason.value, console=self.console)
        self.hooks.exit(reason)
        self.shutdown.mark_exited()

        exit_code, message = ExitCode.OK, None
        if reason is ExitReason.STALL:
            exit_code = ExitCode.STALLED
            message = (
                f"Ralph stalled: no task progress in {state.stall.limit} consecutive "
                f"iteration(s) (RALPH_MAX_STALLS={state.stall.limit})."
            )
            logger.error(message)
        elif (
            reason is not ExitReason.SIGNAL
            and single
            and state.last_result is not None
            and not state.last_result.success
        ):
            if state.last_result.timed_out:
                exit_code = ExitCode.TIMEOUT
                message = f"Claude invocation timed out after {self.config.timeout}s"
            else:
                exit_code = ExitCode.AGENT_FAILED
                message = (
                    f"Claude CLI failed after {state.last_result.attempts} attempt(s) "
                    f"(exit code {state.last_result.exit_code})."
                )
        return RunOutcome(exit_code, reason=reason, message=message, stats=self.stats)
