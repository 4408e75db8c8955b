"""Claude Code CLI invocation with retries, backoff and credit-exhaustion waits.

Each call to :meth:`ClaudeRunner.invoke` runs the agent as a child process,
streams its combined stdout/stderr to an output sink while capturing it to a
scratch file in the logs directory, and classifies the outcome. Failures are
retried with capped exponential backoff; credit/quota exhaustion instead
sleeps for a long fixed period and retries the same attempt.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Callable, Optional, Sequence

logger = logging.getLogger(__name__)

# Exit status reported for an invocation killed by its timeout (matches coreutils timeout).
TIMEOUT_EXIT_CODE = 124

MAX_BACKOFF_SECONDS = 60

SCRATCH_PREFIX = "claude_"

QUOTA_PATTERN = re.compile(
    r"credit balance|insufficient credit|out of credit|usage limit|"
    r"quota exceed|payment required|402 payment|billing",
    re.IGNORECASE,
)


class InvocationStatus(str, Enum):
    """Classification of an agent invocation."""

    SUCCESS = "success"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    QUOTA_EXHAUSTED = "quota_exhausted"


@dataclass
class InvocationResult:
    """Outcome of one agent call, after retries."""

    status: InvocationStatus
    exit_code: int
    output: str = ""
    attempts: int = 1
    credit_waits: int = 0
    cancelled: bool = False  # shutdown was requested while waiting to retry

    @property
    def success(self) -> bool:
        return self.status is InvocationStatus.SUCCESS

    @property
    def timed_out(self) -> bool:
        return self.status is InvocationStatus.TIMEOUT


class QuotaWaitExceeded(Exception):
    """Raised when credit exhaustion outlasts the configured number of waits."""

    def __init__(self, limit: int, output: str = ""):
        self.limit = limit
        self.output = output
        super().__init__(
            f"Credits still exhausted after {limit} wait(s) "
            f"(RALPH_MAX_CREDIT_WAITS={limit}). Giving up."
        )


def backoff_delay(base_delay: float, attempt: int, cap: float = MAX_BACKOFF_SECONDS) -> float:
    """Seconds to wait after failed attempt ``attempt`` (1-indexed)."""
    return min(base_delay * (2 ** (attempt - 1)), cap)


def is_quota_error(output: str) -> bool:
    """Check whether agent output looks like credit/quota exhaustion."""
    return bool(QUOTA_PATTERN.search(output))


def build_claude_command(
    prompt: str,
    allowed_tools: str,
    model: Optional[str] = None,
) -> list[str]:
    """Build the argument list for a non-interactive Claude Code run."""
    command = ["claude", "-p", prompt, "--allowedTools", allowed_tools, "--verbose"]
    if model:
        command += ["--model", model]
    return command


class ClaudeRunner:
    """Runs the agent CLI with bounded retries."""

    def __init__(
        self,
        max_retries: int = 3,
        retry_delay: float = 5,
        timeout: Optional[int] = None,
        max_credit_waits: int = 0,
        credit_wait_seconds: float = 3600,
        scratch_dir: Optional[Path] = None,
        cwd: Optional[Path] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
        drain_timeout: float = 10,
    ):
        """Initialize the runner.

        Args:
            max_retries: Attempts per invocation for transient failures and timeouts.
            retry_delay: Base backoff in seconds; doubled per attempt, capped at 60.
            timeout: Per-attempt wall-clock limit in seconds. None disables it.
            max_credit_waits: Credit-exhaustion waits allowed per invocation. 0 = unlimited.
            credit_wait_seconds: Length of each credit-exhaustion wait.
            scratch_dir: Where capture files are created. Defaults to the system temp dir.
            cwd: Working directory for the agent.
            output_sink: Called with each chunk of agent output as it arrives.
            cancel_event: When set, pending retries are abandoned.
            sleep: Replacement for the wait between attempts (used by tests).
            drain_timeout: Seconds to keep reading output after the agent exits before
                stopping processes it left behind holding the output pipe.
        """
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.max_credit_waits = max_credit_waits
        self.credit_wait_seconds = credit_wait_seconds
        self.scratch_dir = scratch_dir
        self.cwd = cwd
        self.output_sink = output_sink
        self.cancel_event = cancel_event
        self._sleep_fn = sleep
        self.drain_timeout = drain_timeout

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def invoke(self, command: Sequence[str]) -> InvocationResult:
        """Run ``command`` until it succeeds, retries run out, or shutdown is requested.

        Returns:
            InvocationResult holding the last attempt's captured output.

        Raises:
            QuotaWaitExceeded: If credit exhaustion persists past max_credit_waits.
        """
        if self.scratch_dir is not None:
            self.scratch_dir.mkdir(parents=True, exist_ok=True)
        fd, scratch_name = tempfile.mkstemp(prefix=SCRATCH_PREFIX, dir=self.scratch_dir)
        os.close(fd)
        scratch = Path(scratch_name)

        try:
            return self._invoke_with_retry(command, scratch)
        finally:
            scratch.unlink(missing_ok=True)

    def _invoke_with_retry(self, command: Sequence[str], scratch: Path) -> InvocationResult:
        attempt = 1
        credit_waits = 0

        while True:
            exit_code, output = self._run_attempt(command, scratch)

            if exit_code == 0:
                return InvocationResult(
                    status=InvocationStatus.SUCCESS,
                    exit_code=0,
                    output=output,
                    attempts=attempt,
                    credit_waits=credit_waits,
                )

            if exit_code == TIMEOUT_EXIT_CODE:
                status = InvocationStatus.TIMEOUT
                logger.warning(
                    f"Claude invocation timed out after {self.timeout}s "
                    f"(attempt {attempt}/{self.max_retries})"
                )
            elif is_quota_error(output):
                credit_waits += 1
                if self.max_credit_waits and credit_waits > self.max_credit_waits:
                    raise QuotaWaitExceeded(self.max_credit_waits, output)
                logger.warning(
                    f"Credits exhausted. Waiting {self.credit_wait_seconds:g}s before retry "
                    f"(wait {credit_waits}"
                    + (f"/{self.max_credit_waits})" if self.max_credit_waits else ")")
                )
                if not self._sleep(self.credit_wait_seconds):
                    return InvocationResult(
                        status=InvocationStatus.QUOTA_EXHAUSTED,
                        exit_code=exit_code,
                        output=output,
                        attempts=attempt,
                        credit_waits=credit_waits,
                        cancelled=True,
                    )
                continue
            else:
                status = InvocationStatus.TRANSIENT
                logger.warning(
                    f"Claude CLI failed (attempt {attempt}/{self.max_retries}, exit code {exit_code})"
                )

            failure = InvocationResult(
                status=status,
                exit_code=exit_code,
                output=output,
                attempts=attempt,
                credit_waits=credit_waits,
            )
            if attempt >= self.max_retries:
                return failure

            delay = backoff_delay(self.retry_delay, attempt)
            logger.info(f"Retrying in {delay:g}s...")
            if not self._sleep(delay):
                failure.cancelled = True
                return failure
            attempt += 1

    def _sleep(self, seconds: float) -> bool:
        """Wait between attempts. Returns False if shutdown was requested."""
        if self._sleep_fn is not None:
            self._sleep_fn(seconds)
        elif self.cancel_event is not None:
            self.cancel_event.wait(seconds)
        else:
            time.sleep(seconds)
        return not self.cancelled

    def _run_attempt(self, command: Sequence[str], scratch: Path) -> tuple[int, str]:
        """Run one attempt, capturing combined output into ``scratch``.

        The child gets its own session so a terminal interrupt aimed at the
        controller does not reach it.
        """
        with open(scratch, "w", encoding="utf-8") as capture:
            try:
                proc = subprocess.Popen(
                    list(command),
                    cwd=self.cwd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    start_new_session=True,
                )
            except FileNotFoundError:
                message = f"Command not found: {command[0]}\n"
                capture.write(message)
                self._emit(message)
                return 127, message

            capture_lock = threading.Lock()
            detached = threading.Event()
            reader = threading.Thread(
                target=self._pump,
                args=(proc.stdout, capture, capture_lock, detached),
                name="claude-output",
                daemon=True,
            )
            reader.start()
            try:
                exit_code = proc.wait(timeout=self.timeout)
            except subprocess.TimeoutExpired:
                self._terminate(proc)
                exit_code = TIMEOUT_EXIT_CODE

            reader.join(timeout=self.drain_timeout)
            if reader.is_alive():
                # Something the agent started in the background still holds the pipe.
                logger.warning("Agent left processes holding its output open; stopping them")
                self._kill_group(proc.pid, signal.SIGKILL)
                reader.join(timeout=self.drain_timeout)
            with capture_lock:
                detached.set()
                capture.flush()

        return exit_code, scratch.read_text(encoding="utf-8", errors="replace")

    def _pump(
        self,
        stream: IO[str],
        capture: IO[str],
        capture_lock: threading.Lock,
        detached: threading.Event,
    ) -> None:
        """Copy agent output to the capture file and the sink until EOF or detach."""
        try:
            for line in stream:
                with capture_lock:
                    if detached.is_set():
                        return
                    capture.write(line)
                self._emit(line)
        finally:
            stream.close()

    @staticmethod
    def _kill_group(pgid: int, sig: int) -> bool:
        """Signal a process group. Returns False if it no longer exists."""
        try:
            os.killpg(pgid, sig)
        except ProcessLookupError:
            return False
        return True

    def _emit(self, text: str) -> None:
        if self.output_sink is None:
            return
        try:
            self.output_sink(text)
        except Exception as e:
            logger.debug(f"Output sink failed: {e}")

    @classmethod
    def _terminate(cls, proc: subprocess.Popen) -> None:
        """Stop a timed-out child and everything in its process group."""
        if not cls._kill_group(proc.pid, signal.SIGTERM):
            return
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            if cls._kill_group(proc.pid, signal.SIGKILL):
                proc.wait()
