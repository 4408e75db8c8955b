"""Consecutive no-progress detection."""

from __future__ import annotations

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class StallAction(str, Enum):
    """What the loop should do after observing an iteration."""

    CONTINUE = "continue"
    RESET = "reset"
    ABORT = "abort"


class StallDetector:
    """Counts consecutive iterations that did not raise the done-task count.

    The detector only sees the two counts it is handed; reading the ledger is
    the caller's job.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError(f"stall limit must be positive (got {limit})")
        self.limit = limit
        self.count = 0

    def observe(self, done_before: int, done_after: int) -> StallAction:
        if done_after > done_before:
            if self.count:
                logger.debug(f"Progress made; clearing stall count ({self.count})")
            self.count = 0
            return StallAction.RESET

        self.count += 1
        logger.warning(f"No task progress this iteration (stall {self.count}/{self.limit})")
        if self.count >= self.limit:
            return StallAction.ABORT
        return StallAction.CONTINUE
