"""Tests for the stall detector."""

from __future__ import annotations

import pytest

from ralphloop.stall import StallAction, StallDetector


class TestStallDetector:
    """Tests for StallDetector.observe."""

    def test_progress_resets(self) -> None:
        detector = StallDetector(3)
        detector.observe(0, 0)
        assert detector.count == 1

        assert detector.observe(0, 1) is StallAction.RESET
        assert detector.count == 0

    def test_aborts_at_limit(self) -> None:
        detector = StallDetector(3)
        assert detector.observe(2, 2) is StallAction.CONTINUE
        assert detector.observe(2, 2) is StallAction.CONTINUE
        assert detector.observe(2, 2) is StallAction.ABORT
        assert detector.count == 3

    def test_limit_of_one_aborts_immediately(self) -> None:
        assert StallDetector(1).observe(0, 0) is StallAction.ABORT

    def test_decrease_counts_as_stall(self) -> None:
        """A count that drops (e.g. PRD rewritten) is not progress."""
        detector = StallDetector(2)
        assert detector.observe(3, 1) is StallAction.CONTINUE
        assert detector.count == 1

    def test_non_consecutive_stalls_do_not_abort(self) -> None:
        detector = StallDetector(2)
        actions = [
            detector.observe(0, 0),
            detector.observe(0, 1),
            detector.observe(1, 1),
            detector.observe(1, 2),
            detector.observe(2, 2),
        ]
        assert StallAction.ABORT not in actions

    @pytest.mark.parametrize("limit", [0, -1])
    def test_invalid_limit(self, limit: int) -> None:
        with pytest.raises(ValueError):
            StallDetector(limit)
