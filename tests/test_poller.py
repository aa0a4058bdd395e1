"""
Tests for the bounded-retry poller.
"""

import pytest
from unittest.mock import Mock

from jitinfra.errors import PollFailed, PollTimedOut
from jitinfra.poller import (
    NOT_READY,
    READY,
    CheckState,
    PollOutcome,
    PollSpec,
    failed,
    not_ready,
    poll,
)


def sequence(*checks):
    return Mock(side_effect=list(checks))


class TestPollSpec:
    """Test PollSpec validation."""

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError, match="max_attempts"):
            PollSpec(predicate=lambda: READY, interval=1, max_attempts=0)

    def test_rejects_negative_interval(self):
        with pytest.raises(ValueError, match="interval"):
            PollSpec(predicate=lambda: READY, interval=-1, max_attempts=3)

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError, match="total_timeout"):
            PollSpec(predicate=lambda: READY, interval=1, total_timeout=0)

    def test_zero_interval_allowed(self):
        spec = PollSpec(predicate=lambda: READY, interval=0, max_attempts=1)
        assert spec.interval == 0


class TestPoll:
    """Test poll outcomes and attempt counts."""

    def test_exhaustion_after_exactly_max_attempts(self, clock):
        predicate = Mock(return_value=NOT_READY)
        spec = PollSpec(predicate=predicate, interval=5, max_attempts=4)

        result = poll(spec, sleep=clock.sleep, clock=clock)

        assert result.outcome == PollOutcome.TIMED_OUT
        assert result.attempts == 4
        assert predicate.call_count == 4
        # no sleep after the final attempt
        assert clock.sleeps == [5, 5, 5]

    def test_early_success(self, clock):
        predicate = sequence(NOT_READY, not_ready("pending"), READY)
        spec = PollSpec(predicate=predicate, interval=10, max_attempts=5)

        result = poll(spec, sleep=clock.sleep, clock=clock)

        assert result.ready
        assert result.attempts == 3
        assert predicate.call_count == 3
        assert result.elapsed == 20

    def test_ready_on_first_call_does_not_sleep(self, clock):
        spec = PollSpec(predicate=lambda: READY, interval=30, max_attempts=10)

        result = poll(spec, sleep=clock.sleep, clock=clock)

        assert result.attempts == 1
        assert clock.sleeps == []

    def test_failure_short_circuits(self, clock):
        predicate = sequence(NOT_READY, failed("x"))
        spec = PollSpec(predicate=predicate, interval=1, max_attempts=20)

        result = poll(spec, sleep=clock.sleep, clock=clock)

        assert result.outcome == PollOutcome.FAILED
        assert result.reason == "x"
        assert result.attempts == 2
        assert predicate.call_count == 2

    def test_total_timeout(self, clock):
        predicate = Mock(return_value=NOT_READY)
        spec = PollSpec(predicate=predicate, interval=30, total_timeout=300)

        result = poll(spec, sleep=clock.sleep, clock=clock)

        assert result.outcome == PollOutcome.TIMED_OUT
        assert predicate.call_count == 10
        assert result.elapsed == 300

    def test_whichever_bound_hits_first(self, clock):
        predicate = Mock(return_value=NOT_READY)
        spec = PollSpec(predicate=predicate, interval=30, max_attempts=3, total_timeout=300)

        result = poll(spec, sleep=clock.sleep, clock=clock)

        assert result.outcome == PollOutcome.TIMED_OUT
        assert predicate.call_count == 3

    def test_unbounded_runs_until_ready(self, clock):
        checks = [NOT_READY] * 50 + [READY]
        spec = PollSpec(predicate=sequence(*checks), interval=10)

        result = poll(spec, sleep=clock.sleep, clock=clock)

        assert result.ready
        assert result.attempts == 51

    def test_on_attempt_callback(self, clock):
        seen = []
        spec = PollSpec(predicate=sequence(NOT_READY, READY), interval=0, max_attempts=3)

        poll(spec, sleep=clock.sleep, clock=clock, on_attempt=lambda n, check: seen.append((n, check.state)))

        assert seen == [(1, CheckState.NOT_READY), (2, CheckState.READY)]


class TestPollResult:
    """Test raise_for_outcome."""

    def test_ready_does_not_raise(self, clock):
        result = poll(PollSpec(predicate=lambda: READY, interval=0, max_attempts=1), sleep=clock.sleep, clock=clock)
        result.raise_for_outcome("thing")

    def test_timed_out_raises(self, clock):
        spec = PollSpec(predicate=lambda: NOT_READY, interval=0, max_attempts=2)
        result = poll(spec, sleep=clock.sleep, clock=clock)

        with pytest.raises(PollTimedOut) as exc_info:
            result.raise_for_outcome("NAT Gateway nat-1")
        assert exc_info.value.attempts == 2
        assert "NAT Gateway nat-1" in str(exc_info.value)

    def test_failed_raises(self, clock):
        spec = PollSpec(predicate=lambda: failed("boom"), interval=0, max_attempts=2)
        result = poll(spec, sleep=clock.sleep, clock=clock)

        with pytest.raises(PollFailed, match="boom"):
            result.raise_for_outcome()
