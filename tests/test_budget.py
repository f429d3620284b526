"""Tests for intake_queue.budget."""

from __future__ import annotations

from intake_queue.budget import TimeBudget
from tests.conftest import FakeClock


class TestTimeBudget:
    def test_elapsed_and_remaining(self):
        clock = FakeClock(100.0)
        budget = TimeBudget(60, 50, clock=clock)
        clock.advance(12)
        assert budget.elapsed() == 12
        assert budget.remaining() == 38

    def test_remaining_never_negative(self):
        clock = FakeClock()
        budget = TimeBudget(60, 50, clock=clock)
        clock.advance(70)
        assert budget.remaining() == 0

    def test_claiming_stops_when_allowance_no_longer_fits(self):
        clock = FakeClock()
        budget = TimeBudget(60, 50, clock=clock)
        clock.advance(29)
        assert budget.can_claim(20)
        clock.advance(1)
        assert not budget.can_claim(20)

    def test_starting_allowed_up_to_hard_limit(self):
        clock = FakeClock()
        budget = TimeBudget(60, 50, clock=clock)
        clock.advance(40)
        assert budget.can_start(20)
        clock.advance(0.5)
        assert not budget.can_start(20)
