"""Tests for step and phase classification."""

from __future__ import annotations

import pytest

from schedule import SchedulePlan, Step
from tracker import COOLDOWN, NO_STEP, Phase, StepKey, StepTracker, classify


class TestClassify:
    @pytest.mark.parametrize(
        ("elapsed", "phase", "step"),
        [
            (0.0, Phase.RAMP, 1),
            (9.99, Phase.RAMP, 1),
            (10.0, Phase.WARMUP, 1),
            (15.0, Phase.STEADY, 1),
            (34.9, Phase.STEADY, 1),
            (35.0, Phase.RAMP, 2),
            (52.0, Phase.STEADY, 2),
            (104.0, Phase.STEADY, 3),
        ],
    )
    def test_windows(self, small_plan, elapsed, phase, step):
        result = classify(small_plan, elapsed)
        assert result.phase is phase
        assert result.step == step
        assert result.vus == step * 10

    def test_after_last_step_is_cooldown(self, small_plan):
        assert classify(small_plan, 105.0) == COOLDOWN
        assert classify(small_plan, 500.0).key is None

    def test_negative_elapsed_is_clamped(self, small_plan):
        assert classify(small_plan, -5.0) == classify(small_plan, 0.0)

    def test_idempotent(self, small_plan):
        assert classify(small_plan, 42.5) == classify(small_plan, 42.5)

    def test_gap_before_first_step_is_no_step(self):
        plan = SchedulePlan(
            steps=(Step(1, 5, 5.0, 6.0, 7.0, 8.0, 1.0),),
            ramp_seconds=1.0,
            warmup_seconds=1.0,
            steady_seconds=1.0,
            total_seconds=8.0,
        )
        assert classify(plan, 1.0) is NO_STEP

    def test_tags(self, small_plan):
        steady = classify(small_plan, 20.0)
        assert steady.is_steady
        assert steady.key == StepKey(step=1, vus=10)
        assert steady.steady_tags() == {"step": "1", "vus": "10"}
        assert steady.request_tags() == {"step": "1", "vus": "10", "phase": "steady"}

        ramp = classify(small_plan, 36.0)
        assert ramp.steady_tags() is None
        assert ramp.request_tags()["phase"] == "ramp"
        assert COOLDOWN.request_tags() == {"phase": "cooldown"}

    def test_tag_suffix(self):
        assert StepKey(step=3, vus=30).tag_suffix() == "{step:3,vus:30}"


class TestStepTracker:
    def test_uses_engine_start(self, small_plan):
        tracker = StepTracker(small_plan, start_time_fn=lambda: 1000.0, clock=lambda: 1016.0)
        assert not tracker.uses_fallback_start
        assert tracker.elapsed_seconds() == 16.0
        assert tracker.current().is_steady

    def test_falls_back_to_construction_time(self, small_plan):
        ticks = iter([500.0, 520.0])
        tracker = StepTracker(small_plan, start_time_fn=lambda: None, clock=lambda: next(ticks))
        assert tracker.uses_fallback_start
        current = tracker.current()
        assert current.phase is Phase.STEADY
        assert current.step == 1

    def test_switches_to_engine_start_once_reported(self, small_plan):
        engine_start: list[float] = []
        now = [100.0]
        tracker = StepTracker(
            small_plan,
            start_time_fn=lambda: engine_start[0] if engine_start else None,
            clock=lambda: now[0],
        )
        now[0] = 140.0
        assert tracker.current().step == 2
        engine_start.append(135.0)
        assert tracker.current().phase is Phase.RAMP
        assert tracker.current().step == 1

    def test_clock_before_start_clamps_to_zero(self, small_plan):
        tracker = StepTracker(small_plan, start_time_fn=lambda: 1000.0, clock=lambda: 990.0)
        assert tracker.elapsed_seconds() == 0.0
        assert tracker.current().phase is Phase.RAMP
