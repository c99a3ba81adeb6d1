"""Tests for duration parsing and capacity schedule construction."""

from __future__ import annotations

import pytest

from schedule import (
    COOLDOWN_SECONDS,
    ScheduleConfig,
    SchedulePlan,
    Stage,
    build_fixed_schedule,
    build_schedule,
    build_stages,
    describe_stages,
    parse_duration,
    parse_duration_strict,
    scale_stages,
    summarize_plan,
)


class TestParseDuration:
    @pytest.mark.parametrize(
        ("text", "seconds"),
        [
            ("30s", 30.0),
            ("1m", 60.0),
            ("1.5h", 5400.0),
            ("500ms", 0.5),
            ("0s", 0.0),
            ("2.25m", 135.0),
        ],
    )
    def test_valid_durations(self, text, seconds):
        assert parse_duration(text) == pytest.approx(seconds)

    @pytest.mark.parametrize("text", ["", None, "10", "1d", "1M", "5 s", "s", "-5s", "abc"])
    def test_malformed_durations_degrade_to_zero(self, text):
        assert parse_duration(text) == 0.0

    def test_strict_parser_rejects_malformed(self):
        with pytest.raises(ValueError, match="--ramp"):
            parse_duration_strict("10", "--ramp")

    def test_strict_parser_accepts_valid(self):
        assert parse_duration_strict("20s") == 20.0


class TestScheduleConfig:
    def test_rejects_non_positive_step(self):
        with pytest.raises(ValueError, match="step_vus"):
            ScheduleConfig(start_vus=1, end_vus=10, step_vus=0)

    def test_rejects_inverted_bounds(self):
        with pytest.raises(ValueError, match="start_vus must be <= end_vus"):
            ScheduleConfig(start_vus=20, end_vus=10, step_vus=5)

    def test_rejects_zero_start(self):
        with pytest.raises(ValueError, match="start_vus must be >= 1"):
            ScheduleConfig(start_vus=0, end_vus=10, step_vus=5)


class TestBuildSchedule:
    def test_three_step_offsets(self, small_plan):
        offsets = [
            (s.step, s.vus, s.ramp_start, s.warmup_start, s.steady_start, s.steady_end)
            for s in small_plan.steps
        ]
        assert offsets == [
            (1, 10, 0.0, 10.0, 15.0, 35.0),
            (2, 20, 35.0, 45.0, 50.0, 70.0),
            (3, 30, 70.0, 80.0, 85.0, 105.0),
        ]
        assert small_plan.total_seconds == 105.0
        assert small_plan.steady_seconds == 20.0
        assert not small_plan.fixed

    def test_end_not_reachable_by_step(self):
        plan = build_schedule(ScheduleConfig(start_vus=10, end_vus=45, step_vus=10))
        assert [s.vus for s in plan.steps] == [10, 20, 30, 40]

    def test_single_level_when_start_equals_end(self):
        plan = build_schedule(ScheduleConfig(start_vus=7, end_vus=7, step_vus=3))
        assert [s.vus for s in plan.steps] == [7]

    @pytest.mark.parametrize("start", [1, 2, 5])
    @pytest.mark.parametrize("end", [5, 17, 40])
    @pytest.mark.parametrize("step", [1, 3, 7])
    def test_levels_and_offsets_hold_for_any_config(self, start, end, step):
        if start > end:
            pytest.skip("inverted bounds")
        plan = build_schedule(
            ScheduleConfig(
                start_vus=start,
                end_vus=end,
                step_vus=step,
                ramp_duration="3s",
                warmup_duration="0s",
                steady_duration="4s",
            )
        )
        levels = [s.vus for s in plan.steps]
        assert all(a < b for a, b in zip(levels, levels[1:]))
        assert all(level <= end for level in levels)
        assert end - step + 1 <= levels[-1] <= end
        for s in plan.steps:
            assert s.ramp_start <= s.warmup_start <= s.steady_start <= s.steady_end
        for current, following in zip(plan.steps, plan.steps[1:]):
            assert current.steady_end == following.ramp_start
        assert [s.step for s in plan.steps] == list(range(1, len(levels) + 1))

    def test_malformed_durations_collapse_phases(self):
        plan = build_schedule(
            ScheduleConfig(
                start_vus=1, end_vus=2, step_vus=1, ramp_duration="oops", steady_duration="10s"
            )
        )
        assert plan.ramp_seconds == 0.0
        assert plan.steps[0].warmup_start == 0.0
        assert plan.steps[1].ramp_start == plan.steps[0].steady_end

    def test_plan_dict_roundtrip(self, small_plan):
        assert SchedulePlan.from_dict(small_plan.to_dict()) == small_plan


class TestFixedSchedule:
    def test_single_step_with_warmup_prefix(self):
        plan = build_fixed_schedule("5m", "20s", 100)
        assert plan.fixed
        assert len(plan.steps) == 1
        step = plan.steps[0]
        assert (step.vus, step.ramp_start, step.steady_start, step.steady_end) == (
            100,
            0.0,
            20.0,
            300.0,
        )
        assert step.steady_seconds == 280.0
        assert plan.total_seconds == 300.0

    def test_warmup_longer_than_duration_leaves_empty_steady(self):
        plan = build_fixed_schedule("10s", "20s", 5)
        step = plan.steps[0]
        assert step.steady_start == step.steady_end == 10.0
        assert step.steady_seconds == 0.0

    def test_rejects_zero_vus(self):
        with pytest.raises(ValueError):
            build_fixed_schedule("1m", "0s", 0)


class TestStages:
    def test_stages_reproduce_offsets(self, small_plan):
        stages = build_stages(small_plan)
        assert stages[:3] == [Stage(10.0, 10), Stage(5.0, 10), Stage(20.0, 10)]
        assert stages[-1] == Stage(COOLDOWN_SECONDS, 0)
        assert sum(stage.duration_s for stage in stages[:-1]) == small_plan.total_seconds

    def test_zero_warmup_is_skipped(self):
        plan = build_schedule(
            ScheduleConfig(
                start_vus=5, end_vus=10, step_vus=5, warmup_duration="0s", steady_duration="1m"
            )
        )
        stages = build_stages(plan, cooldown=False)
        assert stages == [Stage(30.0, 5), Stage(60.0, 5), Stage(30.0, 10), Stage(60.0, 10)]

    def test_scale_stages_floors_targets(self, small_plan):
        scaled = scale_stages(build_stages(small_plan), 0.25)
        assert [stage.target for stage in scaled[:4]] == [2, 2, 2, 5]

    def test_describe_stages(self, small_plan):
        lines = describe_stages(build_stages(small_plan))
        assert lines[0] == "Stage 1: 10s -> 10 VUs"
        assert lines[-1] == "Stage 10: 30s -> 0 VUs"

    def test_summarize_plan(self, small_plan):
        summary = summarize_plan(small_plan)
        assert summary["steps"] == 3
        assert summary["first_vus"] == 10
        assert summary["last_vus"] == 30
        assert summary["windows"][1].startswith("step 2 @ 20 VUs")
