"""Tests for the VU executors, summary collection and end-to-end runs."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from recorder import RunMetrics, SteadyMetricsRecorder
from runner import (
    AsyncJSONLWriter,
    ConstantVUExecutor,
    RampingVUExecutor,
    RunConfig,
    _load_plan,
    collect_summary_metrics,
    rebuild_step_report,
    run_load_test,
)
from scenarios import get_scenario
from schedule import Stage
from slo import SloThresholds
from tracker import Phase, PhaseClassification


def _idle_worker(started: list[int]):
    async def spawn(worker_id: int, stop_event: asyncio.Event) -> None:
        started.append(worker_id)
        while not stop_event.is_set():
            await asyncio.sleep(0.01)

    return spawn


class TestRampingVUExecutor:
    def test_target_interpolation(self):
        executor = RampingVUExecutor(
            [Stage(10, 10), Stage(0, 20), Stage(10, 20), Stage(5, 0)],
            spawn_worker=_idle_worker([]),
        )
        assert executor.total_seconds == 25
        assert executor.target_at(0) == 0.0
        assert executor.target_at(5) == pytest.approx(5.0)
        assert executor.target_at(10) == pytest.approx(20.0)
        assert executor.target_at(22.5) == pytest.approx(10.0)
        assert executor.target_at(100) == 0.0

    async def test_run_reaches_peak_and_drains(self):
        started: list[int] = []
        executor = RampingVUExecutor(
            [Stage(0, 4), Stage(0.2, 4), Stage(0, 0)],
            spawn_worker=_idle_worker(started),
            tick_s=0.02,
            graceful_ramp_down_s=1.0,
        )
        await asyncio.wait_for(executor.run(), timeout=5)
        assert executor.started_at is not None
        assert executor.peak_vus == 4
        assert sorted(started) == [0, 1, 2, 3]
        assert executor.active_vus == 0

    async def test_scale_down_stops_highest_ids_and_reuses_them(self):
        started: list[int] = []
        executor = RampingVUExecutor([Stage(1, 3)], spawn_worker=_idle_worker(started))
        executor._scale_to(3)
        executor._scale_to(1)
        await asyncio.sleep(0.05)
        executor._scale_to(2)
        await asyncio.sleep(0.01)
        assert started == [0, 1, 2, 1]
        await executor._drain()

    async def test_stuck_worker_is_cancelled_after_grace(self):
        cancelled = []

        async def stubborn(worker_id: int, stop_event: asyncio.Event) -> None:
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.append(worker_id)
                raise

        executor = RampingVUExecutor(
            [Stage(0, 1), Stage(0.05, 1)],
            spawn_worker=stubborn,
            tick_s=0.01,
            graceful_ramp_down_s=0.05,
        )
        await asyncio.wait_for(executor.run(), timeout=5)
        assert cancelled == [0]


class TestConstantVUExecutor:
    async def test_runs_all_workers_for_duration(self):
        started: list[int] = []
        executor = ConstantVUExecutor(3, 0.1, _idle_worker(started), graceful_stop_s=1.0)
        await asyncio.wait_for(executor.run(), timeout=5)
        assert sorted(started) == [0, 1, 2]
        assert executor.peak_vus == 3
        assert executor.started_at is not None


class TestRunConfig:
    def test_fixed_plan_when_vus_set(self):
        plan = RunConfig(fixed_vus=25, duration="2m", warmup_duration="10s").build_plan()
        assert plan.fixed
        assert plan.steps[0].vus == 25
        assert RunConfig(fixed_vus=25).target_vus == 25

    def test_ramping_plan(self):
        config = RunConfig(start_vus=5, end_vus=15, step_vus=5)
        assert [step.vus for step in config.build_plan().steps] == [5, 10, 15]
        assert config.target_vus == 15

    def test_invalid_plan(self):
        with pytest.raises(ValueError):
            RunConfig(start_vus=50, end_vus=10).build_plan()


class TestSummaryAndRebuild:
    def _summary(self, small_plan, make_record, scenario_name="push-count"):
        scenario = get_scenario(scenario_name)
        recorder = SteadyMetricsRecorder(scenario.family)
        steady = PhaseClassification(phase=Phase.STEADY, step=1, vus=10)
        for index in range(40):
            recorder.record(make_record(duration_ms=100.0 + index), steady)
        return collect_summary_metrics(small_plan, scenario, recorder, RunMetrics(), 60.0)

    def test_collect_summary_metrics(self, small_plan, make_record):
        metrics, breaches = self._summary(small_plan, make_record)
        assert metrics["steady_http_requests{step:1,vus:10}"]["values"]["count"] == 40
        assert metrics["steady_http_requests{step:3,vus:30}"]["thresholds"] == {
            "count>=0": {"ok": True}
        }
        assert metrics["steady_http_duration{step:2,vus:20}"]["thresholds"] == {
            "p(95)>=0": {"ok": True}
        }
        assert breaches == [{"metric": "count_success_rate", "threshold": "rate>0.95"}]

    def test_rebuild_with_new_slo(self, tmp_path, small_plan, make_record):
        metrics, _ = self._summary(small_plan, make_record)
        summary_path = tmp_path / "summary.json"
        config_path = tmp_path / "config.json"
        summary_path.write_text(json.dumps({"scenario": "push-count", "metrics": metrics}))
        config_path.write_text(json.dumps({"scenario": "push-count", "plan": small_plan.to_dict()}))

        report = rebuild_step_report(summary_path, config_path, SloThresholds())
        assert [row.slo_pass for row in report.rows] == [True, False, False]
        assert report.rows[0].requests == 40
        assert report.rows[0].rps == pytest.approx(2.0)
        assert (tmp_path / "push-count-steps.json").exists()
        assert (tmp_path / "push-count.html").exists()

        strict_dir = tmp_path / "strict"
        strict = rebuild_step_report(
            summary_path, config_path, SloThresholds(p95_ms=100), output_dir=strict_dir
        )
        assert strict.rows[0].fail_reasons == ["p95 latency exceeded (137ms > 100ms)"]
        assert (strict_dir / "steps.csv").exists()

    def test_load_plan_from_flat_config(self):
        plan = _load_plan(
            {
                "start_vus": 2,
                "end_vus": 6,
                "step_vus": 2,
                "ramp_duration": "1s",
                "warmup_duration": "0s",
                "steady_duration": "2s",
            }
        )
        assert [step.vus for step in plan.steps] == [2, 4, 6]
        assert _load_plan({"fixed_vus": 3, "duration": "30s", "warmup_duration": "5s"}).fixed


class TestAsyncJSONLWriter:
    async def test_writes_one_line_per_record(self, tmp_path):
        writer = AsyncJSONLWriter(tmp_path / "requests.jsonl")
        await asyncio.gather(*(writer.write({"i": i}) for i in range(20)))
        writer.close()
        lines = (tmp_path / "requests.jsonl").read_text().splitlines()
        assert sorted(json.loads(line)["i"] for line in lines) == list(range(20))


class TestRunLoadTest:
    async def test_fixed_run_writes_all_outputs(self, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/user/register":
                return httpx.Response(200, json={"code": 0, "data": "tok"})
            return httpx.Response(200, json={"code": 0, "data": 3})

        config = RunConfig(
            scenario="push-count",
            base_url="http://chat.test",
            fixed_vus=2,
            duration="1s",
            warmup_duration="50ms",
            output_dir=tmp_path,
            run_name="smoke",
            graceful_ramp_down_s=2.0,
        )
        output_dir = await asyncio.wait_for(
            run_load_test(config, transport=httpx.MockTransport(handler)), timeout=30
        )

        for name in (
            "config.json",
            "requests.jsonl",
            "summary.json",
            "summary.md",
            "steps.csv",
            "push-count-steps.json",
            "push-count.html",
        ):
            assert (output_dir / name).exists(), name
        assert not (output_dir / "backend_metrics.csv").exists()

        config_payload = json.loads((output_dir / "config.json").read_text())
        assert config_payload["plan"]["fixed"] is True
        summary = json.loads((output_dir / "summary.json").read_text())
        assert summary["scenario"] == "push-count"
        assert summary["metrics"]["count_success_rate"]["values"]["fails"] == 0

        steps = json.loads((output_dir / "push-count-steps.json").read_text())
        assert steps["rows"][0]["vus"] == 2
        assert steps["rows"][0]["requests"] >= 1
        assert steps["capacity"]["vus"] == 2

        records = [
            json.loads(line) for line in (output_dir / "requests.jsonl").read_text().splitlines()
        ]
        assert records
        assert {record["name"] for record in records} == {"pushCount"}
