from __future__ import annotations

import asyncio
import csv
import json
import math
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from auth import LoadTestUser, create_test_users
from loadgen import RequestRecord, RequestSettings, vu_loop
from metrics_backend import BackendMetricsScraper
from recorder import RunMetrics, SteadyMetricsRecorder
from report import (
    compute_backend_step_summary,
    write_step_html,
    write_step_report_json,
    write_steps_csv,
    write_summary_markdown,
)
from scenarios import Scenario, ScenarioContext, get_scenario
from schedule import (
    SchedulePlan,
    ScheduleConfig,
    Stage,
    build_fixed_schedule,
    build_schedule,
    build_stages,
    describe_stages,
    scale_stages,
)
from slo import (
    SloThresholds,
    StepReport,
    aggregates_from_summary,
    apply_thresholds,
    build_step_thresholds,
    evaluate,
    family_rules,
)
from tracker import StepTracker

logger = structlog.get_logger()

SpawnWorker = Callable[[int, asyncio.Event], Awaitable[None]]


@dataclass(frozen=True)
class RunConfig:
    scenario: str = "capacity-baseline"
    base_url: str = "http://localhost:7070"
    ws_url: str = "ws://localhost:7000/ws"
    metrics_url: Optional[str] = None
    start_vus: int = 10
    end_vus: int = 100
    step_vus: int = 10
    ramp_duration: str = "30s"
    warmup_duration: str = "20s"
    steady_duration: str = "1m"
    fixed_vus: Optional[int] = None
    duration: str = "5m"
    slo: SloThresholds = field(default_factory=SloThresholds)
    timeout_s: float = 60.0
    output_dir: Path = Path("reports")
    run_name: Optional[str] = None
    seed: int = 42
    poll_interval_s: float = 1.0
    graceful_ramp_down_s: float = 30.0

    @property
    def target_vus(self) -> int:
        return self.fixed_vus if self.fixed_vus is not None else self.end_vus

    def build_plan(self) -> SchedulePlan:
        if self.fixed_vus is not None:
            return build_fixed_schedule(self.duration, self.warmup_duration, self.fixed_vus)
        return build_schedule(
            ScheduleConfig(
                start_vus=self.start_vus,
                end_vus=self.end_vus,
                step_vus=self.step_vus,
                ramp_duration=self.ramp_duration,
                warmup_duration=self.warmup_duration,
                steady_duration=self.steady_duration,
            )
        )


class AsyncJSONLWriter:
    def __init__(self, output_path: Path) -> None:
        self.output_path = output_path
        self._file = output_path.open("w", encoding="utf-8", buffering=1)
        self._lock = asyncio.Lock()

    async def write(self, payload: dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=True)
        async with self._lock:
            self._file.write(line + "\n")

    def close(self) -> None:
        self._file.close()


def _ensure_output_dir(base_output_dir: Path, run_name: Optional[str]) -> Path:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    normalized_run_name = (run_name or "run").strip().replace(" ", "_")
    output_dir = base_output_dir / f"{normalized_run_name}_{timestamp}"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def _write_json(path: Path, payload: Any) -> None:
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _write_csv(path: Path, rows: list[dict[str, Any]]) -> None:
    if not rows:
        path.write_text("", encoding="utf-8")
        return
    fieldnames: list[str] = []
    for row in rows:
        for key in row.keys():
            if key not in fieldnames:
                fieldnames.append(key)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


async def _wait_for_workers(tasks: list[asyncio.Task[None]], timeout_s: float) -> None:
    if not tasks:
        return
    done, pending = await asyncio.wait(tasks, timeout=max(0.0, timeout_s))
    if pending:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    if done:
        await asyncio.gather(*done, return_exceptions=True)


@dataclass
class _Worker:
    worker_id: int
    task: asyncio.Task[None]
    stop_event: asyncio.Event


class RampingVUExecutor:
    """Moves the live worker count along a list of (duration, target) stages.

    The target is interpolated linearly between consecutive stage targets,
    starting from 0. Every ``tick_s`` the executor starts workers (lowest free
    id first) or asks the highest ids to stop after their current iteration.
    Once the stages are exhausted, remaining workers get ``graceful_ramp_down_s``
    to finish before they are cancelled.
    """

    def __init__(
        self,
        stages: list[Stage],
        spawn_worker: SpawnWorker,
        tick_s: float = 0.25,
        graceful_ramp_down_s: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.stages = list(stages)
        self.spawn_worker = spawn_worker
        self.tick_s = tick_s
        self.graceful_ramp_down_s = graceful_ramp_down_s
        self._clock = clock
        self.started_at: Optional[float] = None
        self.peak_vus = 0
        self._active: dict[int, _Worker] = {}
        self._stopping: list[_Worker] = []

    @property
    def total_seconds(self) -> float:
        return sum(max(0.0, stage.duration_s) for stage in self.stages)

    @property
    def active_vus(self) -> int:
        return len(self._active)

    def target_at(self, elapsed_s: float) -> float:
        previous = 0.0
        offset = 0.0
        for stage in self.stages:
            duration = max(0.0, stage.duration_s)
            if duration == 0.0:
                previous = float(stage.target)
                continue
            if elapsed_s < offset + duration:
                progress = (elapsed_s - offset) / duration
                return previous + (stage.target - previous) * progress
            offset += duration
            previous = float(stage.target)
        return previous

    def _free_worker_id(self) -> int:
        taken = set(self._active) | {worker.worker_id for worker in self._stopping}
        worker_id = 0
        while worker_id in taken:
            worker_id += 1
        return worker_id

    def _scale_to(self, target: int) -> None:
        self._stopping = [worker for worker in self._stopping if not worker.task.done()]
        while len(self._active) < target:
            worker_id = self._free_worker_id()
            stop_event = asyncio.Event()
            task = asyncio.create_task(self.spawn_worker(worker_id, stop_event))
            self._active[worker_id] = _Worker(worker_id=worker_id, task=task, stop_event=stop_event)
        while len(self._active) > target:
            worker = self._active.pop(max(self._active))
            worker.stop_event.set()
            self._stopping.append(worker)
        self.peak_vus = max(self.peak_vus, len(self._active))

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        self.started_at = self._clock()
        started = loop.time()
        total = self.total_seconds
        current_stage = -1
        try:
            while True:
                elapsed = loop.time() - started
                stage_index = self._stage_index(elapsed)
                if stage_index != current_stage and stage_index < len(self.stages):
                    current_stage = stage_index
                    stage = self.stages[stage_index]
                    logger.info(
                        "stage_started",
                        stage=stage_index + 1,
                        duration_s=stage.duration_s,
                        target=stage.target,
                    )
                self._scale_to(int(math.floor(self.target_at(elapsed))))
                if elapsed >= total:
                    break
                await asyncio.sleep(min(self.tick_s, max(0.0, total - elapsed)))
        finally:
            await self._drain()

    def _stage_index(self, elapsed_s: float) -> int:
        offset = 0.0
        for index, stage in enumerate(self.stages):
            offset += max(0.0, stage.duration_s)
            if elapsed_s < offset:
                return index
        return len(self.stages)

    async def _drain(self) -> None:
        workers = list(self._active.values()) + self._stopping
        self._active.clear()
        self._stopping = []
        for worker in workers:
            worker.stop_event.set()
        await _wait_for_workers(
            [worker.task for worker in workers], timeout_s=self.graceful_ramp_down_s
        )


class ConstantVUExecutor:
    def __init__(
        self,
        vus: int,
        duration_s: float,
        spawn_worker: SpawnWorker,
        graceful_stop_s: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.vus = vus
        self.duration_s = duration_s
        self.spawn_worker = spawn_worker
        self.graceful_stop_s = graceful_stop_s
        self._clock = clock
        self.started_at: Optional[float] = None
        self.peak_vus = 0

    async def run(self) -> None:
        self.started_at = self._clock()
        stop_event = asyncio.Event()
        tasks = [
            asyncio.create_task(self.spawn_worker(worker_id, stop_event))
            for worker_id in range(self.vus)
        ]
        self.peak_vus = len(tasks)
        logger.info("constant_vus_started", vus=self.vus, duration_s=self.duration_s)
        try:
            await asyncio.sleep(max(0.0, self.duration_s))
        finally:
            stop_event.set()
            await _wait_for_workers(tasks, timeout_s=self.graceful_stop_s)


def _resolved_config_dict(
    config: RunConfig,
    output_dir: Path,
    scenario: Scenario,
    plan: SchedulePlan,
    stages: list[Stage],
) -> dict[str, Any]:
    payload = asdict(config)
    payload["output_dir"] = str(config.output_dir)
    payload["resolved_run_dir"] = str(output_dir)
    payload["started_at_utc"] = datetime.now(timezone.utc).isoformat()
    payload["metric_family"] = scenario.family.duration
    payload["plan"] = plan.to_dict()
    payload["stages"] = [asdict(stage) for stage in stages]
    return payload


def _build_executor(
    plan: SchedulePlan, stages: list[Stage], spawn_worker: SpawnWorker, config: RunConfig
) -> Any:
    if plan.fixed:
        return ConstantVUExecutor(
            vus=plan.steps[0].vus if plan.steps else 0,
            duration_s=plan.total_seconds,
            spawn_worker=spawn_worker,
            graceful_stop_s=config.graceful_ramp_down_s,
        )
    return RampingVUExecutor(
        stages=stages,
        spawn_worker=spawn_worker,
        graceful_ramp_down_s=config.graceful_ramp_down_s,
    )


def _make_spawner(scenario: Scenario, ctx: ScenarioContext) -> SpawnWorker:
    async def spawn(worker_id: int, stop_event: asyncio.Event) -> None:
        async def iteration(wid: int, index: int) -> None:
            await scenario.iteration(ctx, wid, index)

        await vu_loop(worker_id=worker_id, stop_event=stop_event, iteration=iteration)

    return spawn


def collect_summary_metrics(
    plan: SchedulePlan,
    scenario: Scenario,
    recorder: SteadyMetricsRecorder,
    run_metrics: RunMetrics,
    duration_s: float,
) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    metrics: dict[str, Any] = {}
    metrics.update(run_metrics.to_summary_metrics(duration_s))
    metrics.update(recorder.to_summary_metrics(duration_s))
    thresholds = dict(scenario.thresholds)
    thresholds.update(build_step_thresholds(plan, family_rules(scenario.family)))
    breaches = apply_thresholds(metrics, thresholds)
    for breach in breaches:
        logger.warning("threshold_crossed", metric=breach["metric"], threshold=breach["threshold"])
    return metrics, breaches


async def _backend_step_summaries(
    scraper: BackendMetricsScraper, plan: SchedulePlan, started_at: float
) -> list[dict[str, Any]]:
    summaries: list[dict[str, Any]] = []
    for step in plan.steps:
        window_start_ms = int((started_at + step.steady_start) * 1000)
        window_end_ms = int((started_at + step.steady_end) * 1000)
        rows = await scraper.rows_between(window_start_ms, window_end_ms)
        summaries.append(
            compute_backend_step_summary(
                step=step.step,
                vus=step.vus,
                window_start_unix_ms=window_start_ms,
                window_end_unix_ms=window_end_ms,
                rows_in_window=rows,
            )
        )
    return summaries


def write_step_outputs(
    output_dir: Path, scenario: Scenario, report: StepReport
) -> tuple[Path, Path]:
    json_path = output_dir / f"{scenario.name}-steps.json"
    html_path = output_dir / f"{scenario.name}.html"
    write_step_report_json(json_path, report)
    write_step_html(html_path, report, scenario.title)
    write_steps_csv(output_dir / "steps.csv", report.rows)
    return json_path, html_path


async def run_load_test(
    config: RunConfig, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Path:
    scenario = get_scenario(config.scenario)
    plan = config.build_plan()
    stages = build_stages(plan)
    output_dir = _ensure_output_dir(config.output_dir, config.run_name or scenario.name)

    requests_path = output_dir / "requests.jsonl"
    config_path = output_dir / "config.json"
    summary_json_path = output_dir / "summary.json"
    summary_md_path = output_dir / "summary.md"
    backend_metrics_path = output_dir / "backend_metrics.csv"
    backend_step_metrics_path = output_dir / "backend_step_metrics.json"

    for line in describe_stages(stages if not plan.fixed else []):
        logger.info("stage_planned", stage=line)

    resolved_config = _resolved_config_dict(config, output_dir, scenario, plan, stages)
    _write_json(config_path, resolved_config)

    request_settings = RequestSettings(
        base_url=config.base_url,
        ws_url=config.ws_url,
        timeout_s=float(config.timeout_s),
    )
    max_connections = max(config.target_vus * 2, 64)
    limits = httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max(max_connections // 2, 32),
    )

    recorder = SteadyMetricsRecorder(scenario.family)
    run_metrics = RunMetrics()
    request_writer = AsyncJSONLWriter(requests_path)
    scraper = (
        BackendMetricsScraper(
            metrics_url=config.metrics_url,
            poll_interval_s=float(config.poll_interval_s),
            request_timeout_s=min(10.0, max(2.0, float(config.poll_interval_s) * 2.0)),
        )
        if config.metrics_url
        else None
    )

    async def emit(record: RequestRecord) -> None:
        await request_writer.write(record.to_dict())

    wall_started = time.monotonic()
    started_at: Optional[float] = None
    try:
        async with httpx.AsyncClient(limits=limits, transport=transport) as client:
            users: list[LoadTestUser] = []
            if scenario.user_prefix is not None:
                users = await create_test_users(
                    client,
                    request_settings,
                    scenario.user_count(config.target_vus),
                    prefix=scenario.user_prefix,
                )

            executors: list[Any] = []
            tracker = StepTracker(
                plan, start_time_fn=lambda: executors[0].started_at if executors else None
            )
            ctx = ScenarioContext(
                client=client,
                settings=request_settings,
                tracker=tracker,
                recorder=recorder,
                run_metrics=run_metrics,
                users=users,
                emit=emit,
                success_metric=scenario.success_metric,
                seed=config.seed,
            )
            executors.append(
                _build_executor(plan, stages, _make_spawner(scenario, ctx), config)
            )
            if scenario.ws_ratio > 0:
                ws_ctx = ScenarioContext(
                    client=client,
                    settings=request_settings,
                    tracker=tracker,
                    recorder=None,
                    run_metrics=run_metrics,
                    users=users,
                    emit=emit,
                    success_metric="ws_success_rate",
                    seed=config.seed + 7919,
                )
                ws_spawner = _make_spawner(get_scenario("websocket"), ws_ctx)
                if plan.fixed:
                    ws_vus = int(math.floor(config.target_vus * scenario.ws_ratio))
                    if ws_vus > 0:
                        executors.append(
                            ConstantVUExecutor(
                                vus=ws_vus,
                                duration_s=plan.total_seconds,
                                spawn_worker=ws_spawner,
                                graceful_stop_s=config.graceful_ramp_down_s,
                            )
                        )
                else:
                    ws_stages = scale_stages(stages, scenario.ws_ratio)
                    if any(stage.target > 0 for stage in ws_stages):
                        executors.append(
                            RampingVUExecutor(
                                stages=ws_stages,
                                spawn_worker=ws_spawner,
                                graceful_ramp_down_s=config.graceful_ramp_down_s,
                            )
                        )

            if scraper is not None:
                await scraper.start()
            logger.info(
                "run_started",
                scenario=scenario.name,
                steps=len(plan.steps),
                total_s=plan.total_seconds,
                users=len(users),
            )
            await asyncio.gather(*(executor.run() for executor in executors))
            started_at = executors[0].started_at
    finally:
        request_writer.close()
        if scraper is not None:
            await scraper.stop()

    duration_s = time.monotonic() - wall_started
    metrics, breaches = collect_summary_metrics(plan, scenario, recorder, run_metrics, duration_s)
    _write_json(
        summary_json_path,
        {
            "scenario": scenario.name,
            "state": {"testRunDurationMs": duration_s * 1000.0},
            "metrics": metrics,
        },
    )

    report = evaluate(plan, recorder.snapshot(), config.slo)
    json_path, html_path = write_step_outputs(output_dir, scenario, report)

    backend_steps: list[dict[str, Any]] = []
    if scraper is not None and started_at is not None:
        _write_csv(backend_metrics_path, await scraper.rows())
        backend_steps = await _backend_step_summaries(scraper, plan, started_at)
        _write_json(backend_step_metrics_path, backend_steps)

    write_summary_markdown(
        output_path=summary_md_path,
        run_name=config.run_name or scenario.name,
        resolved_config=resolved_config,
        report=report,
        backend_steps=backend_steps,
        threshold_breaches=breaches,
    )

    capacity = report.verdict.max_passing
    logger.info(
        "step_report_written",
        json=str(json_path),
        html=str(html_path),
        max_passing_vus=capacity.vus if capacity else None,
        first_failing_step=report.verdict.first_failing.step if report.verdict.first_failing else None,
    )
    return output_dir


def _load_plan(config_payload: dict[str, Any]) -> SchedulePlan:
    if "plan" in config_payload:
        return SchedulePlan.from_dict(config_payload["plan"])
    if config_payload.get("fixed_vus") is not None:
        return build_fixed_schedule(
            config_payload.get("duration", "5m"),
            config_payload.get("warmup_duration", "20s"),
            int(config_payload["fixed_vus"]),
        )
    return build_schedule(
        ScheduleConfig(
            start_vus=int(config_payload.get("start_vus", 10)),
            end_vus=int(config_payload.get("end_vus", 100)),
            step_vus=int(config_payload.get("step_vus", 10)),
            ramp_duration=config_payload.get("ramp_duration", "30s"),
            warmup_duration=config_payload.get("warmup_duration", "20s"),
            steady_duration=config_payload.get("steady_duration", "1m"),
        )
    )


def rebuild_step_report(
    summary_path: Path,
    config_path: Path,
    slo: SloThresholds,
    output_dir: Optional[Path] = None,
) -> StepReport:
    summary = json.loads(summary_path.read_text(encoding="utf-8"))
    config_payload = json.loads(config_path.read_text(encoding="utf-8"))
    scenario = get_scenario(summary.get("scenario") or config_payload.get("scenario", ""))
    plan = _load_plan(config_payload)

    samples = aggregates_from_summary(summary.get("metrics") or {}, scenario.family)
    report = evaluate(plan, samples, slo)
    target_dir = output_dir or summary_path.parent
    target_dir.mkdir(parents=True, exist_ok=True)
    json_path, html_path = write_step_outputs(target_dir, scenario, report)
    logger.info(
        "step_report_rebuilt",
        json=str(json_path),
        html=str(html_path),
        steps=len(report.rows),
    )
    return report
