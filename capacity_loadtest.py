from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Optional

from config import LoadTestSettings
from log import setup_logging
from runner import RunConfig, rebuild_step_report, run_load_test
from scenarios import SCENARIOS
from schedule import build_stages, describe_stages, parse_duration_strict, summarize_plan
from slo import SloThresholds


def _add_schedule_arguments(parser: argparse.ArgumentParser, settings: LoadTestSettings) -> None:
    group = parser.add_argument_group("schedule")
    group.add_argument("--start-vus", type=int, default=settings.start_vus)
    group.add_argument("--end-vus", type=int, default=settings.end_vus)
    group.add_argument("--step-vus", type=int, default=settings.step_vus)
    group.add_argument("--ramp", dest="ramp_duration", default=settings.ramp_duration)
    group.add_argument("--warmup", dest="warmup_duration", default=settings.warmup_duration)
    group.add_argument("--steady", dest="steady_duration", default=settings.step_duration)
    group.add_argument(
        "--vus",
        type=int,
        default=settings.vus,
        help="Fixed concurrency. When set, the ramping sweep is replaced by a single step.",
    )
    group.add_argument("--duration", default=settings.duration)


def _add_slo_arguments(parser: argparse.ArgumentParser, settings: LoadTestSettings) -> None:
    group = parser.add_argument_group("slo")
    group.add_argument("--slo-p95-ms", type=float, default=settings.slo_p95_ms)
    group.add_argument("--slo-p99-ms", type=float, default=settings.slo_p99_ms)
    group.add_argument("--slo-error-rate", type=float, default=settings.slo_error_rate)
    group.add_argument("--slo-timeout-rate", type=float, default=settings.slo_timeout_rate)


def build_parser(settings: Optional[LoadTestSettings] = None) -> argparse.ArgumentParser:
    settings = settings or LoadTestSettings()
    parser = argparse.ArgumentParser(
        description="Step-wise capacity load test for the chat backend (HTTP and WebSocket)."
    )
    parser.add_argument("--log-level", default=settings.log_level)
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a scenario against the backend.")
    run_parser.add_argument(
        "--scenario",
        choices=sorted(SCENARIOS),
        default="capacity-baseline",
    )
    run_parser.add_argument("--base-url", default=settings.api_base_url)
    run_parser.add_argument("--ws-url", default=settings.ws_url)
    run_parser.add_argument(
        "--metrics-url",
        default=settings.metrics_url,
        help="Prometheus text endpoint of the backend, scraped during the run.",
    )
    _add_schedule_arguments(run_parser, settings)
    _add_slo_arguments(run_parser, settings)
    run_parser.add_argument("--output-dir", type=Path, default=Path(settings.report_dir))
    run_parser.add_argument("--run-name", default=None)
    run_parser.add_argument("--seed", type=int, default=42)
    run_parser.add_argument("--poll-interval-s", type=float, default=1.0)
    run_parser.add_argument("--timeout-s", type=float, default=settings.request_timeout_s)
    run_parser.add_argument("--graceful-ramp-down-s", type=float, default=30.0)

    plan_parser = subparsers.add_parser(
        "plan", help="Print the generated stages and step windows without sending traffic."
    )
    _add_schedule_arguments(plan_parser, settings)

    report_parser = subparsers.add_parser(
        "report", help="Re-evaluate a saved summary.json against (possibly different) SLOs."
    )
    report_parser.add_argument("summary_json", type=Path)
    report_parser.add_argument(
        "--plan-from",
        type=Path,
        required=True,
        help="config.json of the run that produced the summary.",
    )
    report_parser.add_argument("--output-dir", type=Path, default=None)
    _add_slo_arguments(report_parser, settings)

    return parser


def _slo_from_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> SloThresholds:
    try:
        return SloThresholds(
            p95_ms=args.slo_p95_ms,
            p99_ms=args.slo_p99_ms,
            error_rate=args.slo_error_rate,
            timeout_rate=args.slo_timeout_rate,
        )
    except ValueError as exc:
        parser.error(str(exc))


def _validate_schedule_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    try:
        for label in ("ramp_duration", "warmup_duration", "steady_duration", "duration"):
            parse_duration_strict(getattr(args, label), f"--{label.split('_')[0]}")
    except ValueError as exc:
        parser.error(str(exc))
    if args.vus is not None and args.vus < 1:
        parser.error("--vus must be >= 1 when set")


def _schedule_kwargs(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "start_vus": args.start_vus,
        "end_vus": args.end_vus,
        "step_vus": args.step_vus,
        "ramp_duration": args.ramp_duration,
        "warmup_duration": args.warmup_duration,
        "steady_duration": args.steady_duration,
        "fixed_vus": args.vus,
        "duration": args.duration,
    }


def _config_from_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> RunConfig:
    if args.command == "plan":
        config = RunConfig(**_schedule_kwargs(args))
    else:
        config = RunConfig(
            scenario=args.scenario,
            base_url=args.base_url,
            ws_url=args.ws_url,
            metrics_url=args.metrics_url,
            slo=_slo_from_args(parser, args),
            timeout_s=args.timeout_s,
            output_dir=args.output_dir,
            run_name=args.run_name,
            seed=args.seed,
            poll_interval_s=args.poll_interval_s,
            graceful_ramp_down_s=args.graceful_ramp_down_s,
            **_schedule_kwargs(args),
        )
    try:
        config.build_plan()
    except ValueError as exc:
        parser.error(str(exc))
    return config


def _validate_run_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.timeout_s <= 0:
        parser.error("--timeout-s must be > 0")
    if args.poll_interval_s <= 0:
        parser.error("--poll-interval-s must be > 0")
    if args.graceful_ramp_down_s < 0:
        parser.error("--graceful-ramp-down-s must be >= 0")


def _print_plan(config: RunConfig) -> None:
    plan = config.build_plan()
    summary = summarize_plan(plan)
    mode = "fixed" if plan.fixed else "ramping"
    print(f"Mode: {mode}, {summary['steps']} step(s), total {plan.total_seconds:g}s")
    if not plan.fixed:
        for line in describe_stages(build_stages(plan)):
            print(f"  {line}")
    for window in summary["windows"]:
        print(f"  {window}")


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        setup_logging(args.log_level)
    except ValueError as exc:
        parser.error(str(exc))

    if args.command == "report":
        slo = _slo_from_args(parser, args)
        if not args.summary_json.exists():
            parser.error(f"summary file not found: {args.summary_json}")
        if not args.plan_from.exists():
            parser.error(f"--plan-from not found: {args.plan_from}")
        try:
            report = rebuild_step_report(args.summary_json, args.plan_from, slo, args.output_dir)
        except (ValueError, KeyError, json.JSONDecodeError) as exc:
            parser.error(f"cannot rebuild report: {exc}")
        capacity = report.verdict.max_passing
        print(f"Maximum capacity: {capacity.vus if capacity else 'N/A'} VUs")
        print(f"Report written to: {args.output_dir or args.summary_json.parent}")
        return

    _validate_schedule_args(parser, args)
    config = _config_from_args(parser, args)
    if args.command == "plan":
        _print_plan(config)
        return

    _validate_run_args(parser, args)
    output_dir = asyncio.run(run_load_test(config))
    print(f"Run complete. Outputs written to: {output_dir}")


if __name__ == "__main__":
    main()
