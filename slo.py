from __future__ import annotations

import math
import operator
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Mapping, Optional, Union

from recorder import HTTP_METRICS, WS_METRICS, MetricFamily, StepAggregate
from schedule import SchedulePlan
from tracker import StepKey


@dataclass(frozen=True)
class SloThresholds:
    p95_ms: float = 500.0
    p99_ms: Optional[float] = None
    error_rate: float = 0.01
    timeout_rate: float = 0.0

    def __post_init__(self) -> None:
        if self.p95_ms < 0:
            raise ValueError(f"p95_ms must be >= 0, got {self.p95_ms}")
        if self.p99_ms is not None and self.p99_ms < 0:
            raise ValueError(f"p99_ms must be >= 0, got {self.p99_ms}")
        for label, value in (("error_rate", self.error_rate), ("timeout_rate", self.timeout_rate)):
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{label} must be within [0, 1], got {value}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "p95_ms": self.p95_ms,
            "p99_ms": self.p99_ms,
            "error_rate": self.error_rate,
            "timeout_rate": self.timeout_rate,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> SloThresholds:
        p99 = payload.get("p99_ms")
        return cls(
            p95_ms=float(payload.get("p95_ms", 500.0)),
            p99_ms=float(p99) if p99 is not None else None,
            error_rate=float(payload.get("error_rate", 0.01)),
            timeout_rate=float(payload.get("timeout_rate", 0.0)),
        )


@dataclass(frozen=True)
class StepFigures:
    requests: int = 0
    errors: int = 0
    timeouts: int = 0
    http4xx: int = 0
    http5xx: int = 0
    http429: int = 0
    iterations: int = 0
    p90: Optional[float] = None
    p95: Optional[float] = None
    p99: Optional[float] = None

    @classmethod
    def from_aggregate(cls, aggregate: StepAggregate) -> StepFigures:
        return cls(
            requests=aggregate.requests,
            errors=aggregate.errors,
            timeouts=aggregate.timeouts,
            http4xx=aggregate.http4xx,
            http5xx=aggregate.http5xx,
            http429=aggregate.http429,
            iterations=aggregate.iterations,
            p90=aggregate.latency(90.0),
            p95=aggregate.latency(95.0),
            p99=aggregate.latency(99.0),
        )


@dataclass
class StepReportRow:
    step: int
    vus: int
    requests: int
    errors: int
    rps: float
    iters_per_sec: float
    error_rate: float
    timeout_rate: float
    p90: Optional[float]
    p95: Optional[float]
    p99: Optional[float]
    http4xx: int
    http5xx: int
    http429: int
    timeouts: int
    slo_pass: bool
    fail_reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> StepReportRow:
        def _opt(name: str) -> Optional[float]:
            value = payload.get(name)
            return float(value) if value is not None else None

        return cls(
            step=int(payload["step"]),
            vus=int(payload["vus"]),
            requests=int(payload.get("requests", 0)),
            errors=int(payload.get("errors", 0)),
            rps=float(payload.get("rps", 0.0)),
            iters_per_sec=float(payload.get("iters_per_sec", 0.0)),
            error_rate=float(payload.get("error_rate", 0.0)),
            timeout_rate=float(payload.get("timeout_rate", 0.0)),
            p90=_opt("p90"),
            p95=_opt("p95"),
            p99=_opt("p99"),
            http4xx=int(payload.get("http4xx", 0)),
            http5xx=int(payload.get("http5xx", 0)),
            http429=int(payload.get("http429", 0)),
            timeouts=int(payload.get("timeouts", 0)),
            slo_pass=bool(payload["slo_pass"]),
            fail_reasons=[str(reason) for reason in payload.get("fail_reasons", [])],
        )


@dataclass
class CapacityVerdict:
    max_passing: Optional[StepReportRow]
    first_failing: Optional[StepReportRow]

    def bottleneck(self) -> Optional[dict[str, Any]]:
        if self.first_failing is None:
            return None
        return {
            "step": self.first_failing.step,
            "vus": self.first_failing.vus,
            "rps": self.first_failing.rps,
            "reasons": list(self.first_failing.fail_reasons),
        }


@dataclass
class StepReport:
    slo: SloThresholds
    rows: list[StepReportRow]
    verdict: CapacityVerdict

    def to_dict(self) -> dict[str, Any]:
        capacity = self.verdict.max_passing
        return {
            "slo": self.slo.to_dict(),
            "capacity": capacity.to_dict() if capacity is not None else None,
            "bottleneck": self.verdict.bottleneck(),
            "rows": [row.to_dict() for row in self.rows],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> StepReport:
        rows = [StepReportRow.from_dict(item) for item in payload.get("rows", [])]
        return cls(
            slo=SloThresholds.from_dict(payload.get("slo") or {}),
            rows=rows,
            verdict=capacity_verdict(rows),
        )


def format_rate(value: Optional[float]) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value * 100.0:.2f}%"


def _format_limit(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _fail_reasons(
    figures: StepFigures,
    error_rate: float,
    timeout_rate: float,
    slo: SloThresholds,
) -> list[str]:
    reasons: list[str] = []
    if figures.requests == 0 or figures.p95 is None:
        reasons.append("no data")
    if figures.p95 is not None and figures.p95 > slo.p95_ms:
        reasons.append(
            f"p95 latency exceeded ({figures.p95:.0f}ms > {_format_limit(slo.p95_ms)}ms)"
        )
    if slo.p99_ms is not None and figures.p99 is not None and figures.p99 > slo.p99_ms:
        reasons.append(
            f"p99 latency exceeded ({figures.p99:.0f}ms > {_format_limit(slo.p99_ms)}ms)"
        )
    if error_rate > slo.error_rate:
        reasons.append(
            f"error rate exceeded ({format_rate(error_rate)} > {format_rate(slo.error_rate)})"
        )
    if timeout_rate > slo.timeout_rate:
        reasons.append(
            f"timeout rate exceeded ({format_rate(timeout_rate)} > {format_rate(slo.timeout_rate)})"
        )
    return reasons


def capacity_verdict(rows: list[StepReportRow]) -> CapacityVerdict:
    max_passing: Optional[StepReportRow] = None
    first_failing: Optional[StepReportRow] = None
    for row in rows:
        if row.slo_pass:
            max_passing = row
        elif first_failing is None:
            first_failing = row
    return CapacityVerdict(max_passing=max_passing, first_failing=first_failing)


StepSamples = Mapping[StepKey, Union[StepAggregate, StepFigures]]


def evaluate(plan: SchedulePlan, samples: StepSamples, slo: SloThresholds) -> StepReport:
    rows: list[StepReportRow] = []
    for step in plan.steps:
        sample = samples.get(StepKey(step=step.step, vus=step.vus))
        if sample is None:
            figures = StepFigures()
        elif isinstance(sample, StepAggregate):
            figures = StepFigures.from_aggregate(sample)
        else:
            figures = sample

        step_seconds = plan.step_seconds(step)
        rps = figures.requests / step_seconds if step_seconds > 0 else 0.0
        iters_per_sec = figures.iterations / step_seconds if step_seconds > 0 else 0.0
        error_rate = figures.errors / figures.requests if figures.requests > 0 else 0.0
        timeout_rate = figures.timeouts / figures.requests if figures.requests > 0 else 0.0
        reasons = _fail_reasons(figures, error_rate, timeout_rate, slo)

        rows.append(
            StepReportRow(
                step=step.step,
                vus=step.vus,
                requests=figures.requests,
                errors=figures.errors,
                rps=rps,
                iters_per_sec=iters_per_sec,
                error_rate=error_rate,
                timeout_rate=timeout_rate,
                p90=figures.p90,
                p95=figures.p95,
                p99=figures.p99,
                http4xx=figures.http4xx,
                http5xx=figures.http5xx,
                http429=figures.http429,
                timeouts=figures.timeouts,
                slo_pass=not reasons,
                fail_reasons=reasons,
            )
        )
    return StepReport(slo=slo, rows=rows, verdict=capacity_verdict(rows))


# ---- summary extraction ----

_TAGGED_KEY = re.compile(r"^(?P<name>[^{]+)\{(?P<tags>[^}]*)\}$")


def _parse_tags(tag_part: str) -> dict[str, str]:
    tags: dict[str, str] = {}
    for pair in tag_part.split(","):
        name, sep, value = pair.partition(":")
        if sep:
            tags[name.strip()] = value.strip()
    return tags


def _step_key(tags: Mapping[str, Any]) -> Optional[StepKey]:
    step = tags.get("step")
    vus = tags.get("vus")
    if not step or not vus:
        return None
    try:
        return StepKey(step=int(step), vus=int(vus))
    except (TypeError, ValueError):
        return None


def extract_tagged_values(
    metrics: Mapping[str, Any], name: str
) -> dict[StepKey, dict[str, Any]]:
    out: dict[StepKey, dict[str, Any]] = {}

    metric = metrics.get(name)
    if isinstance(metric, dict) and isinstance(metric.get("submetrics"), dict):
        for sub in metric["submetrics"].values():
            key = _step_key(sub.get("tags") or {})
            if key is not None:
                out[key] = dict(sub.get("values") or {})

    for metric_key, metric_value in metrics.items():
        match = _TAGGED_KEY.match(metric_key)
        if match is None or match.group("name") != name:
            continue
        key = _step_key(_parse_tags(match.group("tags")))
        if key is None or not isinstance(metric_value, dict):
            continue
        if isinstance(metric_value.get("values"), dict):
            out[key] = dict(metric_value["values"])
    return out


def aggregates_from_summary(
    metrics: Mapping[str, Any], family: MetricFamily = HTTP_METRICS
) -> dict[StepKey, StepFigures]:
    trends = extract_tagged_values(metrics, family.duration)
    counters = {
        attribute: extract_tagged_values(metrics, name)
        for attribute, name in family.counter_names().items()
    }

    keys: set[StepKey] = set(trends)
    for values in counters.values():
        keys.update(values)

    def _count(attribute: str, key: StepKey) -> int:
        values = counters[attribute].get(key) or {}
        return int(values.get("count") or 0)

    def _trend(key: StepKey, stat: str) -> Optional[float]:
        value = (trends.get(key) or {}).get(stat)
        return float(value) if value is not None else None

    return {
        key: StepFigures(
            requests=_count("requests", key),
            errors=_count("errors", key),
            timeouts=_count("timeouts", key),
            http4xx=_count("http4xx", key),
            http5xx=_count("http5xx", key),
            http429=_count("http429", key),
            iterations=_count("iterations", key),
            p90=_trend(key, "p(90)"),
            p95=_trend(key, "p(95)"),
            p99=_trend(key, "p(99)"),
        )
        for key in keys
    }


# ---- thresholds ----

VACUOUS_TREND_RULE = "p(95)>=0"
VACUOUS_COUNT_RULE = "count>=0"

_THRESHOLD_PATTERN = re.compile(
    r"^\s*(?P<stat>avg|min|max|med|count|rate|value|p\(\d+(?:\.\d+)?\))\s*"
    r"(?P<op><=|>=|===|==|!=|<|>)\s*(?P<bound>-?\d+(?:\.\d+)?)\s*$"
)
_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "===": operator.eq,
    "!=": operator.ne,
}


def check_threshold(expression: str, values: Mapping[str, Any]) -> bool:
    match = _THRESHOLD_PATTERN.match(expression)
    if match is None:
        raise ValueError(f"Unsupported threshold expression: {expression}")
    observed = values.get(match.group("stat"))
    observed_value = float(observed) if observed is not None else 0.0
    return _OPERATORS[match.group("op")](observed_value, float(match.group("bound")))


def build_step_thresholds(
    plan: Optional[SchedulePlan], metric_rules: list[tuple[str, str]]
) -> dict[str, list[str]]:
    thresholds: dict[str, list[str]] = {}
    steps = plan.steps if plan is not None else ()
    if not metric_rules or not steps:
        return thresholds
    for step in steps:
        suffix = StepKey(step=step.step, vus=step.vus).tag_suffix()
        for name, threshold in metric_rules:
            if not name or not threshold:
                continue
            thresholds[f"{name}{suffix}"] = [threshold]
    return thresholds


def family_rules(family: MetricFamily) -> list[tuple[str, str]]:
    rules = [(family.duration, VACUOUS_TREND_RULE)]
    rules.extend((name, VACUOUS_COUNT_RULE) for name in family.counter_names().values())
    return rules


def build_http_step_thresholds(plan: SchedulePlan) -> dict[str, list[str]]:
    return build_step_thresholds(plan, family_rules(HTTP_METRICS))


def build_ws_step_thresholds(plan: SchedulePlan) -> dict[str, list[str]]:
    return build_step_thresholds(plan, family_rules(WS_METRICS))


def apply_thresholds(
    metrics: dict[str, dict[str, Any]], thresholds: Mapping[str, list[str]]
) -> list[dict[str, Any]]:
    breaches: list[dict[str, Any]] = []
    for metric_name, expressions in thresholds.items():
        entry = metrics.get(metric_name)
        if entry is None:
            # Registering the series keeps every step extractable even with no samples.
            entry = {"type": "counter", "values": {}}
            metrics[metric_name] = entry
        results: dict[str, dict[str, bool]] = {}
        for expression in expressions:
            ok = check_threshold(expression, entry.get("values") or {})
            results[expression] = {"ok": ok}
            if not ok:
                breaches.append({"metric": metric_name, "threshold": expression})
        entry["thresholds"] = results
    return breaches
