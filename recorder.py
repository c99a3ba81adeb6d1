from __future__ import annotations

import statistics
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from loadgen import RequestRecord, percentile
from tracker import PhaseClassification, StepKey


@dataclass(frozen=True)
class MetricFamily:
    duration: str
    requests: str
    errors: str
    timeouts: str
    http4xx: str
    http5xx: str
    http429: str
    iters: str = "steady_iters"

    def counter_names(self) -> dict[str, str]:
        return {
            "requests": self.requests,
            "errors": self.errors,
            "timeouts": self.timeouts,
            "http4xx": self.http4xx,
            "http5xx": self.http5xx,
            "http429": self.http429,
            "iterations": self.iters,
        }

    def names(self) -> list[str]:
        return [self.duration, *self.counter_names().values()]


HTTP_METRICS = MetricFamily(
    duration="steady_http_duration",
    requests="steady_http_requests",
    errors="steady_http_errors",
    timeouts="steady_http_timeout",
    http4xx="steady_http_4xx",
    http5xx="steady_http_5xx",
    http429="steady_http_429",
)

WS_METRICS = MetricFamily(
    duration="steady_ws_connect_duration",
    requests="steady_ws_connects",
    errors="steady_ws_errors",
    timeouts="steady_ws_timeouts",
    http4xx="steady_ws_4xx",
    http5xx="steady_ws_5xx",
    http429="steady_ws_429",
)


@dataclass
class StepAggregate:
    requests: int = 0
    errors: int = 0
    timeouts: int = 0
    http4xx: int = 0
    http5xx: int = 0
    http429: int = 0
    iterations: int = 0
    latencies_ms: list[float] = field(default_factory=list)

    def latency(self, pct: float) -> Optional[float]:
        return percentile(self.latencies_ms, pct)

    def copy(self) -> StepAggregate:
        return StepAggregate(
            requests=self.requests,
            errors=self.errors,
            timeouts=self.timeouts,
            http4xx=self.http4xx,
            http5xx=self.http5xx,
            http429=self.http429,
            iterations=self.iterations,
            latencies_ms=list(self.latencies_ms),
        )


def is_timeout(outcome: Optional[RequestRecord]) -> bool:
    if outcome is None:
        return True
    if outcome.timed_out:
        return True
    # Anything that produced a status line is not a transport timeout.
    if outcome.http_status is not None:
        return False
    error_code = (outcome.error_code or "").lower()
    error_text = (outcome.error or "").lower()
    return "timeout" in error_code or "timeout" in error_text


def is_failed(outcome: Optional[RequestRecord]) -> bool:
    if is_timeout(outcome):
        return True
    return (
        outcome is not None
        and outcome.http_status is not None
        and outcome.http_status >= 400
    )


def _trend_values(samples: list[float]) -> dict[str, Any]:
    values: dict[str, Any] = {"count": len(samples)}
    if samples:
        values.update(
            {
                "avg": float(statistics.fmean(samples)),
                "min": float(min(samples)),
                "med": percentile(samples, 50.0),
                "max": float(max(samples)),
                "p(90)": percentile(samples, 90.0),
                "p(95)": percentile(samples, 95.0),
                "p(99)": percentile(samples, 99.0),
            }
        )
    return values


class _Shard:
    __slots__ = ("lock", "aggregate")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.aggregate = StepAggregate()


class SteadyMetricsRecorder:
    """Per-step steady-state accumulator shared by every worker of a run.

    Each (step, vus) key owns its own lock, so writers for different steps never
    contend. Only samples classified as steady are kept; everything else is a no-op.
    """

    def __init__(self, family: MetricFamily = HTTP_METRICS) -> None:
        self.family = family
        self._shards: dict[StepKey, _Shard] = {}
        self._shards_lock = threading.Lock()

    def _shard(self, key: StepKey) -> _Shard:
        shard = self._shards.get(key)
        if shard is not None:
            return shard
        with self._shards_lock:
            return self._shards.setdefault(key, _Shard())

    def _steady_shard(self, classification: Optional[PhaseClassification]) -> Optional[_Shard]:
        if classification is None or not classification.is_steady:
            return None
        key = classification.key
        if key is None:
            return None
        return self._shard(key)

    def record(
        self,
        outcome: Optional[RequestRecord],
        classification: Optional[PhaseClassification],
        duration_ms: Optional[float] = None,
    ) -> bool:
        shard = self._steady_shard(classification)
        if shard is None:
            return False

        if duration_ms is None:
            duration_ms = outcome.duration_ms if outcome is not None else 0.0
        status = outcome.http_status if outcome is not None else None
        timeout = is_timeout(outcome)
        failed = is_failed(outcome)

        with shard.lock:
            aggregate = shard.aggregate
            aggregate.requests += 1
            aggregate.latencies_ms.append(max(0.0, float(duration_ms)))
            if failed:
                aggregate.errors += 1
            if timeout:
                aggregate.timeouts += 1
            if status is not None:
                if status == 429:
                    aggregate.http429 += 1
                if 400 <= status < 500:
                    aggregate.http4xx += 1
                if status >= 500:
                    aggregate.http5xx += 1
        return True

    def record_error(self, classification: Optional[PhaseClassification]) -> bool:
        shard = self._steady_shard(classification)
        if shard is None:
            return False
        with shard.lock:
            shard.aggregate.errors += 1
        return True

    def record_iteration(self, classification: Optional[PhaseClassification]) -> bool:
        shard = self._steady_shard(classification)
        if shard is None:
            return False
        with shard.lock:
            shard.aggregate.iterations += 1
        return True

    def snapshot(self) -> dict[StepKey, StepAggregate]:
        with self._shards_lock:
            items = list(self._shards.items())
        result: dict[StepKey, StepAggregate] = {}
        for key, shard in items:
            with shard.lock:
                result[key] = shard.aggregate.copy()
        return result

    def to_summary_metrics(self, duration_s: float = 0.0) -> dict[str, dict[str, Any]]:
        metrics: dict[str, dict[str, Any]] = {}
        for key, aggregate in sorted(self.snapshot().items(), key=lambda item: item[0].step):
            suffix = key.tag_suffix()
            metrics[f"{self.family.duration}{suffix}"] = {
                "type": "trend",
                "contains": "time",
                "values": _trend_values(aggregate.latencies_ms),
            }
            for attribute, name in self.family.counter_names().items():
                count = getattr(aggregate, attribute)
                metrics[f"{name}{suffix}"] = {
                    "type": "counter",
                    "values": {
                        "count": count,
                        "rate": float(count / duration_s) if duration_s > 0 else 0.0,
                    },
                }
        return metrics


class RunMetrics:
    """Run-wide request metrics across every phase, used for the gating thresholds."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._trends: dict[str, list[float]] = {}
        self._rates: dict[str, list[int]] = {}
        self._counters: dict[str, float] = {}

    def add_trend(self, name: str, value: float) -> None:
        with self._lock:
            self._trends.setdefault(name, []).append(max(0.0, float(value)))

    def add_rate(self, name: str, value: bool) -> None:
        with self._lock:
            tally = self._rates.setdefault(name, [0, 0])
            tally[0 if value else 1] += 1

    def add_counter(self, name: str, value: float = 1.0) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0.0) + value

    def record_http(self, outcome: RequestRecord, success_metric: Optional[str] = None) -> None:
        self.add_trend("http_req_duration", outcome.duration_ms)
        self.add_trend(f"http_req_duration{{name:{outcome.name}}}", outcome.duration_ms)
        # No response at all also fails the run-wide rate.
        self.add_rate("http_req_failed", outcome.http_status is None or is_failed(outcome))
        self.add_counter("http_reqs")
        if success_metric:
            self.add_rate(success_metric, outcome.ok)

    def to_summary_metrics(self, duration_s: float = 0.0) -> dict[str, dict[str, Any]]:
        with self._lock:
            trends = {name: list(samples) for name, samples in self._trends.items()}
            rates = {name: list(tally) for name, tally in self._rates.items()}
            counters = dict(self._counters)

        metrics: dict[str, dict[str, Any]] = {}
        for name, samples in trends.items():
            metrics[name] = {"type": "trend", "contains": "time", "values": _trend_values(samples)}
        for name, (passes, fails) in rates.items():
            total = passes + fails
            metrics[name] = {
                "type": "rate",
                "values": {
                    "rate": float(passes / total) if total else 0.0,
                    "passes": passes,
                    "fails": fails,
                },
            }
        for name, count in counters.items():
            metrics[name] = {
                "type": "counter",
                "values": {
                    "count": count,
                    "rate": float(count / duration_s) if duration_s > 0 else 0.0,
                },
            }
        return metrics
