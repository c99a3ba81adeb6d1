from __future__ import annotations

import csv
import html
import json
import math
import statistics
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from slo import SloThresholds, StepReport, StepReportRow, format_rate

CHART_JS_URL = "https://cdn.jsdelivr.net/npm/chart.js"
PASS_COLOR = "#0a7d37"
FAIL_COLOR = "#b00020"

STEP_TABLE_COLUMNS = [
    "Step",
    "VUs",
    "RPS",
    "Iter/s",
    "Error Rate",
    "Timeout Rate",
    "p90",
    "p95",
    "p99",
    "4xx",
    "5xx",
    "429",
    "Timeouts",
    "SLO",
]

_STYLE = """
body{font-family:Arial,Helvetica,sans-serif;margin:24px;color:#222;background:#f8f9fb}
h1{margin:0 0 8px 0;font-size:22px}
h2{margin:24px 0 12px 0;font-size:18px;color:#333}
.meta{margin-bottom:16px;font-size:13px;color:#555}
.card{background:#fff;border:1px solid #e3e6ea;border-radius:8px;padding:16px;margin-bottom:16px}
.summary-grid{display:grid;grid-template-columns:repeat(auto-fit,minmax(280px,1fr));gap:16px;margin-bottom:16px}
.summary-card{background:#fff;border:1px solid #e3e6ea;border-radius:8px;padding:16px}
.summary-card.capacity{border-left:4px solid #0a7d37}
.summary-card.bottleneck{border-left:4px solid #b00020}
.summary-card h3{margin:0 0 8px 0;font-size:14px;color:#666}
.summary-card .value{font-size:24px;font-weight:bold;color:#222}
.summary-card .detail{font-size:12px;color:#666;margin-top:4px}
.summary-card .reasons{font-size:12px;color:#b00020;margin-top:8px}
.chart-grid{display:grid;grid-template-columns:repeat(auto-fit,minmax(400px,1fr));gap:16px;margin-bottom:16px}
.chart-card{background:#fff;border:1px solid #e3e6ea;border-radius:8px;padding:16px}
.chart-card h3{margin:0 0 12px 0;font-size:14px;color:#666}
table{width:100%;border-collapse:collapse;font-size:12px}
th,td{border:1px solid #e3e6ea;padding:6px 8px;text-align:right}
th{text-align:center;background:#f1f3f6}
td.left{text-align:left}
.pass{color:#0a7d37;font-weight:bold}
.fail{color:#b00020;font-weight:bold}
.row-fail{background:#fff5f5}
""".strip()


def _counter_delta(start: Optional[float], end: Optional[float]) -> Optional[float]:
    if start is None or end is None:
        return None
    delta = end - start
    if delta < 0:
        # Counter reset inside the window.
        return None
    return float(delta)


def _stat_triplet(values: list[float]) -> tuple[Optional[float], Optional[float], Optional[float]]:
    if not values:
        return None, None, None
    return float(min(values)), float(statistics.fmean(values)), float(max(values))


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def compute_backend_step_summary(
    *,
    step: int,
    vus: int,
    window_start_unix_ms: int,
    window_end_unix_ms: int,
    rows_in_window: list[dict[str, Any]],
) -> dict[str, Any]:
    ok_rows = [row for row in rows_in_window if row.get("scrape_ok") in (True, "True")]
    first = ok_rows[0] if ok_rows else {}
    last = ok_rows[-1] if ok_rows else {}
    window_s = max(0.0, (window_end_unix_ms - window_start_unix_ms) / 1000.0)
    observed_s = (
        max(0.0, (int(last["timestamp_unix_ms"]) - int(first["timestamp_unix_ms"])) / 1000.0)
        if ok_rows
        else 0.0
    )

    def _delta(name: str) -> Optional[float]:
        return _counter_delta(_to_float(first.get(name)), _to_float(last.get(name)))

    http_requests_delta = _delta("http_requests")
    duration_count_delta = _delta("http_duration_count")
    duration_sum_delta = _delta("http_duration_sum")
    server_mean_latency_ms = None
    if duration_count_delta and duration_sum_delta is not None:
        server_mean_latency_ms = float(duration_sum_delta / duration_count_delta * 1000.0)

    def _gauge(name: str) -> tuple[Optional[float], Optional[float], Optional[float]]:
        values = [
            value for value in (_to_float(row.get(name)) for row in ok_rows) if value is not None
        ]
        return _stat_triplet(values)

    in_flight_min, in_flight_mean, in_flight_max = _gauge("http_in_flight")
    active_min, active_mean, active_max = _gauge("connections_active")
    rpc_in_flight_min, rpc_in_flight_mean, rpc_in_flight_max = _gauge("rpc_server_in_flight")

    return {
        "step": step,
        "vus": vus,
        "window_start_unix_ms": window_start_unix_ms,
        "window_end_unix_ms": window_end_unix_ms,
        "window_s": window_s,
        "scrapes": len(rows_in_window),
        "scrapes_ok": len(ok_rows),
        "server_http_requests_delta": http_requests_delta,
        "server_http_rps": (
            float(http_requests_delta / observed_s)
            if http_requests_delta is not None and observed_s > 0
            else None
        ),
        "server_mean_latency_ms": server_mean_latency_ms,
        "server_messages_delta": _delta("messages"),
        "server_queue_messages_delta": _delta("queue_messages"),
        "server_connections_total_delta": _delta("connections_total"),
        "server_rpc_requests_delta": _delta("rpc_server_requests"),
        "server_db_queries_delta": _delta("db_queries"),
        "server_redis_operations_delta": _delta("redis_operations"),
        "http_in_flight_min": in_flight_min,
        "http_in_flight_mean": in_flight_mean,
        "http_in_flight_max": in_flight_max,
        "connections_active_min": active_min,
        "connections_active_mean": active_mean,
        "connections_active_max": active_max,
        "rpc_in_flight_min": rpc_in_flight_min,
        "rpc_in_flight_mean": rpc_in_flight_mean,
        "rpc_in_flight_max": rpc_in_flight_max,
    }


def write_step_report_json(output_path: Path, report: StepReport) -> None:
    output_path.write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")


def write_steps_csv(output_path: Path, rows: list[StepReportRow]) -> None:
    fieldnames = list(StepReportRow.__dataclass_fields__)
    with output_path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            payload = row.to_dict()
            payload["fail_reasons"] = "; ".join(row.fail_reasons)
            writer.writerow(payload)


def chart_data(rows: list[StepReportRow]) -> list[dict[str, Any]]:
    return [
        {
            "vus": row.vus,
            "rps": row.rps or 0.0,
            "itersPerSec": row.iters_per_sec or 0.0,
            "p90": row.p90 or 0.0,
            "p95": row.p95 or 0.0,
            "p99": row.p99 or 0.0,
            "errorRate": (row.error_rate or 0.0) * 100.0,
            "timeoutRate": (row.timeout_rate or 0.0) * 100.0,
            "sloPass": row.slo_pass,
        }
        for row in rows
    ]


def _slo_line(slo: SloThresholds) -> str:
    parts = [f"p95 ≤ {slo.p95_ms:g} ms"]
    if slo.p99_ms is not None:
        parts.append(f"p99 ≤ {slo.p99_ms:g} ms")
    parts.append(f"error rate ≤ {format_rate(slo.error_rate)}")
    parts.append(f"timeout rate ≤ {format_rate(slo.timeout_rate)}")
    return ", ".join(parts)


def _line_dataset(label: str, key: str, color: str, fill: bool) -> dict[str, Any]:
    return {
        "label": label,
        "key": key,
        "borderColor": color,
        "pointRadius": 6 if fill else 5,
        "fill": fill,
        "tension": 0.3,
    }


def _chart_specs() -> list[dict[str, Any]]:
    return [
        {
            "id": "throughputChart",
            "type": "line",
            "yTitle": "Per second",
            "datasets": [
                _line_dataset("RPS", "rps", "#2196F3", True),
                _line_dataset("Iter/s", "itersPerSec", "#9C27B0", True),
            ],
        },
        {
            "id": "latencyChart",
            "type": "line",
            "yTitle": "Latency (ms)",
            "datasets": [
                _line_dataset("p90 (ms)", "p90", "#4CAF50", False),
                _line_dataset("p95 (ms)", "p95", "#FF9800", False),
                _line_dataset("p99 (ms)", "p99", "#F44336", False),
            ],
        },
        {
            "id": "errorChart",
            "type": "bar",
            "yTitle": "Rate (%)",
            "datasets": [
                {"label": "Error Rate (%)", "key": "errorRate", "alpha": 0.7},
                {"label": "Timeout Rate (%)", "key": "timeoutRate", "alpha": 0.4},
            ],
        },
    ]


_CHART_SCRIPT = """
var labels = chartData.map(function(r) { return r.vus + " VUs"; });
var pointColors = chartData.map(function(r) { return r.sloPass ? passColor : failColor; });
function barColor(alpha) {
  return chartData.map(function(r) {
    return r.sloPass ? "rgba(10, 125, 55, " + alpha + ")" : "rgba(176, 0, 32, " + alpha + ")";
  });
}
chartSpecs.forEach(function(spec) {
  var datasets = spec.datasets.map(function(ds) {
    var out = {label: ds.label, data: chartData.map(function(r) { return r[ds.key]; })};
    if (spec.type === "bar") {
      out.backgroundColor = barColor(ds.alpha);
      out.borderColor = pointColors;
      out.borderWidth = 1;
    } else {
      out.borderColor = ds.borderColor;
      out.pointBackgroundColor = pointColors;
      out.pointBorderColor = pointColors;
      out.pointRadius = ds.pointRadius;
      out.fill = ds.fill;
      out.tension = ds.tension;
    }
    return out;
  });
  new Chart(document.getElementById(spec.id), {
    type: spec.type,
    data: {labels: labels, datasets: datasets},
    options: {
      responsive: true,
      plugins: {legend: {position: "top"}},
      scales: {y: {beginAtZero: true, title: {display: true, text: spec.yTitle}}}
    }
  });
});
""".strip()


def render_step_html(report: StepReport, title: str) -> str:
    esc = html.escape
    rows = report.rows
    capacity = report.verdict.max_passing
    bottleneck = report.verdict.first_failing

    lines: list[str] = []
    lines.append("<!doctype html>")
    lines.append('<html lang="en"><head><meta charset="utf-8">')
    lines.append('<meta name="viewport" content="width=device-width, initial-scale=1">')
    lines.append(f"<title>{esc(title)}</title>")
    lines.append(f'<script src="{CHART_JS_URL}"></script>')
    lines.append(f"<style>\n{_STYLE}\n</style></head><body>")
    lines.append(f"<h1>{esc(title)}</h1>")
    lines.append(
        '<div class="meta">Steady-state only. Warm-up excluded. '
        "Per-step throughput, errors, and latency percentiles.</div>"
    )
    lines.append(
        '<div class="card"><strong>SLO Thresholds</strong>'
        f'<div class="meta">{esc(_slo_line(report.slo))}</div></div>'
    )

    lines.append('<div class="summary-grid">')
    lines.append('<div class="summary-card capacity">')
    lines.append("<h3>Maximum Capacity (Last SLO-Passing Step)</h3>")
    if capacity is not None:
        lines.append(f'<div class="value">{capacity.vus} VUs</div>')
        lines.append(
            f'<div class="detail">Step {capacity.step} | RPS: {_fmt(capacity.rps)} | '
            f"Iter/s: {_fmt(capacity.iters_per_sec)}</div>"
        )
    else:
        lines.append('<div class="value">N/A</div>')
        lines.append('<div class="detail">No step met SLO</div>')
    lines.append("</div>")

    lines.append('<div class="summary-card bottleneck">')
    lines.append("<h3>Bottleneck (First SLO-Failing Step)</h3>")
    if bottleneck is not None:
        lines.append(f'<div class="value">{bottleneck.vus} VUs</div>')
        lines.append(
            f'<div class="detail">Step {bottleneck.step} | RPS: {_fmt(bottleneck.rps)}</div>'
        )
        if bottleneck.fail_reasons:
            lines.append(
                '<div class="reasons"><strong>Reasons:</strong>'
                '<ul style="margin:4px 0;padding-left:20px">'
            )
            lines.extend(f"<li>{esc(reason)}</li>" for reason in bottleneck.fail_reasons)
            lines.append("</ul></div>")
    else:
        lines.append('<div class="value">None</div>')
        lines.append('<div class="detail">All steps passed SLO</div>')
    lines.append("</div>")
    lines.append("</div>")

    lines.append("<h2>Performance Charts</h2>")
    lines.append('<div class="chart-grid">')
    lines.append(
        '<div class="chart-card"><h3>Throughput vs VUs</h3><canvas id="throughputChart"></canvas></div>'
    )
    lines.append(
        '<div class="chart-card"><h3>Latency vs VUs</h3><canvas id="latencyChart"></canvas></div>'
    )
    lines.append(
        '<div class="chart-card"><h3>Error Rate vs VUs</h3><canvas id="errorChart"></canvas></div>'
    )
    lines.append("</div>")

    lines.append("<h2>Step Details</h2>")
    lines.append('<div class="card"><table>')
    lines.append("<thead><tr>" + "".join(f"<th>{esc(c)}</th>" for c in STEP_TABLE_COLUMNS) + "</tr></thead>")
    lines.append("<tbody>")
    for row in rows:
        row_class = "" if row.slo_pass else ' class="row-fail"'
        verdict_class = "pass" if row.slo_pass else "fail"
        cells = [
            f'<td class="left">{row.step}</td>',
            f"<td>{row.vus}</td>",
            f"<td>{_fmt(row.rps)}</td>",
            f"<td>{_fmt(row.iters_per_sec)}</td>",
            f"<td>{format_rate(row.error_rate)}</td>",
            f"<td>{format_rate(row.timeout_rate)}</td>",
            f"<td>{_fmt(row.p90)}</td>",
            f"<td>{_fmt(row.p95)}</td>",
            f"<td>{_fmt(row.p99)}</td>",
            f"<td>{row.http4xx}</td>",
            f"<td>{row.http5xx}</td>",
            f"<td>{row.http429}</td>",
            f"<td>{row.timeouts}</td>",
            f'<td class="{verdict_class}">{"PASS" if row.slo_pass else "FAIL"}</td>',
        ]
        lines.append(f"<tr{row_class}>" + "".join(cells) + "</tr>")
    lines.append("</tbody></table></div>")

    # JSON is embedded inside <script>; escaping "</" keeps it from closing the tag.
    data_json = json.dumps(chart_data(rows)).replace("</", "<\\/")
    specs_json = json.dumps(_chart_specs()).replace("</", "<\\/")
    lines.append("<script>")
    lines.append(f"var chartData = {data_json};")
    lines.append(f"var chartSpecs = {specs_json};")
    lines.append(f'var passColor = "{PASS_COLOR}";')
    lines.append(f'var failColor = "{FAIL_COLOR}";')
    lines.append(_CHART_SCRIPT)
    lines.append("</script>")
    lines.append("</body></html>")
    return "\n".join(lines) + "\n"


def write_step_html(output_path: Path, report: StepReport, title: str) -> None:
    output_path.write_text(render_step_html(report, title), encoding="utf-8")


def write_summary_markdown(
    output_path: Path,
    run_name: str,
    resolved_config: dict[str, Any],
    report: StepReport,
    backend_steps: Optional[list[dict[str, Any]]] = None,
    threshold_breaches: Optional[list[dict[str, Any]]] = None,
) -> None:
    generated_at = datetime.now(timezone.utc).isoformat()
    capacity = report.verdict.max_passing
    bottleneck = report.verdict.first_failing

    lines: list[str] = []
    lines.append(f"# Capacity Load Test Summary - {run_name}")
    lines.append("")
    lines.append(f"Generated at (UTC): `{generated_at}`")
    lines.append("")
    lines.append("## SLO")
    lines.append("")
    lines.append(_slo_line(report.slo))
    lines.append("")
    lines.append("## Verdict")
    lines.append("")
    if capacity is not None:
        lines.append(
            f"- Maximum capacity: **{capacity.vus} VUs** (step {capacity.step}, "
            f"{_fmt(capacity.rps)} req/s)"
        )
    else:
        lines.append("- Maximum capacity: **N/A** (no step met SLO)")
    if bottleneck is not None:
        lines.append(
            f"- Bottleneck: **{bottleneck.vus} VUs** (step {bottleneck.step}): "
            + "; ".join(bottleneck.fail_reasons)
        )
    else:
        lines.append("- Bottleneck: none (all steps passed SLO)")
    lines.append("")
    lines.append("## Step Results")
    lines.append("")
    lines.append(
        "| Step | VUs | Req | RPS | Iter/s | Error % | Timeout % | p90 ms | p95 ms | p99 ms | "
        "4xx | 5xx | 429 | SLO |"
    )
    lines.append("|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|:---|")
    for row in report.rows:
        lines.append(
            "| "
            f"{row.step} | "
            f"{row.vus} | "
            f"{row.requests} | "
            f"{_fmt(row.rps)} | "
            f"{_fmt(row.iters_per_sec)} | "
            f"{_fmt(row.error_rate * 100.0)} | "
            f"{_fmt(row.timeout_rate * 100.0)} | "
            f"{_fmt(row.p90)} | "
            f"{_fmt(row.p95)} | "
            f"{_fmt(row.p99)} | "
            f"{row.http4xx} | "
            f"{row.http5xx} | "
            f"{row.http429} | "
            f"{'PASS' if row.slo_pass else 'FAIL'} |"
        )

    if backend_steps:
        lines.append("")
        lines.append("## Backend Metrics (steady windows)")
        lines.append("")
        lines.append(
            "| Step | VUs | Server req/s | Server mean ms | Messages | "
            "In-flight min/mean/max | WS active min/mean/max |"
        )
        lines.append("|---:|---:|---:|---:|---:|---:|---:|")
        for item in backend_steps:
            lines.append(
                "| "
                f"{item['step']} | "
                f"{item['vus']} | "
                f"{_fmt(item['server_http_rps'])} | "
                f"{_fmt(item['server_mean_latency_ms'])} | "
                f"{_fmt(item['server_messages_delta'], 0)} | "
                f"{_fmt(item['http_in_flight_min'])}/{_fmt(item['http_in_flight_mean'])}/{_fmt(item['http_in_flight_max'])} | "
                f"{_fmt(item['connections_active_min'])}/{_fmt(item['connections_active_mean'])}/{_fmt(item['connections_active_max'])} |"
            )

    if threshold_breaches:
        lines.append("")
        lines.append("## Threshold Breaches")
        lines.append("")
        for breach in threshold_breaches:
            lines.append(f"- `{breach['metric']}`: `{breach['threshold']}`")

    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    lines.append("```json")
    lines.append(json.dumps(resolved_config, indent=2))
    lines.append("```")
    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
