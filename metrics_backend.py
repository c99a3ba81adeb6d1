from __future__ import annotations

import asyncio
import json
import math
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

import httpx
import structlog
from prometheus_client.parser import text_string_to_metric_families

logger = structlog.get_logger()

HTTP_REQUESTS_TOTAL = "gochat_http_requests_total"
HTTP_DURATION_BASE = "gochat_http_request_duration_seconds"
HTTP_IN_FLIGHT = "gochat_http_requests_in_flight"
CONNECTIONS_ACTIVE = "gochat_connections_active"
CONNECTIONS_TOTAL = "gochat_connections_total"
MESSAGES_TOTAL = "gochat_messages_total"
QUEUE_MESSAGES_TOTAL = "gochat_queue_messages_total"
RPC_SERVER_REQUESTS_TOTAL = "gochat_rpc_server_requests_total"
RPC_SERVER_IN_FLIGHT = "gochat_rpc_server_requests_in_flight"
DB_QUERY_TOTAL = "gochat_db_query_total"
REDIS_OPERATIONS_TOTAL = "gochat_redis_operations_total"
AUTH_CACHE_HITS_TOTAL = "gochat_auth_cache_hits_total"
AUTH_CACHE_MISSES_TOTAL = "gochat_auth_cache_misses_total"

COUNTER_FIELDS = [
    "http_requests",
    "http_duration_count",
    "http_duration_sum",
    "connections_total",
    "messages",
    "queue_messages",
    "rpc_server_requests",
    "db_queries",
    "redis_operations",
    "auth_cache_hits",
    "auth_cache_misses",
]
GAUGE_FIELDS = [
    "http_in_flight",
    "connections_active",
    "rpc_server_in_flight",
]


def _le_sort_key(le_value: str) -> float:
    if le_value in {"+Inf", "Inf", "inf"}:
        return math.inf
    try:
        return float(le_value)
    except ValueError:
        return math.inf


@dataclass
class BackendMetricsSnapshot:
    timestamp_unix_ms: int
    source: str
    scrape_ok: bool
    scrape_error: Optional[str] = None
    http_requests: Optional[float] = None
    http_duration_count: Optional[float] = None
    http_duration_sum: Optional[float] = None
    http_in_flight: Optional[float] = None
    connections_active: Optional[float] = None
    connections_total: Optional[float] = None
    messages: Optional[float] = None
    queue_messages: Optional[float] = None
    rpc_server_requests: Optional[float] = None
    rpc_server_in_flight: Optional[float] = None
    db_queries: Optional[float] = None
    redis_operations: Optional[float] = None
    auth_cache_hits: Optional[float] = None
    auth_cache_misses: Optional[float] = None
    http_duration_buckets: dict[str, float] = field(default_factory=dict)

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["http_duration_buckets"] = json.dumps(self.http_duration_buckets)
        return row


def _failed_snapshot(timestamp_unix_ms: int, source: str, error: str) -> BackendMetricsSnapshot:
    return BackendMetricsSnapshot(
        timestamp_unix_ms=timestamp_unix_ms,
        source=source,
        scrape_ok=False,
        scrape_error=error,
    )


def parse_prometheus_metrics(
    text: str, source: str, timestamp_unix_ms: int
) -> BackendMetricsSnapshot:
    # Label dimensions (method, path, status...) are summed into one series per name.
    values: dict[str, float] = {}
    buckets: dict[str, float] = {}

    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            name = sample.name
            value = float(sample.value)
            if name == f"{HTTP_DURATION_BASE}_bucket":
                le = sample.labels.get("le")
                if le is not None:
                    buckets[le] = buckets.get(le, 0.0) + value
                continue
            values[name] = values.get(name, 0.0) + value

    return BackendMetricsSnapshot(
        timestamp_unix_ms=timestamp_unix_ms,
        source=source,
        scrape_ok=True,
        http_requests=values.get(HTTP_REQUESTS_TOTAL),
        http_duration_count=values.get(f"{HTTP_DURATION_BASE}_count"),
        http_duration_sum=values.get(f"{HTTP_DURATION_BASE}_sum"),
        http_in_flight=values.get(HTTP_IN_FLIGHT),
        connections_active=values.get(CONNECTIONS_ACTIVE),
        connections_total=values.get(CONNECTIONS_TOTAL),
        messages=values.get(MESSAGES_TOTAL),
        queue_messages=values.get(QUEUE_MESSAGES_TOTAL),
        rpc_server_requests=values.get(RPC_SERVER_REQUESTS_TOTAL),
        rpc_server_in_flight=values.get(RPC_SERVER_IN_FLIGHT),
        db_queries=values.get(DB_QUERY_TOTAL),
        redis_operations=values.get(REDIS_OPERATIONS_TOTAL),
        auth_cache_hits=values.get(AUTH_CACHE_HITS_TOTAL),
        auth_cache_misses=values.get(AUTH_CACHE_MISSES_TOTAL),
        http_duration_buckets=dict(sorted(buckets.items(), key=lambda item: _le_sort_key(item[0]))),
    )


class BackendMetricsScraper:
    def __init__(
        self,
        metrics_url: str,
        poll_interval_s: float = 1.0,
        request_timeout_s: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.metrics_url = metrics_url
        self.poll_interval_s = poll_interval_s
        self.request_timeout_s = request_timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._rows: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._failures = 0

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.request_timeout_s, transport=self._transport
            )
        return self._client

    async def start(self) -> None:
        if self._task is not None:
            return
        self._ensure_client()
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._failures:
            logger.warning(
                "backend_metrics_scrape_failures",
                url=self.metrics_url,
                failures=self._failures,
            )

    async def snapshot(self, source: str = "snapshot") -> BackendMetricsSnapshot:
        snapshot = await self._scrape_once(source=source)
        async with self._lock:
            self._rows.append(snapshot.to_row())
        return snapshot

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            loop_started = time.monotonic()
            await self.snapshot(source="poll")
            sleep_for = max(0.0, self.poll_interval_s - (time.monotonic() - loop_started))
            if sleep_for <= 0.0:
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass

    async def _scrape_once(self, source: str) -> BackendMetricsSnapshot:
        timestamp_unix_ms = int(time.time() * 1000)
        client = self._ensure_client()
        try:
            response = await client.get(self.metrics_url, timeout=self.request_timeout_s)
        except httpx.HTTPError as exc:
            self._failures += 1
            return _failed_snapshot(
                timestamp_unix_ms, source, str(exc) or exc.__class__.__name__
            )
        if response.status_code != 200:
            self._failures += 1
            return _failed_snapshot(timestamp_unix_ms, source, f"HTTP {response.status_code}")
        try:
            return parse_prometheus_metrics(
                text=response.text,
                source=source,
                timestamp_unix_ms=timestamp_unix_ms,
            )
        except ValueError as exc:
            self._failures += 1
            return _failed_snapshot(timestamp_unix_ms, source, f"parse error: {exc}")

    async def rows(self) -> list[dict[str, Any]]:
        async with self._lock:
            return list(self._rows)

    async def rows_between(self, start_unix_ms: int, end_unix_ms: int) -> list[dict[str, Any]]:
        async with self._lock:
            return [
                row
                for row in self._rows
                if start_unix_ms <= int(row["timestamp_unix_ms"]) <= end_unix_ms
            ]
