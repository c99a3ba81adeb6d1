from __future__ import annotations

import asyncio
import json
import math
import random
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog
import websockets
from websockets.exceptions import ConnectionClosedOK, InvalidStatus, WebSocketException

logger = structlog.get_logger()

WS_SWITCHING_PROTOCOLS = 101


def now_unix_ms() -> int:
    return int(time.time() * 1000)


def percentile(values: list[float], pct: float) -> Optional[float]:
    if not values:
        return None
    if pct <= 0:
        return float(min(values))
    if pct >= 100:
        return float(max(values))
    ordered = sorted(values)
    index = (len(ordered) - 1) * (pct / 100.0)
    low = math.floor(index)
    high = math.ceil(index)
    if low == high:
        return float(ordered[low])
    fraction = index - low
    return float((ordered[low] * (1.0 - fraction)) + (ordered[high] * fraction))


def random_between(rng: random.Random, low: float, high: float) -> float:
    return low + rng.random() * (high - low)


def _safe_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class RequestSettings:
    base_url: str
    ws_url: str
    timeout_s: float
    ws_open_timeout_s: float = 10.0


@dataclass
class RequestRecord:
    request_id: str
    name: str
    phase: str
    step: Optional[int]
    vus: Optional[int]
    worker_id: int
    start_time_unix_ms: int
    end_time_unix_ms: int
    duration_ms: float
    http_status: Optional[int]
    timed_out: bool
    error: Optional[str]
    error_code: Optional[str]
    api_code: Optional[int]
    data: Any = None
    bytes_received: int = 0
    messages_received: int = 0
    response_excerpt: Optional[str] = None

    @property
    def ok(self) -> bool:
        if self.name == "ws":
            return self.http_status == WS_SWITCHING_PROTOCOLS and self.error is None
        return self.http_status == 200 and self.api_code == 0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("data", None)
        payload["ok"] = self.ok
        return payload


def _headers() -> dict[str, str]:
    return {"Content-Type": "application/json"}


def _parse_body(text: str) -> tuple[Optional[int], Any]:
    try:
        body = json.loads(text)
    except json.JSONDecodeError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    return _safe_int(body.get("code")), body.get("data")


async def execute_http_request(
    client: httpx.AsyncClient,
    settings: RequestSettings,
    path: str,
    payload: dict[str, Any],
    name: str,
    tags: Optional[dict[str, str]] = None,
    worker_id: int = 0,
) -> RequestRecord:
    tags = tags or {}
    start_time_ms = now_unix_ms()
    started = time.monotonic()
    http_status: Optional[int] = None
    timed_out = False
    error_text: Optional[str] = None
    error_code: Optional[str] = None
    api_code: Optional[int] = None
    data: Any = None
    bytes_received = 0
    response_excerpt: Optional[str] = None

    url = f"{settings.base_url.rstrip('/')}{path}"
    try:
        response = await client.post(
            url,
            headers=_headers(),
            json=payload,
            timeout=settings.timeout_s,
        )
        http_status = int(response.status_code)
        bytes_received = len(response.content)
        api_code, data = _parse_body(response.text)
        if response.status_code >= 400:
            response_excerpt = response.text[:2000]
    except httpx.TimeoutException as exc:
        timed_out = True
        error_text = str(exc) or "request timeout"
        error_code = exc.__class__.__name__
    except httpx.HTTPError as exc:
        error_text = str(exc) or exc.__class__.__name__
        error_code = exc.__class__.__name__

    duration_ms = max(0.0, (time.monotonic() - started) * 1000.0)
    return RequestRecord(
        request_id=str(uuid.uuid4()),
        name=name,
        phase=tags.get("phase", "none"),
        step=_safe_int(tags.get("step")),
        vus=_safe_int(tags.get("vus")),
        worker_id=worker_id,
        start_time_unix_ms=start_time_ms,
        end_time_unix_ms=now_unix_ms(),
        duration_ms=duration_ms,
        http_status=http_status,
        timed_out=timed_out,
        error=error_text,
        error_code=error_code,
        api_code=api_code,
        data=data,
        bytes_received=bytes_received,
        response_excerpt=response_excerpt,
    )


async def _receive_until(connection: Any, hold_s: float) -> int:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + hold_s
    received = 0
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        try:
            await asyncio.wait_for(connection.recv(), timeout=remaining)
        except asyncio.TimeoutError:
            break
        except ConnectionClosedOK:
            break
        received += 1
    return received


async def open_websocket_session(
    settings: RequestSettings,
    hello: dict[str, Any],
    hold_s: float,
    tags: Optional[dict[str, str]] = None,
    worker_id: int = 0,
    on_connected: Optional[Callable[[RequestRecord], Awaitable[None]]] = None,
) -> RequestRecord:
    """Connect, authenticate, hold the session open and close it.

    The returned record describes the connect handshake (its duration is the
    connect latency). ``on_connected`` fires as soon as the handshake finishes so
    callers can record connect metrics before the hold period. Errors raised
    after the handshake are reported in ``error`` with status 101 retained.
    """
    tags = tags or {}
    start_time_ms = now_unix_ms()
    started = time.monotonic()
    http_status: Optional[int] = None
    timed_out = False
    error_text: Optional[str] = None
    error_code: Optional[str] = None
    connect_ms = 0.0
    messages_received = 0

    def _record() -> RequestRecord:
        return RequestRecord(
            request_id=str(uuid.uuid4()),
            name="ws",
            phase=tags.get("phase", "none"),
            step=_safe_int(tags.get("step")),
            vus=_safe_int(tags.get("vus")),
            worker_id=worker_id,
            start_time_unix_ms=start_time_ms,
            end_time_unix_ms=now_unix_ms(),
            duration_ms=connect_ms,
            http_status=http_status,
            timed_out=timed_out,
            error=error_text,
            error_code=error_code,
            api_code=None,
            messages_received=messages_received,
        )

    try:
        async with websockets.connect(
            settings.ws_url,
            open_timeout=settings.ws_open_timeout_s,
        ) as connection:
            connect_ms = max(0.0, (time.monotonic() - started) * 1000.0)
            http_status = WS_SWITCHING_PROTOCOLS
            if on_connected is not None:
                await on_connected(_record())
            try:
                await connection.send(json.dumps(hello))
                messages_received = await _receive_until(connection, hold_s)
            except WebSocketException as exc:
                error_text = str(exc) or exc.__class__.__name__
                error_code = exc.__class__.__name__
    except InvalidStatus as exc:
        connect_ms = max(0.0, (time.monotonic() - started) * 1000.0)
        http_status = int(exc.response.status_code)
        error_text = str(exc)
        error_code = exc.__class__.__name__
    except (asyncio.TimeoutError, TimeoutError) as exc:
        connect_ms = max(0.0, (time.monotonic() - started) * 1000.0)
        timed_out = True
        error_text = str(exc) or "websocket open timeout"
        error_code = "TimeoutError"
    except (WebSocketException, OSError) as exc:
        connect_ms = max(0.0, (time.monotonic() - started) * 1000.0)
        error_text = str(exc) or exc.__class__.__name__
        error_code = exc.__class__.__name__

    return _record()


async def vu_loop(
    worker_id: int,
    stop_event: asyncio.Event,
    iteration: Callable[[int, int], Awaitable[None]],
) -> None:
    iteration_index = 0
    while not stop_event.is_set():
        try:
            await iteration(worker_id, iteration_index)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "iteration_failed",
                worker_id=worker_id,
                iteration=iteration_index,
                error=str(exc) or exc.__class__.__name__,
            )
            await asyncio.sleep(0.5)
        iteration_index += 1
