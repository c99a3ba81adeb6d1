from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from auth import DEFAULT_PASSWORD, LoadTestUser
from loadgen import (
    WS_SWITCHING_PROTOCOLS,
    RequestRecord,
    RequestSettings,
    execute_http_request,
    open_websocket_session,
    random_between,
)
from recorder import (
    HTTP_METRICS,
    WS_METRICS,
    MetricFamily,
    RunMetrics,
    SteadyMetricsRecorder,
    is_failed,
)
from tracker import PhaseClassification, StepTracker

ROOM_COUNT = 10


@dataclass
class ScenarioContext:
    client: httpx.AsyncClient
    settings: RequestSettings
    tracker: StepTracker
    recorder: Optional[SteadyMetricsRecorder]
    run_metrics: RunMetrics
    users: list[LoadTestUser]
    emit: Callable[[RequestRecord], Awaitable[None]]
    success_metric: Optional[str] = None
    seed: int = 42
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    _rngs: dict[int, random.Random] = field(default_factory=dict)

    def rng(self, worker_id: int) -> random.Random:
        rng = self._rngs.get(worker_id)
        if rng is None:
            rng = random.Random(self.seed + (worker_id * 971))
            self._rngs[worker_id] = rng
        return rng

    def user_for(self, worker_id: int) -> Optional[LoadTestUser]:
        if not self.users:
            return None
        return self.users[worker_id % len(self.users)]

    async def pause(self, worker_id: int, low: float, high: float) -> None:
        await self.sleep(random_between(self.rng(worker_id), low, high))

    def begin_iteration(self) -> PhaseClassification:
        classification = self.tracker.current()
        if self.recorder is not None:
            self.recorder.record_iteration(classification)
        self.run_metrics.add_counter("iterations")
        return classification

    async def post(
        self,
        path: str,
        payload: dict[str, Any],
        name: str,
        worker_id: int,
        measured: bool = True,
    ) -> RequestRecord:
        classification = self.tracker.current()
        record = await execute_http_request(
            self.client,
            self.settings,
            path,
            payload,
            name=name,
            tags=classification.request_tags(),
            worker_id=worker_id,
        )
        self.run_metrics.record_http(record, self.success_metric if measured else None)
        if measured and self.recorder is not None:
            self.recorder.record(record, classification)
        await self.emit(record)
        return record

    def record_ws_connect(self, record: RequestRecord, classification: PhaseClassification) -> None:
        self.run_metrics.add_trend("ws_connect_duration", record.duration_ms)
        if self.success_metric:
            self.run_metrics.add_rate(
                self.success_metric,
                record.http_status == WS_SWITCHING_PROTOCOLS and record.error is None,
            )
        if self.recorder is not None:
            self.recorder.record(record, classification)


Iteration = Callable[[ScenarioContext, int, int], Awaitable[None]]


@dataclass(frozen=True)
class Scenario:
    name: str
    title: str
    iteration: Iteration
    thresholds: dict[str, list[str]]
    success_metric: Optional[str]
    family: MetricFamily = HTTP_METRICS
    user_prefix: Optional[str] = None
    user_cap: int = 0
    ws_ratio: float = 0.0

    def user_count(self, target_vus: int) -> int:
        if self.user_prefix is None:
            return 0
        return max(0, min(target_vus, self.user_cap))


def _room_for(worker_id: int) -> int:
    return (worker_id % ROOM_COUNT) + 1


def _unique_name(prefix: str, worker_id: int, iteration_index: int) -> str:
    return f"{prefix}_{worker_id}_{iteration_index}_{int(time.time() * 1000)}"


async def user_register_iteration(ctx: ScenarioContext, worker_id: int, iteration_index: int) -> None:
    ctx.begin_iteration()
    await ctx.post(
        "/user/register",
        {
            "userName": _unique_name("reg", worker_id, iteration_index),
            "passWord": DEFAULT_PASSWORD,
        },
        name="register",
        worker_id=worker_id,
    )
    await ctx.pause(worker_id, 0.5, 1.0)


async def user_login_iteration(ctx: ScenarioContext, worker_id: int, iteration_index: int) -> None:
    ctx.begin_iteration()
    user = ctx.user_for(worker_id)
    if user is None:
        await ctx.sleep(1.0)
        return
    await ctx.post(
        "/user/login",
        {"userName": user.user_name, "passWord": user.password},
        name="login",
        worker_id=worker_id,
    )
    await ctx.pause(worker_id, 0.5, 1.0)


async def user_logout_iteration(ctx: ScenarioContext, worker_id: int, iteration_index: int) -> None:
    ctx.begin_iteration()
    credentials = {
        "userName": _unique_name("logout_test", worker_id, iteration_index),
        "passWord": DEFAULT_PASSWORD,
    }
    record = await ctx.post(
        "/user/register", credentials, name="register", worker_id=worker_id, measured=False
    )
    if not (record.ok and record.data):
        record = await ctx.post(
            "/user/login", credentials, name="login", worker_id=worker_id, measured=False
        )
    if not (record.ok and record.data):
        if ctx.success_metric:
            ctx.run_metrics.add_rate(ctx.success_metric, False)
        await ctx.sleep(0.5)
        return
    await ctx.post(
        "/user/logout", {"authToken": str(record.data)}, name="logout", worker_id=worker_id
    )
    await ctx.pause(worker_id, 0.5, 1.0)


async def user_checkauth_iteration(ctx: ScenarioContext, worker_id: int, iteration_index: int) -> None:
    ctx.begin_iteration()
    user = ctx.user_for(worker_id)
    if user is None:
        await ctx.sleep(0.5)
        return
    await ctx.post(
        "/user/checkAuth", {"authToken": user.auth_token}, name="checkAuth", worker_id=worker_id
    )
    await ctx.pause(worker_id, 0.3, 0.7)


async def push_push_iteration(ctx: ScenarioContext, worker_id: int, iteration_index: int) -> None:
    ctx.begin_iteration()
    user = ctx.user_for(worker_id)
    if user is None:
        await ctx.sleep(1.0)
        return
    await ctx.post(
        "/push/push",
        {
            "authToken": user.auth_token,
            "msg": f"Load test message {worker_id}-{iteration_index} at {int(time.time() * 1000)}",
            "toUserId": "1",
            "roomId": _room_for(worker_id),
        },
        name="push",
        worker_id=worker_id,
    )
    await ctx.pause(worker_id, 0.3, 0.7)


async def push_room_iteration(ctx: ScenarioContext, worker_id: int, iteration_index: int) -> None:
    ctx.begin_iteration()
    user = ctx.user_for(worker_id)
    if user is None:
        await ctx.sleep(1.0)
        return
    await ctx.post(
        "/push/pushRoom",
        {
            "authToken": user.auth_token,
            "msg": f"Room broadcast {worker_id}-{iteration_index} at {int(time.time() * 1000)}",
            "roomId": _room_for(worker_id),
        },
        name="pushRoom",
        worker_id=worker_id,
    )
    await ctx.pause(worker_id, 0.3, 0.7)


async def push_count_iteration(ctx: ScenarioContext, worker_id: int, iteration_index: int) -> None:
    ctx.begin_iteration()
    user = ctx.user_for(worker_id)
    if user is None:
        await ctx.sleep(0.5)
        return
    await ctx.post(
        "/push/count",
        {"authToken": user.auth_token, "roomId": ctx.rng(worker_id).randint(1, ROOM_COUNT)},
        name="pushCount",
        worker_id=worker_id,
    )
    await ctx.pause(worker_id, 0.3, 0.7)


async def capacity_baseline_iteration(
    ctx: ScenarioContext, worker_id: int, iteration_index: int
) -> None:
    ctx.begin_iteration()
    user = ctx.user_for(worker_id)
    await ctx.post(
        "/user/login",
        {
            "userName": user.user_name if user else f"capacity_login_{worker_id}_{iteration_index}",
            "passWord": user.password if user else DEFAULT_PASSWORD,
        },
        name="login",
        worker_id=worker_id,
    )
    if user is not None:
        await ctx.post(
            "/user/checkAuth",
            {"authToken": user.auth_token},
            name="checkAuth",
            worker_id=worker_id,
        )
        await ctx.post(
            "/push/count",
            {"authToken": user.auth_token, "roomId": _room_for(worker_id)},
            name="pushCount",
            worker_id=worker_id,
        )
    await ctx.pause(worker_id, 0.3, 0.7)


async def full_system_iteration(ctx: ScenarioContext, worker_id: int, iteration_index: int) -> None:
    ctx.begin_iteration()
    rng = ctx.rng(worker_id)
    user = ctx.user_for(worker_id)
    auth_token = user.auth_token if user else None

    if auth_token is None:
        record = await ctx.post(
            "/user/register",
            {
                "userName": _unique_name("http", worker_id, iteration_index),
                "passWord": DEFAULT_PASSWORD,
            },
            name="register",
            worker_id=worker_id,
        )
        if record.ok and record.data:
            auth_token = str(record.data)

    if auth_token is not None:
        user_id: Any = None
        record = await ctx.post(
            "/user/checkAuth", {"authToken": auth_token}, name="checkAuth", worker_id=worker_id
        )
        if record.ok and isinstance(record.data, dict):
            user_id = record.data.get("userId")

        room_id = rng.randint(1, ROOM_COUNT)
        for _ in range(5):
            await ctx.post(
                "/push/push",
                {
                    "authToken": auth_token,
                    "msg": f"test message {int(time.time() * 1000)}",
                    "toUserId": user_id or rng.randint(1, 100),
                    "roomId": room_id,
                },
                name="push",
                worker_id=worker_id,
            )
            await ctx.pause(worker_id, 0.05, 0.15)
        for _ in range(5):
            await ctx.post(
                "/push/pushRoom",
                {
                    "authToken": auth_token,
                    "msg": f"room message {int(time.time() * 1000)}",
                    "roomId": room_id,
                },
                name="pushRoom",
                worker_id=worker_id,
            )
            await ctx.pause(worker_id, 0.05, 0.15)
        for _ in range(2):
            await ctx.post(
                "/push/count",
                {"authToken": auth_token, "roomId": rng.randint(1, ROOM_COUNT)},
                name="pushCount",
                worker_id=worker_id,
            )
            await ctx.sleep(0.1)
        await ctx.post(
            "/push/getRoomInfo",
            {"authToken": auth_token, "roomId": rng.randint(1, ROOM_COUNT)},
            name="getRoomInfo",
            worker_id=worker_id,
        )

    await ctx.pause(worker_id, 0.3, 1.0)


async def websocket_iteration(ctx: ScenarioContext, worker_id: int, iteration_index: int) -> None:
    classification = ctx.begin_iteration()
    user = ctx.user_for(worker_id)
    if user is None:
        await ctx.sleep(1.0)
        return

    connected = False

    async def on_connected(record: RequestRecord) -> None:
        nonlocal connected
        connected = True
        ctx.record_ws_connect(record, classification)

    record = await open_websocket_session(
        ctx.settings,
        {"authToken": user.auth_token, "roomId": _room_for(worker_id)},
        hold_s=random_between(ctx.rng(worker_id), 15.0, 30.0),
        tags=classification.request_tags(),
        worker_id=worker_id,
        on_connected=on_connected,
    )
    if not connected:
        ctx.record_ws_connect(record, classification)
        if ctx.recorder is not None and not is_failed(record):
            # A handshake without any response still fails the connect.
            ctx.recorder.record_error(classification)
    elif record.error is not None:
        # At most one error per session once the handshake succeeded.
        if ctx.success_metric:
            ctx.run_metrics.add_rate(ctx.success_metric, False)
        if ctx.recorder is not None:
            ctx.recorder.record_error(classification)
    ctx.run_metrics.add_counter("ws_messages_received", float(record.messages_received))
    await ctx.emit(record)
    await ctx.sleep(1.0)


def _http_thresholds(p95_ms: int, failed_rate: str, success_metric: str, success: str) -> dict[str, list[str]]:
    return {
        "http_req_duration": [f"p(95)<{p95_ms}"],
        "http_req_failed": [failed_rate],
        success_metric: [success],
    }


SCENARIOS: dict[str, Scenario] = {
    scenario.name: scenario
    for scenario in [
        Scenario(
            name="user-register",
            title="User Register Step Report",
            iteration=user_register_iteration,
            thresholds=_http_thresholds(500, "rate<0.05", "register_success_rate", "rate>0.90"),
            success_metric="register_success_rate",
        ),
        Scenario(
            name="user-login",
            title="User Login Step Report",
            iteration=user_login_iteration,
            thresholds=_http_thresholds(500, "rate<0.05", "login_success_rate", "rate>0.95"),
            success_metric="login_success_rate",
            user_prefix="login_test",
            user_cap=100,
        ),
        Scenario(
            name="user-logout",
            title="User Logout Step Report",
            iteration=user_logout_iteration,
            thresholds=_http_thresholds(500, "rate<0.05", "logout_success_rate", "rate>0.95"),
            success_metric="logout_success_rate",
        ),
        Scenario(
            name="user-checkauth",
            title="User CheckAuth Step Report",
            iteration=user_checkauth_iteration,
            thresholds=_http_thresholds(300, "rate<0.05", "checkauth_success_rate", "rate>0.95"),
            success_metric="checkauth_success_rate",
            user_prefix="checkauth_test",
            user_cap=100,
        ),
        Scenario(
            name="push-push",
            title="Push Message Step Report",
            iteration=push_push_iteration,
            thresholds=_http_thresholds(1000, "rate<0.05", "push_success_rate", "rate>0.90"),
            success_metric="push_success_rate",
            user_prefix="push_test",
            user_cap=50,
        ),
        Scenario(
            name="push-room",
            title="Push Room Step Report",
            iteration=push_room_iteration,
            thresholds=_http_thresholds(1000, "rate<0.05", "push_room_success_rate", "rate>0.90"),
            success_metric="push_room_success_rate",
            user_prefix="pushroom_test",
            user_cap=50,
        ),
        Scenario(
            name="push-count",
            title="Push Count Step Report",
            iteration=push_count_iteration,
            thresholds=_http_thresholds(300, "rate<0.05", "count_success_rate", "rate>0.95"),
            success_metric="count_success_rate",
            user_prefix="count_test",
            user_cap=100,
        ),
        Scenario(
            name="capacity-baseline",
            title="Capacity Baseline Step Report",
            iteration=capacity_baseline_iteration,
            thresholds={
                "http_req_duration": ["p(95)<500", "p(99)<1000"],
                "http_req_failed": ["rate<0.01"],
                "http_req_duration{name:login}": ["p(95)<300"],
                "http_req_duration{name:checkAuth}": ["p(95)<200"],
                "request_success_rate": ["rate>0.95"],
            },
            success_metric="request_success_rate",
            user_prefix="capacity",
            user_cap=200,
        ),
        Scenario(
            name="full-system",
            title="Full System Step Report",
            iteration=full_system_iteration,
            thresholds={
                "http_req_duration": ["p(95)<500", "p(99)<1000"],
                "http_req_failed": ["rate<0.05"],
                "http_success_rate": ["rate>0.95"],
                "ws_connect_duration": ["p(95)<2000"],
            },
            success_metric="http_success_rate",
            user_prefix="fulltest",
            user_cap=200,
            ws_ratio=0.25,
        ),
        Scenario(
            name="websocket",
            title="WebSocket Step Report",
            iteration=websocket_iteration,
            thresholds={
                "ws_connect_success": ["rate>0.95"],
                "ws_connect_duration": ["p(95)<2000"],
            },
            success_metric="ws_connect_success",
            family=WS_METRICS,
            user_prefix="ws_test",
            user_cap=100,
        ),
    ]
}


def get_scenario(name: str) -> Scenario:
    scenario = SCENARIOS.get(name)
    if scenario is None:
        choices = ", ".join(sorted(SCENARIOS))
        raise ValueError(f"Unknown scenario '{name}'. Choose one of: {choices}")
    return scenario
