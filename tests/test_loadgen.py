"""Tests for the HTTP and WebSocket request primitives."""

from __future__ import annotations

import asyncio
import json
import random
import socket

import httpx
import pytest
from websockets.asyncio.server import serve

from loadgen import (
    WS_SWITCHING_PROTOCOLS,
    RequestSettings,
    execute_http_request,
    open_websocket_session,
    percentile,
    random_between,
    vu_loop,
)
from recorder import is_failed, is_timeout

STEADY_TAGS = {"step": "2", "vus": "20", "phase": "steady"}


def _settings(ws_url: str = "ws://127.0.0.1:1/ws") -> RequestSettings:
    return RequestSettings(
        base_url="http://backend.test/",
        ws_url=ws_url,
        timeout_s=1.0,
        ws_open_timeout_s=1.0,
    )


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestHelpers:
    def test_percentile(self):
        assert percentile([], 95) is None
        assert percentile([5.0], 99) == 5.0
        assert percentile([1.0, 2.0, 3.0, 4.0], 50) == pytest.approx(2.5)
        assert percentile([10.0, 20.0], 0) == 10.0
        assert percentile([10.0, 20.0], 100) == 20.0

    def test_random_between(self):
        rng = random.Random(7)
        values = [random_between(rng, 0.05, 0.15) for _ in range(200)]
        assert all(0.05 <= value <= 0.15 for value in values)


class TestExecuteHttpRequest:
    async def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"code": 0, "data": "token-1"})

        async with _client(handler) as client:
            record = await execute_http_request(
                client,
                _settings(),
                "/user/login",
                {"userName": "a", "passWord": "b"},
                name="login",
                tags=STEADY_TAGS,
                worker_id=3,
            )

        assert seen == {
            "url": "http://backend.test/user/login",
            "body": {"userName": "a", "passWord": "b"},
        }
        assert record.ok
        assert record.data == "token-1"
        assert (record.step, record.vus, record.phase, record.worker_id) == (2, 20, "steady", 3)
        assert "data" not in record.to_dict()
        assert record.to_dict()["ok"] is True

    async def test_server_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="boom")

        async with _client(handler) as client:
            record = await execute_http_request(client, _settings(), "/push/push", {}, name="push")

        assert record.http_status == 500
        assert record.error is None
        assert record.response_excerpt == "boom"
        assert record.api_code is None
        assert not record.ok
        assert record.phase == "none"

    async def test_error_body_mentioning_timeout_is_not_a_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"code": 1, "message": "redis timeout"})

        async with _client(handler) as client:
            record = await execute_http_request(client, _settings(), "/push/push", {}, name="push")

        assert record.http_status == 500
        assert "redis timeout" in record.response_excerpt
        assert not record.timed_out
        assert not is_timeout(record)
        assert is_failed(record)

    async def test_application_error_code(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"code": 1, "msg": "bad token"})

        async with _client(handler) as client:
            record = await execute_http_request(client, _settings(), "/user/checkAuth", {}, name="c")

        assert record.http_status == 200
        assert record.api_code == 1
        assert record.error is None
        assert not record.ok

    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with _client(handler) as client:
            record = await execute_http_request(client, _settings(), "/push/count", {}, name="count")

        assert record.timed_out
        assert record.http_status is None
        assert record.error_code == "ReadTimeout"

    async def test_connect_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            record = await execute_http_request(client, _settings(), "/push/count", {}, name="count")

        assert not record.timed_out
        assert record.error_code == "ConnectError"
        assert record.error == "refused"


class TestWebSocketSession:
    async def test_connect_hello_and_hold(self):
        hellos = []

        async def handler(connection):
            hellos.append(json.loads(await connection.recv()))
            await connection.send("welcome")
            await connection.send("room update")
            await connection.wait_closed()

        connected = []

        async def on_connected(record):
            connected.append(record)

        async with serve(handler, "127.0.0.1", 0) as server:
            port = list(server.sockets)[0].getsockname()[1]
            record = await open_websocket_session(
                _settings(f"ws://127.0.0.1:{port}/ws"),
                {"authToken": "tok", "roomId": 3},
                hold_s=0.3,
                tags=STEADY_TAGS,
                on_connected=on_connected,
            )

        assert hellos == [{"authToken": "tok", "roomId": 3}]
        assert record.http_status == WS_SWITCHING_PROTOCOLS
        assert record.messages_received == 2
        assert record.error is None
        assert record.ok
        assert len(connected) == 1
        assert connected[0].http_status == WS_SWITCHING_PROTOCOLS
        assert connected[0].duration_ms == record.duration_ms

    async def test_refused_connection(self):
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]

        connected = []

        async def on_connected(record):
            connected.append(record)

        record = await open_websocket_session(
            _settings(f"ws://127.0.0.1:{port}/ws"), {}, hold_s=0.1, on_connected=on_connected
        )

        assert record.http_status is None
        assert record.error is not None
        assert not record.ok
        assert connected == []


class TestVuLoop:
    async def test_keeps_going_after_failed_iteration(self):
        stop = asyncio.Event()
        calls = []

        async def iteration(worker_id: int, index: int) -> None:
            calls.append((worker_id, index))
            if index == 0:
                raise RuntimeError("boom")
            if index == 2:
                stop.set()

        await asyncio.wait_for(vu_loop(4, stop, iteration), timeout=5)
        assert calls == [(4, 0), (4, 1), (4, 2)]

    async def test_cancellation_propagates(self):
        stop = asyncio.Event()

        async def iteration(worker_id: int, index: int) -> None:
            await asyncio.sleep(10)

        task = asyncio.create_task(vu_loop(0, stop, iteration))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
