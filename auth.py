from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from loadgen import RequestSettings, execute_http_request

logger = structlog.get_logger()

DEFAULT_PASSWORD = "loadtest123"


@dataclass(frozen=True)
class LoadTestUser:
    user_name: str
    password: str
    auth_token: str


async def _token_request(
    client: httpx.AsyncClient,
    settings: RequestSettings,
    path: str,
    name: str,
    user_name: str,
    password: str,
) -> Optional[str]:
    record = await execute_http_request(
        client,
        settings,
        path,
        {"userName": user_name, "passWord": password},
        name=name,
        tags={"phase": "setup"},
    )
    if record.ok and record.data:
        return str(record.data)
    return None


async def register_user(
    client: httpx.AsyncClient,
    settings: RequestSettings,
    user_name: str,
    password: str = DEFAULT_PASSWORD,
) -> Optional[str]:
    return await _token_request(client, settings, "/user/register", "register", user_name, password)


async def login_user(
    client: httpx.AsyncClient,
    settings: RequestSettings,
    user_name: str,
    password: str = DEFAULT_PASSWORD,
) -> Optional[str]:
    return await _token_request(client, settings, "/user/login", "login", user_name, password)


async def create_test_users(
    client: httpx.AsyncClient,
    settings: RequestSettings,
    count: int,
    prefix: str = "loadtest",
) -> list[LoadTestUser]:
    timestamp_ms = int(time.time() * 1000)
    users: list[LoadTestUser] = []
    for index in range(count):
        user_name = f"{prefix}_{index}_{timestamp_ms}"
        token = await register_user(client, settings, user_name)
        if token:
            users.append(LoadTestUser(user_name=user_name, password=DEFAULT_PASSWORD, auth_token=token))
    logger.info("test_users_created", created=len(users), requested=count, prefix=prefix)
    return users
