"""Shared fixtures for the capacity load test suite."""

from __future__ import annotations

import itertools
from typing import Any, Callable, Optional

import pytest

from loadgen import RequestRecord
from schedule import ScheduleConfig, SchedulePlan, build_schedule

_request_ids = itertools.count(1)


@pytest.fixture
def small_plan() -> SchedulePlan:
    return build_schedule(
        ScheduleConfig(
            start_vus=10,
            end_vus=30,
            step_vus=10,
            ramp_duration="10s",
            warmup_duration="5s",
            steady_duration="20s",
        )
    )


@pytest.fixture
def make_record() -> Callable[..., RequestRecord]:
    def _make(
        status: Optional[int] = 200,
        duration_ms: float = 50.0,
        timed_out: bool = False,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
        api_code: Optional[int] = 0,
        name: str = "push",
        data: Any = None,
    ) -> RequestRecord:
        return RequestRecord(
            request_id=f"req-{next(_request_ids)}",
            name=name,
            phase="steady",
            step=1,
            vus=10,
            worker_id=0,
            start_time_unix_ms=1_700_000_000_000,
            end_time_unix_ms=1_700_000_000_000 + int(duration_ms),
            duration_ms=duration_ms,
            http_status=status,
            timed_out=timed_out,
            error=error,
            error_code=error_code,
            api_code=api_code,
            data=data,
        )

    return _make
