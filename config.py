"""Environment configuration for capacity runs."""

from __future__ import annotations

from typing import Optional

from pydantic_settings import BaseSettings


class LoadTestSettings(BaseSettings):
    api_base_url: str = "http://localhost:7070"
    ws_url: str = "ws://localhost:7000/ws"
    metrics_url: Optional[str] = None

    # Ramping capacity sweep
    start_vus: int = 10
    end_vus: int = 100
    step_vus: int = 10
    step_duration: str = "1m"
    ramp_duration: str = "30s"
    warmup_duration: str = "20s"

    # Fixed concurrency, used when VUS is set
    vus: Optional[int] = None
    duration: str = "5m"

    slo_p95_ms: float = 500.0
    slo_p99_ms: Optional[float] = None
    slo_error_rate: float = 0.01
    slo_timeout_rate: float = 0.0

    request_timeout_s: float = 60.0
    report_dir: str = "reports"
    log_level: str = "INFO"

    model_config = {
        "env_prefix": "",
        "env_file": ".env",
        "env_ignore_empty": True,
        "extra": "ignore",
    }
