from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any, Optional


COOLDOWN_SECONDS = 30.0

_DURATION_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)$")
_UNIT_SECONDS = {
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: Optional[str]) -> float:
    # Malformed input degrades to 0 so schedule math never halts mid-build.
    if not value:
        return 0.0
    match = _DURATION_PATTERN.match(str(value).strip())
    if not match:
        return 0.0
    amount = float(match.group(1))
    unit = match.group(2)
    if unit == "ms":
        return amount / 1000.0
    multiplier = _UNIT_SECONDS.get(unit)
    if multiplier is None:
        return 0.0
    return amount * multiplier


def parse_duration_strict(value: str, label: str = "duration") -> float:
    if not _DURATION_PATTERN.match(str(value).strip()):
        raise ValueError(
            f"Invalid {label} '{value}'. Expected <number><unit> with unit in ms, s, m, h."
        )
    return parse_duration(value)


@dataclass(frozen=True)
class ScheduleConfig:
    start_vus: int
    end_vus: int
    step_vus: int
    ramp_duration: str = "30s"
    warmup_duration: str = "20s"
    steady_duration: str = "1m"

    def __post_init__(self) -> None:
        if self.step_vus <= 0:
            raise ValueError(f"step_vus must be > 0, got {self.step_vus}")
        if self.start_vus < 1:
            raise ValueError(f"start_vus must be >= 1, got {self.start_vus}")
        if self.start_vus > self.end_vus:
            raise ValueError(
                f"start_vus must be <= end_vus, got {self.start_vus} > {self.end_vus}"
            )


@dataclass(frozen=True)
class Step:
    step: int
    vus: int
    ramp_start: float
    warmup_start: float
    steady_start: float
    steady_end: float
    steady_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Step:
        return cls(
            step=int(payload["step"]),
            vus=int(payload["vus"]),
            ramp_start=float(payload["ramp_start"]),
            warmup_start=float(payload["warmup_start"]),
            steady_start=float(payload["steady_start"]),
            steady_end=float(payload["steady_end"]),
            steady_seconds=float(payload["steady_seconds"]),
        )


@dataclass(frozen=True)
class Stage:
    duration_s: float
    target: int


@dataclass(frozen=True)
class SchedulePlan:
    steps: tuple[Step, ...]
    ramp_seconds: float
    warmup_seconds: float
    steady_seconds: float
    total_seconds: float
    fixed: bool = False

    def step_seconds(self, step: Step) -> float:
        return step.steady_seconds or self.steady_seconds or 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "steps": [step.to_dict() for step in self.steps],
            "ramp_seconds": self.ramp_seconds,
            "warmup_seconds": self.warmup_seconds,
            "steady_seconds": self.steady_seconds,
            "total_seconds": self.total_seconds,
            "fixed": self.fixed,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SchedulePlan:
        return cls(
            steps=tuple(Step.from_dict(item) for item in payload.get("steps", [])),
            ramp_seconds=float(payload.get("ramp_seconds", 0.0)),
            warmup_seconds=float(payload.get("warmup_seconds", 0.0)),
            steady_seconds=float(payload.get("steady_seconds", 0.0)),
            total_seconds=float(payload.get("total_seconds", 0.0)),
            fixed=bool(payload.get("fixed", False)),
        )


def build_schedule(config: ScheduleConfig) -> SchedulePlan:
    ramp_seconds = parse_duration(config.ramp_duration)
    warmup_seconds = parse_duration(config.warmup_duration)
    steady_seconds = parse_duration(config.steady_duration)

    steps: list[Step] = []
    elapsed = 0.0
    step_index = 0
    for vus in range(config.start_vus, config.end_vus + 1, config.step_vus):
        step_index += 1
        ramp_start = elapsed
        warmup_start = ramp_start + ramp_seconds
        steady_start = warmup_start + warmup_seconds
        steady_end = steady_start + steady_seconds
        steps.append(
            Step(
                step=step_index,
                vus=vus,
                ramp_start=ramp_start,
                warmup_start=warmup_start,
                steady_start=steady_start,
                steady_end=steady_end,
                steady_seconds=steady_seconds,
            )
        )
        elapsed = steady_end

    return SchedulePlan(
        steps=tuple(steps),
        ramp_seconds=ramp_seconds,
        warmup_seconds=warmup_seconds,
        steady_seconds=steady_seconds,
        total_seconds=elapsed,
    )


def build_fixed_schedule(duration: str, warmup_duration: str, vus: int) -> SchedulePlan:
    if vus < 1:
        raise ValueError(f"vus must be >= 1, got {vus}")
    total_seconds = parse_duration(duration)
    # A warmup longer than the run leaves an empty steady window, not an inverted one.
    warmup_seconds = min(parse_duration(warmup_duration), total_seconds)
    steady_seconds = max(total_seconds - warmup_seconds, 0.0)
    step = Step(
        step=1,
        vus=vus,
        ramp_start=0.0,
        warmup_start=0.0,
        steady_start=warmup_seconds,
        steady_end=total_seconds,
        steady_seconds=steady_seconds,
    )
    return SchedulePlan(
        steps=(step,),
        ramp_seconds=0.0,
        warmup_seconds=warmup_seconds,
        steady_seconds=steady_seconds,
        total_seconds=total_seconds,
        fixed=True,
    )


def build_stages(plan: SchedulePlan, cooldown: bool = True) -> list[Stage]:
    stages: list[Stage] = []
    for step in plan.steps:
        stages.append(Stage(duration_s=step.warmup_start - step.ramp_start, target=step.vus))
        warmup_s = step.steady_start - step.warmup_start
        if warmup_s > 0:
            stages.append(Stage(duration_s=warmup_s, target=step.vus))
        stages.append(Stage(duration_s=step.steady_end - step.steady_start, target=step.vus))
    if cooldown:
        stages.append(Stage(duration_s=COOLDOWN_SECONDS, target=0))
    return stages


def scale_stages(stages: list[Stage], ratio: float) -> list[Stage]:
    return [
        Stage(duration_s=stage.duration_s, target=int(stage.target * ratio))
        for stage in stages
    ]


def describe_stages(stages: list[Stage]) -> list[str]:
    return [
        f"Stage {index}: {stage.duration_s:g}s -> {stage.target} VUs"
        for index, stage in enumerate(stages, start=1)
    ]


def summarize_plan(plan: SchedulePlan) -> dict[str, Any]:
    return {
        "steps": len(plan.steps),
        "first_vus": plan.steps[0].vus if plan.steps else None,
        "last_vus": plan.steps[-1].vus if plan.steps else None,
        "total_seconds": plan.total_seconds,
        "windows": [
            f"step {step.step} @ {step.vus} VUs: ramp {step.ramp_start:g}s, "
            f"warmup {step.warmup_start:g}s, steady {step.steady_start:g}s-{step.steady_end:g}s"
            for step in plan.steps
        ],
    }
