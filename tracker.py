from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from schedule import SchedulePlan


class Phase(str, Enum):
    RAMP = "ramp"
    WARMUP = "warmup"
    STEADY = "steady"
    COOLDOWN = "cooldown"
    NONE = "none"


@dataclass(frozen=True)
class StepKey:
    step: int
    vus: int

    def tag_suffix(self) -> str:
        return f"{{step:{self.step},vus:{self.vus}}}"


@dataclass(frozen=True)
class PhaseClassification:
    phase: Phase
    step: Optional[int] = None
    vus: Optional[int] = None

    @property
    def is_steady(self) -> bool:
        return self.phase is Phase.STEADY

    @property
    def key(self) -> Optional[StepKey]:
        if self.step is None or self.vus is None:
            return None
        return StepKey(step=self.step, vus=self.vus)

    def request_tags(self) -> dict[str, str]:
        if self.key is None:
            return {"phase": self.phase.value}
        return {"step": str(self.step), "vus": str(self.vus), "phase": self.phase.value}

    def steady_tags(self) -> Optional[dict[str, str]]:
        if not self.is_steady:
            return None
        return {"step": str(self.step), "vus": str(self.vus)}


NO_STEP = PhaseClassification(phase=Phase.NONE)
COOLDOWN = PhaseClassification(phase=Phase.COOLDOWN)


def classify(plan: SchedulePlan, elapsed_seconds: float) -> PhaseClassification:
    elapsed = max(0.0, elapsed_seconds)
    # Steps number in the tens, so a linear scan keeps boundary ties unambiguous.
    for step in plan.steps:
        if elapsed < step.ramp_start:
            return NO_STEP
        if elapsed < step.warmup_start:
            return PhaseClassification(phase=Phase.RAMP, step=step.step, vus=step.vus)
        if elapsed < step.steady_start:
            return PhaseClassification(phase=Phase.WARMUP, step=step.step, vus=step.vus)
        if elapsed < step.steady_end:
            return PhaseClassification(phase=Phase.STEADY, step=step.step, vus=step.vus)
    return COOLDOWN


class StepTracker:
    """Classifies the current instant of a running scenario into its step and phase.

    Elapsed time is measured from ``start_time_fn()``, the unix timestamp at which
    the execution engine started the workload. When the engine has not reported a
    start (``start_time_fn`` is absent or returns None) the tracker falls back to
    its own construction time. That fallback is an approximation: every
    classification is skewed by the gap between building the tracker and the
    first worker iteration, and no upper bound on that gap is guaranteed.
    """

    def __init__(
        self,
        plan: SchedulePlan,
        start_time_fn: Optional[Callable[[], Optional[float]]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.plan = plan
        self._start_time_fn = start_time_fn
        self._clock = clock
        self._fallback_start = clock()

    @property
    def uses_fallback_start(self) -> bool:
        return self._engine_start() is None

    def _engine_start(self) -> Optional[float]:
        if self._start_time_fn is None:
            return None
        return self._start_time_fn()

    def elapsed_seconds(self) -> float:
        base = self._engine_start()
        if base is None:
            base = self._fallback_start
        return max(0.0, self._clock() - base)

    def current(self) -> PhaseClassification:
        return classify(self.plan, self.elapsed_seconds())
