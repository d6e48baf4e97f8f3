from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from config import Stage, TestConfig


@dataclass(frozen=True)
class StageWindow:
    index: int
    start_s: float
    end_s: float
    from_target: int
    to_target: int


class RampScheduler:
    """Target VU count as a function of elapsed run time.

    Flat runs hold ``vus`` for ``duration``. Staged runs move from the previous
    stage's end target (0 before the first stage) to each stage's target over
    the stage's duration, interpolated linearly, or jump to the stage target
    as soon as the stage starts (``interpolation="step"``). Past the last
    stage the target is 0.
    """

    def __init__(
        self,
        stages: tuple[Stage, ...] = (),
        vus: Optional[int] = None,
        duration_s: Optional[float] = None,
        interpolation: str = "linear",
    ) -> None:
        if stages:
            self._windows = self._build_windows(stages)
        elif vus is not None and duration_s is not None:
            self._windows = [StageWindow(1, 0.0, float(duration_s), int(vus), int(vus))]
        else:
            raise ValueError("RampScheduler needs stages or vus and duration")
        self.interpolation = interpolation
        self.flat = not stages

    @classmethod
    def from_config(cls, config: TestConfig) -> RampScheduler:
        return cls(
            stages=config.stages,
            vus=config.vus,
            duration_s=config.duration_s,
            interpolation=config.interpolation,
        )

    @staticmethod
    def _build_windows(stages: tuple[Stage, ...]) -> list[StageWindow]:
        windows: list[StageWindow] = []
        start = 0.0
        previous_target = 0
        for index, stage in enumerate(stages, start=1):
            end = start + stage.duration_s
            windows.append(StageWindow(index, start, end, previous_target, stage.target))
            start = end
            previous_target = stage.target
        return windows

    @property
    def total_duration_s(self) -> float:
        return self._windows[-1].end_s

    @property
    def peak_vus(self) -> int:
        return max(max(w.from_target, w.to_target) for w in self._windows)

    @property
    def windows(self) -> list[StageWindow]:
        return list(self._windows)

    def stage_at(self, elapsed_s: float) -> Optional[StageWindow]:
        for window in self._windows:
            if window.start_s <= elapsed_s < window.end_s:
                return window
        return None

    def target_at(self, elapsed_s: float) -> int:
        if elapsed_s < 0:
            elapsed_s = 0.0
        window = self.stage_at(elapsed_s)
        if window is None:
            return 0
        if self.flat or self.interpolation == "step":
            return window.to_target
        span = window.end_s - window.start_s
        fraction = (elapsed_s - window.start_s) / span
        value = window.from_target + (window.to_target - window.from_target) * fraction
        return int(round(value))
