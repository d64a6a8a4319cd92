"""Wall clock timings for the stages of one pipeline run."""

from dataclasses import dataclass, field
from time import perf_counter_ns
from typing import Dict, Optional

from shipyard.core.models import StageName


@dataclass
class StageTimer:
    started_ns: int = field(default_factory=perf_counter_ns)
    running: Dict[StageName, int] = field(default_factory=dict)
    durations_ms: Dict[StageName, float] = field(default_factory=dict)
    finished_ns: Optional[int] = None

    def start(self, stage: StageName) -> None:
        self.running[stage] = perf_counter_ns()

    def stop(self, stage: StageName) -> float:
        """Close ``stage`` and return its duration in ms; 0.0 if it never started."""
        started = self.running.pop(stage, None)
        if started is None:
            return 0.0
        duration_ms = (perf_counter_ns() - started) / 1_000_000.0
        self.durations_ms[stage] = duration_ms
        return duration_ms

    def finish(self) -> None:
        self.finished_ns = perf_counter_ns()

    @property
    def total_ms(self) -> Optional[float]:
        if self.finished_ns is None:
            return None
        return (self.finished_ns - self.started_ns) / 1_000_000.0

    def to_dict(self) -> Dict[str, object]:
        """Timings keyed by stage name, in pipeline order."""
        ordered = [s for s in StageName if s in self.durations_ms]
        return {
            "total_ms": self.total_ms,
            "stages_ms": {s.value: self.durations_ms[s] for s in ordered},
        }
