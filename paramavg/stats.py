"""
paramavg Stats - Phase Timing Instrumentation

Training instrumentation is one cross-cutting observer invoked at fixed phase
boundaries of the training master, rather than conditional timing calls spread
through the control flow. When stats collection is off the master talks to a
NoOpObserver and nothing is recorded.

## Phases

| Phase        | Bracketed by the master around                          |
|--------------|---------------------------------------------------------|
| fit          | the whole execute_training() pass                       |
| split        | cutting the dataset into rounds                         |
| round        | one full round (repartition → apply)                    |
| repartition  | redistributing a round across workers                   |
| broadcast    | distributing the model snapshot                         |
| execute      | running local training on every partition              |
| aggregate    | the add/combine reduction of worker results             |
| apply        | averaging and writing the result into the global model  |

Per-minibatch fit times measured inside the workers come back with each
WorkerResult as WorkerStats and are merged into the report.

## Export

``StatsCollector.build()`` returns a TrainingStats report with per-phase
count/total/mean/min/max durations (seconds) computed with numpy.
"""

import json
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np


PHASES = (
    "fit",
    "split",
    "round",
    "repartition",
    "broadcast",
    "execute",
    "aggregate",
    "apply",
)


@dataclass(frozen=True)
class PhaseTiming:
    """One timed occurrence of a phase."""

    phase: str
    start_time: float  # wall clock, seconds since epoch
    duration: float  # seconds
    detail: Optional[int] = None  # e.g. partition count for rounds


def _summarize(durations) -> Dict[str, float]:
    values = np.asarray(durations, dtype=np.float64)
    if values.size == 0:
        return {"count": 0, "total": 0.0, "mean": 0.0, "min": 0.0, "max": 0.0}
    return {
        "count": int(values.size),
        "total": float(values.sum()),
        "mean": float(values.mean()),
        "min": float(values.min()),
        "max": float(values.max()),
    }


@dataclass
class WorkerStats:
    """
    Timing collected inside workers and merged along with their results.

    Attributes:
        init_durations: Seconds spent building each worker's private model
        fit_durations: Seconds per fitted minibatch, across all workers
        num_examples: Total examples fitted
        num_workers: Number of worker results merged into this object
    """

    init_durations: List[float] = field(default_factory=list)
    fit_durations: List[float] = field(default_factory=list)
    num_examples: int = 0
    num_workers: int = 1

    @property
    def num_batches(self) -> int:
        return len(self.fit_durations)

    def merge(self, other: Optional["WorkerStats"]) -> "WorkerStats":
        """Return a new WorkerStats holding both sets of measurements."""
        if other is None:
            return self
        return WorkerStats(
            init_durations=self.init_durations + other.init_durations,
            fit_durations=self.fit_durations + other.fit_durations,
            num_examples=self.num_examples + other.num_examples,
            num_workers=self.num_workers + other.num_workers,
        )

    def summary(self) -> Dict[str, object]:
        return {
            "num_workers": self.num_workers,
            "num_batches": self.num_batches,
            "num_examples": self.num_examples,
            "init": _summarize(self.init_durations),
            "fit": _summarize(self.fit_durations),
        }


@dataclass
class TrainingStats:
    """
    Report of everything recorded during one or more training passes.
    """

    timings: Dict[str, List[PhaseTiming]]
    worker_stats: Optional[WorkerStats] = None

    def durations(self, phase: str) -> List[float]:
        return [timing.duration for timing in self.timings.get(phase, [])]

    def summary(self) -> Dict[str, Dict[str, float]]:
        return OrderedDict((phase, _summarize(self.durations(phase))) for phase in PHASES)

    def to_dict(self) -> Dict[str, object]:
        return {
            "phases": self.summary(),
            "timings": {
                phase: [
                    {
                        "start_time": t.start_time,
                        "duration": t.duration,
                        "detail": t.detail,
                    }
                    for t in timings
                ]
                for phase, timings in self.timings.items()
            },
            "workers": self.worker_stats.summary() if self.worker_stats is not None else None,
        }

    def as_string(self) -> str:
        lines = ["Parameter averaging training stats"]
        for phase, summary in self.summary().items():
            if summary["count"] == 0:
                continue
            lines.append(
                f"  {phase:<12} count={summary['count']:<5} total={summary['total']:.4f}s "
                f"mean={summary['mean']:.4f}s min={summary['min']:.4f}s max={summary['max']:.4f}s"
            )
        if self.worker_stats is not None:
            fit = _summarize(self.worker_stats.fit_durations)
            lines.append(
                f"  {'worker fit':<12} count={fit['count']:<5} total={fit['total']:.4f}s "
                f"mean={fit['mean']:.4f}s examples={self.worker_stats.num_examples}"
            )
        return "\n".join(lines)

    def export_json(self, path: str) -> None:
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)


class TrainingObserver:
    """
    Phase-boundary hooks called by the training master.

    Every hook is a no-op here; NoOpObserver is this class, StatsCollector
    overrides the hooks to record timings.
    """

    def on_fit_start(self):
        pass

    def on_fit_end(self, total_objects: int):
        pass

    def on_split_start(self):
        pass

    def on_split_end(self):
        pass

    def on_round_start(self):
        pass

    def on_round_end(self, num_partitions: int):
        pass

    def on_repartition_start(self):
        pass

    def on_repartition_end(self):
        pass

    def on_broadcast_start(self):
        pass

    def on_broadcast_end(self):
        pass

    def on_execute_start(self):
        pass

    def on_execute_end(self):
        pass

    def on_aggregate_start(self):
        pass

    def on_aggregate_end(self):
        pass

    def on_apply_start(self):
        pass

    def on_apply_end(self):
        pass

    def add_worker_stats(self, worker_stats: Optional[WorkerStats]):
        pass

    def build(self) -> Optional[TrainingStats]:
        return None


NoOpObserver = TrainingObserver


class StatsCollector(TrainingObserver):
    """
    Observer that records wall-clock start and duration of every phase.

    A phase ``end`` without a matching ``start`` raises RuntimeError, since it
    means the master's bracketing is broken.
    """

    def __init__(self):
        self._open: Dict[str, tuple] = {}
        self._timings: Dict[str, List[PhaseTiming]] = OrderedDict((p, []) for p in PHASES)
        self._worker_stats: Optional[WorkerStats] = None

    def _start(self, phase: str):
        self._open[phase] = (time.time(), time.perf_counter())

    def _end(self, phase: str, detail: Optional[int] = None):
        try:
            wall_start, perf_start = self._open.pop(phase)
        except KeyError:
            raise RuntimeError(f"Phase '{phase}' ended without being started")
        self._timings[phase].append(
            PhaseTiming(
                phase=phase,
                start_time=wall_start,
                duration=time.perf_counter() - perf_start,
                detail=detail,
            )
        )

    def on_fit_start(self):
        # Phases left open by an aborted pass are discarded
        self._open.clear()
        self._start("fit")

    def on_fit_end(self, total_objects: int):
        self._end("fit", total_objects)

    def on_split_start(self):
        self._start("split")

    def on_split_end(self):
        self._end("split")

    def on_round_start(self):
        self._start("round")

    def on_round_end(self, num_partitions: int):
        self._end("round", num_partitions)

    def on_repartition_start(self):
        self._start("repartition")

    def on_repartition_end(self):
        self._end("repartition")

    def on_broadcast_start(self):
        self._start("broadcast")

    def on_broadcast_end(self):
        self._end("broadcast")

    def on_execute_start(self):
        self._start("execute")

    def on_execute_end(self):
        self._end("execute")

    def on_aggregate_start(self):
        self._start("aggregate")

    def on_aggregate_end(self):
        self._end("aggregate")

    def on_apply_start(self):
        self._start("apply")

    def on_apply_end(self):
        self._end("apply")

    def add_worker_stats(self, worker_stats: Optional[WorkerStats]):
        if worker_stats is None:
            return
        if self._worker_stats is None:
            self._worker_stats = worker_stats
        else:
            self._worker_stats = self._worker_stats.merge(worker_stats)

    def build(self) -> TrainingStats:
        return TrainingStats(
            timings=OrderedDict((p, list(t)) for p, t in self._timings.items()),
            worker_stats=self._worker_stats,
        )
