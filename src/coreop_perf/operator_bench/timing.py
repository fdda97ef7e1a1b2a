from __future__ import annotations

import statistics
import time
from collections.abc import Callable
from typing import Any

import attrs


@attrs.define(frozen=True, slots=True)
class TimingStats:
    """Per-call statistics for one timed pass (e.g. `Forward`)."""

    name: str
    calls: int
    total_ms: float
    mean_ms: float
    min_ms: float
    max_ms: float
    stddev_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "total_ms": self.total_ms,
            "mean_ms": self.mean_ms,
            "min_ms": self.min_ms,
            "max_ms": self.max_ms,
            "stddev_ms": self.stddev_ms,
        }


@attrs.define(slots=True)
class _Batch:
    calls: int
    elapsed_s: float


class TimingInstrument:
    """Accumulates timed batches per pass name.

    A batch is `calls` back-to-back invocations timed as one interval; the
    derived statistics are per call.
    """

    def __init__(self, clock: Callable[[], float] = time.perf_counter) -> None:
        self._clock = clock
        self._started: dict[str, float] = {}
        self._batches: dict[str, list[_Batch]] = {}

    def start(self, name: str) -> None:
        self._started[name] = self._clock()

    def stop(self, name: str, calls: int = 1) -> None:
        t0 = self._started.pop(name, None)
        if t0 is None:
            raise RuntimeError(f"TimingInstrument.stop({name!r}) called without start()")
        if calls < 1:
            raise ValueError(f"calls must be >= 1, got {calls}")
        self._batches.setdefault(name, []).append(_Batch(calls=calls, elapsed_s=self._clock() - t0))

    def names(self) -> list[str]:
        return list(self._batches)

    def stats(self, name: str) -> TimingStats | None:
        batches = self._batches.get(name)
        if not batches:
            return None
        calls = sum(b.calls for b in batches)
        total_ms = sum(b.elapsed_s for b in batches) * 1e3
        per_call = [b.elapsed_s * 1e3 / b.calls for b in batches]
        return TimingStats(
            name=name,
            calls=calls,
            total_ms=total_ms,
            mean_ms=total_ms / calls,
            min_ms=min(per_call),
            max_ms=max(per_call),
            stddev_ms=statistics.stdev(per_call) if len(per_call) > 1 else 0.0,
        )

    def format(self, label: str) -> str:
        lines = [f"Timing: {label}"]
        for name in self.names():
            s = self.stats(name)
            if s is None:
                continue
            lines.append(
                f"  {name:<8}: {s.calls} calls, {s.total_ms:.3f} ms total, {s.mean_ms:.4f} ms avg "
                f"(min {s.min_ms:.4f}, max {s.max_ms:.4f}, stddev {s.stddev_ms:.4f})"
            )
        return "\n".join(lines)
