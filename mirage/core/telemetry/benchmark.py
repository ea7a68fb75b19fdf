"""Pipeline telemetry.

The scheduler reports iteration and stage boundaries through the
`TelemetryCollector` interface. `NullCollector` ignores them;
`BenchmarkCollector` records one `BenchmarkSample` per iteration while a
benchmark is running and summarizes them at the end.

In parallel mode a stage run may start in one iteration and finish several
iterations later; its duration is attributed to the iteration in which the
stage ended.
"""

from __future__ import annotations

import csv
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Protocol

import numpy as np

logger = logging.getLogger(__name__)

STAGES = ("segmentation", "depth", "inpainting", "postprocessing")
# Stages whose execution is flagged per sample (post-processing runs every iteration).
MODEL_STAGES = ("segmentation", "depth", "inpainting")


class TelemetryCollector(Protocol):
    def start_iteration(self) -> None: ...

    def end_iteration(self) -> None: ...

    def start_stage(self, name: str) -> None: ...

    def end_stage(self, name: str) -> None: ...


class NullCollector:
    """Collector that records nothing."""

    def start_iteration(self) -> None:
        return None

    def end_iteration(self) -> None:
        return None

    def start_stage(self, name: str) -> None:
        return None

    def end_stage(self, name: str) -> None:
        return None


@dataclass(frozen=True)
class BenchmarkSample:
    """One pipeline iteration. Durations are seconds."""

    timestamp: float
    segmentation_s: float
    depth_s: float
    inpainting_s: float
    postprocessing_s: float
    iteration_s: float
    fps: float
    segmentation_ran: bool
    depth_ran: bool
    inpainting_ran: bool
    segmentation_rate: float
    depth_rate: float
    inpainting_rate: float


CSV_COLUMNS = tuple(f.name for f in fields(BenchmarkSample))

# Metrics summarized by `statistics()`.
METRICS = ("segmentation_s", "depth_s", "inpainting_s", "postprocessing_s", "iteration_s", "fps")


def _percentiles(values: list[float]) -> dict[str, float]:
    """Compute a small set of summary statistics for a list of values."""

    if not values:
        return {"min": 0.0, "p50": 0.0, "p95": 0.0, "p99": 0.0, "max": 0.0, "mean": 0.0, "std": 0.0}
    arr = np.array(values, dtype=np.float64)
    return {
        "min": float(np.min(arr)),
        "p50": float(np.percentile(arr, 50)),
        "p95": float(np.percentile(arr, 95)),
        "p99": float(np.percentile(arr, 99)),
        "max": float(np.max(arr)),
        "mean": float(np.mean(arr)),
        "std": float(np.std(arr)),
    }


class BenchmarkCollector:
    """Records per-iteration timings between `start()` and `stop()`.

    Args:
        rate_provider: returns the current update rate per model stage; the
            values are copied into every sample.
        clock: monotonic clock in seconds (injectable for tests).
    """

    def __init__(
        self,
        rate_provider: Callable[[], dict[str, float]] | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._rate_provider = rate_provider
        self._clock = clock
        self.duration_s = 60.0
        self.samples: list[BenchmarkSample] = []
        self.discarded = 0
        self._benchmarking = False
        self._started_at = 0.0
        self._stopped_at: float | None = None
        self._iteration_started_at: float | None = None
        self._last_iteration_end: float | None = None
        self._stage_started: dict[str, float] = {}
        self._stage_durations: dict[str, float] = {}
        self._stage_ran: set[str] = set()

    @property
    def is_benchmarking(self) -> bool:
        return self._benchmarking

    @property
    def elapsed_s(self) -> float:
        if self._stopped_at is not None and not self._benchmarking:
            return self._stopped_at - self._started_at
        return self._clock() - self._started_at

    def set_rate_provider(self, provider: Callable[[], dict[str, float]] | None) -> None:
        self._rate_provider = provider

    def start(self, duration_s: float = 60.0) -> None:
        """Clear previous results and start recording for `duration_s` seconds."""

        if self._benchmarking:
            logger.warning("Benchmark is already running")
            return
        if duration_s <= 0:
            raise ValueError("duration_s must be > 0")
        self.duration_s = float(duration_s)
        self.samples = []
        self.discarded = 0
        self._stage_started = {}
        self._stage_durations = {}
        self._stage_ran = set()
        self._iteration_started_at = None
        self._last_iteration_end = None
        self._stopped_at = None
        self._started_at = self._clock()
        self._benchmarking = True
        logger.info("Benchmark started for %.1fs", self.duration_s)

    def stop(self) -> None:
        if not self._benchmarking:
            logger.warning("No benchmark is currently running")
            return
        self._benchmarking = False
        self._stopped_at = self._clock()
        logger.info(
            "Benchmark stopped after %.2fs (%d samples, %d discarded)",
            self._stopped_at - self._started_at,
            len(self.samples),
            self.discarded,
        )
        logger.info("%s", self.report())

    def start_iteration(self) -> None:
        if not self._benchmarking:
            return
        self._iteration_started_at = self._clock()

    def start_stage(self, name: str) -> None:
        if not self._benchmarking:
            return
        self._stage_started[name] = self._clock()

    def end_stage(self, name: str) -> None:
        if not self._benchmarking:
            return
        started = self._stage_started.pop(name, None)
        if started is None:
            # Stage started before the benchmark.
            return
        now = self._clock()
        duration = now - started
        if not self._sane(name, duration, now):
            return
        self._stage_durations[name] = self._stage_durations.get(name, 0.0) + duration
        self._stage_ran.add(name)

    def end_iteration(self) -> None:
        if not self._benchmarking:
            return
        now = self._clock()
        started = self._iteration_started_at
        self._iteration_started_at = None
        durations = self._stage_durations
        ran = self._stage_ran
        self._stage_durations = {}
        self._stage_ran = set()

        if started is not None:
            iteration = now - started
            if self._sane("iteration", iteration, now):
                previous = self._last_iteration_end
                frame_time = (now - previous) if previous is not None else iteration
                rates = self._rates()
                self.samples.append(
                    BenchmarkSample(
                        timestamp=now - self._started_at,
                        segmentation_s=durations.get("segmentation", 0.0),
                        depth_s=durations.get("depth", 0.0),
                        inpainting_s=durations.get("inpainting", 0.0),
                        postprocessing_s=durations.get("postprocessing", 0.0),
                        iteration_s=iteration,
                        fps=(1.0 / frame_time) if frame_time > 0 else 0.0,
                        segmentation_ran="segmentation" in ran,
                        depth_ran="depth" in ran,
                        inpainting_ran="inpainting" in ran,
                        segmentation_rate=rates.get("segmentation", 0.0),
                        depth_rate=rates.get("depth", 0.0),
                        inpainting_rate=rates.get("inpainting", 0.0),
                    )
                )
        self._last_iteration_end = now

        if now - self._started_at >= self.duration_s:
            self.stop()

    def _sane(self, name: str, duration: float, now: float) -> bool:
        elapsed = now - self._started_at
        if duration < 0 or duration > elapsed:
            self.discarded += 1
            logger.warning(
                "Discarding %s timing %.6fs (benchmark elapsed %.6fs)",
                name,
                duration,
                elapsed,
            )
            return False
        return True

    def _rates(self) -> dict[str, float]:
        if self._rate_provider is None:
            return {}
        return {k: float(v) for k, v in self._rate_provider().items()}

    def statistics(self) -> dict[str, dict[str, float]]:
        """Summary statistics per metric.

        Stage metrics only include iterations in which that stage actually ran.
        """

        out: dict[str, dict[str, float]] = {}
        for metric in METRICS:
            stage = metric[: -len("_s")] if metric.endswith("_s") else metric
            if stage in MODEL_STAGES:
                values = [getattr(s, metric) for s in self.samples if getattr(s, f"{stage}_ran")]
            else:
                values = [getattr(s, metric) for s in self.samples]
            out[metric] = _percentiles(values)
        return out

    def report(self) -> str:
        """Human-readable summary of the recorded samples."""

        if not self.samples:
            return "No benchmark data collected."
        stats = self.statistics()
        iteration_mean = stats["iteration_s"]["mean"]
        lines = [
            "=== BENCHMARK RESULTS ===",
            f"Total duration: {self.elapsed_s:.2f}s",
            f"Total iterations: {len(self.samples)}",
            f"Discarded timings: {self.discarded}",
            f"Average pipeline FPS: {(1.0 / iteration_mean) if iteration_mean > 0 else 0.0:.2f}",
        ]
        for metric in METRICS:
            s = stats[metric]
            lines.append("")
            lines.append(f"{metric}:")
            lines.append(f"  mean {s['mean']:.4f}  min {s['min']:.4f}  max {s['max']:.4f}  std {s['std']:.4f}")
            lines.append(f"  p50 {s['p50']:.4f}  p95 {s['p95']:.4f}  p99 {s['p99']:.4f}")
        return "\n".join(lines)

    def write_csv(self, path: str | Path) -> Path:
        """Write all samples to `path` (one row per iteration) and return the path."""

        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        with open(out, "w", encoding="utf-8", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=list(CSV_COLUMNS))
            writer.writeheader()
            for sample in self.samples:
                writer.writerow(asdict(sample))
        return out

    def to_dict(self) -> dict[str, Any]:
        return {
            "benchmarking": self._benchmarking,
            "duration_s": self.duration_s,
            "elapsed_s": self.elapsed_s if self._started_at else 0.0,
            "samples": len(self.samples),
            "discarded": self.discarded,
            "statistics": self.statistics(),
        }
