"""Inference stage runner.

Each stage is an explicit state machine driven by an external loop:

    IDLE -> RUNNING -> PENDING_READBACK -> OUTPUTS_READY -> IDLE

`tick()` advances a bounded slice of work (a layer budget derived from the
update rate) and reports where the stage is, so several stages can share one
device without blocking each other or the control loop. A stage stuck past its
bounded wait becomes FAILED and is skipped until it is resubmitted.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

import numpy as np

from mirage.core.errors import StageBusyError, StageStateError
from mirage.core.models.base import InferenceModel, ReadbackRequest
from mirage.core.types import Frame

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StageStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PENDING_READBACK = "pending_readback"
    OUTPUTS_READY = "outputs_ready"
    FAILED = "failed"


_BUSY = {StageStatus.RUNNING, StageStatus.PENDING_READBACK, StageStatus.OUTPUTS_READY}


@dataclass(frozen=True)
class ScheduleHandle:
    """Identifies one submitted run of a stage."""

    stage: str
    run_id: int
    submitted_at: float


def clamp_count(stage: str, counts: dict[str, int], maximum: int) -> int:
    """Return the smallest of the correlated counts, capped at `maximum`.

    Mismatching counts are logged; the pipeline keeps going with the clamped
    value.
    """

    values = [max(0, int(v)) for v in counts.values()]
    n = min(values) if values else 0
    if len(set(values)) > 1:
        logger.warning("%s: inconsistent output counts %s, clamping to %d", stage, counts, n)
    return min(n, int(maximum))


class StageRunner(ABC, Generic[T]):
    """Asynchronous executor for one model.

    Subclasses convert a frame (plus auxiliary inputs) into model inputs
    (`prepare_inputs`) and raw output tensors into the stage result
    (`postprocess`).
    """

    name = "stage"

    def __init__(
        self,
        model: InferenceModel,
        *,
        enabled: bool = True,
        update_rate: float = 1.0,
        timeout_s: float = 5.0,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.model = model
        self.enabled = enabled
        self.update_rate = 1.0
        self.set_update_rate(update_rate)
        self.timeout_s = float(timeout_s)
        self._clock = clock
        self._status = StageStatus.IDLE
        self._schedule: Iterator[None] | None = None
        self._readbacks: dict[str, ReadbackRequest] = {}
        self._started_at = 0.0
        self._run_id = 0
        self.last_duration_s: float | None = None
        self.last_error: str | None = None

    @property
    def status(self) -> StageStatus:
        return self._status

    @property
    def is_busy(self) -> bool:
        return self._status in _BUSY

    @property
    def layers_per_tick(self) -> int:
        return max(1, int(self.model.layer_count * self.update_rate))

    def set_update_rate(self, rate: float) -> None:
        """Set the fraction of layers evaluated per tick (clamped to [0, 1])."""

        self.update_rate = min(1.0, max(0.0, float(rate)))

    @abstractmethod
    def prepare_inputs(self, frame: Frame, *aux: Any) -> tuple[np.ndarray, ...]:
        """Build the model input tensors for one run."""

        raise NotImplementedError

    @abstractmethod
    def postprocess(self, outputs: dict[str, np.ndarray]) -> T:
        """Turn raw output tensors into the stage result."""

        raise NotImplementedError

    def submit(self, frame: Frame, *aux: Any) -> ScheduleHandle | None:
        """Begin a run.

        Returns None without doing anything when the stage is disabled. Raises
        `StageBusyError` when the previous run has not been consumed yet.
        """

        if not self.enabled:
            return None
        if self.is_busy:
            raise StageBusyError(f"{self.name}: submit while {self._status.value}")
        inputs = self.prepare_inputs(frame, *aux)
        return self._start(inputs)

    def _start(self, inputs: tuple[np.ndarray, ...]) -> ScheduleHandle:
        self._readbacks = {}
        self._schedule = self.model.schedule(*inputs)
        self._started_at = self._clock()
        self._run_id += 1
        self._status = StageStatus.RUNNING
        self.last_error = None
        return ScheduleHandle(stage=self.name, run_id=self._run_id, submitted_at=self._started_at)

    def tick(self) -> StageStatus:
        """Advance the current run by one layer budget or poll its readbacks.

        A no-op when nothing is scheduled.
        """

        if self._status not in (StageStatus.RUNNING, StageStatus.PENDING_READBACK):
            return self._status
        if self._clock() - self._started_at > self.timeout_s:
            self._fail(f"no outputs after {self.timeout_s:.2f}s")
            return self._status

        if self._status is StageStatus.RUNNING:
            try:
                self._advance()
            except Exception:
                logger.exception("%s: model evaluation failed", self.name)
                self._fail("model evaluation failed")
                return self._status

        if self._status is StageStatus.PENDING_READBACK and self.outputs_ready():
            self._status = StageStatus.OUTPUTS_READY
        return self._status

    def _advance(self) -> None:
        assert self._schedule is not None
        for _ in range(self.layers_per_tick):
            try:
                next(self._schedule)
            except StopIteration:
                self._schedule = None
                self.peek_outputs()
                return

    def peek_outputs(self) -> None:
        """Request asynchronous readback of every output; never blocks."""

        if self._readbacks:
            return
        self._readbacks = {name: self.model.peek_output(name) for name in self.model.output_names}
        self._status = StageStatus.PENDING_READBACK

    def outputs_ready(self) -> bool:
        """True only when every requested readback has completed."""

        if not self._readbacks:
            return False
        return all(request.done() for request in self._readbacks.values())

    def consume_outputs(self) -> T:
        """Return the stage result of the completed run; exactly once per run."""

        if self._status is not StageStatus.OUTPUTS_READY:
            raise StageStateError(f"{self.name}: consume while {self._status.value}")
        raw = {name: request.result() for name, request in self._readbacks.items()}
        self._readbacks = {}
        self._status = StageStatus.IDLE
        self.last_duration_s = self._clock() - self._started_at
        return self.postprocess(raw)

    def reset(self) -> None:
        """Drop the current run (if any) and return to IDLE."""

        if self._schedule is not None:
            close = getattr(self._schedule, "close", None)
            if close is not None:
                close()
        self._schedule = None
        self._readbacks = {}
        self._status = StageStatus.IDLE

    def _fail(self, reason: str) -> None:
        logger.warning("%s: stage failed (%s); skipping this run", self.name, reason)
        self.reset()
        self._status = StageStatus.FAILED
        self.last_error = reason

    def run_to_completion(self, frame: Frame, *aux: Any, poll_interval_s: float = 0.0005) -> T | None:
        """Submit and drive one run until its outputs are consumed.

        Returns None when the stage is disabled or the run failed (bounded wait
        exceeded or model error).
        """

        if self._status is StageStatus.FAILED:
            self.reset()
        if self.submit(frame, *aux) is None:
            return None
        while True:
            status = self.tick()
            if status is StageStatus.OUTPUTS_READY:
                return self.consume_outputs()
            if status is StageStatus.FAILED:
                return None
            if status is StageStatus.PENDING_READBACK:
                time.sleep(poll_interval_s)
