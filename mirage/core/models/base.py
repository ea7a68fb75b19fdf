"""Model boundary used by the stage runners.

A model is evaluated layer by layer: `schedule()` returns a generator that
performs one layer of work per `next()` call, which is what lets several
stages share one device without a lockstep. Once the schedule is exhausted,
outputs are fetched through `peek_output()`, which starts an asynchronous
readback and returns a handle that can be polled without blocking.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from typing import Protocol

import numpy as np

from mirage.core.errors import StageStateError


class ReadbackRequest(Protocol):
    """Handle for an output tensor being copied back to host memory."""

    def done(self) -> bool:
        """Return True once the data can be read without blocking."""

    def result(self) -> np.ndarray:
        """Return the host copy of the tensor."""


class InferenceModel(Protocol):
    """Minimal interface the stage runners expect from a model backend."""

    @property
    def layer_count(self) -> int: ...

    @property
    def output_names(self) -> tuple[str, ...]: ...

    def schedule(self, *inputs: np.ndarray) -> Iterator[None]:
        """Start a run; each `next()` evaluates one layer."""

    def peek_output(self, name: str) -> ReadbackRequest:
        """Request asynchronous readback of one output (never blocks)."""

    def close(self) -> None:
        """Release device resources."""


class ImmediateReadback:
    """Readback of a tensor that already lives in host memory."""

    def __init__(self, value: np.ndarray) -> None:
        self._value = value

    def done(self) -> bool:
        return True

    def result(self) -> np.ndarray:
        return self._value


class DeferredReadback:
    """Readback that reports ready after a number of polls.

    Models a device copy that lands a few control-loop iterations later.
    """

    def __init__(self, value: np.ndarray, polls: int) -> None:
        self._value = value
        self._remaining = max(0, int(polls))

    def done(self) -> bool:
        if self._remaining <= 0:
            return True
        self._remaining -= 1
        return False

    def result(self) -> np.ndarray:
        return self._value


Layer = Callable[..., "np.ndarray | tuple[np.ndarray, ...]"]


class LayerGraphModel:
    """A model made of plain numpy callables evaluated in order.

    Each layer receives the previous layer's outputs as positional arguments
    (the run inputs for the first layer). The final layer's outputs are bound to
    `output_names` in order.

    Used for lightweight CPU models and as the test double for the GPU
    backends; `submissions` counts how many runs were scheduled.
    """

    def __init__(
        self,
        layers: Sequence[Layer],
        output_names: Sequence[str],
        readback_polls: int | dict[str, int] = 0,
    ) -> None:
        if not layers:
            raise ValueError("a model needs at least one layer")
        if not output_names:
            raise ValueError("a model needs at least one output")
        self._layers = list(layers)
        self._output_names = tuple(output_names)
        self._readback_polls = readback_polls
        self._outputs: dict[str, np.ndarray] = {}
        self.submissions = 0
        self.closed = False

    @property
    def layer_count(self) -> int:
        return len(self._layers)

    @property
    def output_names(self) -> tuple[str, ...]:
        return self._output_names

    def schedule(self, *inputs: np.ndarray) -> Iterator[None]:
        self.submissions += 1
        self._outputs = {}
        return self._run(inputs)

    def _run(self, inputs: tuple[np.ndarray, ...]) -> Iterator[None]:
        state: tuple[np.ndarray, ...] = inputs
        for layer in self._layers:
            out = layer(*state)
            state = tuple(out) if isinstance(out, (tuple, list)) else (out,)
            yield
        if len(state) < len(self._output_names):
            raise ValueError(
                f"model produced {len(state)} outputs, expected {len(self._output_names)}"
            )
        self._outputs = dict(zip(self._output_names, state))

    def peek_output(self, name: str) -> ReadbackRequest:
        if name not in self._outputs:
            raise StageStateError(f"output {name!r} is not available; run the schedule first")
        value = self._outputs[name]
        polls = self._readback_polls
        if isinstance(polls, dict):
            polls = polls.get(name, 0)
        if polls:
            return DeferredReadback(value, polls)
        return ImmediateReadback(value)

    def close(self) -> None:
        self._outputs = {}
        self.closed = True
