"""Torch and Ultralytics model backends.

Torch is imported lazily so that numpy-only pipelines (and the tests) can run
without initializing CUDA.
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Iterator, Sequence
from typing import Any

import numpy as np

from mirage.core.errors import StageStateError
from mirage.core.models.base import ReadbackRequest

logger = logging.getLogger(__name__)


def _torch() -> Any:
    return importlib.import_module("torch")


class TorchReadback:
    """Asynchronous device-to-host copy tracked with a CUDA event."""

    def __init__(self, tensor: Any) -> None:
        torch = _torch()
        tensor = tensor.detach()
        self._event = None
        if tensor.is_cuda:
            self._host = tensor.to("cpu", non_blocking=True)
            self._event = torch.cuda.Event()
            self._event.record()
        else:
            self._host = tensor

    def done(self) -> bool:
        return self._event is None or bool(self._event.query())

    def result(self) -> np.ndarray:
        if self._event is not None:
            self._event.synchronize()
        return self._host.float().numpy()


class TorchModel:
    """Wraps a TorchScript module or `nn.Module`.

    `nn.Sequential` containers are evaluated one child per step; any other
    module is a single step.
    """

    def __init__(self, module: Any, output_names: Sequence[str], device: str = "cpu") -> None:
        torch = _torch()
        self.device = device
        self.module = module.eval().to(device)
        layers: list[Any] = []
        if isinstance(module, torch.nn.Sequential):
            layers = list(module.children())
        self._layers = layers or [self.module]
        self._output_names = tuple(output_names)
        self._outputs: dict[str, Any] = {}

    @property
    def layer_count(self) -> int:
        return len(self._layers)

    @property
    def output_names(self) -> tuple[str, ...]:
        return self._output_names

    def schedule(self, *inputs: np.ndarray) -> Iterator[None]:
        self._outputs = {}
        return self._run(inputs)

    def _run(self, inputs: tuple[np.ndarray, ...]) -> Iterator[None]:
        torch = _torch()
        state: tuple[Any, ...] = tuple(
            torch.from_numpy(np.ascontiguousarray(x, dtype=np.float32)).to(self.device)
            for x in inputs
        )
        for layer in self._layers:
            # Entered per layer: the generator suspends between layers.
            with torch.inference_mode():
                out = layer(*state)
            state = tuple(out) if isinstance(out, (tuple, list)) else (out,)
            yield
        self._outputs = dict(zip(self._output_names, state))

    def peek_output(self, name: str) -> ReadbackRequest:
        if name not in self._outputs:
            raise StageStateError(f"output {name!r} is not available; run the schedule first")
        return TorchReadback(self._outputs[name])

    def close(self) -> None:
        self._outputs = {}


class UltralyticsSegmentationModel:
    """Ultralytics YOLO-seg model evaluated one network layer per step.

    Mirrors Ultralytics' own forward pass (`_predict_once`): each layer reads
    either the previous output or the saved outputs listed in `m.f`. The
    segment head returns `(boxes_scores, (..., protos))`; both are exposed as
    outputs.
    """

    OUTPUT_NAMES = ("boxes_scores", "protos")

    def __init__(self, model_path: str, device: str = "cpu") -> None:
        from ultralytics import YOLO

        self.device = device
        self.yolo = YOLO(model_path, task="segment")
        try:
            self.yolo.fuse()
        except Exception:
            # Some models/versions cannot fuse; the unfused graph is still valid.
            logger.debug("Conv+BN fusion unavailable for %s", model_path)
        self.net = self.yolo.model.to(device).eval()
        self.names: dict[int, str] = dict(getattr(self.yolo, "names", {}) or {})
        self._outputs: dict[str, Any] = {}

    @property
    def layer_count(self) -> int:
        return len(self.net.model)

    @property
    def output_names(self) -> tuple[str, ...]:
        return self.OUTPUT_NAMES

    def schedule(self, *inputs: np.ndarray) -> Iterator[None]:
        self._outputs = {}
        return self._run(inputs[0])

    def _run(self, image: np.ndarray) -> Iterator[None]:
        torch = _torch()
        x: Any = torch.from_numpy(np.ascontiguousarray(image, dtype=np.float32)).to(self.device)
        saved: list[Any] = []
        save = set(getattr(self.net, "save", []))
        for m in self.net.model:
            if m.f != -1:
                x = saved[m.f] if isinstance(m.f, int) else [x if j == -1 else saved[j] for j in m.f]
            with torch.inference_mode():
                x = m(x)
            saved.append(x if m.i in save else None)
            yield
        preds = x
        protos = preds[1][-1] if isinstance(preds[1], (tuple, list)) else preds[1]
        self._outputs = {"boxes_scores": preds[0], "protos": protos}

    def peek_output(self, name: str) -> ReadbackRequest:
        if name not in self._outputs:
            raise StageStateError(f"output {name!r} is not available; run the schedule first")
        return TorchReadback(self._outputs[name])

    def close(self) -> None:
        self._outputs = {}
