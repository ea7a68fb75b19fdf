"""Model loading for the pipeline stages.

Any failure is reported as a single `ModelLoadError` naming the stage, so a
missing or incompatible asset stops startup with one clear message.
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Sequence
from pathlib import Path

from mirage.core.errors import ModelLoadError
from mirage.core.models.base import InferenceModel
from mirage.core.models.torch_backend import TorchModel, UltralyticsSegmentationModel

logger = logging.getLogger(__name__)


def load_segmentation_model(model_path: str | None, device: str = "cpu") -> UltralyticsSegmentationModel:
    """Load a YOLO-seg model through Ultralytics (local path or hub name)."""

    if not model_path:
        raise ModelLoadError("segmentation", "no model configured")
    try:
        model = UltralyticsSegmentationModel(model_path, device=device)
    except Exception as exc:
        raise ModelLoadError("segmentation", f"{model_path}: {exc}") from exc
    logger.info("segmentation: loaded %s (%d layers)", model_path, model.layer_count)
    return model


def load_torchscript_model(
    stage: str,
    model_path: str | None,
    output_names: Sequence[str],
    device: str = "cpu",
) -> InferenceModel:
    """Load a TorchScript export for the depth or inpainting stage."""

    if not model_path:
        raise ModelLoadError(stage, "no model configured")
    path = Path(model_path)
    if not path.exists():
        raise ModelLoadError(stage, f"model file not found: {path}")
    try:
        torch = importlib.import_module("torch")
        module = torch.jit.load(str(path), map_location=device)
        model = TorchModel(module, output_names, device=device)
    except Exception as exc:
        raise ModelLoadError(stage, f"{path}: {exc}") from exc
    logger.info("%s: loaded %s (%d layers)", stage, path, model.layer_count)
    return model
