"""Monocular depth stage.

The model sees the frame resized to the input size and padded (right/bottom)
to a multiple of the patch size. Its relative output is converted to metres
with the camera calibration: `depth = raw / 80 * focal_length_scale`.
"""

from __future__ import annotations

import logging
import math
from typing import Any

import cv2
import numpy as np

from mirage.core.models.base import InferenceModel
from mirage.core.runners.base import StageRunner
from mirage.core.types import Frame, ObjectTable

logger = logging.getLogger(__name__)

RAW_DEPTH_DIVISOR = 80.0


def focal_length_scale(sensor_width_px: float, focal_length_mm: float, sensor_width_mm: float) -> float:
    return (sensor_width_px * focal_length_mm / sensor_width_mm) / 1000.0


def object_depths(depth_map: np.ndarray, instance_ids: np.ndarray, count: int) -> np.ndarray:
    """Median depth of each instance's pixels; 0.0 for instances without pixels."""

    depths = np.zeros(count, dtype=np.float32)
    if count <= 0:
        return depths
    ids = instance_ids.ravel()
    values = depth_map.ravel()
    valid = (ids >= 0) & (ids < count)
    ids = ids[valid]
    values = values[valid]
    if ids.size == 0:
        return depths

    order = np.lexsort((values, ids))
    ids = ids[order]
    values = values[order]
    counts = np.bincount(ids, minlength=count)
    starts = np.concatenate([[0], np.cumsum(counts)[:-1]])
    present = counts > 0
    lo = starts[present] + (counts[present] - 1) // 2
    hi = starts[present] + counts[present] // 2
    depths[present] = (values[lo] + values[hi]) * 0.5
    return depths


class DepthRunner(StageRunner[np.ndarray]):
    """Produces a dense metric depth map at output resolution."""

    name = "depth"

    def __init__(
        self,
        model: InferenceModel,
        *,
        output_size: tuple[int, int],
        input_size: tuple[int, int] = (518, 518),
        pad_multiple: int = 14,
        focal_scale: float = 1.0,
        pad_value: float = 0.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(model, **kwargs)
        self.output_size = output_size
        self.input_size = input_size
        self.pad_multiple = max(1, int(pad_multiple))
        self.focal_scale = float(focal_scale)
        self.pad_value = float(pad_value)
        self.depth_map: np.ndarray | None = None

    @property
    def padded_size(self) -> tuple[int, int]:
        w, h = self.input_size
        m = self.pad_multiple
        return int(math.ceil(w / m) * m), int(math.ceil(h / m) * m)

    def prepare_inputs(self, frame: Frame) -> tuple[np.ndarray, ...]:
        w, h = self.input_size
        pw, ph = self.padded_size
        resized = cv2.resize(np.ascontiguousarray(frame[..., :3]), (w, h), interpolation=cv2.INTER_LINEAR)
        rgb = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB).astype(np.float32) / 255.0
        padded = np.full((ph, pw, 3), self.pad_value, dtype=np.float32)
        padded[:h, :w] = rgb
        return (padded.transpose(2, 0, 1)[None],)

    def postprocess(self, outputs: dict[str, np.ndarray]) -> np.ndarray:
        raw = np.asarray(outputs[self.model.output_names[0]], dtype=np.float32)
        raw = raw.reshape(raw.shape[-2], raw.shape[-1])
        w, h = self.input_size
        depth = raw[:h, :w] / RAW_DEPTH_DIVISOR * self.focal_scale
        out_w, out_h = self.output_size
        depth = cv2.resize(np.ascontiguousarray(depth), (out_w, out_h), interpolation=cv2.INTER_LINEAR)
        depth.setflags(write=False)
        self.depth_map = depth
        return depth

    def calculate_object_depths(self, table: ObjectTable) -> ObjectTable:
        """Return a new table whose detections carry their representative depth.

        Must be called with a table from a completed segmentation pass; without
        a depth map the table is returned unchanged.
        """

        if self.depth_map is None:
            return table
        depth_map = self.depth_map
        out_w, out_h = table.output_size
        if depth_map.shape != (out_h, out_w):
            logger.warning(
                "%s: depth map %s does not match mask %s, resizing",
                self.name,
                depth_map.shape,
                (out_h, out_w),
            )
            depth_map = cv2.resize(np.ascontiguousarray(depth_map), (out_w, out_h), interpolation=cv2.INTER_LINEAR)
        depths = object_depths(depth_map, table.instance_ids, len(table.detections))
        return table.with_depths(depths)

    def clear(self) -> None:
        self.depth_map = None
