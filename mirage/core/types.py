"""Shared type definitions used across the pipeline.

Detections and the object table are recreated on every segmentation pass. There
is no cross-frame identity: `object_index` is only meaningful inside the table
that produced it.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

import numpy as np

Frame = np.ndarray

# (center_x, center_y, width, height) in output-mask pixel space.
BBox = tuple[float, float, float, float]
Point = tuple[float, float]
Color = tuple[float, float, float, float]

DEFAULT_CLASS_ID = -2
BACKGROUND_INSTANCE = -1


@dataclass(frozen=True)
class Detection:
    """One recognized object in the current frame."""

    object_index: int
    class_id: int
    bbox: BBox
    score: float = 0.0
    depth: float = 0.0

    @property
    def instance_id(self) -> int:
        """Index of this detection inside the dense instance mask."""

        return self.object_index

    def corners(self) -> tuple[float, float, float, float]:
        """Return the box as (x1, y1, x2, y2)."""

        cx, cy, w, h = self.bbox
        return (cx - w * 0.5, cy - h * 0.5, cx + w * 0.5, cy + h * 0.5)


def empty_instance_mask(height: int, width: int) -> np.ndarray:
    """Return a read-only all-background `(H, W, 2)` instance mask."""

    mask = np.empty((height, width, 2), dtype=np.int32)
    mask[..., 0] = BACKGROUND_INSTANCE
    mask[..., 1] = DEFAULT_CLASS_ID
    mask.setflags(write=False)
    return mask


@dataclass(frozen=True)
class ObjectTable:
    """Immutable per-pass snapshot of detections plus the dense instance mask.

    The mask holds one `(instance_id, class_id)` pair per output pixel with
    background pixels set to `(-1, -2)`. Depth updates produce a new table so a
    reader's snapshot never changes underfoot.
    """

    frame_id: int
    detections: tuple[Detection, ...]
    instance_mask: np.ndarray
    depth_valid: bool = False

    @classmethod
    def empty(cls, height: int, width: int, frame_id: int = 0) -> ObjectTable:
        return cls(frame_id=frame_id, detections=(), instance_mask=empty_instance_mask(height, width))

    def __len__(self) -> int:
        return len(self.detections)

    @property
    def output_size(self) -> tuple[int, int]:
        """Return (width, height) of the instance mask."""

        return int(self.instance_mask.shape[1]), int(self.instance_mask.shape[0])

    @property
    def instance_ids(self) -> np.ndarray:
        return self.instance_mask[..., 0]

    @property
    def class_ids(self) -> np.ndarray:
        return self.instance_mask[..., 1]

    def with_depths(self, depths: list[float] | np.ndarray) -> ObjectTable:
        """Return a copy of the table with per-detection depths filled in."""

        values = [float(d) for d in depths]
        dets = tuple(
            replace(det, depth=values[i] if i < len(values) else 0.0)
            for i, det in enumerate(self.detections)
        )
        return replace(self, detections=dets, depth_valid=True)

    def without_depths(self) -> ObjectTable:
        dets = tuple(replace(det, depth=0.0) for det in self.detections)
        return replace(self, detections=dets, depth_valid=False)


@dataclass
class InpaintingResult:
    """Inpainted RGBA layer at image resolution; alpha is the holes mask."""

    layer: np.ndarray
    holes: np.ndarray
    eligible: tuple[int, ...] = field(default_factory=tuple)
    model_ran: bool = False
