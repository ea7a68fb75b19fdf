from __future__ import annotations

from collections.abc import Callable, Sequence

import numpy as np
import pytest

from mirage.core.types import BACKGROUND_INSTANCE, DEFAULT_CLASS_ID, Detection, ObjectTable

# (class_id, (x0, y0, x1, y1)) in mask pixels, end-exclusive.
ObjectLayout = tuple[int, tuple[int, int, int, int]]


def build_table(
    objects: Sequence[ObjectLayout],
    size: tuple[int, int] = (16, 8),
    depths: Sequence[float] | None = None,
    frame_id: int = 1,
) -> ObjectTable:
    """Object table with one rectangular instance per object layout."""

    w, h = size
    ids = np.full((h, w), BACKGROUND_INSTANCE, dtype=np.int32)
    classes = np.full((h, w), DEFAULT_CLASS_ID, dtype=np.int32)
    dets = []
    for i, (class_id, (x0, y0, x1, y1)) in enumerate(objects):
        ids[y0:y1, x0:x1] = i
        classes[y0:y1, x0:x1] = class_id
        bbox = ((x0 + x1) / 2.0, (y0 + y1) / 2.0, float(x1 - x0), float(y1 - y0))
        dets.append(Detection(object_index=i, class_id=class_id, bbox=bbox, score=0.9))
    mask = np.stack([ids, classes], axis=-1)
    mask.setflags(write=False)
    table = ObjectTable(frame_id=frame_id, detections=tuple(dets), instance_mask=mask)
    if depths is not None:
        table = table.with_depths(depths)
    return table


@pytest.fixture()
def make_table() -> Callable[..., ObjectTable]:
    return build_table


@pytest.fixture()
def frame() -> np.ndarray:
    """A 16x8 BGR frame with a horizontal gradient."""

    img = np.zeros((8, 16, 3), dtype=np.uint8)
    img[..., 0] = np.arange(16, dtype=np.uint8)[None, :] * 10
    img[..., 1] = 100
    img[..., 2] = 200
    return img
