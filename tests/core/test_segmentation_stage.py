from __future__ import annotations

import numpy as np
import pytest

from mirage.core.errors import PipelineConfigError
from mirage.core.models.base import LayerGraphModel
from mirage.core.runners.segmentation import (
    SegmentationRunner,
    compute_letterbox,
    letterbox_image,
    non_max_suppression,
)
from mirage.core.types import BACKGROUND_INSTANCE, DEFAULT_CLASS_ID


def _outputs(scores=(0.9, 0.8, 0.5)):
    """Three anchors on a 64x64 input: left half (class 0), right half (class 1),
    and a lower-scored duplicate of the left box."""

    nm = 2
    preds = np.zeros((4 + 2 + nm, 3), dtype=np.float32)
    preds[:4, 0] = (16, 32, 32, 64)
    preds[:4, 1] = (48, 32, 32, 64)
    preds[:4, 2] = (16, 32, 32, 64)
    preds[4, 0], preds[5, 1], preds[4, 2] = scores
    preds[6:, 0] = (10.0, 0.0)
    preds[6:, 1] = (0.0, 10.0)
    preds[6:, 2] = (10.0, 0.0)

    protos = np.zeros((nm, 16, 16), dtype=np.float32)
    protos[0, :, :8] = 1.0
    protos[0, :, 8:] = -1.0
    protos[1] = -protos[0]
    return preds[None], protos[None]


def _runner(**kwargs) -> SegmentationRunner:
    preds, protos = _outputs(**kwargs.pop("outputs", {}))
    model = LayerGraphModel([lambda image: (preds, protos)], ("boxes_scores", "protos"))
    return SegmentationRunner(
        model,
        image_size=(64, 64),
        output_size=(32, 32),
        input_size=(64, 64),
        **kwargs,
    )


def test_letterbox_preserves_aspect_and_pads_bottom():
    lb = compute_letterbox((1280, 720), (640, 640))
    assert lb.scale == pytest.approx(0.5)
    assert lb.new_size == (640, 360)
    assert lb.pad == (0, 280)

    frame = np.zeros((720, 1280, 3), dtype=np.uint8)
    tensor = letterbox_image(frame, lb)
    assert tensor.shape == (1, 3, 640, 640)
    assert tensor.dtype == np.float32
    assert tensor[0, :, 600, 10] == pytest.approx(114 / 255.0)
    assert tensor[0, :, 10, 10] == pytest.approx(0.0)


def test_letterbox_rejects_zero_dimensions():
    with pytest.raises(PipelineConfigError):
        compute_letterbox((0, 720), (640, 640))


def test_nms_orders_by_score_and_suppresses_overlaps():
    boxes = np.array([[10, 10, 10, 10], [10, 10, 10, 10], [50, 50, 10, 10]], dtype=np.float32)
    scores = np.array([0.6, 0.9, 0.7], dtype=np.float32)
    keep = non_max_suppression(boxes, scores, iou_threshold=0.5, score_threshold=0.25)
    assert keep.tolist() == [1, 2]


def test_nms_ties_keep_anchor_order_and_threshold_filters():
    boxes = np.array([[10, 10, 4, 4], [30, 30, 4, 4], [60, 60, 4, 4]], dtype=np.float32)
    scores = np.array([0.5, 0.5, 0.2], dtype=np.float32)
    keep = non_max_suppression(boxes, scores, iou_threshold=0.5, score_threshold=0.25)
    assert keep.tolist() == [0, 1]


def test_segmentation_builds_object_table():
    runner = _runner()
    frame = np.zeros((64, 64, 3), dtype=np.uint8)

    table = runner.run_to_completion(frame, 7)

    assert table is not None
    assert table.frame_id == 7
    assert len(table) == 2
    first, second = table.detections
    assert (first.class_id, second.class_id) == (0, 1)
    assert first.score == pytest.approx(0.9)
    # Input pixels scaled to the 32x32 output.
    assert first.bbox == pytest.approx((8.0, 16.0, 16.0, 32.0))
    assert second.bbox == pytest.approx((24.0, 16.0, 16.0, 32.0))

    ids = table.instance_ids
    assert ids[16, 2] == 0
    assert ids[16, 29] == 1
    assert table.class_ids[16, 29] == 1
    assert not table.instance_mask.flags.writeable
    assert set(np.unique(ids).tolist()) <= {BACKGROUND_INSTANCE, 0, 1}
    assert not table.depth_valid


def test_table_is_clamped_to_max_objects():
    runner = _runner(max_objects=1)
    table = runner.run_to_completion(np.zeros((64, 64, 3), dtype=np.uint8))
    assert len(table) == 1
    assert np.unique(table.instance_ids).max() < 1


def test_no_detections_yield_empty_table():
    runner = _runner(outputs={"scores": (0.1, 0.1, 0.1)})
    table = runner.run_to_completion(np.zeros((64, 64, 3), dtype=np.uint8), 3)
    assert len(table) == 0
    assert table.frame_id == 3
    assert (table.instance_ids == BACKGROUND_INSTANCE).all()
    assert (table.class_ids == DEFAULT_CLASS_ID).all()


def test_overlapping_masks_go_to_smallest_instance_id():
    preds, protos = _outputs()
    # Both surviving detections cover the whole frame.
    preds[0, 6:, 0] = (10.0, 10.0)
    preds[0, 6:, 1] = (10.0, 10.0)
    model = LayerGraphModel([lambda image: (preds, protos)], ("boxes_scores", "protos"))
    runner = SegmentationRunner(model, image_size=(64, 64), output_size=(32, 32), input_size=(64, 64))
    table = runner.run_to_completion(np.zeros((64, 64, 3), dtype=np.uint8))
    assert (table.instance_ids == 0).all()


def test_visualize_paints_classes():
    runner = _runner()
    table = runner.run_to_completion(np.zeros((64, 64, 3), dtype=np.uint8))
    img = SegmentationRunner.visualize(table)
    assert img.shape == (32, 32, 3)
    assert img[16, 2].any()
    assert not np.array_equal(img[16, 2], img[16, 29])
