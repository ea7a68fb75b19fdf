from __future__ import annotations

import numpy as np
import pytest

from mirage.core.effects.gpu import ColorAreaEffect
from mirage.core.effects.rules import EffectRule
from mirage.core.models.base import LayerGraphModel
from mirage.core.runners.depth import DepthRunner, focal_length_scale, object_depths
from mirage.core.runners.inpainting import InpaintingRunner


def _depth_model(raw_value: float) -> LayerGraphModel:
    def layer(x):
        return np.full((1, 1, x.shape[2], x.shape[3]), raw_value, dtype=np.float32)

    return LayerGraphModel([layer], ("depth",))


def test_object_depths_are_instance_medians():
    ids = np.array([[0, 0, 0], [1, -1, 1]], dtype=np.int32)
    depth = np.array([[1.0, 2.0, 9.0], [4.0, 100.0, 6.0]], dtype=np.float32)

    out = object_depths(depth, ids, 3)

    assert out.tolist() == [2.0, 5.0, 0.0]
    assert object_depths(depth, ids, 0).size == 0


def test_padded_size_rounds_up_to_patch_multiple():
    runner = DepthRunner(_depth_model(0.0), output_size=(16, 8), input_size=(20, 10))
    assert runner.padded_size == (28, 14)

    tensor = runner.prepare_inputs(np.full((8, 16, 3), 255, dtype=np.uint8))[0]
    assert tensor.shape == (1, 3, 14, 28)
    assert tensor[0, :, :10, :20].min() == pytest.approx(1.0)
    assert tensor[0, :, 10:, :].max() == 0.0
    assert tensor[0, :, :, 20:].max() == 0.0


def test_depth_map_is_scaled_to_metres(frame):
    runner = DepthRunner(_depth_model(160.0), output_size=(16, 8), input_size=(20, 10), focal_scale=2.0)

    depth = runner.run_to_completion(frame)

    assert depth.shape == (8, 16)
    assert np.allclose(depth, 4.0)
    assert runner.depth_map is depth


def test_focal_length_scale():
    assert focal_length_scale(1000.0, 4.0, 8.0) == pytest.approx(0.5)


def test_calculate_object_depths_returns_new_table(frame, make_table):
    runner = DepthRunner(_depth_model(160.0), output_size=(16, 8), input_size=(16, 8))
    table = make_table([(1, (0, 0, 4, 4)), (2, (8, 0, 12, 8))])

    assert runner.calculate_object_depths(table) is table

    runner.run_to_completion(frame)
    with_depth = runner.calculate_object_depths(table)

    assert with_depth is not table
    assert with_depth.depth_valid
    assert [d.depth for d in with_depth.detections] == pytest.approx([2.0, 2.0])
    assert not table.depth_valid
    assert table.detections[0].depth == 0.0

    runner.clear()
    assert runner.depth_map is None


def test_depth_range_decides_eligibility(make_table):
    table = make_table([(1, (0, 0, 4, 4))], depths=[15.0])

    near = InpaintingRunner(_depth_model(0.0), rules=[EffectRule(1, 0.0, 10.0)])
    far = InpaintingRunner(_depth_model(0.0), rules=[EffectRule(1, 0.0, 20.0)])
    assert near.eligible_instances(table) == ()
    assert far.eligible_instances(table) == (0,)

    effect = ColorAreaEffect([EffectRule(1, 0.0, 10.0, (1.0, 0.0, 0.0, 1.0))])
    assert effect.rules.resolve(table).count == 0
    effect.update_classes([EffectRule(1, 0.0, 20.0, (1.0, 0.0, 0.0, 1.0))])
    assert effect.rules.resolve(table).count == 1
