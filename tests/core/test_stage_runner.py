from __future__ import annotations

import logging

import numpy as np
import pytest

from mirage.core.errors import StageBusyError, StageStateError
from mirage.core.models.base import LayerGraphModel
from mirage.core.runners.base import StageRunner, StageStatus, clamp_count


class EchoRunner(StageRunner[np.ndarray]):
    name = "echo"

    def prepare_inputs(self, frame, *aux):
        return (frame.astype(np.float32),)

    def postprocess(self, outputs):
        return outputs["out"]


def _model(**kwargs) -> LayerGraphModel:
    return LayerGraphModel(
        [lambda x: x + 1, lambda x: x * 2, lambda x: x - 1, lambda x: x],
        ("out",),
        **kwargs,
    )


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_state_machine_with_partial_layer_budget():
    runner = EchoRunner(_model(), update_rate=0.5)
    assert runner.layers_per_tick == 2
    assert runner.status is StageStatus.IDLE
    assert runner.tick() is StageStatus.IDLE

    handle = runner.submit(np.ones((2, 2)))
    assert handle is not None and handle.stage == "echo" and handle.run_id == 1
    assert runner.status is StageStatus.RUNNING

    statuses = [runner.tick() for _ in range(3)]
    assert statuses == [StageStatus.RUNNING, StageStatus.RUNNING, StageStatus.OUTPUTS_READY]

    out = runner.consume_outputs()
    assert np.allclose(out, 3.0)
    assert runner.status is StageStatus.IDLE
    assert runner.last_duration_s is not None


def test_submit_while_busy_is_rejected():
    runner = EchoRunner(_model())
    runner.submit(np.zeros((1,)))
    with pytest.raises(StageBusyError):
        runner.submit(np.zeros((1,)))


def test_consume_requires_ready_outputs():
    runner = EchoRunner(_model())
    with pytest.raises(StageStateError):
        runner.consume_outputs()
    runner.submit(np.zeros((1,)))
    with pytest.raises(StageStateError):
        runner.consume_outputs()


def test_outputs_are_consumed_exactly_once():
    runner = EchoRunner(_model())
    assert runner.run_to_completion(np.zeros((1,))) is not None
    with pytest.raises(StageStateError):
        runner.consume_outputs()


def test_disabled_stage_is_a_noop():
    model = _model()
    runner = EchoRunner(model, enabled=False)
    assert runner.submit(np.zeros((1,))) is None
    assert runner.run_to_completion(np.zeros((1,))) is None
    assert model.submissions == 0
    assert runner.status is StageStatus.IDLE


def test_deferred_readback_goes_through_pending_state():
    runner = EchoRunner(_model(readback_polls=2))
    runner.submit(np.zeros((1,)))
    seen = []
    for _ in range(10):
        seen.append(runner.tick())
        if seen[-1] is StageStatus.OUTPUTS_READY:
            break
    assert StageStatus.PENDING_READBACK in seen
    assert seen[-1] is StageStatus.OUTPUTS_READY


def test_update_rate_is_clamped():
    runner = EchoRunner(_model())
    runner.set_update_rate(2.0)
    assert runner.update_rate == 1.0
    assert runner.layers_per_tick == 4
    runner.set_update_rate(-1.0)
    assert runner.update_rate == 0.0
    assert runner.layers_per_tick == 1


def test_bounded_wait_marks_stage_failed():
    clock = FakeClock()
    runner = EchoRunner(_model(readback_polls=1000), timeout_s=5.0, clock=clock)
    runner.submit(np.zeros((1,)))
    runner.tick()
    clock.now = 6.0

    assert runner.tick() is StageStatus.FAILED
    assert "no outputs" in (runner.last_error or "")
    assert not runner.is_busy

    # A failed stage can be resubmitted.
    clock.now = 7.0
    assert runner.submit(np.zeros((1,))) is not None
    assert runner.status is StageStatus.RUNNING


def test_run_to_completion_returns_none_after_timeout():
    clock = FakeClock()

    def slow(x):
        clock.now += 10.0
        return x

    runner = EchoRunner(LayerGraphModel([slow, slow], ("out",)), timeout_s=5.0, clock=clock)
    assert runner.run_to_completion(np.zeros((1,))) is None
    assert runner.status is StageStatus.FAILED


def test_model_error_fails_the_run(caplog):
    def boom(x):
        raise RuntimeError("device lost")

    runner = EchoRunner(LayerGraphModel([boom], ("out",)))
    runner.submit(np.zeros((1,)))
    with caplog.at_level(logging.ERROR):
        assert runner.tick() is StageStatus.FAILED
    assert "model evaluation failed" in caplog.text


def test_clamp_count_warns_on_mismatch(caplog):
    with caplog.at_level(logging.WARNING):
        assert clamp_count("seg", {"boxes": 5, "masks": 3}, 10) == 3
    assert "inconsistent" in caplog.text
    assert clamp_count("seg", {"boxes": 5}, 2) == 2
