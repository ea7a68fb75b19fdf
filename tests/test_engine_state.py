from __future__ import annotations

import logging
import time

import numpy as np
import pytest

import mirage.api.services.state as state
from mirage.api.services.engine import VideoEngine, encode_jpeg
from mirage.core.config.settings import MirageSettings
from mirage.core.effects.base import EffectKind
from mirage.core.effects.compositor import build_compositor
from mirage.core.effects.rules import EffectRule
from mirage.core.errors import ModelLoadError, PipelineConfigError
from mirage.core.models.base import LayerGraphModel
from mirage.core.pipeline import PipelineScheduler
from mirage.core.runners.segmentation import SegmentationRunner
from mirage.core.video_sources import ArraySource

SIZE = (16, 8)


class DummyEngine:
    def __init__(self, settings: MirageSettings):
        self.settings = settings
        self.started = 0
        self.stopped = 0

    def start(self):
        self.started += 1

    def stop(self):
        self.stopped += 1


def _empty_scene_scheduler(settings, collector=None):
    preds = np.zeros((1, 6, 1), dtype=np.float32)
    protos = np.zeros((1, 1, 4, 4), dtype=np.float32)
    model = LayerGraphModel([lambda image: (preds, protos)], ("boxes_scores", "protos"))
    segmentation = SegmentationRunner(model, image_size=SIZE, output_size=SIZE, input_size=(16, 16))
    compositor = build_compositor(SIZE, SIZE, [(EffectKind.COLOR_AREA, [EffectRule(1)], {})])
    return PipelineScheduler(segmentation, compositor, mode=settings.execution_mode, collector=collector)


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_get_settings_initializes_once(monkeypatch: pytest.MonkeyPatch):
    state._settings = None
    state._engine = None
    calls = {"n": 0}

    def _load():
        calls["n"] += 1
        return MirageSettings(max_objects=12)

    monkeypatch.setattr(state, "load_settings", _load)

    assert state.get_settings().max_objects == 12
    assert state.get_settings().max_objects == 12
    assert calls["n"] == 1


def test_reload_settings_recreates_engine_when_running(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture):
    state._settings = MirageSettings()
    old_engine = DummyEngine(state._settings)
    state._engine = old_engine

    monkeypatch.setattr(state, "VideoEngine", DummyEngine)
    monkeypatch.setattr(state, "load_settings", lambda: MirageSettings())

    with caplog.at_level(logging.INFO, logger="mirage.api.services.state"):
        updated = state.reload_settings({"execution_mode": "sequential"})

    assert updated.execution_mode == "sequential"
    assert old_engine.stopped == 1
    assert state._engine is not old_engine
    assert state._engine.started == 1
    assert state._engine.settings.execution_mode == "sequential"
    assert "rebuilding the pipeline (mode=sequential)" in caplog.text
    state._engine = None


def test_get_engine_creates_and_starts(monkeypatch: pytest.MonkeyPatch):
    state._settings = MirageSettings()
    state._engine = None
    monkeypatch.setattr(state, "VideoEngine", DummyEngine)

    eng = state.get_engine()
    assert isinstance(eng, DummyEngine)
    assert eng.started == 1
    assert state.get_engine() is eng

    state.stop_engine()
    assert eng.stopped == 1
    assert state._engine is None


def test_pipeline_failure_is_reported():
    def _factory(settings, collector=None):
        raise ModelLoadError("depth", "file not found: models/depth.ts")

    engine = VideoEngine(MirageSettings(), scheduler_factory=_factory)
    engine.start()

    assert not engine.running
    assert "depth: failed to initialize model" in engine.last_error
    with pytest.raises(RuntimeError):
        engine.update_effect_rules(EffectKind.OUTLINE, [])


def test_missing_video_file_is_reported(tmp_path):
    settings = MirageSettings(video_source="file", video_path=str(tmp_path / "missing.mp4"))
    engine = VideoEngine(settings, scheduler_factory=_empty_scene_scheduler)
    engine.start()

    assert not engine.running
    assert engine.last_error == "Failed to initialize video source"

    # Controls apply immediately while the loop is not running.
    engine.update_effect_rules(EffectKind.COLOR_AREA, [EffectRule(3)])
    assert engine.effect_rules() == {"color_area": [EffectRule(3)]}
    engine.update_stage("segmentation", update_rate=0.25)
    assert engine.scheduler.segmentation.update_rate == 0.25
    with pytest.raises(KeyError):
        engine.update_stage("depth", enabled=True)


def test_engine_streams_encoded_frames(frame):
    engine = VideoEngine(MirageSettings(), scheduler_factory=_empty_scene_scheduler)
    engine._make_source = lambda: ArraySource([frame], loop=True)
    engine.start()
    try:
        assert engine.running
        assert _wait_for(lambda: engine.latest_frame() is not None)
        assert engine.latest_frame()[:2] == b"\xff\xd8"

        stats = engine.latest_stats()
        assert stats["objects"] == 0
        assert stats["mode"] == "parallel"
        assert "segmentation" in stats["stages"]

        engine.update_stage("segmentation", update_rate=0.5)
        assert _wait_for(lambda: engine.scheduler.segmentation.update_rate == 0.5)
    finally:
        engine.stop()
    assert not engine.running
    assert engine.scheduler.segmentation.model.closed


def test_encode_jpeg_returns_bytes(frame):
    data = encode_jpeg(frame, 80)
    assert data is not None and data.startswith(b"\xff\xd8")


def test_running_engine_rejects_unregistered_effect(frame):
    engine = VideoEngine(MirageSettings(), scheduler_factory=_empty_scene_scheduler)
    engine._make_source = lambda: ArraySource([frame], loop=True)
    engine.start()
    try:
        assert engine.running
        with pytest.raises(PipelineConfigError, match="kuwahara"):
            engine.update_effect_rules(EffectKind.KUWAHARA, [EffectRule(1)])

        engine.update_effect_rules(EffectKind.COLOR_AREA, [EffectRule(4)])
        assert _wait_for(lambda: engine.effect_rules() == {"color_area": [EffectRule(4)]})
    finally:
        engine.stop()
