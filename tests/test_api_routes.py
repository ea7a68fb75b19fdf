from __future__ import annotations

import numpy as np
import pytest
from fastapi.testclient import TestClient

from mirage.api.main import app
from mirage.api.routes import config as config_routes
from mirage.api.services.engine import VideoEngine
from mirage.api.services.state import get_engine
from mirage.core.config.settings import MirageSettings
from mirage.core.effects.base import EffectKind
from mirage.core.effects.compositor import build_compositor
from mirage.core.effects.rules import EffectRule
from mirage.core.errors import PipelineConfigError
from mirage.core.models.base import LayerGraphModel
from mirage.core.pipeline import PipelineScheduler
from mirage.core.runners.segmentation import SegmentationRunner
from mirage.core.video_sources import ArraySource


class DummyEngine:
    def __init__(self, stats=None, error=None):
        self._stats = stats
        self.last_error = error
        self.rule_updates = []
        self.stage_updates = []
        self.benchmark_started = None
        self.fail_with = None

    def latest_stats(self):
        return self._stats

    def effect_rules(self):
        return {"color_area": [EffectRule(1, 0.0, 20.0, (1.0, 0.0, 0.0, 1.0))]}

    def update_effect_rules(self, kind, rules):
        if self.fail_with is not None:
            raise self.fail_with
        self.rule_updates.append((kind, rules))

    def update_stage(self, stage, enabled=None, update_rate=None):
        if stage not in {"segmentation", "depth"}:
            raise KeyError(stage)
        self.stage_updates.append((stage, enabled, update_rate))

    def benchmark(self):
        return {
            "benchmarking": self.benchmark_started is not None,
            "duration_s": self.benchmark_started or 60.0,
            "elapsed_s": 0.0,
            "samples": 0,
            "discarded": 0,
            "statistics": {},
        }

    def start_benchmark(self, duration_s):
        if self.fail_with is not None:
            raise self.fail_with
        self.benchmark_started = duration_s

    def stop_benchmark(self):
        self.benchmark_started = None


STATS = {
    "frame_id": 42,
    "objects": 3,
    "fps": 24.5,
    "iterations": 40,
    "mode": "parallel",
    "stages": {
        "segmentation": {
            "enabled": True,
            "status": "running",
            "update_rate": 1.0,
            "last_duration_s": 0.02,
            "last_error": None,
            "errors": 0,
        }
    },
}


@pytest.fixture()
def engine():
    eng = DummyEngine(stats=STATS)
    app.dependency_overrides[get_engine] = lambda: eng
    yield eng
    app.dependency_overrides.pop(get_engine, None)


@pytest.fixture()
def client():
    return TestClient(app)


def test_health_endpoint(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok", "service": "mirage"}


def test_stats_with_data(client, engine):
    res = client.get("/stats")
    assert res.status_code == 200
    data = res.json()
    assert data["frame_id"] == 42
    assert data["objects"] == 3
    assert data["stages"]["segmentation"]["status"] == "running"
    assert data["error"] is None


def test_stats_without_data_reports_error(client):
    eng = DummyEngine(error="depth: failed to initialize model (missing file)")
    app.dependency_overrides[get_engine] = lambda: eng
    try:
        res = client.get("/stats")
    finally:
        app.dependency_overrides.pop(get_engine, None)
    assert res.status_code == 200
    data = res.json()
    assert data["frame_id"] == 0
    assert data["objects"] == 0
    assert data["error"].startswith("depth:")


def test_list_effects(client, engine):
    res = client.get("/effects")
    assert res.status_code == 200
    (rule,) = res.json()["color_area"]
    assert rule["class_id"] == 1
    assert rule["max_range"] == 20.0


def test_update_effect_rules(client, engine):
    body = {"rules": [{"class_id": 2, "min_range": 0, "max_range": 10, "color": [0, 1, 0, 1]}]}
    res = client.put("/effects/Outline", json=body)
    assert res.status_code == 200
    assert res.json() == {"kind": "outline", "rules": 1}
    kind, rules = engine.rule_updates[0]
    assert kind is EffectKind.OUTLINE
    assert rules == [EffectRule(2, 0.0, 10.0, (0.0, 1.0, 0.0, 1.0))]


def test_update_effect_rejects_unknown_kind_and_bad_rules(client, engine):
    assert client.put("/effects/sparkles", json={"rules": []}).status_code == 404
    bad = {"rules": [{"class_id": 1, "color": [2, 0, 0, 1]}]}
    assert client.put("/effects/outline", json=bad).status_code == 422
    inverted = {"rules": [{"class_id": 1, "min_range": 20, "max_range": 10}]}
    assert client.put("/effects/outline", json=inverted).status_code == 422
    assert engine.rule_updates == []


def test_update_effect_conflict(client, engine):
    engine.fail_with = PipelineConfigError("no effect registered for kind 'kuwahara'")
    res = client.put("/effects/kuwahara", json={"rules": []})
    assert res.status_code == 409
    assert "kuwahara" in res.json()["detail"]


def test_list_stages(client, engine):
    res = client.get("/stages")
    assert res.status_code == 200
    assert res.json()["segmentation"]["update_rate"] == 1.0


def test_update_stage(client, engine):
    res = client.post("/stages/depth", json={"enabled": False, "update_rate": 0.5})
    assert res.status_code == 200
    assert engine.stage_updates == [("depth", False, 0.5)]

    assert client.post("/stages/warp", json={"enabled": True}).status_code == 404
    assert client.post("/stages/depth", json={"update_rate": 1.5}).status_code == 422


def test_benchmark_lifecycle(client, engine):
    assert client.get("/benchmark").json()["benchmarking"] is False

    res = client.post("/benchmark/start", json={"duration_s": 30})
    assert res.status_code == 200
    assert res.json()["benchmarking"] is True
    assert engine.benchmark_started == 30.0

    res = client.post("/benchmark/stop")
    assert res.status_code == 200
    assert res.json()["benchmarking"] is False

    assert client.post("/benchmark/start", json={"duration_s": 0}).status_code == 422


def test_benchmark_start_conflict(client, engine):
    engine.fail_with = RuntimeError("Pipeline is not initialized")
    res = client.post("/benchmark/start", json={"duration_s": 5})
    assert res.status_code == 409


def test_get_config_and_presets(client, monkeypatch):
    monkeypatch.setattr(config_routes, "get_settings", lambda: MirageSettings(execution_mode="sequential"))
    res = client.get("/config")
    assert res.status_code == 200
    assert res.json()["execution_mode"] == "sequential"

    res = client.get("/config/presets")
    assert [p["id"] for p in res.json()["presets"]] == ["quality", "balanced", "fps_max"]


def test_apply_preset(client, monkeypatch):
    patches = []

    def _reload(data):
        patches.append(data)
        return MirageSettings(**data)

    monkeypatch.setattr(config_routes, "reload_settings", _reload)
    res = client.post("/config/presets/fps_max")
    assert res.status_code == 200
    assert res.json()["depth_update_rate"] == 0.25
    assert patches[0]["execution_mode"] == "parallel"

    assert client.post("/config/presets/turbo").status_code == 404


def test_update_config_validation(client, monkeypatch):
    monkeypatch.setattr(config_routes, "reload_settings", lambda data: MirageSettings(**data))
    payload = {"video_source": "file", "segmentation_model": "yolo11n-seg.pt", "execution_mode": "lockstep"}
    assert client.post("/config", json=payload).status_code == 422

    payload["execution_mode"] = "Sequential"
    res = client.post("/config", json=payload)
    assert res.status_code == 200
    assert res.json()["execution_mode"] == "sequential"


def test_update_unregistered_effect_on_running_engine(client, frame):
    def _factory(settings, collector=None):
        preds = np.zeros((1, 6, 1), dtype=np.float32)
        protos = np.zeros((1, 1, 4, 4), dtype=np.float32)
        model = LayerGraphModel([lambda image: (preds, protos)], ("boxes_scores", "protos"))
        segmentation = SegmentationRunner(model, image_size=(16, 8), output_size=(16, 8), input_size=(16, 16))
        compositor = build_compositor((16, 8), (16, 8), [(EffectKind.COLOR_AREA, [EffectRule(1)], {})])
        return PipelineScheduler(segmentation, compositor, mode="parallel", collector=collector)

    eng = VideoEngine(MirageSettings(), scheduler_factory=_factory)
    eng._make_source = lambda: ArraySource([frame], loop=True)
    eng.start()
    app.dependency_overrides[get_engine] = lambda: eng
    try:
        assert eng.running
        res = client.put("/effects/kuwahara", json={"rules": [{"class_id": 1}]})
        assert res.status_code == 409
        assert "kuwahara" in res.json()["detail"]
    finally:
        app.dependency_overrides.pop(get_engine, None)
        eng.stop()
