from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from mirage.core.config import presets
from mirage.core.config import settings as cfg
from mirage.core.effects.base import EffectKind
from mirage.core.effects.rules import EffectRule


def test_load_settings_reads_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    conf_path = tmp_path / "config.yml"
    conf_path.write_text(
        "execution_mode: sequential\n"
        "depth_update_rate: 0.25\n"
        "effects:\n"
        "  - kind: color_area\n"
        "    rules:\n"
        "      - {class_id: 2, max_range: 15, color: [1.0, 0.0, 0.0, 0.5]}\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("MIRAGE_CONFIG", str(conf_path))

    settings = cfg.load_settings()

    assert settings.execution_mode == "sequential"
    assert settings.depth_update_rate == 0.25
    assert settings.effect_rules() == {
        EffectKind.COLOR_AREA: [EffectRule(2, 0.0, 15.0, (1.0, 0.0, 0.0, 0.5))]
    }


def test_load_settings_env_overrides_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    conf_path = tmp_path / "config.yml"
    conf_path.write_text("execution_mode: sequential\nmax_objects: 10\n", encoding="utf-8")
    monkeypatch.setenv("MIRAGE_CONFIG", str(conf_path))
    monkeypatch.setenv("MIRAGE_EXECUTION_MODE", "parallel")

    settings = cfg.load_settings()
    assert settings.execution_mode == "parallel"
    assert settings.max_objects == 10


def test_missing_config_file_uses_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MIRAGE_CONFIG", str(tmp_path / "missing.yml"))
    settings = cfg.load_settings()
    assert settings.image_width == 1280
    assert settings.effects == []


def test_config_path_defaults_when_env_missing(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("MIRAGE_CONFIG", raising=False)
    path = cfg._config_path()
    assert str(path).replace("\\", "/").endswith("config/mirage.config.yml")


def test_dimension_and_rate_validation():
    with pytest.raises(ValueError):
        cfg.MirageSettings(output_width=0)
    with pytest.raises(ValueError):
        cfg.MirageSettings(depth_input_size=-1)
    with pytest.raises(ValueError):
        cfg.MirageSettings(depth_update_rate=1.5)
    with pytest.raises(ValueError):
        cfg.MirageSettings(max_objects=0)
    with pytest.raises(ValueError):
        cfg.MirageSettings(stage_timeout_s=0)
    assert cfg.MirageSettings(inpainting_update_rate=0.0).inpainting_update_rate == 0.0


def test_mode_and_source_validation():
    assert cfg.MirageSettings(execution_mode=" SEQUENTIAL ").execution_mode == "sequential"
    with pytest.raises(ValueError):
        cfg.MirageSettings(execution_mode="lockstep")
    with pytest.raises(ValueError):
        cfg.MirageSettings(video_source="rtsp")
    assert cfg.MirageSettings(video_source="webcam").video_source == "webcam"


def test_rule_validation():
    with pytest.raises(ValueError):
        cfg.RuleConfig(class_id=1, color=(1.5, 0.0, 0.0, 1.0))
    with pytest.raises(ValueError):
        cfg.RuleConfig(class_id=1, min_range=-1.0)
    with pytest.raises(ValidationError, match="min_range must not exceed max_range"):
        cfg.RuleConfig(class_id=1, min_range=20.0, max_range=10.0)
    assert cfg.RuleConfig(class_id=1, min_range=5.0, max_range=5.0).to_rule().max_range == 5.0
    with pytest.raises(ValueError):
        cfg.EffectConfig(kind="sparkles")
    assert cfg.EffectConfig(kind=" Outline ").kind == "outline"


def test_effect_rules_keep_registration_order():
    settings = cfg.MirageSettings(
        effects=[
            {"kind": "bbox", "rules": [{"class_id": 9}], "options": {"location": [0, -1]}},
            {"kind": "outline", "rules": [{"class_id": 0}], "options": {"thickness": 2}},
            {"kind": "bbox", "rules": [{"class_id": 11}]},
        ]
    )
    grouped = settings.effect_rules()
    assert list(grouped) == [EffectKind.BBOX, EffectKind.OUTLINE]
    assert [r.class_id for r in grouped[EffectKind.BBOX]] == [9, 11]
    assert settings.effect_options(EffectKind.OUTLINE) == {"thickness": 2}
    assert settings.effect_options(EffectKind.KUWAHARA) == {}


def test_focal_length_scale():
    settings = cfg.MirageSettings(sensor_width_px=1000.0, focal_length_mm=4.0, sensor_width_mm=8.0)
    assert settings.focal_length_scale == pytest.approx(0.5)


def test_settings_to_dict_includes_expected_keys():
    data = cfg.settings_to_dict(cfg.MirageSettings(video_source="webcam"))
    assert data["video_source"] == "webcam"
    assert "execution_mode" in data
    assert "effects" in data


def test_presets_are_valid_settings():
    ids = [p["id"] for p in presets.list_presets()]
    assert ids == ["quality", "balanced", "fps_max"]
    for preset_id in ids:
        patch = presets.preset_patch(preset_id)
        cfg.MirageSettings(**patch)
    with pytest.raises(KeyError):
        presets.preset_patch("turbo")


def test_preset_patch_is_a_copy():
    patch = presets.preset_patch("quality")
    patch["jpeg_quality"] = 10
    assert presets.PRESETS["quality"]["jpeg_quality"] == 85
