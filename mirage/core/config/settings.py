"""Pipeline configuration.

Settings are loaded from YAML defaults and overridden by environment variables
prefixed with `MIRAGE_`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mirage.core.effects.base import EffectKind
from mirage.core.effects.rules import EffectRule


class RuleConfig(BaseModel):
    """One effect rule as written in YAML / JSON."""

    class_id: int
    min_range: float = Field(default=0.0, ge=0.0)
    max_range: float = Field(default=100.0, ge=0.0)
    color: tuple[float, float, float, float] = (1.0, 1.0, 1.0, 1.0)

    @field_validator("color")
    @classmethod
    def _validate_color(cls, v: tuple[float, float, float, float]) -> tuple[float, float, float, float]:
        if any(not 0.0 <= c <= 1.0 for c in v):
            raise ValueError("color components must be in [0, 1]")
        return v

    @model_validator(mode="after")
    def _validate_range(self) -> RuleConfig:
        if self.min_range > self.max_range:
            raise ValueError("min_range must not exceed max_range")
        return self

    def to_rule(self) -> EffectRule:
        return EffectRule(
            class_id=self.class_id,
            min_range=self.min_range,
            max_range=self.max_range,
            color=tuple(float(c) for c in self.color),
        )


class EffectConfig(BaseModel):
    """Rules for one effect kind; `options` are effect specific (icon path, offsets...)."""

    kind: str
    rules: list[RuleConfig] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("kind")
    @classmethod
    def _validate_kind(cls, v: str) -> str:
        v2 = str(v).strip().lower()
        if v2 not in {k.value for k in EffectKind}:
            raise ValueError(f"unknown effect kind: {v}")
        return v2

    def to_rules(self) -> list[EffectRule]:
        return [r.to_rule() for r in self.rules]


class MirageSettings(BaseSettings):
    """Runtime configuration loaded from YAML defaults and `MIRAGE_` env overrides."""

    video_source: str = Field("file", description="webcam|file")
    video_path: str | None = None
    webcam_index: int = 0

    # Frame handed to the stages; captured frames are resized to this.
    image_width: int = 1280
    image_height: int = 720
    # Instance mask / overlay resolution.
    output_width: int = 640
    output_height: int = 360

    execution_mode: str = Field("parallel", description="parallel|sequential")
    device: str = "cpu"

    segmentation_model: str = "yolo11n-seg.pt"
    segmentation_input_size: int = 640
    segmentation_update_rate: float = 1.0
    class_names: list[str] = Field(default_factory=list)

    depth_enabled: bool = False
    depth_model: str | None = None
    depth_input_size: int = 518
    depth_update_rate: float = 1.0
    depth_pad_multiple: int = 14
    # Camera calibration used to turn relative depth into metres.
    sensor_width_px: float = 1280.0
    focal_length_mm: float = 3.67
    sensor_width_mm: float = 5.7

    inpainting_enabled: bool = False
    inpainting_model: str | None = None
    inpainting_input_size: int = 512
    inpainting_update_rate: float = 1.0

    max_objects: int = 256
    iou_threshold: float = 0.7
    score_threshold: float = 0.25
    mask_threshold: float = 0.25

    # Bounded wait before a stage is treated as failed for the iteration.
    stage_timeout_s: float = 5.0
    # Optional cap for the processing loop. 0 or None runs as fast as possible.
    target_fps: float | None = None
    jpeg_quality: int = 70

    effects: list[EffectConfig] = Field(default_factory=list)

    model_config = SettingsConfigDict(env_prefix="MIRAGE_", validate_assignment=True)

    @field_validator("video_source")
    @classmethod
    def _validate_source(cls, v: str) -> str:
        if v not in {"webcam", "file"}:
            raise ValueError("video_source must be webcam|file")
        return v

    @field_validator("execution_mode")
    @classmethod
    def _validate_execution_mode(cls, v: str) -> str:
        v2 = str(v).strip().lower()
        if v2 not in {"parallel", "sequential"}:
            raise ValueError("execution_mode must be parallel|sequential")
        return v2

    @field_validator(
        "image_width",
        "image_height",
        "output_width",
        "output_height",
        "segmentation_input_size",
        "depth_input_size",
        "inpainting_input_size",
        "depth_pad_multiple",
    )
    @classmethod
    def _validate_dimension(cls, v: int) -> int:
        if int(v) <= 0:
            raise ValueError("dimensions must be > 0")
        return int(v)

    @field_validator("segmentation_update_rate", "depth_update_rate", "inpainting_update_rate")
    @classmethod
    def _validate_update_rate(cls, v: float) -> float:
        if not 0.0 <= float(v) <= 1.0:
            raise ValueError("update rate must be in [0, 1]")
        return float(v)

    @field_validator("iou_threshold", "score_threshold", "mask_threshold")
    @classmethod
    def _validate_threshold(cls, v: float) -> float:
        if not 0.0 <= float(v) <= 1.0:
            raise ValueError("thresholds must be in [0, 1]")
        return float(v)

    @field_validator("max_objects")
    @classmethod
    def _validate_max_objects(cls, v: int) -> int:
        if int(v) <= 0:
            raise ValueError("max_objects must be >= 1")
        return int(v)

    @field_validator("sensor_width_px", "focal_length_mm", "sensor_width_mm")
    @classmethod
    def _validate_calibration(cls, v: float) -> float:
        if float(v) <= 0:
            raise ValueError("camera calibration values must be > 0")
        return float(v)

    @field_validator("stage_timeout_s")
    @classmethod
    def _validate_stage_timeout(cls, v: float) -> float:
        if float(v) <= 0:
            raise ValueError("stage_timeout_s must be > 0")
        return float(v)

    @field_validator("target_fps")
    @classmethod
    def _validate_target_fps(cls, v: float | None) -> float | None:
        if v is None:
            return v
        if v < 0:
            raise ValueError("target_fps must be >= 0")
        return float(v)

    @field_validator("jpeg_quality")
    @classmethod
    def _validate_jpeg_quality(cls, v: int) -> int:
        if not 10 <= int(v) <= 100:
            raise ValueError("jpeg_quality must be in [10, 100]")
        return int(v)

    @property
    def focal_length_scale(self) -> float:
        """Scale applied to relative depth to obtain metres."""

        return (self.sensor_width_px * self.focal_length_mm / self.sensor_width_mm) / 1000.0

    def effect_rules(self) -> dict[EffectKind, list[EffectRule]]:
        """Group configured rules by effect kind, preserving registration order."""

        grouped: dict[EffectKind, list[EffectRule]] = {}
        for effect in self.effects:
            grouped.setdefault(EffectKind(effect.kind), []).extend(effect.to_rules())
        return grouped

    def effect_options(self, kind: EffectKind) -> dict[str, Any]:
        options: dict[str, Any] = {}
        for effect in self.effects:
            if effect.kind == kind.value:
                options.update(effect.options)
        return options


def settings_to_dict(settings: MirageSettings) -> dict[str, Any]:
    """Convert settings to a plain dict."""

    return settings.model_dump()


def _config_path() -> Path:
    """Return the YAML configuration path (defaults to config/mirage.config.yml)."""

    return Path(os.getenv("MIRAGE_CONFIG", "config/mirage.config.yml"))


def load_settings() -> MirageSettings:
    """Load settings from YAML and environment variables.

    YAML provides defaults; environment variables override.
    """

    data: dict[str, Any] = {}
    path = _config_path()
    if path.exists():
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

    env_settings = MirageSettings()
    env_overrides: dict[str, Any] = {
        name: getattr(env_settings, name) for name in env_settings.model_fields_set
    }

    merged = {**data, **env_overrides}
    return MirageSettings(**merged)
