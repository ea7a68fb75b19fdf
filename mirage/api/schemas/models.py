"""Pydantic models for the HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from mirage.core.config.settings import EffectConfig, RuleConfig


class StageSchema(BaseModel):
    """Runtime state of one inference stage."""

    enabled: bool
    status: str
    update_rate: float
    last_duration_s: float | None = None
    last_error: str | None = None
    errors: int = 0


class StatsSchema(BaseModel):
    """High-level pipeline stats payload."""

    frame_id: int
    objects: int
    fps: float
    iterations: int
    mode: str | None = None
    stages: dict[str, StageSchema] = Field(default_factory=dict)
    error: str | None = None


class StageUpdateSchema(BaseModel):
    """Runtime stage control; omitted fields are left unchanged."""

    enabled: bool | None = None
    update_rate: float | None = Field(default=None, ge=0.0, le=1.0)


class EffectRulesSchema(BaseModel):
    """Replacement rule list for one effect kind."""

    rules: list[RuleConfig] = Field(default_factory=list)


class BenchmarkStartSchema(BaseModel):
    duration_s: float = Field(default=60.0, gt=0.0)


class BenchmarkSchema(BaseModel):
    """Benchmark state and summary statistics (seconds)."""

    benchmarking: bool
    duration_s: float
    elapsed_s: float
    samples: int
    discarded: int
    statistics: dict[str, dict[str, float]] = Field(default_factory=dict)


class ConfigSchema(BaseModel):
    """Runtime configuration payload."""

    video_source: str
    video_path: str | None = None
    webcam_index: int = Field(default=0, ge=0)
    image_width: int = Field(default=1280, gt=0)
    image_height: int = Field(default=720, gt=0)
    output_width: int = Field(default=640, gt=0)
    output_height: int = Field(default=360, gt=0)
    execution_mode: str = "parallel"
    device: str = "cpu"
    segmentation_model: str
    segmentation_input_size: int = Field(default=640, gt=0)
    segmentation_update_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    class_names: list[str] = Field(default_factory=list)
    depth_enabled: bool = False
    depth_model: str | None = None
    depth_input_size: int = Field(default=518, gt=0)
    depth_update_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    inpainting_enabled: bool = False
    inpainting_model: str | None = None
    inpainting_input_size: int = Field(default=512, gt=0)
    inpainting_update_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    max_objects: int = Field(default=256, gt=0)
    iou_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    score_threshold: float = Field(default=0.25, ge=0.0, le=1.0)
    mask_threshold: float = Field(default=0.25, ge=0.0, le=1.0)
    stage_timeout_s: float = Field(default=5.0, gt=0.0)
    target_fps: float | None = Field(default=None, ge=0)
    jpeg_quality: int = Field(default=70, ge=10, le=100)
    effects: list[EffectConfig] = Field(default_factory=list)

    @field_validator("video_source")
    @classmethod
    def _validate_source(cls, v: str) -> str:
        if v not in {"webcam", "file"}:
            raise ValueError("video_source must be webcam|file")
        return v

    @field_validator("execution_mode")
    @classmethod
    def _validate_mode(cls, v: str) -> str:
        v2 = str(v).strip().lower()
        if v2 not in {"parallel", "sequential"}:
            raise ValueError("execution_mode must be parallel|sequential")
        return v2


def config_payload(data: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys exposed by `ConfigSchema`."""

    return {k: v for k, v in data.items() if k in ConfigSchema.model_fields}
