from __future__ import annotations

from typing import Any


# Performance presets. Update rates trade per-stage latency for a responsive
# control loop when several models share one device.
#
# Notes:
# - *_update_rate: fraction of a model's layers processed per scheduler tick
# - execution_mode: "sequential" yields one coherent inference time per iteration
# - jpeg_quality primarily affects MJPEG encode/transport cost


PRESETS: dict[str, dict[str, Any]] = {
    # Whole models per tick, lockstep stages; best visual coherence.
    "quality": {
        "execution_mode": "sequential",
        "segmentation_update_rate": 1.0,
        "depth_update_rate": 1.0,
        "inpainting_update_rate": 1.0,
        "jpeg_quality": 85,
        "target_fps": 0.0,
    },
    # Independent stages, depth/inpainting spread over several ticks.
    "balanced": {
        "execution_mode": "parallel",
        "segmentation_update_rate": 1.0,
        "depth_update_rate": 0.5,
        "inpainting_update_rate": 0.5,
        "jpeg_quality": 70,
        "target_fps": 0.0,
    },
    # Keep the loop responsive; heavy models trickle through in small slices.
    "fps_max": {
        "execution_mode": "parallel",
        "segmentation_update_rate": 0.5,
        "depth_update_rate": 0.25,
        "inpainting_update_rate": 0.2,
        "jpeg_quality": 55,
        "target_fps": 0.0,
    },
}


PRESET_LABELS: dict[str, str] = {
    "quality": "Quality",
    "balanced": "Balanced",
    "fps_max": "FPS max",
}


def list_presets() -> list[dict[str, Any]]:
    return [
        {
            "id": preset_id,
            "label": PRESET_LABELS.get(preset_id, preset_id),
            "settings": PRESETS[preset_id],
        }
        for preset_id in PRESETS.keys()
    ]


def preset_patch(preset_id: str) -> dict[str, Any]:
    if preset_id not in PRESETS:
        raise KeyError(preset_id)
    return dict(PRESETS[preset_id])
