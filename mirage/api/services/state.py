"""Process-wide pipeline state for the API.

Holds the loaded `MirageSettings` and the one `VideoEngine` that owns the
pipeline scheduler, its inference models and the video source. Routes reach
both through the functions below; core modules never import this one.
"""

from __future__ import annotations

import logging
from threading import RLock

from mirage.api.services.engine import VideoEngine
from mirage.core.config.settings import MirageSettings, load_settings, settings_to_dict

logger = logging.getLogger(__name__)

_settings: MirageSettings | None = None
_engine: VideoEngine | None = None
_lock = RLock()


def get_settings() -> MirageSettings:
    """Settings from YAML and `MIRAGE_` env vars, loaded once."""

    global _settings
    with _lock:
        if _settings is None:
            _settings = load_settings()
    return _settings


def reload_settings(data: dict | None = None) -> MirageSettings:
    """Reload settings, optionally patched with `data`.

    A running engine is replaced by a new one built from the new settings:
    the scheduler, the segmentation/depth/inpainting models and the video
    source are all recreated, and rule or stage changes made at runtime
    through the API are lost.
    """

    global _settings, _engine
    with _lock:
        base = load_settings()
        _settings = MirageSettings(**{**settings_to_dict(base), **data}) if data else base
        if _engine is not None:
            logger.info("Settings changed; rebuilding the pipeline (mode=%s)", _settings.execution_mode)
            _engine.stop()
            _engine = VideoEngine(_settings)
            _engine.start()
    return _settings


def get_engine() -> VideoEngine:
    """The shared engine, built and started on first use.

    Model or source failures do not raise here; they are reported through
    `VideoEngine.last_error` and surface in `/stats`.
    """

    global _engine
    with _lock:
        if _engine is None:
            _engine = VideoEngine(get_settings())
            _engine.start()
    return _engine


def stop_engine() -> None:
    """Stop the engine and release its models and source (no-op when absent)."""

    global _engine
    with _lock:
        if _engine is not None:
            _engine.stop()
            _engine = None
