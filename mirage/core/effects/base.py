"""Effect handler interface.

Effects are tagged with an `EffectKind` and dispatched through the
`EffectHandler` interface. Each handler owns a `RuleSet` and writes into one
surface:

- `Surface.OVERLAY`: RGBA layer at output (mask) resolution
- `Surface.IMAGE`: RGBA layer at image resolution, built from the input frame
- `Surface.UI`: pooled UI elements (boxes, icons, labels, transformed crops)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from mirage.core.effects.rules import EffectRule, RuleSet
from mirage.core.types import Frame, InpaintingResult, ObjectTable


class EffectKind(str, Enum):
    COLOR_AREA = "color_area"
    OUTLINE = "outline"
    OPACITY = "opacity"
    INPAINTING = "inpainting"
    ICON = "icon"
    BBOX = "bbox"
    INFO = "info"
    GAUSSIAN_BLUR = "gaussian_blur"
    KUWAHARA = "kuwahara"
    REPLACE = "replace"
    TRANSFORM = "transform"
    UTILITY = "utility"


class Surface(str, Enum):
    OVERLAY = "overlay"
    IMAGE = "image"
    UI = "ui"


@dataclass
class RenderContext:
    """Everything an effect may read while rendering one frame.

    `overlay` and `image_overlay` are float32 RGBA buffers in [0, 1], cleared
    once by the compositor before any handler runs. `shared` carries results
    between handlers that declare a dependency (e.g. the copied object pixels
    consumed by the transform effect).
    """

    frame: Frame
    table: ObjectTable
    overlay: np.ndarray
    image_overlay: np.ndarray
    inpainting: InpaintingResult | None = None
    class_names: dict[int, str] = field(default_factory=dict)
    shared: dict[str, object] = field(default_factory=dict)

    @property
    def image_size(self) -> tuple[int, int]:
        return int(self.frame.shape[1]), int(self.frame.shape[0])


class EffectHandler(ABC):
    """One registered effect instance."""

    kind: EffectKind
    surface: Surface
    depends_on: tuple[EffectKind, ...] = ()

    def __init__(self, rules: list[EffectRule] | None = None) -> None:
        self.rules = RuleSet()
        self.update_classes(rules or [])

    @property
    def is_running(self) -> bool:
        """False while only the sentinel rule is installed."""

        return not self.rules.is_default

    def update_classes(self, rules: list[EffectRule]) -> None:
        """Replace the rule set and rebuild the packed rule buffer.

        Meant for explicit configuration changes, not per-frame calls.
        """

        self.rules.replace(rules)
        self._on_rules_changed()

    def _on_rules_changed(self) -> None:
        """Hook for handlers holding state derived from rules (e.g. UI pools)."""

    @abstractmethod
    def render(self, ctx: RenderContext) -> None:
        """Render this effect for the current object table."""

        raise NotImplementedError
