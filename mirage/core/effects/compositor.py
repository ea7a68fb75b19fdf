"""Per-object effect compositor.

Holds the registered effect handlers, orders them (declared dependencies
first, then registration order) and renders one frame's surfaces from the
current object table.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import cv2
import numpy as np

from mirage.core.effects.base import EffectHandler, EffectKind, RenderContext
from mirage.core.effects.gpu import GPU_EFFECTS, gpu_effect_options
from mirage.core.effects.rules import EffectRule
from mirage.core.effects.ui import UI_EFFECTS, UIEffect, UIElement, draw_elements, ui_effect_options
from mirage.core.errors import PipelineConfigError
from mirage.core.types import Frame, InpaintingResult, ObjectTable

logger = logging.getLogger(__name__)

# Kinds whose rules are also installed on another handler (the transform effect
# reads the pixels copied by the image-copy effect).
LINKED_RULES: dict[EffectKind, tuple[EffectKind, ...]] = {
    EffectKind.TRANSFORM: (EffectKind.UTILITY,),
}


@dataclass
class CompositeFrame:
    """Output of one compositing pass."""

    frame_id: int
    overlay: np.ndarray
    image_overlay: np.ndarray
    ui_elements: list[UIElement] = field(default_factory=list)


class EffectCompositor:
    def __init__(
        self,
        output_size: tuple[int, int],
        image_size: tuple[int, int],
        class_names: dict[int, str] | None = None,
    ) -> None:
        if min(output_size) <= 0 or min(image_size) <= 0:
            raise PipelineConfigError(f"invalid surface sizes: output={output_size} image={image_size}")
        self.output_size = output_size
        self.image_size = image_size
        self.class_names = dict(class_names or {})
        self._handlers: dict[EffectKind, EffectHandler] = {}
        out_w, out_h = output_size
        img_w, img_h = image_size
        self.overlay = np.zeros((out_h, out_w, 4), dtype=np.float32)
        self.image_overlay = np.zeros((img_h, img_w, 4), dtype=np.float32)
        self.render_errors = 0

    @property
    def kinds(self) -> list[EffectKind]:
        return list(self._handlers)

    def register(self, handler: EffectHandler) -> EffectHandler:
        """Register a handler; replaces an existing handler of the same kind."""

        if handler.kind in self._handlers:
            logger.debug("Replacing %s effect handler", handler.kind.value)
        self._handlers[handler.kind] = handler
        return handler

    def handler(self, kind: EffectKind) -> EffectHandler | None:
        return self._handlers.get(kind)

    def update_classes(self, kind: EffectKind, rules: list[EffectRule]) -> None:
        """Install new rules on the handler for `kind` (and its linked handlers)."""

        handler = self._handlers.get(kind)
        if handler is None:
            raise PipelineConfigError(f"no effect registered for kind {kind.value!r}")
        handler.update_classes(rules)
        for linked in LINKED_RULES.get(kind, ()):
            other = self._handlers.get(linked)
            if other is not None:
                other.update_classes(rules)

    def render_order(self) -> list[EffectHandler]:
        """Handlers in registration order, dependencies moved before dependents."""

        ordered: list[EffectHandler] = []
        placed: set[EffectKind] = set()

        def place(kind: EffectKind, visiting: frozenset[EffectKind]) -> None:
            if kind in placed or kind not in self._handlers:
                return
            if kind in visiting:
                raise PipelineConfigError(f"effect dependency cycle at {kind.value!r}")
            handler = self._handlers[kind]
            for dep in handler.depends_on:
                place(dep, visiting | {kind})
            placed.add(kind)
            ordered.append(handler)

        for kind in self._handlers:
            place(kind, frozenset())
        return ordered

    def clear(self) -> None:
        self.overlay.fill(0.0)
        self.image_overlay.fill(0.0)

    def render(
        self,
        frame: Frame,
        table: ObjectTable,
        inpainting: InpaintingResult | None = None,
    ) -> CompositeFrame:
        """Clear the surfaces once and run every handler against `table`.

        A failing handler is logged and skipped; the others still render.
        """

        self.clear()
        ctx = RenderContext(
            frame=frame,
            table=table,
            overlay=self.overlay,
            image_overlay=self.image_overlay,
            inpainting=inpainting,
            class_names=self.class_names,
        )
        ui_elements: list[UIElement] = []
        for handler in self.render_order():
            try:
                handler.render(ctx)
            except Exception:
                self.render_errors += 1
                logger.exception("Effect %s failed to render", handler.kind.value)
                continue
            if isinstance(handler, UIEffect):
                ui_elements.extend(handler.active_elements())
        return CompositeFrame(
            frame_id=table.frame_id,
            overlay=self.overlay.copy(),
            image_overlay=self.image_overlay.copy(),
            ui_elements=ui_elements,
        )


def _blend(base: np.ndarray, layer: np.ndarray) -> np.ndarray:
    """Alpha-blend an RGBA float layer over a BGR float image."""

    alpha = layer[..., 3:4]
    bgr = layer[..., 2::-1]
    return base * (1.0 - alpha) + bgr * alpha


def compose_display(frame: Frame, composite: CompositeFrame) -> np.ndarray:
    """Blend the image overlay, then the overlay, onto the frame and draw UI elements.

    Returns a BGR uint8 image at frame resolution.
    """

    h, w = frame.shape[:2]
    out = frame[..., :3].astype(np.float32) / 255.0
    image_overlay = composite.image_overlay
    if image_overlay.shape[:2] != (h, w):
        image_overlay = cv2.resize(image_overlay, (w, h), interpolation=cv2.INTER_LINEAR)
    out = _blend(out, image_overlay)
    overlay = cv2.resize(composite.overlay, (w, h), interpolation=cv2.INTER_NEAREST)
    out = _blend(out, overlay)
    img = np.clip(out * 255.0, 0, 255).astype(np.uint8)
    return draw_elements(img, composite.ui_elements)


def build_compositor(
    output_size: tuple[int, int],
    image_size: tuple[int, int],
    effects: Iterable[tuple[EffectKind, list[EffectRule], dict[str, Any]]],
    class_names: dict[int, str] | None = None,
) -> EffectCompositor:
    """Create a compositor with one handler per configured effect kind."""

    compositor = EffectCompositor(output_size, image_size, class_names)
    pending_links: list[tuple[EffectKind, list[EffectRule]]] = []
    for kind, rules, options in effects:
        if kind in GPU_EFFECTS:
            compositor.register(GPU_EFFECTS[kind](rules, **gpu_effect_options(kind, options)))
        elif kind in UI_EFFECTS:
            kwargs = ui_effect_options(kind, options)
            kwargs.setdefault("container_size", image_size)
            compositor.register(UI_EFFECTS[kind](rules, **kwargs))
        else:
            raise PipelineConfigError(f"unsupported effect kind: {kind.value!r}")
        if kind in LINKED_RULES:
            pending_links.append((kind, rules))

    for kind, rules in pending_links:
        for linked in LINKED_RULES[kind]:
            if compositor.handler(linked) is None:
                compositor.register(GPU_EFFECTS[linked](rules))
        compositor.update_classes(kind, rules)
    return compositor

