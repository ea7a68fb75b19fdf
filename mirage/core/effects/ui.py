"""UI-surface effects backed by pools of reusable elements.

Elements are addressed by their position in the pool. Each frame, the first
`n` elements are updated (or created when the pool is too small) for the `n`
eligible objects, and every element past `n` is deactivated. Pools never
shrink during a run.

Coordinates are container pixels with the origin at the top-left corner. The
`location` option shifts an element relative to its object's box: `(0, 0)` is
the centre, `(-1, -1)` the top-left corner and `(1, 1)` the bottom-right one.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import cv2
import numpy as np

from mirage.core.effects.base import EffectHandler, EffectKind, RenderContext, Surface
from mirage.core.effects.rules import EffectRule
from mirage.core.types import Color, Detection, Point

WHITE: Color = (1.0, 1.0, 1.0, 1.0)


@dataclass
class UIElement:
    """State of one pooled element, as read by the presentation layer."""

    kind: EffectKind
    index: int
    object_index: int = -1
    position: Point = (0.0, 0.0)
    size: tuple[float, float] = (0.0, 0.0)
    color: Color = WHITE
    text: str | None = None
    # RGBA float32 picture (icon, replacement image or transformed crop).
    image: np.ndarray | None = None
    scale: float = 1.0
    rotation: float = 0.0
    active: bool = False


class ElementPool:
    """Grow-only pool of `UIElement`s for one effect."""

    def __init__(self, kind: EffectKind) -> None:
        self.kind = kind
        self.elements: list[UIElement] = []
        self.created = 0

    def __len__(self) -> int:
        return len(self.elements)

    def has(self, index: int) -> bool:
        return index < len(self.elements)

    def acquire(self, index: int) -> UIElement:
        """Return element `index`, creating it when the pool is too small."""

        while not self.has(index):
            self.elements.append(UIElement(kind=self.kind, index=len(self.elements)))
            self.created += 1
        return self.elements[index]

    def deactivate_from(self, start: int) -> int:
        """Deactivate every element at or past `start`; returns how many were active."""

        count = 0
        for element in self.elements[start:]:
            if element.active:
                element.active = False
                count += 1
        return count

    def deactivate_all(self) -> int:
        return self.deactivate_from(0)

    def active_elements(self) -> list[UIElement]:
        return [e for e in self.elements if e.active]


class UIEffect(EffectHandler):
    """Base class for per-object UI effects."""

    surface = Surface.UI

    def __init__(
        self,
        rules: list[EffectRule] | None = None,
        *,
        container_size: tuple[int, int] | None = None,
        location: tuple[float, float] = (0.0, 0.0),
        offset: tuple[float, float] = (0.0, 0.0),
    ) -> None:
        self.pool = ElementPool(self.kind)
        self.container_size = container_size
        self.location = (float(location[0]), float(location[1]))
        self.offset = (float(offset[0]), float(offset[1]))
        self.last_deactivated = 0
        super().__init__(rules)

    def _on_rules_changed(self) -> None:
        self.pool.deactivate_all()

    def geometry(self, det: Detection, sx: float, sy: float) -> tuple[Point, tuple[float, float]]:
        """Return (position, size) of an object's element in container pixels."""

        cx, cy, w, h = det.bbox
        size = (w * sx, h * sy)
        x = (cx + self.offset[0]) * sx + size[0] * 0.5 * self.location[0]
        y = (cy + self.offset[1]) * sy + size[1] * 0.5 * self.location[1]
        return (x, y), size

    def render(self, ctx: RenderContext) -> None:
        if not self.is_running:
            return
        out_w, out_h = ctx.table.output_size
        cont_w, cont_h = self.container_size or ctx.image_size
        sx = cont_w / float(out_w)
        sy = cont_h / float(out_h)

        match = self.rules.resolve(ctx.table)
        active = 0
        for det in ctx.table.detections:
            if not match.active[det.object_index]:
                continue
            position, size = self.geometry(det, sx, sy)
            element = self.pool.acquire(active)
            element.object_index = det.object_index
            element.position = position
            element.size = size
            element.color = tuple(float(c) for c in match.params[det.object_index])
            self.update_element(element, det, ctx)
            element.active = True
            active += 1
        self.last_deactivated = self.pool.deactivate_from(active)

    def update_element(self, element: UIElement, det: Detection, ctx: RenderContext) -> None:
        """Fill effect-specific fields of an element."""

    def active_elements(self) -> list[UIElement]:
        return [replace(e) for e in self.pool.active_elements()]


class BoundingBoxEffect(UIEffect):
    """A rectangle around each eligible object."""

    kind = EffectKind.BBOX


class ObjectInfoEffect(UIEffect):
    """Text label with class name and distance."""

    kind = EffectKind.INFO

    def update_element(self, element: UIElement, det: Detection, ctx: RenderContext) -> None:
        name = ctx.class_names.get(det.class_id, f"class {det.class_id}")
        element.text = f"{name}\n{det.depth:.2f}m"


def load_picture(path: str | Path) -> np.ndarray:
    """Load an image file as RGBA float32 in [0, 1]."""

    img = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if img is None:
        raise FileNotFoundError(f"cannot read image: {path}")
    if img.ndim == 2:
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGRA)
    elif img.shape[2] == 3:
        img = cv2.cvtColor(img, cv2.COLOR_BGR2BGRA)
    rgba = cv2.cvtColor(img, cv2.COLOR_BGRA2RGBA)
    return rgba.astype(np.float32) / 255.0


class IconEffect(UIEffect):
    """A fixed-size icon anchored to each eligible object.

    Without a picture the icon is a filled disc in the rule color.
    """

    kind = EffectKind.ICON

    def __init__(
        self,
        rules: list[EffectRule] | None = None,
        *,
        picture: np.ndarray | None = None,
        icon_size: float = 48.0,
        **kwargs: Any,
    ) -> None:
        self.picture = picture
        self.icon_size = float(icon_size)
        super().__init__(rules, **kwargs)

    def geometry(self, det: Detection, sx: float, sy: float) -> tuple[Point, tuple[float, float]]:
        cx, cy, w, h = det.bbox
        x = (cx + self.offset[0]) * sx + w * sx * 0.5 * self.location[0]
        y = (cy + self.offset[1]) * sy + h * sy * 0.5 * self.location[1]
        return (x, y), (self.icon_size, self.icon_size)

    def update_element(self, element: UIElement, det: Detection, ctx: RenderContext) -> None:
        element.image = self.picture


class ReplaceEffect(UIEffect):
    """Covers each eligible object's box with a picture (2D replacement)."""

    kind = EffectKind.REPLACE

    def __init__(
        self,
        rules: list[EffectRule] | None = None,
        *,
        picture: np.ndarray | None = None,
        keep_aspect: bool = False,
        scale_by_height: bool = True,
        **kwargs: Any,
    ) -> None:
        self.picture = picture
        self.keep_aspect = keep_aspect
        self.scale_by_height = scale_by_height
        super().__init__(rules, **kwargs)

    def geometry(self, det: Detection, sx: float, sy: float) -> tuple[Point, tuple[float, float]]:
        position, (w, h) = super().geometry(det, sx, sy)
        if self.keep_aspect and self.picture is not None and self.picture.shape[0] > 0:
            aspect = self.picture.shape[1] / float(self.picture.shape[0])
            if self.scale_by_height:
                w = h * aspect
            else:
                h = w / aspect if aspect > 0 else h
        return position, (w, h)

    def update_element(self, element: UIElement, det: Detection, ctx: RenderContext) -> None:
        element.image = self.picture


class TransformEffect(UIEffect):
    """Scales/rotates a cut-out of each eligible object.

    Reads the object copy published by the image-copy effect, so it must render
    after it.
    """

    kind = EffectKind.TRANSFORM
    depends_on = (EffectKind.UTILITY,)

    def __init__(
        self,
        rules: list[EffectRule] | None = None,
        *,
        scale: float = 1.0,
        rotation: float = 0.0,
        **kwargs: Any,
    ) -> None:
        self.scale = float(scale)
        self.rotation = float(rotation)
        super().__init__(rules, **kwargs)

    def update_element(self, element: UIElement, det: Detection, ctx: RenderContext) -> None:
        element.scale = self.scale
        element.rotation = self.rotation
        copy = ctx.shared.get("object_copy")
        if not isinstance(copy, np.ndarray):
            element.image = None
            return
        out_w, out_h = ctx.table.output_size
        img_w, img_h = ctx.image_size
        x1, y1, x2, y2 = det.corners()
        fx = img_w / float(out_w)
        fy = img_h / float(out_h)
        left = int(np.clip(np.floor(x1 * fx), 0, img_w))
        top = int(np.clip(np.floor(y1 * fy), 0, img_h))
        right = int(np.clip(np.ceil(x2 * fx), 0, img_w))
        bottom = int(np.clip(np.ceil(y2 * fy), 0, img_h))
        crop = copy[top:bottom, left:right]
        element.image = crop.copy() if crop.size else None


UI_EFFECTS: dict[EffectKind, type[UIEffect]] = {
    EffectKind.BBOX: BoundingBoxEffect,
    EffectKind.INFO: ObjectInfoEffect,
    EffectKind.ICON: IconEffect,
    EffectKind.REPLACE: ReplaceEffect,
    EffectKind.TRANSFORM: TransformEffect,
}


def ui_effect_options(kind: EffectKind, options: dict[str, Any]) -> dict[str, Any]:
    """Translate YAML options into constructor keyword arguments."""

    kwargs: dict[str, Any] = {}
    if "location" in options:
        kwargs["location"] = tuple(float(v) for v in options["location"])
    if "offset" in options:
        kwargs["offset"] = tuple(float(v) for v in options["offset"])
    if kind in (EffectKind.ICON, EffectKind.REPLACE) and options.get("picture"):
        kwargs["picture"] = load_picture(options["picture"])
    if kind is EffectKind.ICON and "icon_size" in options:
        kwargs["icon_size"] = float(options["icon_size"])
    if kind is EffectKind.REPLACE:
        if "keep_aspect" in options:
            kwargs["keep_aspect"] = bool(options["keep_aspect"])
        if "scale_by_height" in options:
            kwargs["scale_by_height"] = bool(options["scale_by_height"])
    if kind is EffectKind.TRANSFORM:
        if "scale" in options:
            kwargs["scale"] = float(options["scale"])
        if "rotation" in options:
            kwargs["rotation"] = float(options["rotation"])
    return kwargs


def _paste(img: np.ndarray, picture: np.ndarray, center: Point, size: tuple[float, float], rotation: float) -> None:
    w = max(1, int(round(size[0])))
    h = max(1, int(round(size[1])))
    pic = cv2.resize(np.ascontiguousarray(picture), (w, h), interpolation=cv2.INTER_LINEAR)
    if rotation:
        m = cv2.getRotationMatrix2D((w / 2.0, h / 2.0), rotation, 1.0)
        pic = cv2.warpAffine(pic, m, (w, h), flags=cv2.INTER_LINEAR, borderValue=(0, 0, 0, 0))
    x0 = int(round(center[0] - w / 2.0))
    y0 = int(round(center[1] - h / 2.0))
    ih, iw = img.shape[:2]
    xa, ya = max(0, x0), max(0, y0)
    xb, yb = min(iw, x0 + w), min(ih, y0 + h)
    if xa >= xb or ya >= yb:
        return
    part = pic[ya - y0 : yb - y0, xa - x0 : xb - x0]
    alpha = part[..., 3:4]
    bgr = part[..., 2::-1] * 255.0
    roi = img[ya:yb, xa:xb].astype(np.float32)
    img[ya:yb, xa:xb] = (roi * (1.0 - alpha) + bgr * alpha).astype(np.uint8)


def _bgr(color: Color) -> tuple[int, int, int]:
    r, g, b = color[:3]
    return int(b * 255), int(g * 255), int(r * 255)


def draw_elements(img: np.ndarray, elements: list[UIElement]) -> np.ndarray:
    """Draw active UI elements onto a BGR uint8 image (in place) and return it."""

    for e in elements:
        if not e.active:
            continue
        cx, cy = e.position
        w, h = e.size
        color = _bgr(e.color)
        if e.kind is EffectKind.BBOX:
            cv2.rectangle(
                img,
                (int(cx - w / 2), int(cy - h / 2)),
                (int(cx + w / 2), int(cy + h / 2)),
                color,
                2,
            )
        elif e.kind is EffectKind.INFO and e.text:
            for i, line in enumerate(e.text.split("\n")):
                cv2.putText(
                    img,
                    line,
                    (int(cx), int(cy) + i * 18),
                    cv2.FONT_HERSHEY_SIMPLEX,
                    0.5,
                    color,
                    1,
                    cv2.LINE_AA,
                )
        elif e.image is not None:
            _paste(img, e.image, (cx, cy), (w * e.scale, h * e.scale), e.rotation)
        elif e.kind is EffectKind.ICON:
            cv2.circle(img, (int(cx), int(cy)), max(1, int(min(w, h) / 2)), color, -1)
    return img
