"""Whole-image effects.

Every effect here is a single vectorised pass over the frame: the rule set is
resolved once per detection, then mapped onto pixels through the instance
mask, so the cost depends on the number of pixels rather than on the number of
objects. Surfaces are RGBA float32 in [0, 1], colors in RGB order.
"""

from __future__ import annotations

from typing import Any

import cv2
import numpy as np

from mirage.core.effects.base import EffectHandler, EffectKind, RenderContext, Surface
from mirage.core.effects.rules import EffectRule, RuleMatch, lookup_pixels

# Rule colors double as parameter vectors; integer parameters are stored /255.
PARAM_SCALE = 255.0

# Kuwahara sector count range and variance weighting exponent.
MIN_SECTORS = 4
MAX_SECTORS = 16
SHARPNESS = 8.0


def image_instance_ids(ctx: RenderContext) -> np.ndarray:
    """Instance ids resized (nearest) to image resolution, cached per render."""

    cached = ctx.shared.get("image_instance_ids")
    if isinstance(cached, np.ndarray):
        return cached
    ids = ctx.table.instance_ids
    w, h = ctx.image_size
    if ids.shape != (h, w):
        ids = cv2.resize(np.ascontiguousarray(ids), (w, h), interpolation=cv2.INTER_NEAREST)
    ctx.shared["image_instance_ids"] = ids
    return ids


def frame_rgb(ctx: RenderContext) -> np.ndarray:
    """The frame as RGB float32 in [0, 1], cached per render."""

    cached = ctx.shared.get("frame_rgb")
    if isinstance(cached, np.ndarray):
        return cached
    rgb = cv2.cvtColor(np.ascontiguousarray(ctx.frame[..., :3]), cv2.COLOR_BGR2RGB).astype(np.float32) / 255.0
    ctx.shared["frame_rgb"] = rgb
    return rgb


class ColorAreaEffect(EffectHandler):
    """Fills eligible objects with the rule color (alpha from the rule)."""

    kind = EffectKind.COLOR_AREA
    surface = Surface.OVERLAY

    def render(self, ctx: RenderContext) -> None:
        match = self.rules.resolve(ctx.table)
        if match.count == 0:
            return
        selected, params = match.pixel_lookup(ctx.table)
        ctx.overlay[selected] = params[selected]


class OutlineEffect(EffectHandler):
    """Draws the mask boundary of eligible objects."""

    kind = EffectKind.OUTLINE
    surface = Surface.OVERLAY

    def __init__(self, rules: list[EffectRule] | None = None, thickness: int = 3) -> None:
        super().__init__(rules)
        self.thickness = max(1, int(thickness))

    def render(self, ctx: RenderContext) -> None:
        match = self.rules.resolve(ctx.table)
        if match.count == 0:
            return
        selected, params = match.pixel_lookup(ctx.table)
        ids = np.where(selected, ctx.table.instance_ids, -1)
        # A pixel is on a boundary when any 4-neighbour belongs to another instance.
        padded = np.pad(ids, 1, mode="constant", constant_values=-1)
        edge = (
            (padded[1:-1, :-2] != ids)
            | (padded[1:-1, 2:] != ids)
            | (padded[:-2, 1:-1] != ids)
            | (padded[2:, 1:-1] != ids)
        ) & selected
        if self.thickness > 1:
            kernel = np.ones((self.thickness, self.thickness), dtype=np.uint8)
            edge = cv2.dilate(edge.astype(np.uint8), kernel).astype(bool) & selected
        ctx.overlay[edge] = params[edge]


class GaussianBlurEffect(EffectHandler):
    """Blurs eligible objects; radius = r * 255, sigma = g * 255. Radius 0 leaves them untouched."""

    kind = EffectKind.GAUSSIAN_BLUR
    surface = Surface.IMAGE

    def render(self, ctx: RenderContext) -> None:
        match = self.rules.resolve(ctx.table)
        if match.count == 0:
            return
        selected, params = lookup_pixels(match, image_instance_ids(ctx))
        rgb = frame_rgb(ctx)
        for radius, sigma in _unique_params(match, (0, 1)):
            r = int(round(radius * PARAM_SCALE))
            if r <= 0:
                continue
            s = max(0.1, float(sigma * PARAM_SCALE))
            blurred = cv2.GaussianBlur(rgb, (2 * r + 1, 2 * r + 1), s)
            target = selected & np.isclose(params[..., 0], radius) & np.isclose(params[..., 1], sigma)
            ctx.image_overlay[target, :3] = blurred[target]
            ctx.image_overlay[target, 3] = 1.0


class KuwaharaEffect(EffectHandler):
    """Paint-like generalised Kuwahara filter over eligible objects.

    Parameters: radius = r * 255, sectors = g * 255 (4 to 16),
    strength = b * 255 (0 to 1). The disc of the given radius is split into
    angular sectors; each output pixel blends the sector means weighted by
    `1 / (1 + var) ** SHARPNESS`, and the result is mixed with the original
    pixel by strength.
    """

    kind = EffectKind.KUWAHARA
    surface = Surface.IMAGE

    def render(self, ctx: RenderContext) -> None:
        match = self.rules.resolve(ctx.table)
        if match.count == 0:
            return
        selected, params = lookup_pixels(match, image_instance_ids(ctx))
        rgb = frame_rgb(ctx)
        for radius, sectors, strength in _unique_params(match, (0, 1, 2)):
            r = max(1, int(round(radius * PARAM_SCALE)))
            n = min(MAX_SECTORS, max(MIN_SECTORS, int(round(sectors * PARAM_SCALE))))
            amount = min(1.0, max(0.0, float(strength * PARAM_SCALE)))
            filtered = kuwahara(rgb, r, n)
            target = (
                selected
                & np.isclose(params[..., 0], radius)
                & np.isclose(params[..., 1], sectors)
                & np.isclose(params[..., 2], strength)
            )
            ctx.image_overlay[target, :3] = (amount * filtered + (1.0 - amount) * rgb)[target]
            ctx.image_overlay[target, 3] = 1.0


def sector_kernels(radius: int, sectors: int) -> list[np.ndarray]:
    """Normalised averaging kernels, one per angular sector of a disc.

    The centre pixel belongs to every sector. Sectors too thin to hold any
    other pixel at this radius are dropped.
    """

    ys, xs = np.mgrid[-radius : radius + 1, -radius : radius + 1]
    inside = xs * xs + ys * ys <= (radius + 0.5) ** 2
    angle = np.mod(np.arctan2(ys, xs), 2.0 * np.pi)
    width = 2.0 * np.pi / sectors
    centre = (ys == 0) & (xs == 0)
    kernels = []
    for k in range(sectors):
        diff = np.abs(np.mod(angle - (k + 0.5) * width + np.pi, 2.0 * np.pi) - np.pi)
        member = inside & ((diff <= width / 2.0 + 1e-6) | centre)
        if member.sum() < 2:
            continue
        kernel = member.astype(np.float32)
        kernels.append(kernel / kernel.sum())
    return kernels


def kuwahara(rgb: np.ndarray, radius: int, sectors: int = 8, sharpness: float = SHARPNESS) -> np.ndarray:
    """Sector-based Kuwahara filter on a float32 RGB image."""

    sq = rgb * rgb
    means = []
    log_weights = []
    for kernel in sector_kernels(radius, sectors):
        mean = cv2.filter2D(rgb, -1, kernel, borderType=cv2.BORDER_REFLECT)
        mean_sq = cv2.filter2D(sq, -1, kernel, borderType=cv2.BORDER_REFLECT)
        var = np.clip(mean_sq - mean * mean, 0.0, None).sum(axis=2) * PARAM_SCALE
        means.append(mean)
        log_weights.append(-sharpness * np.log1p(var))
    if not means:
        return rgb.copy()
    # Normalised in log space so large sharpness values do not underflow.
    logw = np.stack(log_weights)
    w = np.exp(logw - logw.max(axis=0, keepdims=True))
    w /= w.sum(axis=0, keepdims=True)
    return np.einsum("qhw,qhwc->hwc", w, np.stack(means)).astype(np.float32)


def _unique_params(match: RuleMatch, channels: tuple[int, ...]) -> list[tuple[float, ...]]:
    values = {tuple(float(p[c]) for c in channels) for p in match.params[match.active]}
    return sorted(values)


class ImageCopyEffect(EffectHandler):
    """Copies the pixels of eligible objects into a separate RGBA buffer.

    Nothing is drawn; the copy is published in `ctx.shared["object_copy"]` for
    effects that depend on it (the transform effect).
    """

    kind = EffectKind.UTILITY
    surface = Surface.IMAGE

    def render(self, ctx: RenderContext) -> None:
        w, h = ctx.image_size
        copy = np.zeros((h, w, 4), dtype=np.float32)
        match = self.rules.resolve(ctx.table)
        if match.count:
            selected, _params = lookup_pixels(match, image_instance_ids(ctx))
            copy[selected, :3] = frame_rgb(ctx)[selected]
            copy[selected, 3] = 1.0
        ctx.shared["object_copy"] = copy


class InpaintingEffect(EffectHandler):
    """Shows the inpainted background over removed objects.

    The rules here are also the inpainting stage's validity rules; alpha comes
    from the rule color.
    """

    kind = EffectKind.INPAINTING
    surface = Surface.IMAGE

    def _alpha(self, params: np.ndarray) -> np.ndarray:
        return params[..., 3]

    def render(self, ctx: RenderContext) -> None:
        result = ctx.inpainting
        if result is None or not result.model_ran:
            return
        match = self.rules.resolve(ctx.table)
        if match.count == 0:
            return
        selected, params = lookup_pixels(match, image_instance_ids(ctx))
        if result.holes.shape != selected.shape:
            return
        target = selected & (result.holes > 0.0)
        layer = result.layer
        ctx.image_overlay[target, :3] = cv2.cvtColor(np.ascontiguousarray(layer[..., :3]), cv2.COLOR_BGR2RGB)[target]
        ctx.image_overlay[target, 3] = self._alpha(params)[target]


class OpacityEffect(InpaintingEffect):
    """Makes eligible objects see-through; the rule alpha is the object's opacity."""

    kind = EffectKind.OPACITY

    def _alpha(self, params: np.ndarray) -> np.ndarray:
        return 1.0 - params[..., 3]


GPU_EFFECTS: dict[EffectKind, type[EffectHandler]] = {
    EffectKind.COLOR_AREA: ColorAreaEffect,
    EffectKind.OUTLINE: OutlineEffect,
    EffectKind.GAUSSIAN_BLUR: GaussianBlurEffect,
    EffectKind.KUWAHARA: KuwaharaEffect,
    EffectKind.UTILITY: ImageCopyEffect,
    EffectKind.INPAINTING: InpaintingEffect,
    EffectKind.OPACITY: OpacityEffect,
}


def gpu_effect_options(kind: EffectKind, options: dict[str, Any]) -> dict[str, Any]:
    """Keyword arguments accepted by the effect class for `kind`."""

    if kind is EffectKind.OUTLINE and "thickness" in options:
        return {"thickness": int(options["thickness"])}
    return {}
