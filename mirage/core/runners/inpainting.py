"""Object removal (inpainting) stage.

Only instances that pass the stage's own rule set (class + depth range) are
removed. Eligibility and the holes mask are computed before submission; when
nothing is eligible the model is not run and a pass-through result (empty
holes, transparent layer) is published instead.

Model contract: inputs `(1, 3, H, W)` RGB in [0, 1] and `(1, 1, H, W)` known
pixels (1 = keep, 0 = hole); output `(1, 3, H, W)` RGB in [0, 1].
"""

from __future__ import annotations

import logging
from typing import Any

import cv2
import numpy as np

from mirage.core.effects.rules import EffectRule, RuleSet
from mirage.core.errors import StageBusyError
from mirage.core.models.base import InferenceModel
from mirage.core.runners.base import ScheduleHandle, StageRunner
from mirage.core.types import Frame, InpaintingResult, ObjectTable

logger = logging.getLogger(__name__)


class InpaintingRunner(StageRunner[InpaintingResult]):
    """Synthesizes background behind eligible objects."""

    name = "inpainting"

    def __init__(
        self,
        model: InferenceModel,
        *,
        input_size: tuple[int, int] = (512, 512),
        rules: list[EffectRule] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(model, **kwargs)
        self.input_size = input_size
        self.rules = RuleSet(rules or [])
        self.result: InpaintingResult | None = None
        self.skipped_runs = 0
        self._frame: Frame | None = None
        self._holes: np.ndarray | None = None
        self._eligible: tuple[int, ...] = ()

    def update_classes(self, rules: list[EffectRule]) -> None:
        """Replace the validity rules (explicit trigger, not per frame)."""

        self.rules.replace(rules)

    def eligible_instances(self, table: ObjectTable) -> tuple[int, ...]:
        match = self.rules.resolve(table)
        return tuple(int(i) for i in np.flatnonzero(match.active))

    def holes_mask(self, table: ObjectTable, eligible: tuple[int, ...], image_size: tuple[int, int]) -> np.ndarray:
        """Binary float32 mask at image resolution, 1 where an eligible object is."""

        ids = table.instance_ids
        holes = np.isin(ids, np.asarray(eligible, dtype=np.int32)).astype(np.uint8)
        image_w, image_h = image_size
        if holes.shape != (image_h, image_w):
            holes = cv2.resize(holes, (image_w, image_h), interpolation=cv2.INTER_NEAREST)
        return holes.astype(np.float32)

    @staticmethod
    def passthrough(frame: Frame) -> InpaintingResult:
        h, w = frame.shape[:2]
        layer = np.zeros((h, w, 4), dtype=np.float32)
        layer[..., :3] = frame[..., :3].astype(np.float32) / 255.0
        return InpaintingResult(layer=layer, holes=np.zeros((h, w), dtype=np.float32))

    def submit(self, frame: Frame, table: ObjectTable) -> ScheduleHandle | None:
        """Start a run for the eligible objects of `table`.

        Returns None (and publishes a pass-through result) when the stage is
        disabled or no object is eligible. The previous result is dropped, so a
        failed run leaves `result` empty.
        """

        if not self.enabled:
            return None
        if self.is_busy:
            raise StageBusyError(f"{self.name}: submit while {self.status.value}")
        self.result = None
        eligible = self.eligible_instances(table)
        if not eligible:
            self.skipped_runs += 1
            self.result = self.passthrough(frame)
            return None
        h, w = frame.shape[:2]
        self._frame = frame
        self._eligible = eligible
        self._holes = self.holes_mask(table, eligible, (w, h))
        return self._start(self.prepare_inputs(frame, table))

    def prepare_inputs(self, frame: Frame, table: ObjectTable) -> tuple[np.ndarray, ...]:
        assert self._holes is not None
        in_w, in_h = self.input_size
        resized = cv2.resize(np.ascontiguousarray(frame[..., :3]), (in_w, in_h), interpolation=cv2.INTER_LINEAR)
        rgb = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB).astype(np.float32) / 255.0
        holes = cv2.resize(self._holes, (in_w, in_h), interpolation=cv2.INTER_NEAREST)
        known = 1.0 - np.ceil(holes)
        return rgb.transpose(2, 0, 1)[None], known[None, None].astype(np.float32)

    def postprocess(self, outputs: dict[str, np.ndarray]) -> InpaintingResult:
        assert self._frame is not None and self._holes is not None
        raw = np.asarray(outputs[self.model.output_names[0]], dtype=np.float32)[0]
        h, w = self._frame.shape[:2]
        rgb = np.clip(raw.transpose(1, 2, 0), 0.0, 1.0)
        rgb = cv2.resize(np.ascontiguousarray(rgb), (w, h), interpolation=cv2.INTER_LINEAR)
        bgr = cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)
        holes = self._holes
        layer = np.dstack([bgr * holes[..., None], holes]).astype(np.float32)
        self.result = InpaintingResult(layer=layer, holes=holes, eligible=self._eligible, model_ran=True)
        self._frame = None
        self._holes = None
        return self.result
