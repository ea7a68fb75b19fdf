"""Pipeline scheduler.

Drives the segmentation, depth and inpainting stages and the effect compositor
for a stream of frames, in one of two modes:

- sequential: each `step()` runs every enabled stage to completion on the same
  frame, then composites. One coherent result per iteration.
- parallel: each `tick()` advances every enabled stage by one slice of work,
  resubmits idle stages with the newest frame/table and consumes whatever
  finished. Compositing runs on every tick with the newest results, so the
  loop stays responsive while slow models trickle through.

Stage failures (timeouts, model errors) never stop the loop: the stage's
contribution is skipped for that iteration and the runner is resubmitted
later.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np

from mirage.core.effects.base import EffectKind
from mirage.core.effects.compositor import CompositeFrame, EffectCompositor, build_compositor
from mirage.core.effects.rules import EffectRule
from mirage.core.effects.ui import UIElement
from mirage.core.errors import PipelineConfigError
from mirage.core.runners.base import StageRunner, StageStatus
from mirage.core.runners.depth import DepthRunner
from mirage.core.runners.inpainting import InpaintingRunner
from mirage.core.runners.segmentation import SegmentationRunner
from mirage.core.telemetry.benchmark import NullCollector, TelemetryCollector
from mirage.core.types import Frame, InpaintingResult, ObjectTable
from mirage.core.video_sources import VideoSource, resize_to

logger = logging.getLogger(__name__)

# Effect kinds whose rules also select the objects removed by the inpainting stage.
INPAINTING_KINDS = (EffectKind.INPAINTING, EffectKind.OPACITY)


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


@dataclass
class PipelineSurfaces:
    """What the presentation layer reads after an iteration."""

    frame: Frame | None
    overlay: np.ndarray | None
    image_overlay: np.ndarray | None
    ui_elements: list[UIElement] = field(default_factory=list)
    frame_id: int = 0


class PipelineScheduler:
    """Owns the pipeline state and drives the stages.

    Collaborators are injected; `build_scheduler()` wires them from settings.
    """

    def __init__(
        self,
        segmentation: SegmentationRunner,
        compositor: EffectCompositor,
        *,
        depth: DepthRunner | None = None,
        inpainting: InpaintingRunner | None = None,
        mode: ExecutionMode | str = ExecutionMode.PARALLEL,
        collector: TelemetryCollector | None = None,
    ) -> None:
        self.segmentation = segmentation
        self.depth = depth
        self.inpainting = inpainting
        self.compositor = compositor
        self.mode = ExecutionMode(mode)
        self.collector: TelemetryCollector = collector or NullCollector()
        self.image_size = segmentation.image_size
        if min(self.image_size) <= 0:
            raise PipelineConfigError(f"invalid image size {self.image_size}")

        self.frame: Frame | None = None
        self.frame_id = 0
        self.table: ObjectTable = segmentation.empty_table()
        self.inpainting_result: InpaintingResult | None = None
        self.composite: CompositeFrame | None = None
        self.iterations = 0
        self.stage_errors: dict[str, int] = {}
        self._inpainting_rules: dict[EffectKind, list[EffectRule]] = {}
        for kind in INPAINTING_KINDS:
            handler = compositor.handler(kind)
            if handler is not None and handler.is_running:
                self._inpainting_rules[kind] = handler.rules.rules
        self._sync_inpainting_rules()

    # -- configuration -----------------------------------------------------

    def runners(self) -> dict[str, StageRunner[Any]]:
        out: dict[str, StageRunner[Any]] = {"segmentation": self.segmentation}
        if self.depth is not None:
            out["depth"] = self.depth
        if self.inpainting is not None:
            out["inpainting"] = self.inpainting
        return out

    def _runner(self, stage: str) -> StageRunner[Any]:
        runner = self.runners().get(stage)
        if runner is None:
            raise PipelineConfigError(f"unknown or unavailable stage: {stage!r}")
        return runner

    def set_stage_enabled(self, stage: str, enabled: bool) -> None:
        """Enable/disable a stage at runtime; disabling depth drops object depths."""

        runner = self._runner(stage)
        runner.enabled = bool(enabled)
        if enabled:
            return
        runner.reset()
        if runner is self.depth:
            self.depth.clear()
            self.table = self.table.without_depths()
        elif runner is self.inpainting:
            self.inpainting_result = None

    def set_update_rate(self, stage: str, rate: float) -> None:
        self._runner(stage).set_update_rate(rate)

    def update_rates(self) -> dict[str, float]:
        return {name: runner.update_rate for name, runner in self.runners().items()}

    def set_mode(self, mode: ExecutionMode | str) -> None:
        """Switch execution mode; in-flight runs are dropped."""

        self.mode = ExecutionMode(mode)
        for runner in self.runners().values():
            runner.reset()

    def check_effect_kind(self, kind: EffectKind) -> None:
        """Raise `PipelineConfigError` when rules for `kind` have nowhere to go."""

        if kind not in INPAINTING_KINDS and self.compositor.handler(kind) is None:
            raise PipelineConfigError(f"no effect registered for kind {kind.value!r}")

    def update_effect_rules(self, kind: EffectKind, rules: list[EffectRule]) -> None:
        """Install new rules for an effect (explicit trigger, not per frame).

        Inpainting and opacity rules also decide which objects the inpainting
        stage removes.
        """

        self.check_effect_kind(kind)
        if kind in INPAINTING_KINDS:
            if rules:
                self._inpainting_rules[kind] = list(rules)
            else:
                self._inpainting_rules.pop(kind, None)
            self._sync_inpainting_rules()
            if self.compositor.handler(kind) is None:
                return
        self.compositor.update_classes(kind, rules)

    def _sync_inpainting_rules(self) -> None:
        if self.inpainting is None:
            return
        merged: list[EffectRule] = []
        for kind in INPAINTING_KINDS:
            merged.extend(self._inpainting_rules.get(kind, []))
        self.inpainting.update_classes(merged)

    # -- frames --------------------------------------------------------------

    def set_frame(self, frame: Frame) -> None:
        """Store a read-only copy of `frame` as the input of the next runs."""

        w, h = self.image_size
        if frame.ndim != 3 or frame.shape[0] != h or frame.shape[1] != w or frame.shape[2] < 3:
            raise PipelineConfigError(f"frame shape {frame.shape} does not match image size {w}x{h}")
        stored = np.array(frame[..., :3], dtype=np.uint8, copy=True)
        stored.setflags(write=False)
        self.frame = stored
        self.frame_id += 1

    def _require_frame(self) -> Frame:
        if self.frame is None:
            raise PipelineConfigError("no frame set; call set_frame() first")
        return self.frame

    @property
    def surfaces(self) -> PipelineSurfaces:
        composite = self.composite
        if composite is None:
            return PipelineSurfaces(frame=self.frame, overlay=None, image_overlay=None, frame_id=self.frame_id)
        return PipelineSurfaces(
            frame=self.frame,
            overlay=composite.overlay,
            image_overlay=composite.image_overlay,
            ui_elements=list(composite.ui_elements),
            frame_id=composite.frame_id,
        )

    # -- sequential mode ---------------------------------------------------------

    def _run_stage(self, runner: StageRunner[Any], frame: Frame, *aux: Any) -> Any | None:
        self.collector.start_stage(runner.name)
        try:
            result = runner.run_to_completion(frame, *aux)
        except Exception:
            logger.exception("%s: stage run failed", runner.name)
            self._count_error(runner.name)
            runner.reset()
            result = None
        finally:
            self.collector.end_stage(runner.name)
        if result is None and runner.status is StageStatus.FAILED:
            self._count_error(runner.name)
        return result

    def step(self) -> CompositeFrame:
        """One sequential iteration on the current frame."""

        frame = self._require_frame()
        self.collector.start_iteration()

        table = self._run_stage(self.segmentation, frame, self.frame_id)
        if table is not None:
            self.table = table

        if self.depth is not None and self.depth.enabled:
            depth_map = self._run_stage(self.depth, frame)
            if depth_map is not None:
                self.table = self.depth.calculate_object_depths(self.table)

        if self.inpainting is not None and self.inpainting.enabled:
            self._run_stage(self.inpainting, frame, self.table)
            # None after a failed run.
            self.inpainting_result = self.inpainting.result

        composite = self._composite(frame)
        self.collector.end_iteration()
        self.iterations += 1
        return composite

    # -- parallel mode -----------------------------------------------------------

    def _drive(
        self,
        runner: StageRunner[Any],
        submit_args: tuple[Any, ...],
        on_result: Callable[[Any], None],
    ) -> bool:
        """Advance one stage by a tick; True when its run failed during this tick."""

        if runner.status is StageStatus.FAILED:
            self._count_error(runner.name)
            runner.reset()
        if runner.status is StageStatus.IDLE:
            try:
                handle = runner.submit(*submit_args)
            except Exception:
                logger.exception("%s: submit failed", runner.name)
                self._count_error(runner.name)
                runner.reset()
                return True
            if handle is None:
                return False
            self.collector.start_stage(runner.name)

        status = runner.tick()
        if status is not StageStatus.OUTPUTS_READY:
            return status is StageStatus.FAILED
        try:
            result = runner.consume_outputs()
        except Exception:
            logger.exception("%s: consuming outputs failed", runner.name)
            self._count_error(runner.name)
            runner.reset()
            return True
        self.collector.end_stage(runner.name)
        on_result(result)
        return False

    def _on_table(self, table: ObjectTable) -> None:
        if self.depth is not None and self.depth.enabled and self.depth.depth_map is not None:
            table = self.depth.calculate_object_depths(table)
        self.table = table

    def _on_depth(self, _depth_map: np.ndarray) -> None:
        assert self.depth is not None
        self.table = self.depth.calculate_object_depths(self.table)

    def _on_inpainting(self, result: InpaintingResult) -> None:
        self.inpainting_result = result

    def tick(self) -> CompositeFrame:
        """One parallel driver-loop iteration."""

        frame = self._require_frame()
        self.collector.start_iteration()

        if self.segmentation.enabled:
            self._drive(self.segmentation, (frame, self.frame_id), self._on_table)
        if self.depth is not None and self.depth.enabled:
            self._drive(self.depth, (frame,), self._on_depth)
        if self.inpainting is not None and self.inpainting.enabled:
            if self._drive(self.inpainting, (frame, self.table), self._on_inpainting):
                self.inpainting_result = None
            elif not self.inpainting.is_busy and self.inpainting.result is not None:
                # Pass-through results published without a model run.
                self.inpainting_result = self.inpainting.result

        composite = self._composite(frame)
        self.collector.end_iteration()
        self.iterations += 1
        return composite

    # -- shared ------------------------------------------------------------------

    def _composite(self, frame: Frame) -> CompositeFrame:
        self.collector.start_stage("postprocessing")
        try:
            self.composite = self.compositor.render(frame, self.table, self.inpainting_result)
        finally:
            self.collector.end_stage("postprocessing")
        return self.composite

    def _count_error(self, stage: str) -> None:
        self.stage_errors[stage] = self.stage_errors.get(stage, 0) + 1

    def iterate(self) -> CompositeFrame:
        """Run one iteration in the configured mode."""

        if self.mode is ExecutionMode.SEQUENTIAL:
            return self.step()
        return self.tick()

    def run(
        self,
        source: VideoSource,
        stop_event: threading.Event | None = None,
        max_iterations: int | None = None,
        *,
        on_iteration: Callable[[Frame, CompositeFrame], None] | None = None,
        stop_when_exhausted: bool = True,
        target_fps: float | None = None,
    ) -> int:
        """Driver loop: read frames from `source` and iterate until stopped.

        Returns the number of iterations executed. A source returning `None`
        ends the loop unless `stop_when_exhausted` is False (live cameras).
        """

        logger.debug("Pipeline loop started (%s)", self.mode.value)
        count = 0
        while stop_event is None or not stop_event.is_set():
            start = time.perf_counter()
            raw = source.read()
            if raw is None:
                if stop_when_exhausted:
                    break
                time.sleep(0.01)
                continue
            self.set_frame(resize_to(raw, self.image_size))
            composite = self.iterate()
            if on_iteration is not None:
                on_iteration(self.frame, composite)
            count += 1
            if max_iterations is not None and count >= max_iterations:
                break
            if target_fps:
                delay = (1.0 / target_fps) - (time.perf_counter() - start)
                if delay > 0:
                    time.sleep(delay)
        logger.debug("Pipeline loop stopped after %d iterations", count)
        return count

    def stage_status(self) -> dict[str, dict[str, Any]]:
        return {
            name: {
                "enabled": runner.enabled,
                "status": runner.status.value,
                "update_rate": runner.update_rate,
                "last_duration_s": runner.last_duration_s,
                "last_error": runner.last_error,
                "errors": self.stage_errors.get(name, 0),
            }
            for name, runner in self.runners().items()
        }

    def close(self) -> None:
        for runner in self.runners().values():
            runner.reset()
            runner.model.close()


def build_scheduler(
    settings: Any,
    *,
    collector: TelemetryCollector | None = None,
) -> PipelineScheduler:
    """Load models and wire a scheduler from `MirageSettings`.

    Raises `ModelLoadError` / `PipelineConfigError` naming the failing stage.
    """

    from mirage.core.models.loader import load_segmentation_model, load_torchscript_model

    image_size = (settings.image_width, settings.image_height)
    output_size = (settings.output_width, settings.output_height)
    common = {"timeout_s": settings.stage_timeout_s}

    seg_model = load_segmentation_model(settings.segmentation_model, settings.device)
    class_names = dict(seg_model.names)
    for i, name in enumerate(settings.class_names):
        class_names[i] = name
    size = settings.segmentation_input_size
    segmentation = SegmentationRunner(
        seg_model,
        image_size=image_size,
        output_size=output_size,
        input_size=(size, size),
        max_objects=settings.max_objects,
        iou_threshold=settings.iou_threshold,
        score_threshold=settings.score_threshold,
        mask_threshold=settings.mask_threshold,
        class_names=class_names,
        update_rate=settings.segmentation_update_rate,
        **common,
    )

    depth = None
    if settings.depth_enabled:
        if not settings.depth_model:
            raise PipelineConfigError("depth: stage enabled but no depth_model configured")
        size = settings.depth_input_size
        depth = DepthRunner(
            load_torchscript_model("depth", settings.depth_model, ("depth",), settings.device),
            output_size=output_size,
            input_size=(size, size),
            pad_multiple=settings.depth_pad_multiple,
            focal_scale=settings.focal_length_scale,
            update_rate=settings.depth_update_rate,
            **common,
        )

    inpainting = None
    if settings.inpainting_enabled:
        if not settings.inpainting_model:
            raise PipelineConfigError("inpainting: stage enabled but no inpainting_model configured")
        size = settings.inpainting_input_size
        inpainting = InpaintingRunner(
            load_torchscript_model("inpainting", settings.inpainting_model, ("image",), settings.device),
            input_size=(size, size),
            update_rate=settings.inpainting_update_rate,
            **common,
        )

    effects = [
        (kind, rules, settings.effect_options(kind)) for kind, rules in settings.effect_rules().items()
    ]
    compositor = build_compositor(output_size, image_size, effects, class_names)
    scheduler = PipelineScheduler(
        segmentation,
        compositor,
        depth=depth,
        inpainting=inpainting,
        mode=settings.execution_mode,
        collector=collector,
    )
    logger.info(
        "Pipeline ready: mode=%s depth=%s inpainting=%s effects=%s",
        scheduler.mode.value,
        depth is not None,
        inpainting is not None,
        [k.value for k in compositor.kinds],
    )
    return scheduler
