from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from queue import Empty, Queue
from typing import Any

import cv2
import numpy as np

from mirage.core.config.settings import MirageSettings
from mirage.core.effects.base import EffectKind
from mirage.core.effects.compositor import CompositeFrame, compose_display
from mirage.core.effects.rules import EffectRule
from mirage.core.pipeline import PipelineScheduler, build_scheduler
from mirage.core.telemetry.benchmark import BenchmarkCollector
from mirage.core.types import Frame
from mirage.core.video_sources import FileSource, VideoSource, WebcamSource

logger = logging.getLogger(__name__)

Control = Callable[[PipelineScheduler], None]


class VideoEngine:
    """Runs the pipeline → compose → encode loop.

    - process thread: reads frames and drives the `PipelineScheduler`
    - encode thread: composes the display image and JPEG-encodes it, dropping
      old frames under load

    The scheduler is only touched from the process thread. Control calls from
    the API (rule updates, stage flags, benchmark start/stop) are queued and
    applied between two iterations.
    """

    def __init__(
        self,
        settings: MirageSettings,
        scheduler_factory: Callable[..., PipelineScheduler] = build_scheduler,
    ) -> None:
        self.settings = settings
        self._scheduler_factory = scheduler_factory
        self.scheduler: PipelineScheduler | None = None
        self.collector = BenchmarkCollector()
        self.source: VideoSource | None = None
        self.running = False
        self.last_error: str | None = None
        self._stop_event = threading.Event()
        self._process_thread: threading.Thread | None = None
        self._encode_thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._controls: Queue[Control] = Queue()
        self._encode_queue: Queue[tuple[Frame, CompositeFrame]] = Queue(maxsize=1)
        self._latest_frame: bytes | None = None
        self._latest_stats: dict[str, Any] | None = None
        self._processed_times: deque[float] = deque()
        self._fps = 0.0

    def _make_source(self) -> VideoSource:
        """Instantiate the configured `VideoSource`."""

        if self.settings.video_source == "file" and self.settings.video_path:
            video_path = Path(self.settings.video_path)
            if not video_path.exists():
                raise RuntimeError(f"Video path not found: {video_path}")
            return FileSource(str(video_path), loop=True, realtime=True)
        return WebcamSource(
            self.settings.webcam_index,
            width=self.settings.image_width,
            height=self.settings.image_height,
        )

    def start(self) -> None:
        """Build the pipeline and start background threads.

        Safe to call multiple times; subsequent calls while running are ignored.
        Startup failures are reported through `last_error`.
        """

        if self.running:
            return
        try:
            self.scheduler = self._scheduler_factory(self.settings, collector=self.collector)
            self.collector.set_rate_provider(self.scheduler.update_rates)
        except Exception as exc:
            self.last_error = f"Failed to initialize pipeline: {exc}"
            logger.exception("Failed to initialize pipeline")
            return
        try:
            self.source = self._make_source()
        except Exception:
            self.last_error = "Failed to initialize video source"
            logger.exception(self.last_error)
            return
        self.running = True
        self.last_error = None
        self._stop_event.clear()
        self._process_thread = threading.Thread(target=self._process_loop, daemon=True)
        self._encode_thread = threading.Thread(target=self._encode_loop, daemon=True)
        self._process_thread.start()
        self._encode_thread.start()

    def stop(self) -> None:
        """Stop background threads and release the source and models."""

        self.running = False
        self._stop_event.set()
        if self._process_thread and self._process_thread.is_alive():
            self._process_thread.join(timeout=2)
        if self._encode_thread and self._encode_thread.is_alive():
            self._encode_thread.join(timeout=2)
        if self.source:
            self.source.close()
            self.source = None
        if self.scheduler:
            self.scheduler.close()

    def control(self, fn: Control) -> None:
        """Apply `fn` to the scheduler between iterations (immediately when idle)."""

        if self.scheduler is None:
            raise RuntimeError("Pipeline is not initialized")
        if self.running:
            self._controls.put(fn)
        else:
            fn(self.scheduler)

    def _apply_controls(self, scheduler: PipelineScheduler) -> None:
        while True:
            try:
                fn = self._controls.get_nowait()
            except Empty:
                return
            try:
                fn(scheduler)
            except Exception:
                logger.exception("Failed to apply pipeline control")

    def _process_loop(self) -> None:
        """Drive the scheduler until stopped."""

        logger.debug("Process loop started")
        assert self.scheduler is not None and self.source is not None
        target_fps = float(self.settings.target_fps or 0.0)
        try:
            self.scheduler.run(
                self.source,
                self._stop_event,
                on_iteration=self._on_iteration,
                stop_when_exhausted=False,
                target_fps=target_fps,
            )
        except Exception:
            self.last_error = "Pipeline processing failed"
            logger.exception(self.last_error)
        self.running = False

    def _on_iteration(self, frame: Frame, composite: CompositeFrame) -> None:
        scheduler = self.scheduler
        assert scheduler is not None
        self._apply_controls(scheduler)

        now = time.perf_counter()
        self._processed_times.append(now)
        while self._processed_times and (now - self._processed_times[0]) > 1.0:
            self._processed_times.popleft()
        if len(self._processed_times) >= 2:
            span = now - self._processed_times[0]
            if span > 0:
                self._fps = float((len(self._processed_times) - 1) / span)

        stats = {
            "frame_id": scheduler.frame_id,
            "objects": len(scheduler.table),
            "fps": self._fps,
            "iterations": scheduler.iterations,
            "mode": scheduler.mode.value,
            "stages": scheduler.stage_status(),
        }
        with self._lock:
            self._latest_stats = stats

        if self._encode_queue.full():
            try:
                self._encode_queue.get_nowait()
            except Empty:
                pass
        self._encode_queue.put_nowait((frame, composite))

    def _encode_loop(self) -> None:
        """Compose and JPEG-encode processed frames."""

        logger.debug("Encode loop started")
        while not self._stop_event.is_set():
            try:
                frame, composite = self._encode_queue.get(timeout=0.5)
            except Empty:
                continue
            try:
                image = compose_display(frame, composite)
                data = encode_jpeg(image, self.settings.jpeg_quality)
                if data is None:
                    continue
                with self._lock:
                    self._latest_frame = data
            except Exception:
                logger.exception("JPEG encoding failed")

    def latest_frame(self) -> bytes | None:
        """Return the latest encoded JPEG bytes (or `None` if not ready)."""

        with self._lock:
            return self._latest_frame

    def latest_stats(self) -> dict[str, Any] | None:
        with self._lock:
            return None if self._latest_stats is None else dict(self._latest_stats)

    def update_effect_rules(self, kind: EffectKind, rules: list[EffectRule]) -> None:
        if self.scheduler is not None:
            self.scheduler.check_effect_kind(kind)
        self.control(lambda s: s.update_effect_rules(kind, rules))

    def update_stage(self, stage: str, enabled: bool | None = None, update_rate: float | None = None) -> None:
        def _apply(s: PipelineScheduler) -> None:
            if enabled is not None:
                s.set_stage_enabled(stage, enabled)
            if update_rate is not None:
                s.set_update_rate(stage, update_rate)

        if self.scheduler is not None and stage not in self.scheduler.runners():
            raise KeyError(stage)
        self.control(_apply)

    def effect_rules(self) -> dict[str, list[EffectRule]]:
        if self.scheduler is None:
            return {}
        compositor = self.scheduler.compositor
        out: dict[str, list[EffectRule]] = {}
        for kind in compositor.kinds:
            handler = compositor.handler(kind)
            if handler is not None and handler.is_running:
                out[kind.value] = handler.rules.rules
        return out

    def start_benchmark(self, duration_s: float) -> None:
        self.control(lambda _s: self.collector.start(duration_s))

    def stop_benchmark(self) -> None:
        self.control(lambda _s: self.collector.stop())

    def benchmark(self) -> dict[str, Any]:
        return self.collector.to_dict()

    async def mjpeg_generator(self) -> AsyncGenerator[bytes, None]:
        """Yield MJPEG multipart chunks for HTTP streaming."""

        last_sent = None
        while True:
            frame = self.latest_frame()
            if frame is not None and frame is not last_sent:
                headers = b"--frame\r\n" b"Content-Type: image/jpeg\r\n"
                headers += f"Content-Length: {len(frame)}\r\n\r\n".encode("ascii")
                yield headers + frame + b"\r\n"
                last_sent = frame
            await asyncio.sleep(0.02)


def encode_jpeg(image: np.ndarray, quality: int = 70) -> bytes | None:
    ok, jpg = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    return jpg.tobytes() if ok else None
