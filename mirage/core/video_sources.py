"""Frame sources.

The scheduler consumes frames through a small interface (`VideoSource`) so the
capture implementation (webcam/file) can be swapped without touching the
pipeline. Frames are resized to the configured image size by the caller.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator

import cv2
import numpy as np

from mirage.core.types import Frame

logger = logging.getLogger(__name__)


class VideoSource(ABC):
    """Base interface for anything that can produce video frames."""

    @abstractmethod
    def read(self) -> Frame | None:
        """Return the next frame, or `None` when unavailable."""

        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError


class OpenCVSource(VideoSource):
    """A `VideoSource` backed by `cv2.VideoCapture`."""

    def __init__(self, source: str | int) -> None:
        self.cap = cv2.VideoCapture(source)
        if not self.cap.isOpened():
            raise RuntimeError(f"Failed to open video source: {source}")

    def read(self) -> Frame | None:
        ok, frame = self.cap.read()
        if not ok:
            return None
        return frame

    def close(self) -> None:
        self.cap.release()


class WebcamSource(OpenCVSource):
    """Webcam capture with minimal driver buffering."""

    def __init__(self, index: int = 0, width: int | None = None, height: int | None = None) -> None:
        super().__init__(index)
        logger.info("Opened camera index=%s", index)
        # Ignored by drivers that do not support it.
        self.cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        if width and height:
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)


class FileSource(OpenCVSource):
    """Video file source.

    With `realtime=True` frames are paced to the container FPS; with `loop=True`
    the file is rewound at EOF, otherwise `read()` returns `None` at the end.
    """

    def __init__(self, path: str, *, loop: bool = True, realtime: bool = False) -> None:
        self._path = path
        self.loop = loop
        self.realtime = realtime
        self._start_perf: float | None = None
        self._frame_index = 0
        super().__init__(path)
        fps = float(self.cap.get(cv2.CAP_PROP_FPS) or 0.0)
        self.source_fps: float | None = fps if fps > 0.0 else None

    def _pace(self) -> None:
        if not self.realtime or not self.source_fps or self._start_perf is None:
            return
        expected = self._frame_index / self.source_fps
        delay = expected - (time.perf_counter() - self._start_perf)
        if delay > 0:
            time.sleep(delay)

    def read(self) -> Frame | None:
        """Read the next frame; at EOF rewind (when looping) or return `None`."""

        if self._start_perf is None:
            self._start_perf = time.perf_counter()
            self._frame_index = 0

        ok, frame = self.cap.read()
        if not ok and self.loop and self.cap.set(cv2.CAP_PROP_POS_FRAMES, 0):
            logger.debug("Rewinding %s", self._path)
            self._start_perf = time.perf_counter()
            self._frame_index = 0
            ok, frame = self.cap.read()
        if not ok:
            return None
        self._frame_index += 1
        self._pace()
        return frame


class ArraySource(VideoSource):
    """Serves frames from memory (synthetic input for the benchmark tool and tests)."""

    def __init__(self, frames: list[np.ndarray], *, loop: bool = False) -> None:
        self._frames = list(frames)
        self.loop = loop
        self._index = 0

    def read(self) -> Frame | None:
        if not self._frames:
            return None
        if self._index >= len(self._frames):
            if not self.loop:
                return None
            self._index = 0
        frame = self._frames[self._index]
        self._index += 1
        return frame

    def close(self) -> None:
        self._frames = []


def resize_to(frame: Frame, size: tuple[int, int]) -> Frame:
    """Resize `frame` to (width, height) when it differs."""

    w, h = size
    if frame.shape[1] == w and frame.shape[0] == h:
        return frame
    return cv2.resize(frame, (w, h), interpolation=cv2.INTER_LINEAR)


def iter_frames(source: VideoSource, size: tuple[int, int] | None = None) -> Iterator[Frame]:
    """Yield frames until the source is exhausted."""

    while True:
        frame = source.read()
        if frame is None:
            return
        yield resize_to(frame, size) if size else frame
