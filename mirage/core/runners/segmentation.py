"""Instance segmentation stage.

Turns YOLO-seg style outputs into the per-frame `ObjectTable`:

- `boxes_scores` `(1, 4 + nc + nm, A)`: cx, cy, w, h (model-input pixels),
  per-class scores, then `nm` mask coefficients per anchor
- `protos` `(1, nm, mh, mw)`: shared prototype masks

Input frames are letterboxed: scaled to fit the model input while preserving
aspect ratio, with padding on the right/bottom only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import cv2
import numpy as np

from mirage.core.errors import PipelineConfigError
from mirage.core.models.base import InferenceModel
from mirage.core.runners.base import StageRunner, clamp_count
from mirage.core.types import (
    BACKGROUND_INSTANCE,
    DEFAULT_CLASS_ID,
    Detection,
    Frame,
    ObjectTable,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Letterbox:
    """Scale/padding mapping between image pixels and model-input pixels."""

    scale: float
    new_size: tuple[int, int]
    pad: tuple[int, int]
    input_size: tuple[int, int]


def compute_letterbox(image_size: tuple[int, int], input_size: tuple[int, int]) -> Letterbox:
    image_w, image_h = image_size
    input_w, input_h = input_size
    if image_w <= 0 or image_h <= 0 or input_w <= 0 or input_h <= 0:
        raise PipelineConfigError(f"invalid letterbox sizes: image={image_size} input={input_size}")
    scale = min(input_w / image_w, input_h / image_h)
    new_w = min(input_w, max(1, int(round(image_w * scale))))
    new_h = min(input_h, max(1, int(round(image_h * scale))))
    return Letterbox(
        scale=scale,
        new_size=(new_w, new_h),
        pad=(input_w - new_w, input_h - new_h),
        input_size=(input_w, input_h),
    )


def letterbox_image(frame: Frame, lb: Letterbox, pad_value: int = 114) -> np.ndarray:
    """Return a `(1, 3, H, W)` float32 RGB tensor in [0, 1]."""

    new_w, new_h = lb.new_size
    input_w, input_h = lb.input_size
    resized = cv2.resize(np.ascontiguousarray(frame[..., :3]), (new_w, new_h), interpolation=cv2.INTER_LINEAR)
    canvas = np.full((input_h, input_w, 3), pad_value, dtype=np.uint8)
    canvas[:new_h, :new_w] = resized
    rgb = cv2.cvtColor(canvas, cv2.COLOR_BGR2RGB)
    return (rgb.astype(np.float32) / 255.0).transpose(2, 0, 1)[None]


def _corners(boxes_xywh: np.ndarray) -> np.ndarray:
    cx, cy, w, h = boxes_xywh.T
    return np.stack([cx - w * 0.5, cy - h * 0.5, cx + w * 0.5, cy + h * 0.5], axis=1)


def _iou_one_to_many(box: np.ndarray, boxes: np.ndarray) -> np.ndarray:
    x1 = np.maximum(box[0], boxes[:, 0])
    y1 = np.maximum(box[1], boxes[:, 1])
    x2 = np.minimum(box[2], boxes[:, 2])
    y2 = np.minimum(box[3], boxes[:, 3])
    inter = np.clip(x2 - x1, 0.0, None) * np.clip(y2 - y1, 0.0, None)
    area_a = max(0.0, float(box[2] - box[0])) * max(0.0, float(box[3] - box[1]))
    area_b = np.clip(boxes[:, 2] - boxes[:, 0], 0.0, None) * np.clip(boxes[:, 3] - boxes[:, 1], 0.0, None)
    union = area_a + area_b - inter
    return np.where(union > 0.0, inter / np.where(union > 0.0, union, 1.0), 0.0)


def non_max_suppression(
    boxes_xywh: np.ndarray,
    scores: np.ndarray,
    iou_threshold: float,
    score_threshold: float,
    max_det: int | None = None,
) -> np.ndarray:
    """Greedy NMS; returns kept anchor indices ordered by descending score.

    Equal scores keep anchor order.
    """

    candidates = np.flatnonzero(scores > score_threshold)
    if candidates.size == 0:
        return np.zeros(0, dtype=np.int64)
    order = candidates[np.argsort(-scores[candidates], kind="stable")]
    corners = _corners(boxes_xywh.astype(np.float64))
    keep: list[int] = []
    while order.size:
        i = int(order[0])
        keep.append(i)
        if max_det is not None and len(keep) >= max_det:
            break
        rest = order[1:]
        if rest.size == 0:
            break
        ious = _iou_one_to_many(corners[i], corners[rest])
        order = rest[ious < iou_threshold]
    return np.asarray(keep, dtype=np.int64)


def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-x))


class SegmentationRunner(StageRunner[ObjectTable]):
    """Produces the object table (detections + dense instance mask)."""

    name = "segmentation"

    def __init__(
        self,
        model: InferenceModel,
        *,
        image_size: tuple[int, int],
        output_size: tuple[int, int],
        input_size: tuple[int, int] = (640, 640),
        num_classes: int | None = None,
        max_objects: int = 256,
        iou_threshold: float = 0.7,
        score_threshold: float = 0.25,
        mask_threshold: float = 0.25,
        class_names: dict[int, str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(model, **kwargs)
        if min(output_size) <= 0:
            raise PipelineConfigError(f"segmentation: invalid output size {output_size}")
        self.image_size = image_size
        self.output_size = output_size
        self.letterbox = compute_letterbox(image_size, input_size)
        self.num_classes = num_classes
        self.max_objects = int(max_objects)
        self.iou_threshold = float(iou_threshold)
        self.score_threshold = float(score_threshold)
        self.mask_threshold = float(mask_threshold)
        self.class_names = dict(class_names or {})
        self._frame_id = 0

    def prepare_inputs(self, frame: Frame, frame_id: int = 0) -> tuple[np.ndarray, ...]:
        self._frame_id = int(frame_id)
        return (letterbox_image(frame, self.letterbox),)

    def empty_table(self) -> ObjectTable:
        out_w, out_h = self.output_size
        return ObjectTable.empty(out_h, out_w, frame_id=self._frame_id)

    def postprocess(self, outputs: dict[str, np.ndarray]) -> ObjectTable:
        preds = np.asarray(outputs["boxes_scores"], dtype=np.float32)[0]
        protos = np.asarray(outputs["protos"], dtype=np.float32)[0]
        n_protos = protos.shape[0]

        if self.num_classes is not None:
            nc = int(self.num_classes)
            n_coef = clamp_count(
                self.name,
                {"coefficients": preds.shape[0] - 4 - nc, "prototypes": n_protos},
                n_protos,
            )
        else:
            nc = preds.shape[0] - 4 - n_protos
            n_coef = n_protos
        if nc <= 0:
            logger.warning("%s: output has no class channels (shape %s)", self.name, preds.shape)
            return self.empty_table()

        boxes = preds[:4].T
        class_scores = preds[4 : 4 + nc].T
        coefs = preds[4 + nc : 4 + nc + n_coef].T
        scores = class_scores.max(axis=1)
        class_ids = class_scores.argmax(axis=1)

        keep = non_max_suppression(boxes, scores, self.iou_threshold, self.score_threshold)
        k = clamp_count(self.name, {"detections": keep.size}, self.max_objects)
        keep = keep[:k]
        if k == 0:
            return self.empty_table()

        instance_mask = self._instance_mask(coefs[keep], protos[:n_coef], class_ids[keep])

        lb = self.letterbox
        out_w, out_h = self.output_size
        image_w, image_h = self.image_size
        fx = out_w / (image_w * lb.scale)
        fy = out_h / (image_h * lb.scale)
        detections = tuple(
            Detection(
                object_index=i,
                class_id=int(class_ids[a]),
                bbox=(
                    float(boxes[a, 0] * fx),
                    float(boxes[a, 1] * fy),
                    float(boxes[a, 2] * fx),
                    float(boxes[a, 3] * fy),
                ),
                score=float(scores[a]),
            )
            for i, a in enumerate(keep)
        )
        return ObjectTable(frame_id=self._frame_id, detections=detections, instance_mask=instance_mask)

    def _instance_mask(self, coefs: np.ndarray, protos: np.ndarray, class_ids: np.ndarray) -> np.ndarray:
        """Composite per-instance masks into the dense `(H, W, 2)` mask.

        Where instances overlap, the smallest instance id wins.
        """

        nm, mh, mw = protos.shape
        input_w, input_h = self.letterbox.input_size
        pad_x, pad_y = self.letterbox.pad
        crop_w = max(1, int(round((input_w - pad_x) * mw / input_w)))
        crop_h = max(1, int(round((input_h - pad_y) * mh / input_h)))
        out_w, out_h = self.output_size

        raw = (coefs @ protos.reshape(nm, -1)).reshape(-1, mh, mw)[:, :crop_h, :crop_w]

        instance = np.full((out_h, out_w), BACKGROUND_INSTANCE, dtype=np.int32)
        classes = np.full((out_h, out_w), DEFAULT_CLASS_ID, dtype=np.int32)
        # Reverse order so that lower ids are written last.
        for i in range(raw.shape[0] - 1, -1, -1):
            up = cv2.resize(np.ascontiguousarray(raw[i]), (out_w, out_h), interpolation=cv2.INTER_LINEAR)
            probs = _sigmoid(up)
            covered = probs > self.mask_threshold
            instance[covered] = i
            classes[covered] = int(class_ids[i])

        mask = np.stack([instance, classes], axis=-1)
        mask.setflags(write=False)
        return mask

    def class_name(self, class_id: int) -> str:
        return self.class_names.get(int(class_id), f"class {class_id}")

    @staticmethod
    def visualize(table: ObjectTable) -> np.ndarray:
        """Debug view: each class painted with a stable pseudo-random color."""

        classes = table.class_ids
        out_w, out_h = table.output_size
        img = np.zeros((out_h, out_w, 3), dtype=np.uint8)
        for class_id in np.unique(classes):
            if class_id == DEFAULT_CLASS_ID:
                continue
            rng = np.random.default_rng(int(class_id) + 1)
            img[classes == class_id] = rng.integers(64, 256, size=3, dtype=np.uint8)
        return img
