"""
Exam-Sentinel -- Detection Decoder
===================================
Turns the raw anchor-based output of the object detector into labelled,
scored, non-overlapping boxes.

Model output layout: (4 + C) x A, row-major
  rows 0..3      -> xc, yc, w, h  (model input space)
  rows 4..4+C-1  -> per-class scores

Decoding:
  1. Arg-max class per anchor, kept if score > confidence threshold
  2. Centre/size -> corners, scaled back to the source frame
  3. Greedy NMS (stable sort by score, suppress IoU > threshold)
"""

from __future__ import annotations

import logging
import math
import numbers
from typing import List, Optional, Sequence, Tuple

import numpy as np

from sentinel_errors import InvalidFrameInput, ShapeMismatch
from sentinel_types import DetectedObject

_log = logging.getLogger("DetectionDecoder")

Box = Tuple[float, float, float, float]


def compute_iou(box_a: Sequence[float], box_b: Sequence[float]) -> float:
    """Intersection-over-Union of two (x1, y1, x2, y2) boxes.

    Zero-area boxes never overlap anything (IoU 0).
    """
    ax1, ay1, ax2, ay2 = box_a
    bx1, by1, bx2, by2 = box_b

    area_a = max(0.0, ax2 - ax1) * max(0.0, ay2 - ay1)
    area_b = max(0.0, bx2 - bx1) * max(0.0, by2 - by1)
    if area_a <= 0.0 or area_b <= 0.0:
        return 0.0

    inter_w = max(0.0, min(ax2, bx2) - max(ax1, bx1))
    inter_h = max(0.0, min(ay2, by2) - max(ay1, by1))
    inter = inter_w * inter_h

    union = area_a + area_b - inter
    if union <= 0.0:
        return 0.0
    return inter / union


def _iou_one_to_many(box: np.ndarray, others: np.ndarray) -> np.ndarray:
    """Vectorised compute_iou(box, each row of others)."""
    area = max(0.0, box[2] - box[0]) * max(0.0, box[3] - box[1])
    widths = np.clip(others[:, 2] - others[:, 0], 0.0, None)
    heights = np.clip(others[:, 3] - others[:, 1], 0.0, None)
    areas = widths * heights

    inter_w = np.clip(np.minimum(box[2], others[:, 2]) - np.maximum(box[0], others[:, 0]), 0.0, None)
    inter_h = np.clip(np.minimum(box[3], others[:, 3]) - np.maximum(box[1], others[:, 1]), 0.0, None)
    inter = inter_w * inter_h
    union = area + areas - inter

    iou = np.zeros(len(others), dtype=np.float64)
    valid = (area > 0.0) & (areas > 0.0) & (union > 0.0)
    iou[valid] = inter[valid] / union[valid]
    return iou


def non_max_suppression(
    boxes: np.ndarray,
    scores: np.ndarray,
    iou_threshold: float,
) -> List[int]:
    """Greedy NMS. Returns indices of kept boxes, best first.

    The sort is stable, so equal scores keep their original (anchor) order.
    """
    if len(boxes) == 0:
        return []

    order = np.argsort(-np.asarray(scores, dtype=np.float64), kind="stable")
    active = np.ones(len(order), dtype=bool)
    keep: List[int] = []

    for rank, idx in enumerate(order):
        if not active[rank]:
            continue
        keep.append(int(idx))

        rest = order[rank + 1:]
        if len(rest) == 0:
            break
        iou = _iou_one_to_many(boxes[idx], boxes[rest])
        active[rank + 1:] &= ~(iou > iou_threshold)

    return keep


class DetectionDecoder:
    """Stateless decoder for one detector's raw output tensor.

    Thresholds are read from the live config on every call, so a config
    swap takes effect on the next frame.
    """

    def __init__(self, config) -> None:
        self.config = config

    @property
    def num_classes(self) -> int:
        return len(self.config.class_names)

    def decode(
        self,
        output,
        x_ratio: float,
        y_ratio: float,
        num_anchors: Optional[int] = None,
    ) -> List[DetectedObject]:
        """Decode one frame's detector output.

        Args:
            output: Flat buffer of length (4+C)*A, or an array shaped
                    (4+C, A) / (1, 4+C, A).
            x_ratio: source_width / model_input_width.
            y_ratio: source_height / model_input_height.
            num_anchors: A. Required to validate a flat buffer strictly;
                         inferred when omitted.

        Returns:
            Non-overlapping detections, highest score first.

        Raises:
            ShapeMismatch: buffer length does not match (4+C)*A.
            InvalidFrameInput: non-positive or non-finite ratios.
        """
        for name, ratio in (("x_ratio", x_ratio), ("y_ratio", y_ratio)):
            if not isinstance(ratio, numbers.Real) or not math.isfinite(ratio) or ratio <= 0:
                raise InvalidFrameInput(f"{name} must be a positive number, got {ratio!r}")

        grid = self._as_grid(output, num_anchors)
        labels = self.config.labels()
        conf_thresh = self.config.confidence_threshold

        class_scores = grid[4:, :]
        class_ids = np.argmax(class_scores, axis=0)
        best_scores = class_scores[class_ids, np.arange(grid.shape[1])]

        xc, yc, w, h = grid[0], grid[1], grid[2], grid[3]
        x1 = (xc - w / 2) * x_ratio
        y1 = (yc - h / 2) * y_ratio
        x2 = (xc + w / 2) * x_ratio
        y2 = (yc + h / 2) * y_ratio
        corners = np.stack([x1, y1, x2, y2], axis=1)

        keep_mask = (
            (best_scores > conf_thresh)
            & np.all(np.isfinite(corners), axis=1)
            & np.isfinite(best_scores)
            & (x2 > x1)
            & (y2 > y1)
        )
        candidates = np.flatnonzero(keep_mask)
        if len(candidates) == 0:
            return []

        cand_boxes = corners[candidates]
        cand_scores = best_scores[candidates]
        kept = non_max_suppression(cand_boxes, cand_scores, self.config.iou_threshold)

        detections = [
            DetectedObject(
                label=labels[int(class_ids[candidates[i]])],
                confidence=float(cand_scores[i]),
                box=tuple(float(v) for v in cand_boxes[i]),
            )
            for i in kept
        ]
        _log.debug(
            "Decoded %d candidates -> %d after NMS", len(candidates), len(detections))
        return detections

    def _as_grid(self, output, num_anchors: Optional[int]) -> np.ndarray:
        """Reshape the model output to (4+C, A), rejecting any mismatch."""
        rows = 4 + self.num_classes
        try:
            arr = np.asarray(output, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise ShapeMismatch(f"Detector output is not numeric: {e}") from e

        if arr.ndim == 3 and arr.shape[0] == 1:
            arr = arr[0]

        if arr.ndim == 2:
            if arr.shape[0] != rows:
                raise ShapeMismatch(
                    f"Expected {rows} rows (4 box + {self.num_classes} classes), "
                    f"got {arr.shape[0]}",
                    expected=rows, actual=arr.shape[0])
            if num_anchors is not None and arr.shape[1] != num_anchors:
                raise ShapeMismatch(
                    f"Expected {num_anchors} anchors, got {arr.shape[1]}",
                    expected=num_anchors, actual=arr.shape[1])
            return arr

        if arr.ndim != 1:
            raise ShapeMismatch(f"Unsupported detector output shape {arr.shape}",
                                actual=arr.shape)

        if num_anchors is not None:
            expected = rows * num_anchors
            if arr.size != expected:
                raise ShapeMismatch(
                    f"Buffer length {arr.size} != (4+{self.num_classes})*{num_anchors} = {expected}",
                    expected=expected, actual=arr.size)
        elif arr.size == 0 or arr.size % rows != 0:
            raise ShapeMismatch(
                f"Buffer length {arr.size} is not a positive multiple of {rows}",
                expected=rows, actual=arr.size)

        return arr.reshape(rows, arr.size // rows)
