"""Local ONNX Runtime provider.

Pipeline per image:
    UltraFace detector -> score floor -> NMS -> (PFLD 68-point landmarks) -> (descriptor)

Landmark and descriptor models are optional; when not configured, faces
are returned without those fields.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image

from facerecog.ml.face_detector import RawDetection
from facerecog.ml.model_manager import get_model_spec
from facerecog.ml.preprocessing import decode_to_array

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facerecog.config import Settings
    from facerecog.ml.model_manager import ModelManager
    from facerecog.ml.preprocessing import ProcessedImage

logger = logging.getLogger(__name__)

# Square crops are expanded around the detector box before landmarking.
_LANDMARK_CROP_EXPAND = 1.2


def non_max_suppression(boxes: NDArray[np.float32], scores: NDArray[np.float32], iou_threshold: float) -> list[int]:
    """Greedy NMS over corner-form boxes; returns kept indices, highest score first."""
    if boxes.size == 0:
        return []

    x1, y1, x2, y2 = boxes[:, 0], boxes[:, 1], boxes[:, 2], boxes[:, 3]
    areas = np.clip(x2 - x1, 0, None) * np.clip(y2 - y1, 0, None)
    order = np.argsort(-scores, kind="stable")

    keep: list[int] = []
    while order.size > 0:
        best = int(order[0])
        keep.append(best)
        rest = order[1:]

        inter_w = np.clip(np.minimum(x2[best], x2[rest]) - np.maximum(x1[best], x1[rest]), 0, None)
        inter_h = np.clip(np.minimum(y2[best], y2[rest]) - np.maximum(y1[best], y1[rest]), 0, None)
        inter = inter_w * inter_h
        iou = inter / (areas[best] + areas[rest] - inter + 1e-9)
        order = rest[iou <= iou_threshold]
    return keep


def _square_crop(
    pixels: NDArray[np.uint8], box: NDArray[np.float32], size: int, expand: float
) -> tuple[NDArray[np.float32], float, float, float]:
    """Crop a square around ``box`` (padding out-of-bounds with black), resized to ``size``.

    Returns the crop plus its left/top offset and side length in image pixels.
    """
    x1, y1, x2, y2 = (float(v) for v in box)
    side = max(x2 - x1, y2 - y1) * expand
    left = (x1 + x2) / 2 - side / 2
    top = (y1 + y2) / 2 - side / 2
    crop = Image.fromarray(pixels).crop((round(left), round(top), round(left + side), round(top + side)))
    resized = crop.resize((size, size), Image.Resampling.BILINEAR)
    return np.asarray(resized, dtype=np.float32), left, top, side


class OnnxFaceProvider:
    """Runs detection (and optionally landmarks/descriptors) with cached ONNX sessions."""

    def __init__(self, model_manager: ModelManager, settings: Settings) -> None:
        self._models = model_manager
        self._detector = settings.face_detection_model
        self._landmarker = settings.face_landmark_model
        self._describer = settings.face_descriptor_model
        self._score_floor = settings.detector_score_floor
        self._iou_threshold = settings.nms_iou_threshold

    @property
    def name(self) -> str:
        return "onnx"

    def load(self) -> None:
        for model_name in (self._detector, self._landmarker, self._describer):
            if model_name is not None:
                self._models.get_session(model_name)
        logger.info("ONNX models ready: %s", ", ".join(self._models.get_loaded_models()))

    def detect(self, image: ProcessedImage, *, landmarks: bool, descriptors: bool) -> list[RawDetection]:
        pixels = decode_to_array(image.data)
        boxes, scores = self._detect_boxes(pixels)

        detections: list[RawDetection] = []
        for box, score in zip(boxes, scores, strict=True):
            points = self._landmarks(self._landmarker, pixels, box) if landmarks and self._landmarker else None
            descriptor = self._descriptor(self._describer, pixels, box) if descriptors and self._describer else None
            detections.append(
                RawDetection(
                    x=float(box[0]),
                    y=float(box[1]),
                    width=float(box[2] - box[0]),
                    height=float(box[3] - box[1]),
                    score=float(score),
                    landmarks=points,
                    descriptor=descriptor,
                )
            )
        return detections

    def close(self) -> None:
        self._models.shutdown()

    # -- Internal -----------------------------------------------------------

    def _detect_boxes(self, pixels: NDArray[np.uint8]) -> tuple[NDArray[np.float32], NDArray[np.float32]]:
        in_w, in_h = get_model_spec(self._detector).input_size
        session = self._models.get_session(self._detector)
        height, width = pixels.shape[:2]

        resized = np.asarray(
            Image.fromarray(pixels).resize((in_w, in_h), Image.Resampling.BILINEAR),
            dtype=np.float32,
        )
        tensor = ((resized - 127.0) / 128.0).transpose(2, 0, 1)[np.newaxis]
        input_name = session.get_inputs()[0].name
        raw_scores, raw_boxes = session.run(None, {input_name: tensor})[:2]

        # UltraFace: scores (1, N, 2) background/face, boxes (1, N, 4) normalized corners.
        scores = raw_scores[0, :, 1]
        mask = scores >= self._score_floor
        scale = np.array([width, height, width, height], dtype=np.float32)
        boxes = np.clip(raw_boxes[0][mask] * scale, 0, scale)
        scores = scores[mask]

        keep = non_max_suppression(boxes, scores, self._iou_threshold)
        return boxes[keep], scores[keep]

    def _landmarks(
        self, model_name: str, pixels: NDArray[np.uint8], box: NDArray[np.float32]
    ) -> list[tuple[float, float]]:
        size = get_model_spec(model_name).input_size[0]
        session = self._models.get_session(model_name)

        crop, left, top, side = _square_crop(pixels, box, size, _LANDMARK_CROP_EXPAND)
        tensor = (crop / 255.0).astype(np.float32).transpose(2, 0, 1)[np.newaxis]
        input_name = session.get_inputs()[0].name
        # PFLD: last output holds (x, y) pairs normalized to the crop.
        points = np.asarray(session.run(None, {input_name: tensor})[-1], dtype=np.float32).reshape(-1, 2)
        return [(left + float(px) * side, top + float(py) * side) for px, py in points]

    def _descriptor(self, model_name: str, pixels: NDArray[np.uint8], box: NDArray[np.float32]) -> list[float]:
        size = get_model_spec(model_name).input_size[0]
        session = self._models.get_session(model_name)

        crop, _, _, _ = _square_crop(pixels, box, size, 1.0)
        tensor = ((crop - 127.5) / 128.0).astype(np.float32).transpose(2, 0, 1)[np.newaxis]
        input_name = session.get_inputs()[0].name
        vector = np.asarray(session.run(None, {input_name: tensor})[0], dtype=np.float32).reshape(-1)
        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector = vector / norm
        return [float(v) for v in vector]
