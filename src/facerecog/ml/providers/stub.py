"""Deterministic face detection provider for tests and local development."""

from __future__ import annotations

import hashlib
import math
from typing import TYPE_CHECKING

import numpy as np

from facerecog.ml.face_detector import RawDetection

if TYPE_CHECKING:
    from collections.abc import Sequence

    from facerecog.ml.preprocessing import ProcessedImage

LANDMARK_COUNT = 68
DESCRIPTOR_LENGTH = 128
DEFAULT_CONFIDENCE = 0.9


class StubFaceProvider:
    """Returns fixed detections, or one centered face derived from the image.

    With ``detections`` given, every call returns exactly those (in pixel
    space of the resized buffer). Otherwise a single face covering the middle
    of the image is reported, with landmarks on an ellipse inside the box and
    a unit descriptor seeded from the image bytes.
    """

    def __init__(self, detections: Sequence[RawDetection] | None = None) -> None:
        self._detections = list(detections) if detections is not None else None
        self.load_calls = 0

    @property
    def name(self) -> str:
        return "stub"

    def load(self) -> None:
        self.load_calls += 1

    def detect(self, image: ProcessedImage, *, landmarks: bool, descriptors: bool) -> list[RawDetection]:
        if self._detections is not None:
            return list(self._detections)

        width = image.resized_width * 0.4
        height = image.resized_height * 0.5
        x = (image.resized_width - width) / 2
        y = (image.resized_height - height) / 2
        return [
            RawDetection(
                x=x,
                y=y,
                width=width,
                height=height,
                score=DEFAULT_CONFIDENCE,
                landmarks=_ellipse_points(x, y, width, height) if landmarks else None,
                descriptor=_seeded_descriptor(image.data) if descriptors else None,
            )
        ]

    def close(self) -> None:
        return None


def _ellipse_points(x: float, y: float, width: float, height: float) -> list[tuple[float, float]]:
    cx, cy = x + width / 2, y + height / 2
    rx, ry = width * 0.4, height * 0.4
    step = 2 * math.pi / LANDMARK_COUNT
    return [(cx + rx * math.cos(i * step), cy + ry * math.sin(i * step)) for i in range(LANDMARK_COUNT)]


def _seeded_descriptor(data: bytes) -> list[float]:
    seed = int.from_bytes(hashlib.sha256(data).digest()[:8], "big")
    vector = np.random.default_rng(seed).standard_normal(DESCRIPTOR_LENGTH)
    vector /= np.linalg.norm(vector)
    return [float(v) for v in vector]
