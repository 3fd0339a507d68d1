"""Network-backed provider: forwards the preprocessed image to another detection service.

The peer must speak the same ``POST /api/detect-faces`` contract. Filtering
is left to the local orchestrator, so the peer is asked for every face it
finds at any confidence.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from facerecog.ml.face_detector import RawDetection

if TYPE_CHECKING:
    from facerecog.ml.preprocessing import ProcessedImage

logger = logging.getLogger(__name__)

_PEER_MAX_FACES = 50


class RemoteFaceProvider:
    """Face detection delegated over HTTP with httpx."""

    def __init__(self, base_url: str, timeout: float = 30.0, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)

    @property
    def name(self) -> str:
        return "remote"

    def load(self) -> None:
        response = self._client.get("/health")
        response.raise_for_status()
        logger.info("Remote detector at %s is %s", self._client.base_url, response.json().get("status"))

    def detect(self, image: ProcessedImage, *, landmarks: bool, descriptors: bool) -> list[RawDetection]:
        response = self._client.post(
            "/api/detect-faces",
            files={"image": ("image.jpg", image.data, "image/jpeg")},
            data={
                "minConfidence": "0",
                "maxFaces": str(_PEER_MAX_FACES),
                "enableLandmarks": str(landmarks).lower(),
                "enableDescriptors": str(descriptors).lower(),
            },
        )
        response.raise_for_status()
        return [_parse_face(face) for face in response.json().get("faces", [])]

    def close(self) -> None:
        self._client.close()


def _parse_face(face: dict[str, Any]) -> RawDetection:
    box = face["boundingBox"]
    points = face.get("landmarks")
    descriptor = face.get("descriptor")
    return RawDetection(
        x=float(box["x"]),
        y=float(box["y"]),
        width=float(box["width"]),
        height=float(box["height"]),
        score=float(face["confidence"]),
        landmarks=[(float(p["x"]), float(p["y"])) for p in points] if points is not None else None,
        descriptor=[float(v) for v in descriptor] if descriptor is not None else None,
    )
