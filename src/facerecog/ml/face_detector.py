"""Face detection provider capability.

Implementations (selected by ``FACERECOG_DETECTION_PROVIDER``):
stub (deterministic), onnx (local ONNX Runtime models), remote (HTTP).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from facerecog.config import Settings
    from facerecog.ml.preprocessing import ProcessedImage


@dataclass(frozen=True)
class RawDetection:
    """Raw face detection result before rescaling and filtering.

    Coordinates are in pixel space of the provider input, i.e. the resized
    buffer of a ProcessedImage.
    """

    x: float
    y: float
    width: float
    height: float
    score: float
    landmarks: list[tuple[float, float]] | None = None
    descriptor: list[float] | None = None


class FaceDetectionProvider(Protocol):
    """Protocol for face detection backends.

    ``load`` and ``detect`` block and are run on the inference thread pool.
    """

    @property
    def name(self) -> str:
        """Return the provider identifier string."""
        ...

    def load(self) -> None:
        """Load models or verify connectivity. Called once before the first detection."""
        ...

    def detect(self, image: ProcessedImage, *, landmarks: bool, descriptors: bool) -> list[RawDetection]:
        """Detect faces in the resized buffer of ``image``.

        Args:
            image: Preprocessed image; ``image.data`` is what gets analyzed.
            landmarks: Compute 68-point landmarks when the backend supports them.
            descriptors: Compute descriptor vectors when the backend supports them.

        Returns:
            Raw detections in provider order; no filtering or truncation applied.
        """
        ...

    def close(self) -> None:
        """Release backend resources."""
        ...


def create_provider(settings: Settings) -> FaceDetectionProvider:
    """Build the provider named by ``settings.detection_provider``.

    Backends are imported lazily so onnxruntime is only loaded when used.
    """
    if settings.detection_provider == "onnx":
        from facerecog.ml.model_manager import OnnxModelManager
        from facerecog.ml.providers.onnx import OnnxFaceProvider

        return OnnxFaceProvider(OnnxModelManager(settings), settings)

    if settings.detection_provider == "remote":
        from facerecog.ml.providers.remote import RemoteFaceProvider

        return RemoteFaceProvider(settings.remote_detector_url, timeout=settings.detection_timeout)

    from facerecog.ml.providers.stub import StubFaceProvider

    return StubFaceProvider()
