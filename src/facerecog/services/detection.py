"""Detection orchestrator: provider call, coordinate rescale, filtering, and result shaping.

Steps per request:
    ensure provider loaded -> detect on resized buffer -> rescale to original pixels
    -> drop below min confidence -> stable sort by confidence -> cap at max faces -> shape
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from typing import TYPE_CHECKING, Any

from pydantic import ConfigDict, Field

from facerecog.api.schemas import (
    BoundingBox,
    CamelModel,
    DetectedFace,
    DetectionResult,
    ImageInfo,
    Point,
)
from facerecog.errors import DetectionError, ServiceBusyError
from facerecog.ml.inference import PoolSaturatedError

if TYPE_CHECKING:
    from facerecog.config import Settings
    from facerecog.ml.face_detector import FaceDetectionProvider, RawDetection
    from facerecog.ml.inference import InferencePool
    from facerecog.ml.preprocessing import ProcessedImage

logger = logging.getLogger(__name__)


class DetectionOptions(CamelModel):
    """Per-request detection options. Out-of-range values fail validation."""

    model_config = ConfigDict(frozen=True)

    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    max_faces: int = Field(default=10, ge=1, le=50)
    enable_landmarks: bool = False
    enable_descriptors: bool = False

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> DetectionOptions:
        """Configured defaults, replaced by any override that is not None.

        Raises:
            pydantic.ValidationError: If an override is unparsable or out of range.
        """
        values: dict[str, Any] = {
            "min_confidence": settings.min_confidence,
            "max_faces": settings.max_faces,
            "enable_landmarks": settings.enable_landmarks,
            "enable_descriptors": settings.enable_descriptors,
        }
        values.update({name: value for name, value in overrides.items() if value is not None})
        return cls.model_validate(values)


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def _shape_face(raw: RawDetection, image: ProcessedImage, options: DetectionOptions) -> DetectedFace:
    scale_x, scale_y = image.scale_x, image.scale_y
    left = _clamp(raw.x * scale_x, 0.0, image.width)
    top = _clamp(raw.y * scale_y, 0.0, image.height)
    right = _clamp((raw.x + raw.width) * scale_x, left, image.width)
    bottom = _clamp((raw.y + raw.height) * scale_y, top, image.height)

    face = DetectedFace(
        bounding_box=BoundingBox(x=left, y=top, width=right - left, height=bottom - top),
        confidence=_clamp(raw.score, 0.0, 1.0),
    )
    if options.enable_landmarks and raw.landmarks is not None:
        face.landmarks = [Point(x=px * scale_x, y=py * scale_y) for px, py in raw.landmarks]
    if options.enable_descriptors and raw.descriptor is not None:
        face.descriptor = list(raw.descriptor)
    return face


def shape_detections(
    raw: list[RawDetection],
    image: ProcessedImage,
    options: DetectionOptions,
) -> list[DetectedFace]:
    """Turn raw provider output into the faces returned to the client.

    Boxes are mapped from the resized buffer to original-image pixels and
    clamped to the image. Filtering happens before truncation; ``sorted`` is
    stable, so equal confidences keep provider order.
    """
    kept = [detection for detection in raw if detection.score >= options.min_confidence]
    ranked = sorted(kept, key=lambda detection: detection.score, reverse=True)
    return [_shape_face(detection, image, options) for detection in ranked[: options.max_faces]]


class DetectionOrchestrator:
    """Owns the provider lifecycle and runs detections through the inference pool."""

    def __init__(self, provider: FaceDetectionProvider, pool: InferencePool, timeout: float = 30.0) -> None:
        self._provider = provider
        self._pool = pool
        self._timeout = timeout
        self._load_lock = asyncio.Lock()
        self._loaded = False
        self._pending_load: asyncio.Future[None] | None = None
        self._load_started = 0.0

    @property
    def provider_name(self) -> str:
        return self._provider.name

    @property
    def is_ready(self) -> bool:
        return self._loaded

    async def warm_up(self) -> None:
        """Load the provider now instead of on the first request."""
        await self._ensure_loaded()

    def close(self) -> None:
        self._provider.close()
        self._loaded = False
        self._pending_load = None

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            # A load that outlived an earlier deadline is still running in the pool; wait on it again.
            pending = self._pending_load
            if pending is not None and pending.done() and (pending.cancelled() or pending.exception() is not None):
                pending = None
            if pending is None:
                pending = asyncio.ensure_future(self._pool.run(self._provider.load))
                self._pending_load = pending
                self._load_started = time.perf_counter()
            try:
                await asyncio.wait_for(asyncio.shield(pending), timeout=self._timeout)
            except TimeoutError:
                raise
            except Exception:
                self._pending_load = None
                raise
            self._pending_load = None
            self._loaded = True
            logger.info(
                "Loaded %s detection provider in %.0fms",
                self._provider.name,
                (time.perf_counter() - self._load_started) * 1000,
            )

    async def detect(
        self,
        image: ProcessedImage,
        options: DetectionOptions,
        started_at: float | None = None,
    ) -> DetectionResult:
        """Detect faces in ``image`` and shape the result.

        Args:
            image: Output of the preprocessor.
            options: Validated per-request options.
            started_at: ``time.perf_counter()`` value when the request was
                accepted; defaults to now.

        Raises:
            ServiceBusyError: If no inference slot frees up in time.
            DetectionError: If loading or detection fails or exceeds the deadline.
        """
        started = started_at if started_at is not None else time.perf_counter()
        detect = functools.partial(
            self._provider.detect,
            image,
            landmarks=options.enable_landmarks,
            descriptors=options.enable_descriptors,
        )
        try:
            await self._ensure_loaded()
            raw = await self._pool.run(detect, timeout=self._timeout)
        except PoolSaturatedError:
            raise ServiceBusyError from None
        except TimeoutError:
            logger.error("Detection with %s provider exceeded %.1fs", self._provider.name, self._timeout)
            raise DetectionError(f"Detection timed out after {self._timeout}s") from None
        except DetectionError:
            raise
        except Exception as exc:
            logger.exception("Detection with %s provider failed", self._provider.name)
            raise DetectionError(str(exc)) from exc

        faces = shape_detections(raw, image, options)
        elapsed_ms = max(0, round((time.perf_counter() - started) * 1000))
        logger.info(
            "Detected %d face(s) (%d raw) in %dx%d image in %dms",
            len(faces),
            len(raw),
            image.width,
            image.height,
            elapsed_ms,
        )
        return DetectionResult(
            faces=faces,
            processing_time=elapsed_ms,
            image_info=ImageInfo(width=image.width, height=image.height),
        )
