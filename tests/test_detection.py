"""Tests for the detection orchestrator and result shaping."""

from __future__ import annotations

import asyncio
import threading
import time
from typing import TYPE_CHECKING

import pytest
from pydantic import ValidationError

from facerecog.config import Settings
from facerecog.errors import DetectionError, ServiceBusyError
from facerecog.ml.face_detector import RawDetection
from facerecog.ml.inference import InferencePool
from facerecog.ml.preprocessing import ProcessedImage
from facerecog.ml.providers.stub import StubFaceProvider
from facerecog.services.detection import DetectionOptions, DetectionOrchestrator, shape_detections

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _image(
    width: int = 100,
    height: int = 100,
    resized_width: int | None = None,
    resized_height: int | None = None,
) -> ProcessedImage:
    return ProcessedImage(
        data=b"\xff\xd8\xff",
        width=width,
        height=height,
        format="jpeg",
        resized_width=resized_width or width,
        resized_height=resized_height or height,
    )


def _raw(score: float, x: float = 10.0, y: float = 10.0, size: float = 20.0) -> RawDetection:
    return RawDetection(x=x, y=y, width=size, height=size, score=score)


class FailingProvider(StubFaceProvider):
    def detect(self, image: ProcessedImage, *, landmarks: bool, descriptors: bool) -> list[RawDetection]:
        raise RuntimeError("model exploded")


class SlowProvider(StubFaceProvider):
    def detect(self, image: ProcessedImage, *, landmarks: bool, descriptors: bool) -> list[RawDetection]:
        time.sleep(0.5)
        return []


class FlakyLoadProvider(StubFaceProvider):
    def load(self) -> None:
        super().load()
        if self.load_calls == 1:
            raise OSError("model file missing")


class SlowLoadProvider(StubFaceProvider):
    def load(self) -> None:
        super().load()
        time.sleep(0.15)


class BlockingProvider(StubFaceProvider):
    def __init__(self) -> None:
        super().__init__([])
        self.release = threading.Event()

    def detect(self, image: ProcessedImage, *, landmarks: bool, descriptors: bool) -> list[RawDetection]:
        self.release.wait(timeout=5)
        return []


@pytest.fixture()
async def pool() -> AsyncIterator[InferencePool]:
    inference_pool = InferencePool(Settings(max_concurrent=2))
    yield inference_pool
    inference_pool.shutdown()


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


class TestDetectionOptions:
    def test_defaults_from_settings(self) -> None:
        options = DetectionOptions.from_settings(Settings(min_confidence=0.3, max_faces=5))
        assert options.min_confidence == 0.3
        assert options.max_faces == 5
        assert options.enable_landmarks is False

    def test_none_overrides_are_ignored(self) -> None:
        options = DetectionOptions.from_settings(Settings(), min_confidence=None, max_faces="3")
        assert options.min_confidence == 0.5
        assert options.max_faces == 3

    def test_form_strings_are_parsed(self) -> None:
        options = DetectionOptions.from_settings(Settings(), min_confidence="0.75", enable_landmarks="true")
        assert options.min_confidence == 0.75
        assert options.enable_landmarks is True

    @pytest.mark.parametrize(
        "overrides",
        [{"min_confidence": "1.5"}, {"max_faces": "0"}, {"max_faces": "51"}, {"max_faces": "many"}],
    )
    def test_out_of_range_rejected(self, overrides: dict[str, str]) -> None:
        with pytest.raises(ValidationError):
            DetectionOptions.from_settings(Settings(), **overrides)


# ---------------------------------------------------------------------------
# Shaping
# ---------------------------------------------------------------------------


class TestShapeDetections:
    def test_filters_then_sorts(self) -> None:
        raw = [_raw(0.60), _raw(0.95), _raw(0.40)]
        faces = shape_detections(raw, _image(), DetectionOptions(min_confidence=0.5, max_faces=10))
        assert [face.confidence for face in faces] == [0.95, 0.60]

    def test_cap_keeps_highest(self) -> None:
        raw = [_raw(0.6), _raw(0.7), _raw(0.8), _raw(0.9), _raw(0.55)]
        faces = shape_detections(raw, _image(), DetectionOptions(max_faces=2))
        assert [face.confidence for face in faces] == [0.9, 0.8]

    def test_ties_keep_provider_order(self) -> None:
        raw = [_raw(0.6, x=1), _raw(0.9, x=2), _raw(0.6, x=3)]
        faces = shape_detections(raw, _image(), DetectionOptions())
        assert [face.bounding_box.x for face in faces] == [2, 1, 3]

    def test_rescales_to_original_pixels(self) -> None:
        raw = [
            RawDetection(x=10, y=10, width=20, height=20, score=0.9, landmarks=[(10.0, 10.0)], descriptor=[1.0])
        ]
        image = _image(width=400, height=200, resized_width=100, resized_height=50)
        face = shape_detections(raw, image, DetectionOptions(enable_landmarks=True, enable_descriptors=True))[0]

        assert face.bounding_box.model_dump() == {"x": 40.0, "y": 40.0, "width": 80.0, "height": 80.0}
        assert face.landmarks is not None
        assert (face.landmarks[0].x, face.landmarks[0].y) == (40.0, 40.0)
        assert face.descriptor == [1.0]

    def test_boxes_clamped_to_image(self) -> None:
        raw = [RawDetection(x=-5, y=40, width=30, height=30, score=0.9)]
        image = _image(width=50, height=50)
        box = shape_detections(raw, image, DetectionOptions())[0].bounding_box
        assert box.x == 0
        assert box.y == 40
        assert box.x + box.width <= image.width
        assert box.y + box.height <= image.height

    def test_optional_fields_omitted_when_disabled(self) -> None:
        raw = [RawDetection(x=0, y=0, width=1, height=1, score=0.9, landmarks=[(0.0, 0.0)], descriptor=[0.1])]
        face = shape_detections(raw, _image(), DetectionOptions())[0]
        dumped = face.model_dump(by_alias=True, exclude_none=True)
        assert "landmarks" not in dumped
        assert "descriptor" not in dumped


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class TestDetectionOrchestrator:
    async def test_filters_provider_output(self, pool: InferencePool) -> None:
        provider = StubFaceProvider([_raw(0.95), _raw(0.60), _raw(0.40)])
        orchestrator = DetectionOrchestrator(provider, pool)

        result = await orchestrator.detect(_image(), DetectionOptions(min_confidence=0.5, max_faces=10))

        assert [face.confidence for face in result.faces] == [0.95, 0.60]
        assert result.processing_time >= 0
        assert (result.image_info.width, result.image_info.height) == (100, 100)

    async def test_no_faces_is_not_an_error(self, pool: InferencePool) -> None:
        orchestrator = DetectionOrchestrator(StubFaceProvider([]), pool)
        result = await orchestrator.detect(_image(), DetectionOptions())
        assert result.faces == []

    async def test_default_stub_landmarks_and_descriptor(self, pool: InferencePool) -> None:
        orchestrator = DetectionOrchestrator(StubFaceProvider(), pool)
        image = _image(width=800, height=600, resized_width=400, resized_height=300)

        result = await orchestrator.detect(image, DetectionOptions(enable_landmarks=True, enable_descriptors=True))

        face = result.faces[0]
        assert face.landmarks is not None
        assert len(face.landmarks) == 68
        assert face.descriptor is not None
        assert len(face.descriptor) == 128
        box = face.bounding_box
        assert box.x + box.width <= 800
        assert box.y + box.height <= 600

    async def test_processing_time_from_started_at(self, pool: InferencePool) -> None:
        orchestrator = DetectionOrchestrator(StubFaceProvider([]), pool)
        started = time.perf_counter() - 0.25
        result = await orchestrator.detect(_image(), DetectionOptions(), started_at=started)
        assert result.processing_time >= 250

    async def test_provider_failure_becomes_detection_error(self, pool: InferencePool) -> None:
        orchestrator = DetectionOrchestrator(FailingProvider(), pool)
        with pytest.raises(DetectionError) as excinfo:
            await orchestrator.detect(_image(), DetectionOptions())
        assert excinfo.value.code == "DETECTION_ERROR"
        assert excinfo.value.message == "Face detection failed"
        assert excinfo.value.cause == "model exploded"

    async def test_deadline_becomes_detection_error(self, pool: InferencePool) -> None:
        orchestrator = DetectionOrchestrator(SlowProvider(), pool, timeout=0.05)
        with pytest.raises(DetectionError) as excinfo:
            await orchestrator.detect(_image(), DetectionOptions())
        assert "timed out" in (excinfo.value.cause or "")

    async def test_load_is_single_flight(self, pool: InferencePool) -> None:
        provider = StubFaceProvider([])
        orchestrator = DetectionOrchestrator(provider, pool)
        assert not orchestrator.is_ready

        await asyncio.gather(*(orchestrator.detect(_image(), DetectionOptions()) for _ in range(5)))

        assert provider.load_calls == 1
        assert orchestrator.is_ready

    async def test_failed_load_is_retried(self, pool: InferencePool) -> None:
        provider = FlakyLoadProvider([])
        orchestrator = DetectionOrchestrator(provider, pool)

        with pytest.raises(DetectionError):
            await orchestrator.detect(_image(), DetectionOptions())
        assert not orchestrator.is_ready

        result = await orchestrator.detect(_image(), DetectionOptions())
        assert result.faces == []
        assert provider.load_calls == 2

    async def test_overrunning_load_is_awaited_not_restarted(self, pool: InferencePool) -> None:
        provider = SlowLoadProvider([])
        orchestrator = DetectionOrchestrator(provider, pool, timeout=0.05)

        for _ in range(2):
            with pytest.raises(DetectionError):
                await orchestrator.detect(_image(), DetectionOptions())
        assert not orchestrator.is_ready

        await asyncio.sleep(0.2)
        result = await orchestrator.detect(_image(), DetectionOptions())

        assert result.faces == []
        assert orchestrator.is_ready
        assert provider.load_calls == 1

    async def test_saturated_pool_is_busy(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("facerecog.ml.inference.SEMAPHORE_TIMEOUT_SECONDS", 0.01)
        single = InferencePool(Settings(max_concurrent=1))
        provider = BlockingProvider()
        orchestrator = DetectionOrchestrator(provider, single)
        await orchestrator.warm_up()

        first = asyncio.create_task(orchestrator.detect(_image(), DetectionOptions()))
        await asyncio.sleep(0.05)
        try:
            with pytest.raises(ServiceBusyError):
                await orchestrator.detect(_image(), DetectionOptions())
        finally:
            provider.release.set()
            await first
            single.shutdown()
