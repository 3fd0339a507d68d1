"""Pydantic request/response schemas for the FaceRecog API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys, populated by either name."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BoundingBox(CamelModel):
    """Face bounding box in original-image pixel coordinates."""

    x: float = Field(ge=0.0)
    y: float = Field(ge=0.0)
    width: float = Field(ge=0.0)
    height: float = Field(ge=0.0)


class Point(CamelModel):
    x: float
    y: float


class DetectedFace(CamelModel):
    """A single detected face. Optional fields are omitted when not requested."""

    bounding_box: BoundingBox
    confidence: float = Field(ge=0.0, le=1.0, description="Detection confidence (0.0-1.0)")
    landmarks: list[Point] | None = Field(default=None, description="Facial keypoints (68 points)")
    descriptor: list[float] | None = Field(default=None, description="Face embedding vector")


class ImageInfo(CamelModel):
    width: int
    height: int


class DetectionResult(CamelModel):
    """Response envelope for one detection request."""

    faces: list[DetectedFace]
    processing_time: int = Field(ge=0, description="Elapsed milliseconds")
    image_info: ImageInfo


class HealthResponse(CamelModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"]
    service: str
    version: str
    timestamp: str


class HealthChecks(CamelModel):
    api: bool
    storage: bool
    detector: bool


class DetailedHealthResponse(CamelModel):
    status: Literal["healthy", "degraded"]
    timestamp: str
    response_time: str
    checks: HealthChecks
    environment: str
    provider: str
    concurrent_requests: int
    queue_depth: int


class UploadResponse(CamelModel):
    """Response for a successful upload."""

    file_id: str
    filename: str
    url: str
    size: int
    uploaded_at: str


class ErrorDetail(CamelModel):
    message: str
    code: str
    details: list[str] | None = None


class ErrorResponse(CamelModel):
    """Standard error response."""

    error: ErrorDetail
