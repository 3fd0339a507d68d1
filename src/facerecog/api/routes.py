"""API route definitions."""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, File, Form, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.datastructures import UploadFile as StarletteUploadFile

from facerecog.api.middleware import get_settings_from_request, verify_api_key
from facerecog.api.schemas import (
    DetailedHealthResponse,
    DetectionResult,
    ErrorResponse,
    HealthChecks,
    HealthResponse,
    UploadResponse,
)
from facerecog.errors import (
    DetectionError,
    FileTooLargeError,
    InvalidContentTypeError,
    InvalidFileTypeError,
    InvalidParamsError,
    MissingFileError,
    ServiceBusyError,
    ValidationFailedError,
)
from facerecog.ml.inference import PoolSaturatedError
from facerecog.services.detection import DetectionOptions
from facerecog.services.validation import SUPPORTED_IMAGE_TYPES, UploadedImage

if TYPE_CHECKING:
    from facerecog.ml.inference import InferencePool
    from facerecog.ml.preprocessing import ImagePreprocessor
    from facerecog.services.detection import DetectionOrchestrator
    from facerecog.services.uploads import NotImplementedOutcome, UploadService
    from facerecog.services.validation import ImageValidator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", dependencies=[Depends(verify_api_key)])
health_router = APIRouter()

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
}


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_preprocessor(request: Request) -> ImagePreprocessor:
    preprocessor: ImagePreprocessor = request.app.state.preprocessor
    return preprocessor


def _get_validator(request: Request) -> ImageValidator:
    validator: ImageValidator = request.app.state.validator
    return validator


def _get_orchestrator(request: Request) -> DetectionOrchestrator:
    orchestrator: DetectionOrchestrator = request.app.state.orchestrator
    return orchestrator


def _get_upload_service(request: Request) -> UploadService:
    service: UploadService = request.app.state.upload_service
    return service


def _blank_to_none(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value


def _not_implemented(outcome: NotImplementedOutcome) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_501_NOT_IMPLEMENTED,
        content={"error": {"message": outcome.message, "code": outcome.code}},
    )


def _timestamp() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


@router.post(
    "/detect-faces",
    response_model=DetectionResult,
    response_model_exclude_none=True,
    responses={**_ERROR_RESPONSES, status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Detect faces in an image",
)
async def detect_faces(
    request: Request,
    image: Annotated[UploadFile | None, File()] = None,
    min_confidence: Annotated[str | None, Form(alias="minConfidence")] = None,
    max_faces: Annotated[str | None, Form(alias="maxFaces")] = None,
    enable_landmarks: Annotated[str | None, Form(alias="enableLandmarks")] = None,
    enable_descriptors: Annotated[str | None, Form(alias="enableDescriptors")] = None,
) -> DetectionResult:
    """Detect faces and return boxes, confidences, and optional landmarks/descriptors."""
    started = time.perf_counter()
    settings = get_settings_from_request(request)

    if image is None or not image.filename:
        raise MissingFileError
    if image.content_type not in SUPPORTED_IMAGE_TYPES:
        raise InvalidFileTypeError(image.content_type)
    if image.size is not None and image.size > settings.max_file_size:
        raise FileTooLargeError(settings.max_file_size)

    try:
        options = DetectionOptions.from_settings(
            settings,
            min_confidence=_blank_to_none(min_confidence),
            max_faces=_blank_to_none(max_faces),
            enable_landmarks=_blank_to_none(enable_landmarks),
            enable_descriptors=_blank_to_none(enable_descriptors),
        )
    except ValidationError as exc:
        details = [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()]
        raise InvalidParamsError(details) from None

    data = await image.read()
    if len(data) > settings.max_file_size:
        raise FileTooLargeError(settings.max_file_size)

    validation = _get_validator(request).validate(
        UploadedImage(name=image.filename, content_type=image.content_type, size=len(data), data=data)
    )
    if not validation.is_valid:
        raise ValidationFailedError(validation.errors)

    logger.info("Processing face detection request: %s (%d bytes, %s)", image.filename, len(data), image.content_type)

    preprocessor = _get_preprocessor(request)
    try:
        processed = await _get_inference_pool(request).run(
            preprocessor.preprocess,
            validation.normalized_bytes or data,
            timeout=settings.detection_timeout,
        )
    except PoolSaturatedError:
        raise ServiceBusyError from None
    except TimeoutError:
        logger.error("Preprocessing %s exceeded %.1fs", image.filename, settings.detection_timeout)
        raise DetectionError(f"Preprocessing timed out after {settings.detection_timeout}s") from None

    return await _get_orchestrator(request).detect(processed, options, started_at=started)


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------


@router.post(
    "/upload",
    response_model=UploadResponse,
    responses=_ERROR_RESPONSES,
    summary="Upload a photo to object storage",
)
async def upload_file(request: Request) -> UploadResponse:
    """Validate a multipart ``file`` field and store it."""
    if "multipart/form-data" not in request.headers.get("content-type", ""):
        raise InvalidContentTypeError

    form = await request.form()
    file = form.get("file")
    if not isinstance(file, StarletteUploadFile):
        raise MissingFileError("No file provided. Please include a file in the 'file' field.")

    data = await file.read()
    stored = await _get_upload_service(request).upload(
        UploadedImage(
            name=file.filename or "",
            content_type=file.content_type or "",
            size=len(data),
            data=data,
        ),
        client_info=request.headers.get("user-agent"),
    )
    return UploadResponse(
        file_id=stored.record.file_id,
        filename=stored.record.original_name,
        url=stored.url,
        size=stored.record.size,
        uploaded_at=stored.record.uploaded_at,
    )


@router.get(
    "/upload/{file_id}",
    responses={status.HTTP_501_NOT_IMPLEMENTED: {"model": ErrorResponse}},
    summary="Look up an uploaded file",
)
async def get_upload(file_id: str, request: Request) -> JSONResponse:
    return _not_implemented(_get_upload_service(request).lookup(file_id))


@router.delete(
    "/upload/{file_id}",
    responses={status.HTTP_501_NOT_IMPLEMENTED: {"model": ErrorResponse}},
    summary="Delete an uploaded file",
)
async def delete_upload(file_id: str, request: Request) -> JSONResponse:
    return _not_implemented(_get_upload_service(request).delete(file_id))


# ---------------------------------------------------------------------------
# Health (no API key)
# ---------------------------------------------------------------------------


def _health(request: Request, response: Response, service: str) -> HealthResponse:
    settings = get_settings_from_request(request)
    orchestrator = _get_orchestrator(request)
    healthy = orchestrator.is_ready or not settings.preload_models
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        service=service,
        version=settings.version,
        timestamp=_timestamp(),
    )


@health_router.get("/health", response_model=HealthResponse, summary="Detection service health")
async def health(request: Request, response: Response) -> HealthResponse:
    return _health(request, response, "face-detector")


@health_router.get("/api/health", response_model=HealthResponse, summary="API health")
async def api_health(request: Request, response: Response) -> HealthResponse:
    return _health(request, response, "face-detection-api")


@health_router.get("/api/health/detailed", response_model=DetailedHealthResponse, summary="Detailed health")
async def detailed_health(request: Request) -> DetailedHealthResponse:
    """Report API, storage and detector status; any failing check means "degraded"."""
    started = time.perf_counter()
    settings = get_settings_from_request(request)
    orchestrator = _get_orchestrator(request)
    storage = _get_upload_service(request).storage

    checks = HealthChecks(
        api=True,
        storage=await storage.check_connection() if storage is not None else False,
        detector=orchestrator.is_ready or not settings.preload_models,
    )
    all_ok = checks.api and checks.storage and checks.detector
    pool = _get_inference_pool(request)
    return DetailedHealthResponse(
        status="healthy" if all_ok else "degraded",
        timestamp=_timestamp(),
        response_time=f"{round((time.perf_counter() - started) * 1000)}ms",
        checks=checks,
        environment=settings.environment,
        provider=orchestrator.provider_name,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )
