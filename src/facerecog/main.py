"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from facerecog.config import Settings
    from facerecog.ml.face_detector import FaceDetectionProvider
    from facerecog.services.storage import StorageGateway

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from facerecog.api.middleware import log_requests
from facerecog.api.routes import health_router, router
from facerecog.config import get_settings
from facerecog.errors import DetectionError, FaceRecogError
from facerecog.ml.face_detector import create_provider
from facerecog.ml.inference import InferencePool
from facerecog.ml.preprocessing import ImagePreprocessor
from facerecog.services.detection import DetectionOrchestrator
from facerecog.services.storage import create_storage_gateway
from facerecog.services.uploads import UploadService
from facerecog.services.validation import ImageValidator

logger = logging.getLogger(__name__)


def init_app_state(
    app: FastAPI,
    settings: Settings,
    *,
    provider: FaceDetectionProvider | None = None,
    storage: StorageGateway | None = None,
) -> None:
    """Wire services onto ``app.state``. Used by the lifespan and by tests."""
    inference_pool = InferencePool(settings)
    validator = ImageValidator(settings.max_file_size)

    app.state.settings = settings
    app.state.inference_pool = inference_pool
    app.state.validator = validator
    app.state.preprocessor = ImagePreprocessor(settings.max_image_dimension, settings.image_quality)
    app.state.orchestrator = DetectionOrchestrator(
        provider or create_provider(settings),
        inference_pool,
        timeout=settings.detection_timeout,
    )
    app.state.upload_service = UploadService(
        storage if storage is not None else create_storage_gateway(settings),
        validator,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting FaceRecog (provider=%s, device=%s, max_concurrent=%s, storage=%s)",
        settings.detection_provider,
        settings.device,
        settings.max_concurrent,
        settings.storage_endpoint or "disabled",
    )

    init_app_state(app, settings)
    orchestrator: DetectionOrchestrator = app.state.orchestrator

    if settings.preload_models:
        try:
            await orchestrator.warm_up()
        except Exception:
            logger.exception("Failed to preload %s provider; will retry on first request", orchestrator.provider_name)

    logger.info("FaceRecog ready")
    yield

    logger.info("Shutting down FaceRecog")
    app.state.inference_pool.shutdown()
    orchestrator.close()
    logger.info("FaceRecog shutdown complete")


def _error_body(message: str, code: str, details: list[str] | None = None) -> dict[str, object]:
    error: dict[str, object] = {"message": message, "code": code}
    if details:
        error["details"] = details
    return {"error": error}


async def _handle_facerecog_error(request: Request, exc: FaceRecogError) -> JSONResponse:
    if isinstance(exc, DetectionError):
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.code, exc.cause)
    elif exc.status_code >= 500:
        logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.code, exc.message)
    else:
        logger.warning("%s %s rejected: %s %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, exc.code, exc.details))


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()]
    return JSONResponse(
        status_code=400,
        content=_error_body("Invalid request", "INVALID_REQUEST", details),
    )


async def _handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = "UNAUTHORIZED" if exc.status_code == 401 else f"HTTP_{exc.status_code}"
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(str(exc.detail), code),
        headers=exc.headers,
    )


async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=_error_body("Internal server error", "INTERNAL_ERROR"))


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    application = FastAPI(
        title="FaceRecog",
        description="Face detection and photo upload API",
        version=settings.version,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.middleware("http")(log_requests)

    application.add_exception_handler(FaceRecogError, _handle_facerecog_error)
    application.add_exception_handler(RequestValidationError, _handle_validation_error)
    application.add_exception_handler(StarletteHTTPException, _handle_http_exception)
    application.add_exception_handler(Exception, _handle_unexpected_error)

    application.include_router(health_router)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run("facerecog.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
