"""Environment-based configuration for FaceRecog."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from FACERECOG_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACERECOG_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080
    environment: str = "development"
    version: str = "1.0.0"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:3001"]

    # Authentication (None = disabled)
    api_key: str | None = None

    # Detection provider
    detection_provider: Literal["stub", "onnx", "remote"] = "stub"
    remote_detector_url: str = "http://localhost:8081"
    detection_timeout: float = Field(default=30.0, gt=0)
    preload_models: bool = False

    # Detection defaults
    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    max_faces: int = Field(default=10, ge=1, le=50)
    enable_landmarks: bool = False
    enable_descriptors: bool = False

    # ONNX models
    models_dir: str = "./models"
    model_repo_id: str | None = None
    face_detection_model: str = "ultraface_rfb_320"
    face_landmark_model: str | None = "pfld_68"
    face_descriptor_model: str | None = "mobilefacenet_128"
    device: Literal["cpu", "cuda"] = "cpu"
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    detector_score_floor: float = Field(default=0.3, ge=0.0, le=1.0)
    nms_iou_threshold: float = Field(default=0.3, gt=0.0, le=1.0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits and preprocessing
    max_file_size: int = Field(default=10 * 1024 * 1024, ge=1)
    max_image_dimension: int = Field(default=1024, ge=1)
    image_quality: int = Field(default=80, ge=1, le=95)

    # Object storage (S3-compatible: R2, MinIO, S3). No endpoint = disabled.
    storage_endpoint: str | None = None
    storage_access_key: str | None = None
    storage_secret_key: str | None = None
    storage_bucket: str = "face-recog-photos"
    storage_region: str | None = None
    storage_secure: bool = True
    storage_public_url: str = "http://localhost:8787/files"
    upload_max_attempts: int = Field(default=3, ge=1)
    upload_backoff_seconds: float = Field(default=1.0, ge=0.0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
