"""Exception hierarchy rendered as ``{"error": {"message", "code"}}`` bodies."""

from __future__ import annotations

from fastapi import status


class FaceRecogError(Exception):
    """Base exception for all FaceRecog errors.

    ``message`` is what the client sees. Internal causes belong in the logs.
    """

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        code: str = "INTERNAL_ERROR",
        details: list[str] | None = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details
        super().__init__(message)


class MissingFileError(FaceRecogError):
    def __init__(self, message: str = "No image file provided") -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST, "MISSING_FILE")


class InvalidFileTypeError(FaceRecogError):
    def __init__(self, content_type: str | None) -> None:
        super().__init__(
            f"Invalid file type: {content_type}. Only JPEG, PNG and WebP images are allowed.",
            status.HTTP_400_BAD_REQUEST,
            "INVALID_FILE_TYPE",
        )


class FileTooLargeError(FaceRecogError):
    def __init__(self, max_file_size: int) -> None:
        super().__init__(
            f"File too large. Maximum size is {max_file_size // (1024 * 1024)}MB.",
            status.HTTP_400_BAD_REQUEST,
            "FILE_TOO_LARGE",
        )


class InvalidParamsError(FaceRecogError):
    def __init__(self, details: list[str] | None = None) -> None:
        super().__init__("Invalid request parameters", status.HTTP_400_BAD_REQUEST, "INVALID_PARAMS", details)


class ValidationFailedError(FaceRecogError):
    """Raised with every collected validation failure, not just the first."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(
            f"File validation failed: {', '.join(errors)}",
            status.HTTP_400_BAD_REQUEST,
            "VALIDATION_FAILED",
            list(errors),
        )


class InvalidFileIdError(FaceRecogError):
    def __init__(self) -> None:
        super().__init__("Invalid file ID format", status.HTTP_400_BAD_REQUEST, "INVALID_FILE_ID")


class DetectionError(FaceRecogError):
    """Provider, decode, or deadline failure. The cause is never sent to clients."""

    def __init__(self, cause: str | None = None) -> None:
        self.cause = cause
        super().__init__("Face detection failed", status.HTTP_500_INTERNAL_SERVER_ERROR, "DETECTION_ERROR")


class DecodeError(DetectionError):
    """Image bytes could not be decoded."""


class MissingDimensionsError(DetectionError):
    """Decoded image metadata lacks a width or height."""


class ServiceBusyError(FaceRecogError):
    def __init__(self) -> None:
        super().__init__(
            "Detection service is busy, retry later",
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "SERVICE_BUSY",
        )


class UploadFailedError(FaceRecogError):
    def __init__(self, reason: str | None) -> None:
        super().__init__(
            f"File upload failed: {reason or 'Unknown error'}",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "UPLOAD_FAILED",
        )


class StorageUnavailableError(FaceRecogError):
    def __init__(self) -> None:
        super().__init__("Storage service not available", status.HTTP_500_INTERNAL_SERVER_ERROR, "STORAGE_UNAVAILABLE")


class InvalidContentTypeError(FaceRecogError):
    def __init__(self) -> None:
        super().__init__("Content-Type must be multipart/form-data", status.HTTP_400_BAD_REQUEST, "INVALID_CONTENT_TYPE")
