"""Uploaded image validation: filename, MIME type, size, and magic bytes."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

SUPPORTED_IMAGE_TYPES: tuple[str, ...] = ("image/jpeg", "image/png", "image/webp")
ALLOWED_EXTENSIONS: tuple[str, ...] = (".jpg", ".jpeg", ".png", ".webp")
MAX_FILE_SIZE: int = 10 * 1024 * 1024
MAX_FILENAME_LENGTH: int = 255

_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')


@dataclass(frozen=True)
class UploadedImage:
    """An image as received from the client, before any processing."""

    name: str
    content_type: str
    size: int
    data: bytes


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    normalized_bytes: bytes | None = None


def is_valid_filename(filename: str) -> bool:
    if not filename or len(filename) > MAX_FILENAME_LENGTH:
        return False
    if _UNSAFE_FILENAME_CHARS.search(filename):
        return False
    return filename.lower().endswith(ALLOWED_EXTENSIONS)


def is_valid_image_type(content_type: str) -> bool:
    return content_type in SUPPORTED_IMAGE_TYPES


def is_valid_file_size(size: int, max_file_size: int = MAX_FILE_SIZE) -> bool:
    return 0 < size <= max_file_size


def matches_signature(data: bytes, content_type: str) -> bool:
    """Check the leading bytes against the declared type's magic signature."""
    if content_type == "image/jpeg":
        return data[:3] == b"\xff\xd8\xff"
    if content_type == "image/png":
        return data[:4] == b"\x89PNG"
    if content_type == "image/webp":
        return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP"
    return False


class ImageValidator:
    """Stateless validator; every applicable failure is reported."""

    def __init__(self, max_file_size: int = MAX_FILE_SIZE) -> None:
        self.max_file_size = max_file_size

    def validate(self, image: UploadedImage) -> ValidationResult:
        errors: list[str] = []

        if not is_valid_filename(image.name):
            errors.append(
                "Invalid filename. Use 1-255 safe characters ending in .jpg, .jpeg, .png or .webp"
            )

        if not is_valid_image_type(image.content_type):
            errors.append(
                f"Unsupported file type: {image.content_type}. "
                f"Supported types: {', '.join(SUPPORTED_IMAGE_TYPES)}"
            )

        if not is_valid_file_size(image.size, self.max_file_size):
            if image.size <= 0:
                errors.append("File is empty")
            else:
                errors.append(
                    f"File size exceeds limit. Maximum size: {self.max_file_size // (1024 * 1024)}MB"
                )

        if errors:
            return ValidationResult(is_valid=False, errors=errors)

        # The declared size can disagree with what was actually received.
        if not image.data:
            return ValidationResult(is_valid=False, errors=["File content is empty"])

        if not matches_signature(image.data, image.content_type):
            return ValidationResult(
                is_valid=False,
                errors=["File content does not match the declared type"],
            )

        return ValidationResult(is_valid=True, normalized_bytes=image.data)
