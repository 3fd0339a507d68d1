"""Photo upload flow: validate, derive the upload record, store with retry."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from facerecog.errors import (
    InvalidFileIdError,
    StorageUnavailableError,
    UploadFailedError,
    ValidationFailedError,
)
from facerecog.services.storage_keys import UploadRecord, create_upload_record

if TYPE_CHECKING:
    from facerecog.services.storage import StorageGateway
    from facerecog.services.validation import ImageValidator, UploadedImage

logger = logging.getLogger(__name__)

_FILE_ID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


@dataclass(frozen=True)
class NotImplementedOutcome:
    """A stable "not available yet" answer, rendered as HTTP 501."""

    code: str
    message: str


@dataclass(frozen=True)
class StoredUpload:
    record: UploadRecord
    url: str


def check_file_id(file_id: str) -> str:
    """Return ``file_id`` if it looks like a UUID, else raise InvalidFileIdError."""
    if not _FILE_ID_RE.match(file_id):
        raise InvalidFileIdError
    return file_id


class UploadService:
    """Stores validated photos through the storage gateway.

    ``storage`` is None when no object store is configured; uploads then
    fail with STORAGE_UNAVAILABLE while everything else keeps working.
    """

    def __init__(self, storage: StorageGateway | None, validator: ImageValidator) -> None:
        self._storage = storage
        self._validator = validator

    @property
    def storage(self) -> StorageGateway | None:
        return self._storage

    async def upload(self, image: UploadedImage, client_info: str | None = None) -> StoredUpload:
        """Validate and store one image.

        Raises:
            ValidationFailedError: With every validation failure.
            StorageUnavailableError: If no storage gateway is configured.
            UploadFailedError: If the gateway gave up.
        """
        validation = self._validator.validate(image)
        if not validation.is_valid:
            raise ValidationFailedError(validation.errors)

        if self._storage is None:
            raise StorageUnavailableError

        record = create_upload_record(image.name, image.content_type, image.size)
        result = await self._storage.upload_file(
            record.storage_key,
            validation.normalized_bytes or image.data,
            record.content_type,
            metadata={
                "originalFilename": record.original_name,
                "fileSize": str(record.size),
                "uploadedBy": "user",
                "clientInfo": client_info or "unknown",
            },
        )
        if not result.success or result.url is None:
            raise UploadFailedError(result.error)

        logger.info("Stored upload %s as %s", record.file_id, record.storage_key)
        return StoredUpload(record=record, url=result.url)

    def lookup(self, file_id: str) -> NotImplementedOutcome:
        check_file_id(file_id)
        return NotImplementedOutcome(
            code="DATABASE_REQUIRED",
            message="File info lookup requires database integration.",
        )

    def delete(self, file_id: str) -> NotImplementedOutcome:
        check_file_id(file_id)
        return NotImplementedOutcome(
            code="NOT_IMPLEMENTED",
            message="File deletion feature not implemented yet.",
        )
