"""Object storage gateway: retried uploads and fail-soft reads over an S3-compatible bucket.

Architecture:
    StorageGateway (async, retry policy) -> asyncio.to_thread -> ObjectStorage (blocking client)

Works against Cloudflare R2, MinIO, or AWS S3 through the ``minio`` client.
"""

from __future__ import annotations

import asyncio
import io
import itertools
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol
from urllib.parse import urlparse

from minio import Minio
from minio.error import InvalidResponseError, S3Error, ServerError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_incrementing
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from facerecog.services.storage_keys import generate_file_url, is_valid_storage_key
from facerecog.services.validation import SUPPORTED_IMAGE_TYPES

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterator

    from tenacity import RetryCallState

    from facerecog.config import Settings

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=31536000"

_TRANSIENT_S3_CODES = frozenset(
    {"InternalError", "ServiceUnavailable", "SlowDown", "RequestTimeout", "RequestTimeTooSkewed"}
)
_MISSING_S3_CODES = frozenset({"NoSuchKey", "NoSuchObject", "NotFound"})


class StorageError(Exception):
    """Backend failure. ``transient`` failures are worth retrying."""

    def __init__(self, message: str, *, transient: bool = True) -> None:
        self.transient = transient
        super().__init__(message)


# ---------------------------------------------------------------------------
# Backend protocol and data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StoredObject:
    key: str
    size: int
    etag: str | None = None
    last_modified: datetime | None = None
    content_type: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


class ObjectStorage(Protocol):
    """Blocking S3-style bucket operations. Failures raise StorageError."""

    def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str,
        cache_control: str,
        metadata: dict[str, str],
    ) -> StoredObject:
        """Store ``data`` under ``key``."""
        ...

    def head(self, key: str) -> StoredObject | None:
        """Return object metadata, or None if the key does not exist."""
        ...

    def delete(self, key: str) -> None:
        """Remove the object stored under ``key``."""
        ...

    def list(self, prefix: str | None, limit: int) -> list[StoredObject]:
        """List up to ``limit`` objects whose keys start with ``prefix``."""
        ...


class MinioObjectStorage:
    """ObjectStorage backed by the minio S3 client."""

    def __init__(self, client: Minio, bucket: str) -> None:
        self._client = client
        self._bucket = bucket

    @classmethod
    def from_settings(cls, settings: Settings) -> MinioObjectStorage:
        endpoint = settings.storage_endpoint or ""
        secure = settings.storage_secure
        if "://" in endpoint:
            parsed = urlparse(endpoint)
            endpoint = parsed.netloc
            secure = parsed.scheme == "https"

        client = Minio(
            endpoint,
            access_key=settings.storage_access_key,
            secret_key=settings.storage_secret_key,
            secure=secure,
            region=settings.storage_region,
        )
        return cls(client, settings.storage_bucket)

    def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str,
        cache_control: str,
        metadata: dict[str, str],
    ) -> StoredObject:
        # S3 user metadata must be US-ASCII.
        headers: dict[str, str] = {
            name: value.encode("ascii", "backslashreplace").decode("ascii") for name, value in metadata.items()
        }
        headers["Cache-Control"] = cache_control
        with _translate_errors():
            result = self._client.put_object(
                self._bucket,
                key,
                io.BytesIO(data),
                length=len(data),
                content_type=content_type,
                metadata=headers,  # type: ignore[arg-type]
            )
        return StoredObject(key=key, size=len(data), etag=result.etag, content_type=content_type)

    def head(self, key: str) -> StoredObject | None:
        try:
            with _translate_errors():
                obj = self._client.stat_object(self._bucket, key)
        except StorageError as exc:
            if isinstance(exc.__cause__, S3Error) and exc.__cause__.code in _MISSING_S3_CODES:
                return None
            raise
        return _to_stored_object(obj)

    def delete(self, key: str) -> None:
        with _translate_errors():
            self._client.remove_object(self._bucket, key)

    def list(self, prefix: str | None, limit: int) -> list[StoredObject]:
        with _translate_errors():
            objects = self._client.list_objects(self._bucket, prefix=prefix, recursive=True)
            return [_to_stored_object(obj) for obj in itertools.islice(objects, limit)]


@contextmanager
def _translate_errors() -> Iterator[None]:
    """Map minio/urllib3 failures to StorageError, classifying transient ones."""
    try:
        yield
    except S3Error as exc:
        raise StorageError(f"{exc.code}: {exc.message}", transient=exc.code in _TRANSIENT_S3_CODES) from exc
    except ServerError as exc:
        raise StorageError(str(exc), transient=exc.status_code >= 500) from exc
    except InvalidResponseError as exc:
        # Non-XML error body, typically a proxy or CDN page in front of the bucket.
        status_code = getattr(exc, "_code", None)
        raise StorageError(str(exc), transient=status_code is None or status_code >= 500) from exc
    except (Urllib3HTTPError, OSError) as exc:
        raise StorageError(str(exc) or type(exc).__name__, transient=True) from exc
    except ValueError as exc:
        raise StorageError(str(exc), transient=False) from exc


def _to_stored_object(obj: object) -> StoredObject:
    raw_metadata = getattr(obj, "metadata", None) or {}
    metadata = {
        name[len("x-amz-meta-") :]: value
        for name, value in raw_metadata.items()
        if name.lower().startswith("x-amz-meta-")
    }
    return StoredObject(
        key=getattr(obj, "object_name", ""),
        size=getattr(obj, "size", 0) or 0,
        etag=getattr(obj, "etag", None),
        last_modified=getattr(obj, "last_modified", None),
        content_type=getattr(obj, "content_type", None),
        metadata=metadata,
    )


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, StorageError) and exc.transient


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "Upload attempt %d failed: %s; retrying in %.1fs",
        retry_state.attempt_number,
        exc,
        delay,
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with linear backoff: ``attempt * backoff_seconds`` after each failed attempt."""

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    retry_on: Callable[[BaseException], bool] = is_transient
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            sleep=self.sleep,
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.backoff_seconds, increment=self.backoff_seconds),
            retry=retry_if_exception(self.retry_on),
            before_sleep=_log_retry,
            reraise=True,
        )


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UploadResult:
    success: bool
    storage_key: str | None = None
    url: str | None = None
    size: int | None = None
    etag: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class FileInfo:
    exists: bool
    size: int | None = None
    etag: str | None = None
    last_modified: datetime | None = None
    content_type: str | None = None
    metadata: dict[str, str] | None = None


@dataclass(frozen=True)
class StorageStats:
    total_files: int
    total_size: int
    last_checked: datetime


class StorageGateway:
    """Uploads with retry; info/delete/list never raise and report absence instead."""

    def __init__(
        self,
        backend: ObjectStorage,
        public_base_url: str,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._backend = backend
        self._public_base_url = public_base_url
        self._retry_policy = retry_policy or RetryPolicy()

    async def upload_file(
        self,
        storage_key: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> UploadResult:
        if not is_valid_storage_key(storage_key):
            return UploadResult(success=False, error="Invalid storage key format")
        if content_type not in SUPPORTED_IMAGE_TYPES:
            return UploadResult(success=False, error=f"Unsupported content type: {content_type}")
        if not data:
            return UploadResult(success=False, error="File buffer is empty")

        custom_metadata = {
            "uploadedAt": datetime.now(UTC).isoformat(),
            "originalContentType": content_type,
            **(metadata or {}),
        }
        max_attempts = self._retry_policy.max_attempts
        attempts = 0
        try:
            async for attempt in self._retry_policy.retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    logger.info("Uploading %s (attempt %d/%d)", storage_key, attempts, max_attempts)
                    stored = await asyncio.to_thread(
                        self._backend.put,
                        storage_key,
                        data,
                        content_type=content_type,
                        cache_control=CACHE_CONTROL,
                        metadata=custom_metadata,
                    )
        except StorageError as exc:
            logger.error("Upload of %s failed after %d attempt(s): %s", storage_key, attempts, exc)
            return UploadResult(
                success=False,
                storage_key=storage_key,
                error=f"Failed to upload after {attempts} attempts: {exc}",
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Upload of %s failed with an unexpected backend error", storage_key)
            return UploadResult(
                success=False,
                storage_key=storage_key,
                error=f"Failed to upload after {attempts} attempts: {exc}",
            )

        logger.info("Uploaded %s (%d bytes)", storage_key, len(data))
        return UploadResult(
            success=True,
            storage_key=storage_key,
            url=generate_file_url(storage_key, self._public_base_url),
            size=len(data),
            etag=stored.etag,
        )

    async def get_file_info(self, storage_key: str) -> FileInfo:
        if not is_valid_storage_key(storage_key):
            return FileInfo(exists=False)
        try:
            obj = await asyncio.to_thread(self._backend.head, storage_key)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to get file info for %s: %s", storage_key, exc)
            return FileInfo(exists=False)
        if obj is None:
            return FileInfo(exists=False)
        return FileInfo(
            exists=True,
            size=obj.size,
            etag=obj.etag,
            last_modified=obj.last_modified,
            content_type=obj.content_type,
            metadata=obj.metadata,
        )

    async def delete_file(self, storage_key: str) -> bool:
        if not is_valid_storage_key(storage_key):
            return False
        try:
            await asyncio.to_thread(self._backend.delete, storage_key)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to delete %s: %s", storage_key, exc)
            return False
        logger.info("Deleted %s", storage_key)
        return True

    async def list_files(self, prefix: str | None = None, limit: int = 100) -> list[StoredObject]:
        try:
            return await asyncio.to_thread(self._backend.list, prefix, limit)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to list files (prefix=%s): %s", prefix, exc)
            return []

    async def check_connection(self) -> bool:
        try:
            await asyncio.to_thread(self._backend.list, None, 1)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Storage connection check failed: %s", exc)
            return False
        return True

    async def get_stats(self, prefix: str | None = None) -> StorageStats:
        objects = await self.list_files(prefix, limit=1000)
        return StorageStats(
            total_files=len(objects),
            total_size=sum(obj.size for obj in objects),
            last_checked=datetime.now(UTC),
        )


def create_storage_gateway(settings: Settings) -> StorageGateway | None:
    """Build the gateway from settings, or None when no storage endpoint is configured."""
    if not settings.storage_endpoint:
        return None
    return StorageGateway(
        MinioObjectStorage.from_settings(settings),
        public_base_url=settings.storage_public_url,
        retry_policy=RetryPolicy(
            max_attempts=settings.upload_max_attempts,
            backoff_seconds=settings.upload_backoff_seconds,
        ),
    )
