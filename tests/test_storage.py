"""Tests for the object storage gateway and its retry policy."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from minio.error import InvalidResponseError, S3Error, ServerError

from conftest import MemoryObjectStorage, make_gateway
from facerecog.config import Settings
from facerecog.services.storage import (
    CACHE_CONTROL,
    MinioObjectStorage,
    RetryPolicy,
    StorageError,
    StorageGateway,
    create_storage_gateway,
)

KEY = "uploads/2024/03/05/abc_photo.jpg"


class TestUploadFile:
    async def test_success(self, memory_storage: MemoryObjectStorage, jpeg_bytes: bytes) -> None:
        result = await make_gateway(memory_storage).upload_file(KEY, jpeg_bytes, "image/jpeg", {"uploadedBy": "user"})

        assert result.success
        assert result.size == len(jpeg_bytes)
        assert result.etag == "etag-1"
        assert result.url == "https://files.example.com/uploads%2F2024%2F03%2F05%2Fabc_photo.jpg"
        _, content_type, metadata = memory_storage.objects[KEY]
        assert content_type == "image/jpeg"
        assert metadata["Cache-Control"] == CACHE_CONTROL
        assert metadata["originalContentType"] == "image/jpeg"
        assert metadata["uploadedBy"] == "user"
        assert "uploadedAt" in metadata

    @pytest.mark.parametrize("failures", [1, 2])
    async def test_recovers_from_transient_failures(self, failures: int, jpeg_bytes: bytes) -> None:
        backend = MemoryObjectStorage([StorageError("timeout")] * failures)
        result = await make_gateway(backend).upload_file(KEY, jpeg_bytes, "image/jpeg")
        assert result.success
        assert backend.put_calls == failures + 1

    async def test_gives_up_after_max_attempts(self, jpeg_bytes: bytes) -> None:
        backend = MemoryObjectStorage([StorageError("timeout")] * 5)
        result = await make_gateway(backend).upload_file(KEY, jpeg_bytes, "image/jpeg")
        assert not result.success
        assert result.error == "Failed to upload after 3 attempts: timeout"
        assert backend.put_calls == 3

    async def test_non_transient_failure_not_retried(self, jpeg_bytes: bytes) -> None:
        backend = MemoryObjectStorage([StorageError("AccessDenied", transient=False)])
        result = await make_gateway(backend).upload_file(KEY, jpeg_bytes, "image/jpeg")
        assert not result.success
        assert result.error == "Failed to upload after 1 attempts: AccessDenied"
        assert backend.put_calls == 1

    async def test_unexpected_backend_error_becomes_failed_result(self, jpeg_bytes: bytes) -> None:
        backend = MemoryObjectStorage([RuntimeError("socket closed")])
        result = await make_gateway(backend).upload_file(KEY, jpeg_bytes, "image/jpeg")
        assert not result.success
        assert result.error == "Failed to upload after 1 attempts: socket closed"
        assert backend.put_calls == 1

    async def test_linear_backoff(self, jpeg_bytes: bytes) -> None:
        delays: list[float] = []

        async def record_sleep(seconds: float) -> None:
            delays.append(seconds)

        backend = MemoryObjectStorage([StorageError("timeout")] * 5)
        gateway = StorageGateway(backend, "https://files.example.com", RetryPolicy(sleep=record_sleep))
        await gateway.upload_file(KEY, jpeg_bytes, "image/jpeg")
        assert delays == [1.0, 2.0]

    @pytest.mark.parametrize(
        ("key", "content_type", "data", "error"),
        [
            ("photos/x.jpg", "image/jpeg", b"\xff\xd8\xff", "Invalid storage key format"),
            (KEY, "image/gif", b"GIF89a", "Unsupported content type: image/gif"),
            (KEY, "image/jpeg", b"", "File buffer is empty"),
        ],
    )
    async def test_rejects_before_network(
        self, memory_storage: MemoryObjectStorage, key: str, content_type: str, data: bytes, error: str
    ) -> None:
        result = await make_gateway(memory_storage).upload_file(key, data, content_type)
        assert not result.success
        assert result.error == error
        assert memory_storage.put_calls == 0


class TestFailSoftReads:
    async def test_file_info(self, memory_storage: MemoryObjectStorage, jpeg_bytes: bytes) -> None:
        gateway = make_gateway(memory_storage)
        await gateway.upload_file(KEY, jpeg_bytes, "image/jpeg")

        info = await gateway.get_file_info(KEY)
        assert info.exists
        assert info.size == len(jpeg_bytes)
        assert info.content_type == "image/jpeg"

        missing = await gateway.get_file_info("uploads/2024/03/05/nope_x.jpg")
        assert not missing.exists

    async def test_failures_become_absent(self, memory_storage: MemoryObjectStorage) -> None:
        memory_storage.broken = True
        gateway = make_gateway(memory_storage)
        assert not (await gateway.get_file_info(KEY)).exists
        assert await gateway.delete_file(KEY) is False
        assert await gateway.list_files() == []
        assert await gateway.check_connection() is False
        stats = await gateway.get_stats()
        assert stats.total_files == 0
        assert stats.total_size == 0

    async def test_delete_and_list(self, memory_storage: MemoryObjectStorage, jpeg_bytes: bytes) -> None:
        gateway = make_gateway(memory_storage)
        await gateway.upload_file(KEY, jpeg_bytes, "image/jpeg")
        await gateway.upload_file("temp/abc_photo.jpg", jpeg_bytes, "image/jpeg")

        assert [obj.key for obj in await gateway.list_files(prefix="uploads/")] == [KEY]
        stats = await gateway.get_stats()
        assert stats.total_files == 2
        assert stats.total_size == 2 * len(jpeg_bytes)

        assert await gateway.delete_file(KEY) is True
        assert await gateway.delete_file("bad key") is False
        assert not (await gateway.get_file_info(KEY)).exists


def _s3_error(code: str) -> S3Error:
    return S3Error(
        code=code,
        message="boom",
        resource="resource",
        request_id="request-id",
        host_id="host-id",
        response=MagicMock(),
    )


class TestMinioObjectStorage:
    def test_put_sends_headers_and_metadata(self) -> None:
        client = MagicMock()
        client.put_object.return_value.etag = "abc"
        storage = MinioObjectStorage(client, "bucket")

        stored = storage.put(KEY, b"data", content_type="image/jpeg", cache_control=CACHE_CONTROL, metadata={"a": "é"})

        assert stored.etag == "abc"
        assert stored.size == 4
        kwargs = client.put_object.call_args.kwargs
        assert kwargs["content_type"] == "image/jpeg"
        assert kwargs["length"] == 4
        assert kwargs["metadata"]["Cache-Control"] == CACHE_CONTROL
        assert kwargs["metadata"]["a"].isascii()

    def test_transient_s3_codes(self) -> None:
        client = MagicMock()
        client.put_object.side_effect = _s3_error("SlowDown")
        with pytest.raises(StorageError) as excinfo:
            MinioObjectStorage(client, "bucket").put(KEY, b"x", content_type="image/jpeg", cache_control="", metadata={})
        assert excinfo.value.transient

    def test_permanent_s3_codes(self) -> None:
        client = MagicMock()
        client.put_object.side_effect = _s3_error("AccessDenied")
        with pytest.raises(StorageError) as excinfo:
            MinioObjectStorage(client, "bucket").put(KEY, b"x", content_type="image/jpeg", cache_control="", metadata={})
        assert not excinfo.value.transient

    def test_head_missing_returns_none(self) -> None:
        client = MagicMock()
        client.stat_object.side_effect = _s3_error("NoSuchKey")
        assert MinioObjectStorage(client, "bucket").head(KEY) is None

    def test_non_xml_5xx_responses_are_transient(self) -> None:
        client = MagicMock()
        client.put_object.side_effect = InvalidResponseError(502, "text/html", "<html>Bad Gateway</html>")
        with pytest.raises(StorageError) as excinfo:
            MinioObjectStorage(client, "bucket").put(KEY, b"x", content_type="image/jpeg", cache_control="", metadata={})
        assert excinfo.value.transient

    def test_non_xml_4xx_responses_are_permanent(self) -> None:
        client = MagicMock()
        client.put_object.side_effect = InvalidResponseError(403, "text/html", "<html>Forbidden</html>")
        with pytest.raises(StorageError) as excinfo:
            MinioObjectStorage(client, "bucket").put(KEY, b"x", content_type="image/jpeg", cache_control="", metadata={})
        assert not excinfo.value.transient

    def test_server_errors_are_transient(self) -> None:
        client = MagicMock()
        client.put_object.side_effect = ServerError("server failed with HTTP status code 503", 503)
        with pytest.raises(StorageError) as excinfo:
            MinioObjectStorage(client, "bucket").put(KEY, b"x", content_type="image/jpeg", cache_control="", metadata={})
        assert excinfo.value.transient

    async def test_gateway_retries_bad_gateway_page(self, jpeg_bytes: bytes) -> None:
        client = MagicMock()
        client.put_object.side_effect = [
            InvalidResponseError(502, "text/html", "<html>Bad Gateway</html>"),
            MagicMock(etag="ok"),
        ]
        gateway = make_gateway(MinioObjectStorage(client, "bucket"))

        result = await gateway.upload_file(KEY, jpeg_bytes, "image/jpeg")

        assert result.success
        assert result.etag == "ok"
        assert client.put_object.call_count == 2

    def test_connection_errors_are_transient(self) -> None:
        client = MagicMock()
        client.remove_object.side_effect = ConnectionResetError("reset")
        with pytest.raises(StorageError) as excinfo:
            MinioObjectStorage(client, "bucket").delete(KEY)
        assert excinfo.value.transient


class TestCreateStorageGateway:
    def test_disabled_without_endpoint(self) -> None:
        assert create_storage_gateway(Settings(storage_endpoint=None)) is None

    def test_endpoint_with_scheme(self) -> None:
        settings = Settings(
            storage_endpoint="https://account.r2.cloudflarestorage.com",
            storage_access_key="key",
            storage_secret_key="secret",
        )
        assert create_storage_gateway(settings) is not None
