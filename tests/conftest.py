"""Shared fixtures: generated images, an in-memory object store, and app clients."""

from __future__ import annotations

import io
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import httpx
import pytest
from PIL import Image

from facerecog.config import Settings
from facerecog.main import create_app, init_app_state
from facerecog.ml.providers.stub import StubFaceProvider
from facerecog.services.storage import RetryPolicy, StorageError, StorageGateway, StoredObject

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from fastapi import FastAPI


def make_image_bytes(width: int = 64, height: int = 48, fmt: str = "JPEG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=(200, 150, 120)).save(buffer, format=fmt)
    return buffer.getvalue()


class MemoryObjectStorage:
    """ObjectStorage fake. Raises each error in ``failures`` once before succeeding."""

    def __init__(self, failures: list[Exception] | None = None) -> None:
        self.objects: dict[str, tuple[bytes, str, dict[str, str]]] = {}
        self.failures = list(failures or [])
        self.put_calls = 0
        self.broken = False

    def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str,
        cache_control: str,
        metadata: dict[str, str],
    ) -> StoredObject:
        self.put_calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self.objects[key] = (data, content_type, {"Cache-Control": cache_control, **metadata})
        return StoredObject(key=key, size=len(data), etag=f"etag-{self.put_calls}", content_type=content_type)

    def head(self, key: str) -> StoredObject | None:
        self._check()
        if key not in self.objects:
            return None
        data, content_type, metadata = self.objects[key]
        return StoredObject(
            key=key,
            size=len(data),
            etag="etag",
            last_modified=datetime(2024, 3, 5, tzinfo=UTC),
            content_type=content_type,
            metadata=metadata,
        )

    def delete(self, key: str) -> None:
        self._check()
        self.objects.pop(key, None)

    def list(self, prefix: str | None, limit: int) -> list[StoredObject]:
        self._check()
        keys = [key for key in sorted(self.objects) if prefix is None or key.startswith(prefix)]
        return [StoredObject(key=key, size=len(self.objects[key][0])) for key in keys[:limit]]

    def _check(self) -> None:
        if self.broken:
            raise StorageError("connection refused")


async def _no_sleep(_: float) -> None:
    return None


def make_gateway(backend: MemoryObjectStorage, max_attempts: int = 3) -> StorageGateway:
    return StorageGateway(
        backend,
        public_base_url="https://files.example.com/",
        retry_policy=RetryPolicy(max_attempts=max_attempts, sleep=_no_sleep),
    )


@pytest.fixture()
def jpeg_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture()
def png_bytes() -> bytes:
    return make_image_bytes(fmt="PNG")


@pytest.fixture()
def memory_storage() -> MemoryObjectStorage:
    return MemoryObjectStorage()


@pytest.fixture()
def build_app() -> Callable[..., FastAPI]:
    """Factory: ``build_app(provider=..., storage=..., **settings_overrides)``."""

    def _build(
        provider: StubFaceProvider | None = None,
        storage: StorageGateway | None = None,
        **overrides: object,
    ) -> FastAPI:
        application = create_app()
        init_app_state(
            application,
            Settings(**overrides),  # type: ignore[arg-type]
            provider=provider or StubFaceProvider(),
            storage=storage,
        )
        return application

    return _build


async def make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """ASGITransport does not run the lifespan; state comes from init_app_state."""
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    app.state.inference_pool.shutdown()


@pytest.fixture()
def app(build_app: Callable[..., FastAPI], memory_storage: MemoryObjectStorage) -> FastAPI:
    return build_app(storage=make_gateway(memory_storage))


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async for ac in make_client(app):
        yield ac
