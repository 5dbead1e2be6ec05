import io
import itertools
import os
from pathlib import Path

import fakeredis
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from clipsync.api.main import create_app
from clipsync.config import ServerConfig
from clipsync.database.object_store import FileObjectStore
from clipsync.database.redis_manager import RedisClipStore
from clipsync.models.devices import Identity
from clipsync.services.clip_service import ClipService
from clipsync.services.tiering import ImageTieringPolicy
from clipsync.utils.content import to_data_url

JWT_SECRET = "test-secret-with-enough-length-for-hs256"


def headers_for(owner: str = "u1", device: str = "laptop") -> dict:
    return {"x-user-id": owner, "x-device-id": device}


def png_bytes(size=(8, 8), color=(200, 30, 30)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format="PNG")
    return out.getvalue()


def noise_png(size=(160, 160)) -> bytes:
    image = Image.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3))
    out = io.BytesIO()
    image.save(out, format="PNG")
    return out.getvalue()


def png_data_url(data: bytes) -> str:
    return to_data_url("image/png", data)


class TickClock:
    """Deterministic millisecond clock."""

    def __init__(self, start: int = 1_000):
        self._ticks = itertools.count(start)
        self.last = start

    def __call__(self) -> int:
        self.last = next(self._ticks)
        return self.last


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def store(redis_client) -> RedisClipStore:
    return RedisClipStore(redis_client)


@pytest.fixture
def object_store(tmp_path: Path) -> FileObjectStore:
    return FileObjectStore(tmp_path / "objects")


@pytest.fixture
def images(object_store) -> ImageTieringPolicy:
    return ImageTieringPolicy(object_store=object_store, inline_threshold=4 * 1024)


@pytest.fixture
def identity() -> Identity:
    return Identity(owner_id="u1", device_id="laptop")


@pytest.fixture
def clock() -> TickClock:
    return TickClock()


@pytest.fixture
def service(store, images, object_store, clock) -> ClipService:
    svc = ClipService(store, images, object_store)
    svc.merge.clock = clock
    return svc


@pytest.fixture
def server_config(tmp_path: Path) -> ServerConfig:
    return ServerConfig(
        object_dir=tmp_path / "objects",
        jwt_secret=JWT_SECRET,
        allow_header_identity=True,
        inline_image_bytes=4 * 1024,
    )


@pytest.fixture
def client(server_config, service) -> TestClient:
    app = create_app(server_config, service)
    with TestClient(app) as test_client:
        yield test_client
