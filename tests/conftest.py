import io
import os
import tempfile
from typing import AsyncGenerator, Dict, List, Optional

# Settings are read at import time, so point them at a scratch directory first
_TEST_DIR = tempfile.mkdtemp(prefix="imagemark-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DIR}/test.db")
os.environ.setdefault("LOCAL_STORAGE_PATH", f"{_TEST_DIR}/storage")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOG_FORMAT_JSON", "false")

import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image

from imagemark.core.exceptions import BlobNotFound
from imagemark.core.storage import IStorage, get_storage
from imagemark.modules.imagery.models import ImageTask
from imagemark.pipeline.tasks import TaskPublisher


class MemoryStorage(IStorage):
    """Dict-backed blob store."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        self.objects[key] = data
        self.content_types[key] = content_type

    async def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise BlobNotFound(f"not found: {key}", key=key)
        return self.objects[key]

    def public_url(self, key: str) -> str:
        return f"https://cdn.test/{key}"


class RecordingPublisher(TaskPublisher):
    """Collects published tasks instead of sending them to the broker."""

    def __init__(self, fail: bool = False):
        self.tasks: List[ImageTask] = []
        self.fail = fail

    async def publish(self, task: ImageTask) -> None:
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.tasks.append(task)


def encode_image(
    size=(64, 48),
    color=(255, 255, 255),
    fmt: str = "PNG",
    mode: Optional[str] = None
) -> bytes:
    """Solid-color image bytes in ``fmt``."""
    mode = mode or ("RGBA" if len(color) == 4 else "RGB")
    buffer = io.BytesIO()
    with Image.new(mode, size, color) as image:
        image.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def image_bytes():
    return encode_image


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
async def client(storage, publisher) -> AsyncGenerator[AsyncClient, None]:
    from imagemark.api.dependencies import get_task_publisher
    from imagemark.core.database import engine
    from imagemark.main import app

    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_task_publisher] = lambda: publisher

    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac

    app.dependency_overrides.clear()
    # Pooled connections belong to this test's event loop
    await engine.dispose()
