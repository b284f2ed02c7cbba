import base64
import io
import json

import httpx
import pytest
from PIL import Image

from canvasrefine.core.models import ErrorKind, GenerationResult, ProviderOptions
from canvasrefine.image.client import ProviderHttp
from canvasrefine.memory.artifact_store import ArtifactStore
from canvasrefine.memory.repository import InMemoryChainRepository
from canvasrefine.memory.version_chain import VersionChainManager


def make_image_bytes(image_format: str = "PNG", color: str = "red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color).save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def png_b64(png_bytes) -> str:
    return base64.b64encode(png_bytes).decode("ascii")


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


class RecordingRouter:
    """`httpx.MockTransport` handler that routes by method + URL and records requests."""

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, url: str, *responses):
        """Queue responses; the last one repeats once the queue is drained."""
        self.routes[(method, url)] = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, str(request.url)))
        if not queue:
            return httpx.Response(404, json={"error": {"message": f"no route for {request.url}"}})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        return response

    def bodies(self, method: str = "POST") -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.method == method and r.content]


@pytest.fixture
def router() -> RecordingRouter:
    return RecordingRouter()


@pytest.fixture
def http(router) -> ProviderHttp:
    client = httpx.AsyncClient(transport=httpx.MockTransport(router))
    return ProviderHttp("test", client=client)


@pytest.fixture
def store(tmp_path, http) -> ArtifactStore:
    return ArtifactStore(tmp_path / "artifacts", http=http)


@pytest.fixture
def chains() -> VersionChainManager:
    return VersionChainManager(InMemoryChainRepository())


@pytest.fixture
def options() -> ProviderOptions:
    return ProviderOptions(model="dall-e-3", api_key="sk-test")


class FakeImageService:
    """Stands in for `ImageGenerationService`: stores a fresh PNG per call."""

    def __init__(self, store: ArtifactStore):
        self.store = store
        self.requests = []
        self.fail_with: ErrorKind | None = None

    async def generate(self, request):
        self.requests.append(request)
        if self.fail_with is not None:
            return GenerationResult.failed(self.fail_with, "backend said no")
        stored = await self.store.store(make_image_bytes(), request.session_id)
        return GenerationResult.succeeded(stored.ref, request.prompt)


@pytest.fixture
def fake_service(store) -> FakeImageService:
    return FakeImageService(store)
