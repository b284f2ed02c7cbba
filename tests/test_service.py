import httpx
import pytest

from canvasrefine.core.models import ErrorKind, GenerationRequest, ProviderOptions
from canvasrefine.image.service import ImageGenerationService
from canvasrefine.memory.artifact_store import ArtifactStore


OPENAI_URL = "https://api.openai.com/v1/images/generations"
CHAT_URL = "https://api.openai.com/v1/chat/completions"
IMAGE_URL = "https://cdn.example.com/out.png"


@pytest.fixture
def service(store, http, fake_sleep):
    return ImageGenerationService(store, http=http, sleep=fake_sleep, poll_interval=2.0, poll_max_attempts=30)


def _request(options, size="1024x1024", previous_image=None):
    return GenerationRequest(
        prompt="a red barn",
        size=size,
        session_id="s1",
        options=options,
        previous_image=previous_image,
    )


@pytest.mark.asyncio
async def test_dall_e_result_is_downloaded_and_stored(service, router, options, png_bytes, store):
    router.add("POST", OPENAI_URL, httpx.Response(200, json={"data": [{"url": IMAGE_URL}]}))
    router.add("GET", IMAGE_URL, httpx.Response(200, content=png_bytes))

    result = await service.generate(_request(options))

    assert result.success
    assert result.error_kind is None
    assert result.composed_prompt_used == "a red barn"
    assert result.artifact_ref.startswith("file://")
    assert await store.read(result.artifact_ref) == png_bytes
    assert store.path_for(result.artifact_ref).parent == store.session_dir("s1")


@pytest.mark.asyncio
async def test_local_inline_result_is_stored(service, router, png_b64, store):
    router.add("POST", "http://localhost:7860/sdapi/v1/txt2img", httpx.Response(200, json={"images": [png_b64]}))

    result = await service.generate(_request(ProviderOptions(model="stable-diffusion")))

    assert result.success
    assert await store.list("s1") == [result.artifact_ref]


@pytest.mark.asyncio
async def test_unsupported_model(service, router):
    result = await service.generate(_request(ProviderOptions(model="midjourney", api_key="k")))
    assert not result.success
    assert result.error_kind == ErrorKind.UNSUPPORTED
    assert result.artifact_ref is None
    assert router.requests == []


def test_unknown_sd_provider_falls_back_to_local(service):
    adapter = service.resolve_adapter("stable-diffusion", "banana")
    assert adapter is service.adapters["local"]


@pytest.mark.parametrize("model, provider, key", [
    ("dall-e-3", None, "direct"),
    ("DALL-E-2", None, "direct"),
    ("gpt-4o", None, "chat"),
    ("stable-diffusion", "replicate", "replicate"),
    ("stable-diffusion", "ai_horde", "ai_horde"),
    ("stable-diffusion", "custom", "custom"),
    ("stable-diffusion", "stablediffusionapi", "stablediffusionapi"),
    ("stable-diffusion", None, "local"),
])
def test_adapter_selection(service, model, provider, key):
    assert service.resolve_adapter(model, provider) is service.adapters[key]


@pytest.mark.asyncio
async def test_download_failure_is_storage_failure(service, router, options):
    router.add("POST", OPENAI_URL, httpx.Response(200, json={"data": [{"url": IMAGE_URL}]}))
    router.add("GET", IMAGE_URL, httpx.Response(404))

    result = await service.generate(_request(options))

    assert result.error_kind == ErrorKind.STORAGE_FAILURE


@pytest.mark.asyncio
async def test_non_image_payload_is_bad_response(service, router, options, store):
    router.add("POST", OPENAI_URL, httpx.Response(200, json={"data": [{"url": IMAGE_URL}]}))
    router.add("GET", IMAGE_URL, httpx.Response(200, content=b"<html>expired</html>"))

    result = await service.generate(_request(options))

    assert result.error_kind == ErrorKind.BAD_RESPONSE
    assert await store.list("s1") == []


@pytest.mark.asyncio
async def test_invalid_size_token(service, router, options):
    result = await service.generate(_request(options, size="huge"))
    assert result.error_kind == ErrorKind.UNSUPPORTED
    assert router.requests == []


@pytest.mark.asyncio
async def test_unexpected_adapter_error_becomes_bad_response(service, options):

    class BrokenAdapter:
        async def generate(self, request):
            raise RuntimeError("adapter bug")

    service.adapters["direct"] = BrokenAdapter()
    result = await service.generate(_request(options))

    assert not result.success
    assert result.error_kind == ErrorKind.BAD_RESPONSE
    assert "adapter bug" in result.message


@pytest.mark.asyncio
async def test_chat_mediated_reports_enriched_prompt(service, router, store, png_bytes):
    previous = await store.store(png_bytes, "s1")
    router.add("POST", CHAT_URL, httpx.Response(200, json={"choices": [{"message": {"content": "a snowy barn"}}]}))
    router.add("POST", OPENAI_URL, httpx.Response(200, json={"data": [{"url": IMAGE_URL}]}))
    router.add("GET", IMAGE_URL, httpx.Response(200, content=png_bytes))
    options = ProviderOptions(model="gpt-4o", api_key="sk-test", upload_previous_image=True)

    result = await service.generate(_request(options, previous_image=previous.ref))

    assert result.success
    assert result.composed_prompt_used == "a snowy barn"
    assert result.enrichment == "applied"


@pytest.mark.asyncio
async def test_chat_mediated_missing_previous_image_still_generates(service, router, store, png_bytes):
    dangling = (store.session_dir("s1") / "gone.png").as_uri()
    router.add("POST", OPENAI_URL, httpx.Response(200, json={"data": [{"url": IMAGE_URL}]}))
    router.add("GET", IMAGE_URL, httpx.Response(200, content=png_bytes))
    options = ProviderOptions(model="gpt-4o", api_key="sk-test", upload_previous_image=True)

    result = await service.generate(_request(options, previous_image=dangling))

    assert result.success
    assert result.enrichment == "failed"
    assert result.composed_prompt_used == "a red barn"


@pytest.mark.asyncio
async def test_concurrent_sessions_are_independent(tmp_path, http, router, png_b64):
    store = ArtifactStore(tmp_path / "shared", http=http)
    service = ImageGenerationService(store, http=http)
    router.add("POST", "http://localhost:7860/sdapi/v1/txt2img", lambda request: httpx.Response(200, json={"images": [png_b64]}))
    options = ProviderOptions(model="stable-diffusion")

    first = await service.generate(GenerationRequest("a", "512x512", "alpha", options))
    second = await service.generate(GenerationRequest("b", "512x512", "beta", options))

    assert await store.list("alpha") == [first.artifact_ref]
    assert await store.list("beta") == [second.artifact_ref]


@pytest.mark.asyncio
async def test_replicate_pending_then_succeeded(service, router, png_bytes, fake_sleep):
    poll = "https://api.replicate.com/v1/predictions/p-1"
    router.add("POST", "https://api.replicate.com/v1/predictions", httpx.Response(201, json={"urls": {"get": poll}}))
    pending = [httpx.Response(200, json={"status": "starting"}) for _ in range(5)]
    router.add("GET", poll, *pending, httpx.Response(200, json={"status": "succeeded", "output": [IMAGE_URL]}))
    router.add("GET", IMAGE_URL, httpx.Response(200, content=png_bytes))
    options = ProviderOptions(model="stable-diffusion", sd_provider="replicate", sd_api_key="r8-key")

    result = await service.generate(_request(options))

    assert result.success
    assert len(fake_sleep.calls) == 5


@pytest.mark.asyncio
async def test_replicate_stuck_pending_times_out(service, router, fake_sleep):
    poll = "https://api.replicate.com/v1/predictions/p-1"
    router.add("POST", "https://api.replicate.com/v1/predictions", httpx.Response(201, json={"urls": {"get": poll}}))
    router.add("GET", poll, lambda request: httpx.Response(200, json={"status": "processing"}))
    options = ProviderOptions(model="stable-diffusion", sd_provider="replicate", sd_api_key="r8-key")

    result = await service.generate(_request(options))

    assert result.error_kind == ErrorKind.TIMEOUT
    assert len(fake_sleep.calls) == 29


@pytest.mark.asyncio
async def test_custom_endpoint_inline_images_round_trip(service, router, store, png_b64, png_bytes):
    host = "http://sd.internal:9000/generate"
    router.add("POST", host, httpx.Response(200, json={"images": [png_b64]}))
    options = ProviderOptions(model="stable-diffusion", sd_provider="custom", sd_host=host)

    result = await service.generate(_request(options))

    assert result.success
    assert await store.read(result.artifact_ref) == png_bytes


@pytest.mark.asyncio
async def test_hosted_stable_diffusion_round_trip(service, router, store, png_bytes):
    router.add(
        "POST",
        "https://stablediffusionapi.com/api/v3/text2img",
        httpx.Response(200, json={"status": "success", "output": [IMAGE_URL]}),
    )
    router.add("GET", IMAGE_URL, httpx.Response(200, content=png_bytes))
    options = ProviderOptions(model="stable-diffusion", sd_provider="stablediffusionapi", sd_api_key="sd-key")

    result = await service.generate(_request(options))

    assert result.success
    assert await store.read(result.artifact_ref) == png_bytes


@pytest.mark.asyncio
async def test_horde_round_trip(service, router, store, png_b64, png_bytes, fake_sleep):
    router.add("POST", "https://aihorde.net/api/v2/generate/async", httpx.Response(202, json={"id": "job-1"}))
    router.add(
        "GET",
        "https://aihorde.net/api/v2/generate/status/job-1",
        httpx.Response(200, json={"done": False}),
        httpx.Response(200, json={"done": True, "generations": [{"img": png_b64}]}),
    )
    options = ProviderOptions(model="stable-diffusion", sd_provider="ai_horde", sd_api_key="horde-key")

    result = await service.generate(_request(options))

    assert result.success
    assert await store.read(result.artifact_ref) == png_bytes
    assert fake_sleep.calls == [2.0]
