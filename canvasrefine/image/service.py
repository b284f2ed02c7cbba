"""Generation dispatcher: one contract over every image backend.

Role in pipeline:
    - Receives a `GenerationRequest` from the engine.
    - Selects an adapter from the model identifier (and Stable Diffusion
      provider).
    - Copies the adapter's result into the artifact store.
    - Returns a `GenerationResult`; nothing raised by adapters or the store
      escapes this module.

Adapter selection:
    dall-e-3 / dall-e-2          -> DirectImageAdapter
    gpt-4o                       -> ChatMediatedAdapter
    stable-diffusion + local     -> LocalStableDiffusionAdapter
    stable-diffusion + stablediffusionapi -> HostedStableDiffusionAdapter
    stable-diffusion + replicate -> ReplicateAdapter
    stable-diffusion + ai_horde  -> HordeAdapter
    stable-diffusion + custom    -> CustomEndpointAdapter
    stable-diffusion + other     -> LocalStableDiffusionAdapter (logged)
    anything else                -> `Unsupported`

Error handling strategy:
    `GenerationError` becomes a failed result with its kind. Any other
    exception is logged with traceback and reported as `BadResponse`. No
    automatic retries; the user retries through reroll.

Concurrency:
    The service holds no per-request state, so concurrent `generate` calls
    from different sessions are independent.
"""

import asyncio
import logging

from canvasrefine.core.models import ErrorKind, GenerationRequest, GenerationResult, ImageSize
from canvasrefine.image.chat_client import ChatMediatedAdapter
from canvasrefine.image.client import (
    DirectImageAdapter,
    HostedStableDiffusionAdapter,
    ImageAdapter,
    ProviderHttp,
)
from canvasrefine.image.custom_client import CustomEndpointAdapter
from canvasrefine.image.errors import GenerationError
from canvasrefine.image.local_client import LocalStableDiffusionAdapter
from canvasrefine.image.poll_client import HordeAdapter, ReplicateAdapter, Sleep
from canvasrefine.llm.provider_config import IMAGE_POLL_INTERVAL_SECONDS, IMAGE_POLL_MAX_ATTEMPTS
from canvasrefine.memory.artifact_store import ArtifactStore


logger = logging.getLogger(__name__)


DIRECT_MODELS = ("dall-e-3", "dall-e-2")
CHAT_MEDIATED_MODELS = ("gpt-4o",)
STABLE_DIFFUSION_MODEL = "stable-diffusion"


class ImageGenerationService:
    """Route generation requests to adapters and store their results."""

    def __init__(
        self,
        store: ArtifactStore,
        http: ProviderHttp | None = None,
        sleep: Sleep = asyncio.sleep,
        poll_interval: float = IMAGE_POLL_INTERVAL_SECONDS,
        poll_max_attempts: int = IMAGE_POLL_MAX_ATTEMPTS,
    ) -> None:
        self.store = store
        poll_args = {"sleep": sleep, "interval": poll_interval, "max_attempts": poll_max_attempts}
        self.adapters: dict[str, ImageAdapter] = {
            "direct": DirectImageAdapter(http),
            "chat": ChatMediatedAdapter(store.read, http=http, chat_http=http),
            "local": LocalStableDiffusionAdapter(http),
            "stablediffusionapi": HostedStableDiffusionAdapter(http),
            "replicate": ReplicateAdapter(http, **poll_args),
            "ai_horde": HordeAdapter(http, **poll_args),
            "custom": CustomEndpointAdapter(http),
        }

    def resolve_adapter(self, model: str, sd_provider: str | None) -> ImageAdapter:
        """Pick the adapter for a model / provider pair.

        Raises:
            GenerationError: `Unsupported` for unknown models.
        """
        model = (model or "").strip().lower()
        if model in DIRECT_MODELS:
            return self.adapters["direct"]
        if model in CHAT_MEDIATED_MODELS:
            return self.adapters["chat"]
        if model == STABLE_DIFFUSION_MODEL:
            provider = (sd_provider or "local").strip().lower()
            if provider not in ("local", "stablediffusionapi", "replicate", "ai_horde", "custom"):
                logger.warning("Unknown Stable Diffusion provider '%s', using local", provider)
                provider = "local"
            return self.adapters[provider]
        raise GenerationError(ErrorKind.UNSUPPORTED, f"Unsupported model: {model}")

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Generate one image and return a stored reference or a failure.

        Args:
            request: Final prompt, size token, session and provider options.

        Returns:
            `GenerationResult.succeeded` with a local `file://` reference, or
            `GenerationResult.failed` with an `ErrorKind`.
        """
        options = request.options
        enrichment = None
        logger.info(
            "Dispatching generation model=%s provider=%s size=%s prompt_chars=%d",
            options.model, options.sd_provider, request.size, len(request.prompt),
        )

        try:
            try:
                ImageSize.parse(request.size)
            except ValueError as exc:
                raise GenerationError(ErrorKind.UNSUPPORTED, str(exc)) from exc

            adapter = self.resolve_adapter(options.model, options.sd_provider)
            source = await adapter.generate(request)
            enrichment = source.enrichment
            stored = await self.store.store(source, request.session_id)

        except GenerationError as exc:
            logger.warning("Generation failed (%s): %s", exc.kind.value, exc.detail)
            return GenerationResult.failed(exc.kind, exc.detail, enrichment=enrichment)

        except Exception as exc:
            logger.exception("Unexpected error during image generation")
            return GenerationResult.failed(ErrorKind.BAD_RESPONSE, f"Unexpected error: {exc}", enrichment=enrichment)

        return GenerationResult.succeeded(
            stored.ref,
            source.prompt_used or request.prompt,
            enrichment=enrichment,
        )
