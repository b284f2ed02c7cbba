"""Chat-model-mediated image adapter (`gpt-4o`).

Processing flow:
    1. When previous-image upload is enabled and the request names a previous
       image, read its bytes and ask a chat model for an enriched prompt.
    2. Generate with `dall-e-3` using the enriched prompt, or the original
       prompt when enrichment was skipped or failed.

Enrichment outcomes (reported on the returned `ImageSource`):
    - `applied`: the enriched prompt was used.
    - `skipped`: upload disabled or no previous image; logged at debug level.
    - `failed`: the previous image could not be read or the chat call failed;
      logged as a warning. Generation still proceeds.

Error handling strategy:
    Only the image call can fail the request. Enrichment errors are contained
    here and never change the error kind of the result.
"""

import logging
from dataclasses import replace
from typing import Awaitable, Callable

from canvasrefine.core.models import GenerationRequest
from canvasrefine.image.client import DirectImageAdapter, ImageSource, ProviderHttp
from canvasrefine.image.errors import GenerationError
from canvasrefine.llm.service import enhance_prompt


logger = logging.getLogger(__name__)

ENRICHMENT_APPLIED = "applied"
ENRICHMENT_SKIPPED = "skipped"
ENRICHMENT_FAILED = "failed"


class ChatMediatedAdapter:
    """Enrich with a chat model, then generate with `dall-e-3`."""

    image_model = "dall-e-3"

    def __init__(
        self,
        read_image: Callable[[str], Awaitable[bytes]],
        http: ProviderHttp | None = None,
        chat_http: ProviderHttp | None = None,
    ) -> None:
        self.read_image = read_image
        self.direct = DirectImageAdapter(http, model=self.image_model)
        self.chat_http = chat_http

    async def enrich(self, request: GenerationRequest) -> tuple[str, str]:
        """Return `(prompt, enrichment_status)` for the image call."""
        options = request.options
        if not options.upload_previous_image or not request.previous_image:
            logger.debug("Prompt enrichment skipped (upload disabled or no previous image)")
            return request.prompt, ENRICHMENT_SKIPPED

        try:
            image_bytes = await self.read_image(request.previous_image)
            enriched = await enhance_prompt(
                request.prompt,
                image_bytes,
                options.api_key,
                options.api_endpoint,
                http=self.chat_http,
            )
        except (GenerationError, OSError, ValueError) as exc:
            logger.warning("Prompt enrichment failed, using original prompt: %s", exc)
            return request.prompt, ENRICHMENT_FAILED

        logger.info("Prompt enriched (%d -> %d chars)", len(request.prompt), len(enriched))
        return enriched, ENRICHMENT_APPLIED

    async def generate(self, request: GenerationRequest) -> ImageSource:
        prompt, enrichment = await self.enrich(request)
        source = await self.direct.generate(replace(request, prompt=prompt))
        return replace(source, prompt_used=prompt, enrichment=enrichment)
