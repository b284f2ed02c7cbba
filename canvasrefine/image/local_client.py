"""Synchronous local Stable Diffusion adapter (AUTOMATIC1111 `txt2img`).

The local server answers the POST with the finished image inline, as base64
in `images[0]`. Width and height are parsed from the request size token.
"""

import logging

from canvasrefine.core.models import ErrorKind, GenerationRequest, ImageSize
from canvasrefine.image.client import ImageSource, ProviderHttp
from canvasrefine.image.errors import GenerationError
from canvasrefine.llm.provider_config import IMAGE_PROVIDERS, SD_SAMPLER, SD_STEPS


logger = logging.getLogger(__name__)


class LocalStableDiffusionAdapter:
    """POST to a local `/sdapi/v1/txt2img` endpoint."""

    def __init__(self, http: ProviderHttp | None = None) -> None:
        self.http = http or ProviderHttp("local stable diffusion")

    @staticmethod
    def endpoint(sd_host: str | None) -> str:
        if not sd_host:
            return IMAGE_PROVIDERS["local"]["url"]
        if "/sdapi/" in sd_host:
            return sd_host
        return sd_host.rstrip("/") + "/sdapi/v1/txt2img"

    def build_payload(self, request: GenerationRequest) -> dict:
        size = ImageSize.parse(request.size)
        return {
            "prompt": request.prompt,
            "negative_prompt": request.options.negative_prompt or "",
            "width": size.width,
            "height": size.height,
            "steps": SD_STEPS,
            "sampler_name": SD_SAMPLER,
            "batch_size": request.options.num_images or 1,
        }

    async def generate(self, request: GenerationRequest) -> ImageSource:
        url = self.endpoint(request.options.sd_host)
        data = await self.http.post_json(url, self.build_payload(request))

        images = data.get("images")
        if isinstance(images, list) and images and isinstance(images[0], str) and images[0]:
            return ImageSource.from_reference(images[0])
        raise GenerationError(ErrorKind.MISSING_RESULT, "No image in local Stable Diffusion response")
