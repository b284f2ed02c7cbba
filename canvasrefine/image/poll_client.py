"""Poll-based image adapters (Replicate predictions, AI Horde async jobs).

Processing flow:
    1. Submit a generation job and read the poll location from the reply.
    2. Poll the location at a fixed interval, up to a bounded attempt count.
    3. Return the first image once the job reports success.

Polling policy:
    - `sleep` is injected (defaults to `asyncio.sleep`) so tests run without
      real delays.
    - The interval is fixed; there is no backoff.
    - HTTP 429 on a poll consumes an attempt and waits one interval.
    - Exhausting the attempt budget raises `Timeout`. The remote job is not
      cancelled.

Failure handling:
    - Missing credential -> `AuthRequired`
    - Submit reply without a poll location -> `BadResponse`
    - Job reported failed/faulted/canceled -> `ProviderRejected`
    - Job finished without an image -> `MissingResult`
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from canvasrefine.core.models import ErrorKind, GenerationRequest, ImageSize
from canvasrefine.image.client import ImageSource, ProviderHttp
from canvasrefine.image.errors import GenerationError
from canvasrefine.llm.provider_config import (
    AI_HORDE_MODEL,
    IMAGE_POLL_INTERVAL_SECONDS,
    IMAGE_POLL_MAX_ATTEMPTS,
    IMAGE_PROVIDERS,
    SD_GUIDANCE_SCALE,
    SD_STEPS,
)


logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class PollingAdapter:
    """Submit-then-poll skeleton shared by job-based backends.

    Subclasses implement `submit` (returns poll URL and headers) and
    `read_status` (returns an `ImageSource` when done, `None` while pending,
    raises on provider-reported failure).
    """

    label = "provider"

    def __init__(
        self,
        http: ProviderHttp | None = None,
        sleep: Sleep = asyncio.sleep,
        interval: float = IMAGE_POLL_INTERVAL_SECONDS,
        max_attempts: int = IMAGE_POLL_MAX_ATTEMPTS,
    ) -> None:
        self.http = http or ProviderHttp(self.label)
        self.sleep = sleep
        self.interval = interval
        self.max_attempts = max(1, max_attempts)

    async def submit(self, request: GenerationRequest) -> tuple[str, dict[str, str]]:
        raise NotImplementedError

    def read_status(self, data: dict[str, Any]) -> ImageSource | None:
        raise NotImplementedError

    async def generate(self, request: GenerationRequest) -> ImageSource:
        poll_url, headers = await self.submit(request)
        logger.info("%s job submitted, polling up to %d times", self.label, self.max_attempts)

        for attempt in range(1, self.max_attempts + 1):
            response = await self.http.request("GET", poll_url, headers=headers)
            if response.status_code == 429:
                logger.debug("%s poll rate limited (attempt %d)", self.label, attempt)
            else:
                source = self.read_status(self.http.parse_json(response))
                if source is not None:
                    logger.info("%s job finished after %d polls", self.label, attempt)
                    return source

            if attempt < self.max_attempts:
                await self.sleep(self.interval)

        raise GenerationError(
            ErrorKind.TIMEOUT,
            f"{self.label} job did not finish after {self.max_attempts} polls",
        )


class ReplicateAdapter(PollingAdapter):
    """Replicate predictions API (`Authorization: Token <key>`)."""

    label = "replicate"

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        size = ImageSize.parse(request.size)
        options = request.options
        return {
            "version": IMAGE_PROVIDERS["replicate"]["version"],
            "input": {
                "prompt": request.prompt,
                "negative_prompt": options.negative_prompt or "",
                "width": size.width,
                "height": size.height,
                "num_outputs": options.num_images or 1,
                "num_inference_steps": SD_STEPS,
                "guidance_scale": SD_GUIDANCE_SCALE,
            },
        }

    async def submit(self, request: GenerationRequest) -> tuple[str, dict[str, str]]:
        key = request.options.sd_api_key
        if not key:
            raise GenerationError(ErrorKind.AUTH_REQUIRED, "Replicate API token is not configured")

        headers = {"Authorization": f"Token {key}"}
        url = request.options.sd_host or IMAGE_PROVIDERS["replicate"]["url"]
        data = await self.http.post_json(url, self.build_payload(request), headers=headers)

        urls = data.get("urls")
        poll_url = urls.get("get") if isinstance(urls, dict) else None
        if not isinstance(poll_url, str) or not poll_url:
            raise GenerationError(ErrorKind.BAD_RESPONSE, "Replicate did not return a poll URL")
        return poll_url, headers

    def read_status(self, data: dict[str, Any]) -> ImageSource | None:
        status = data.get("status")
        if status == "succeeded":
            output = data.get("output")
            if isinstance(output, list) and output and isinstance(output[0], str):
                return ImageSource.from_reference(output[0])
            if isinstance(output, str) and output:
                return ImageSource.from_reference(output)
            raise GenerationError(ErrorKind.MISSING_RESULT, "Replicate succeeded without output")
        if status in ("failed", "canceled"):
            detail = data.get("error") or status
            raise GenerationError(ErrorKind.PROVIDER_REJECTED, f"Replicate prediction {status}: {detail}")
        return None


class HordeAdapter(PollingAdapter):
    """AI Horde async generation (`apikey` header, status by job id)."""

    label = "ai_horde"

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        size = ImageSize.parse(request.size)
        return {
            "prompt": request.prompt,
            "params": {
                "width": size.width,
                "height": size.height,
                "steps": SD_STEPS,
                "n": request.options.num_images or 1,
            },
            "models": [AI_HORDE_MODEL],
        }

    async def submit(self, request: GenerationRequest) -> tuple[str, dict[str, str]]:
        key = request.options.sd_api_key
        if not key:
            raise GenerationError(ErrorKind.AUTH_REQUIRED, "AI Horde API key is not configured")

        config = IMAGE_PROVIDERS["ai_horde"]
        headers = {"apikey": key}
        data = await self.http.post_json(
            request.options.sd_host or config["url"],
            self.build_payload(request),
            headers=headers,
        )

        job_id = data.get("id")
        if not job_id:
            raise GenerationError(ErrorKind.BAD_RESPONSE, "AI Horde did not return a job id")
        return f"{config['status_url']}{job_id}", headers

    def read_status(self, data: dict[str, Any]) -> ImageSource | None:
        if data.get("faulted"):
            raise GenerationError(ErrorKind.PROVIDER_REJECTED, "AI Horde job faulted")

        finished = bool(data.get("done") or data.get("finished"))
        generations = data.get("generations") or []
        if not finished:
            return None

        if generations and isinstance(generations[0], dict):
            image = generations[0].get("img") or generations[0].get("image_url")
            if image:
                return ImageSource.from_reference(image)
        raise GenerationError(ErrorKind.MISSING_RESULT, "AI Horde finished but no image returned")
