"""HTTP transport and single-call image adapters.

Processing flow (single-call adapters):
    1. Check that the backend's credential is present.
    2. Build the backend JSON payload from the request prompt, size and options.
    3. POST once through `ProviderHttp`.
    4. Extract the image reference from the backend's documented field and
       return it as an `ImageSource`.

Transport:
    `ProviderHttp` wraps `httpx.AsyncClient`. A shared client can be injected
    (tests pass one built on `httpx.MockTransport`); otherwise one client is
    opened per call.

Error handling strategy:
    Every failure is raised as `GenerationError`:
        - transport errors -> `Network` (`Timeout` for transport timeouts)
        - HTTP 401/403 -> `AuthRequired`
        - other non-2xx -> `ProviderRejected`
        - non-JSON or non-object bodies -> `BadResponse`
        - expected result field absent -> `MissingResult`
    No retries are performed at this layer.

Security considerations:
    Error messages carry the provider label, status code and the provider's own
    error message, never request headers or keys.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from canvasrefine.core.models import ErrorKind, GenerationRequest, ImageSize
from canvasrefine.image.errors import GenerationError
from canvasrefine.llm.provider_config import (
    IMAGE_HTTP_TIMEOUT_SECONDS,
    IMAGE_PROVIDERS,
    SD_GUIDANCE_SCALE,
    SD_STEPS,
)


logger = logging.getLogger(__name__)


# ============================================================
# Image payloads
# ============================================================

@dataclass(frozen=True)
class ImageSource:
    """Backend result: either a fetchable URL or inline image bytes."""

    url: str | None = None
    data: bytes | None = None
    # Set by adapters that rewrite the prompt before generating.
    prompt_used: str | None = None
    enrichment: str | None = None

    @classmethod
    def from_reference(cls, value: str) -> "ImageSource":
        """Interpret a backend string as URL, data URL or raw base64.

        Raises:
            GenerationError: `BadResponse` when the string is none of those.
        """
        value = (value or "").strip()
        if value.startswith(("http://", "https://")):
            return cls(url=value)
        if value.startswith("data:"):
            _, _, value = value.partition(",")
        return cls(data=decode_base64(value))


def decode_base64(value: str) -> bytes:
    """Decode strict base64, raising `BadResponse` on malformed input."""
    try:
        data = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise GenerationError(ErrorKind.BAD_RESPONSE, "Image payload is not valid base64") from exc
    if not data:
        raise GenerationError(ErrorKind.BAD_RESPONSE, "Image payload is empty")
    return data


class ImageAdapter(Protocol):
    """Uniform contract implemented by every backend adapter."""

    async def generate(self, request: GenerationRequest) -> ImageSource:
        ...


# ============================================================
# Transport
# ============================================================

class ProviderHttp:
    """JSON-over-HTTP helper with error-kind classification."""

    def __init__(
        self,
        label: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = IMAGE_HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self.label = str(label or "provider").upper()
        self.client = client
        self.timeout = timeout

    async def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send one request; only transport failures raise here."""
        try:
            if self.client is not None:
                return await self.client.request(method, url, headers=headers, json=json_body)
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                return await client.request(method, url, headers=headers, json=json_body)
        except httpx.TimeoutException as exc:
            raise GenerationError(ErrorKind.TIMEOUT, f"{self.label} REQUEST TIMED OUT") from exc
        except httpx.RequestError as exc:
            raise GenerationError(ErrorKind.NETWORK, f"{self.label} NETWORK ERROR: {exc}") from exc

    def parse_json(self, response: httpx.Response) -> dict[str, Any]:
        """Classify the status code and decode a JSON object body."""
        status = response.status_code
        if status in (401, 403):
            raise GenerationError(
                ErrorKind.AUTH_REQUIRED,
                f"{self.label} HTTP ERROR ({status}): {self._error_message(response)}",
            )
        if status < 200 or status >= 300:
            raise GenerationError(
                ErrorKind.PROVIDER_REJECTED,
                f"{self.label} HTTP ERROR ({status}): {self._error_message(response)}",
            )
        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise GenerationError(ErrorKind.BAD_RESPONSE, f"{self.label} returned non-JSON body") from exc
        if not isinstance(data, dict):
            raise GenerationError(ErrorKind.BAD_RESPONSE, f"{self.label} returned non-object JSON")
        return data

    async def post_json(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = await self.request("POST", url, headers=headers, json_body=payload)
        return self.parse_json(response)

    async def get_json(self, url: str, headers: dict[str, str] | None = None) -> dict[str, Any]:
        response = await self.request("GET", url, headers=headers)
        return self.parse_json(response)

    async def get_bytes(self, url: str) -> bytes:
        """Download a binary body; non-2xx statuses raise `Network`."""
        response = await self.request("GET", url)
        if response.status_code < 200 or response.status_code >= 300:
            raise GenerationError(
                ErrorKind.NETWORK,
                f"{self.label} DOWNLOAD FAILED ({response.status_code})",
            )
        return response.content

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return response.reason_phrase or "request failed"
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str) and error:
                return error
            for key in ("message", "detail"):
                if data.get(key):
                    return str(data[key])
        return response.reason_phrase or "request failed"


# ============================================================
# Direct single-call adapters
# ============================================================

class DirectImageAdapter:
    """OpenAI images endpoint (`dall-e-3`, `dall-e-2`).

    Result field: `data[0].url` (or `data[0].b64_json` when a deployment
    ignores `response_format`).
    """

    def __init__(self, http: ProviderHttp | None = None, model: str | None = None) -> None:
        self.http = http or ProviderHttp("openai")
        self.model = model

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        model = self.model or request.options.model
        payload = {
            "model": model,
            "prompt": request.prompt,
            "n": 1,
            "size": request.size,
            "response_format": "url",
        }
        if model == "dall-e-3":
            payload["style"] = request.options.style or "vivid"
            payload["quality"] = request.options.quality or "standard"
        return payload

    async def generate(self, request: GenerationRequest) -> ImageSource:
        options = request.options
        if not options.api_key:
            raise GenerationError(ErrorKind.AUTH_REQUIRED, "OpenAI API key is not configured")

        url = options.api_endpoint or IMAGE_PROVIDERS["openai"]["url"]
        headers = {"Authorization": f"Bearer {options.api_key}"}
        payload = self.build_payload(request)
        logger.debug("Image request model=%s prompt_chars=%d", payload["model"], len(request.prompt))

        data = await self.http.post_json(url, payload, headers=headers)

        items = data.get("data")
        first = items[0] if isinstance(items, list) and items else None
        if isinstance(first, dict):
            if isinstance(first.get("url"), str) and first["url"]:
                return ImageSource(url=first["url"])
            if isinstance(first.get("b64_json"), str) and first["b64_json"]:
                return ImageSource(data=decode_base64(first["b64_json"]))
        raise GenerationError(ErrorKind.MISSING_RESULT, "No image URL in OpenAI response")


class HostedStableDiffusionAdapter:
    """stablediffusionapi.com `text2img`: key in body, result in `output[0]`."""

    def __init__(self, http: ProviderHttp | None = None) -> None:
        self.http = http or ProviderHttp("stablediffusionapi")

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        size = ImageSize.parse(request.size)
        options = request.options
        # This API expects numeric fields as strings.
        return {
            "key": options.sd_api_key,
            "prompt": request.prompt,
            "negative_prompt": options.negative_prompt or "",
            "width": str(size.width),
            "height": str(size.height),
            "samples": str(options.num_images or 1),
            "num_inference_steps": str(SD_STEPS),
            "guidance_scale": SD_GUIDANCE_SCALE,
            "safety_checker": "yes",
        }

    async def generate(self, request: GenerationRequest) -> ImageSource:
        if not request.options.sd_api_key:
            raise GenerationError(ErrorKind.AUTH_REQUIRED, "Stable Diffusion API key is not configured")

        url = request.options.sd_host or IMAGE_PROVIDERS["stablediffusionapi"]["url"]
        data = await self.http.post_json(url, self.build_payload(request))

        status = data.get("status")
        if status != "success":
            message = data.get("message") or data.get("messege") or f"status={status}"
            raise GenerationError(ErrorKind.PROVIDER_REJECTED, f"STABLEDIFFUSIONAPI: {message}")

        output = data.get("output")
        if isinstance(output, list) and output and isinstance(output[0], str):
            return ImageSource.from_reference(output[0])
        raise GenerationError(ErrorKind.MISSING_RESULT, "No image in stablediffusionapi response")
