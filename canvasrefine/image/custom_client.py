"""Best-effort adapter for user-hosted Stable Diffusion endpoints.

Custom servers answer in many shapes. The reply is matched against an ordered
tuple of `FieldMatcher` strategies and the first match wins:

    1. `output` is a URL string
    2. `output` is a list whose first item is a URL
    3. `images` is a list whose first item is a data URL or raw base64
    4. `result` is a URL string
    5. `url` is a URL string

No match -> `UnrecognizedResponse`. The order is fixed so the same reply is
always interpreted the same way.
"""

import logging
from dataclasses import dataclass
from typing import Any

from canvasrefine.core.models import ErrorKind, GenerationRequest, ImageSize
from canvasrefine.image.client import ImageSource, ProviderHttp
from canvasrefine.image.errors import GenerationError
from canvasrefine.llm.provider_config import SD_STEPS


logger = logging.getLogger(__name__)


def _is_url(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(("http://", "https://", "data:"))


@dataclass(frozen=True)
class FieldMatcher:
    """Match one top-level field of a reply.

    Attributes:
        field: Top-level key to inspect.
        first_of_list: Take the first item of a list value instead of the value.
        inline: Accept raw base64 as well as URLs.
    """

    field: str
    first_of_list: bool = False
    inline: bool = False

    def match(self, data: dict[str, Any]) -> ImageSource | None:
        value = data.get(self.field)
        if self.first_of_list:
            if not isinstance(value, list) or not value:
                return None
            value = value[0]
        elif isinstance(value, list):
            return None

        if not isinstance(value, str) or not value:
            return None
        if _is_url(value):
            return ImageSource.from_reference(value)
        if self.inline:
            return ImageSource.from_reference(value)
        return None


RESPONSE_MATCHERS: tuple[FieldMatcher, ...] = (
    FieldMatcher("output"),
    FieldMatcher("output", first_of_list=True),
    FieldMatcher("images", first_of_list=True, inline=True),
    FieldMatcher("result"),
    FieldMatcher("url"),
)


def match_response(
    data: dict[str, Any],
    matchers: tuple[FieldMatcher, ...] = RESPONSE_MATCHERS,
) -> ImageSource:
    """Apply matchers in order and return the first recognized image."""
    for matcher in matchers:
        source = matcher.match(data)
        if source is not None:
            logger.debug("Custom response matched field '%s'", matcher.field)
            return source
    raise GenerationError(
        ErrorKind.UNRECOGNIZED_RESPONSE,
        f"Unrecognized response from custom endpoint (keys: {sorted(data)})",
    )


class CustomEndpointAdapter:
    """POST to a user-configured host and recognize the reply heuristically."""

    def __init__(
        self,
        http: ProviderHttp | None = None,
        matchers: tuple[FieldMatcher, ...] = RESPONSE_MATCHERS,
    ) -> None:
        self.http = http or ProviderHttp("custom")
        self.matchers = matchers

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        size = ImageSize.parse(request.size)
        options = request.options
        payload = {
            "prompt": request.prompt,
            "negative_prompt": options.negative_prompt or "",
            "width": size.width,
            "height": size.height,
            "num_images": options.num_images or 1,
            "steps": SD_STEPS,
        }
        if options.sd_api_key:
            payload["key"] = options.sd_api_key
        return payload

    async def generate(self, request: GenerationRequest) -> ImageSource:
        host = request.options.sd_host
        if not host:
            raise GenerationError(ErrorKind.UNSUPPORTED, "Custom Stable Diffusion host is not configured")

        headers = {}
        if request.options.sd_api_key:
            headers["Authorization"] = f"Bearer {request.options.sd_api_key}"

        data = await self.http.post_json(host, self.build_payload(request), headers=headers)
        return match_response(data, self.matchers)
