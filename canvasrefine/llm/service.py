"""Prompt-to-payload adapters for the chat model helpers.

Architectural role:
    Builds the two chat requests the refinement pipeline needs and hands them
    to `canvasrefine.llm.client`:
        - `describe_image`: vision description of the image being refined.
        - `enhance_prompt`: prompt enrichment with the previous image attached.

Determinism:
    Payload construction is deterministic for fixed inputs. Replies are not.

Failure scenarios:
    Both functions raise `GenerationError`; neither swallows failures. The
    engine and the chat-mediated adapter decide how to degrade.
"""

import base64
import io

from PIL import Image, UnidentifiedImageError

from canvasrefine.core.models import ErrorKind
from canvasrefine.image.client import ProviderHttp
from canvasrefine.image.errors import GenerationError
from canvasrefine.llm.client import send_chat_request
from canvasrefine.llm.provider_config import (
    ENHANCER_MODEL,
    ENHANCER_TEMPERATURE,
    VISION_MAX_TOKENS,
    VISION_MODEL,
)
from canvasrefine.prompting.prompt_builder import (
    ENHANCER_SYSTEM_PROMPT,
    build_enhancement_prompt,
    build_vision_analysis_prompt,
)


def image_data_url(image_bytes: bytes) -> str:
    """Encode image bytes as a `data:` URL with a detected MIME type.

    Raises:
        GenerationError: `BadResponse` when Pillow refuses the image as a
            decompression bomb.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            mime = Image.MIME.get(image.format or "", "image/png")
    except UnidentifiedImageError:
        mime = "image/png"
    except Image.DecompressionBombError as exc:
        raise GenerationError(ErrorKind.BAD_RESPONSE, "Image is too large to attach") from exc
    encoded = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{mime};base64,{encoded}"


async def describe_image(
    image_bytes: bytes,
    original_prompt: str,
    api_key: str | None,
    api_endpoint: str | None = None,
    http: ProviderHttp | None = None,
) -> str:
    """Ask a vision model for a compact description of an image.

    Args:
        image_bytes: Stored image being refined.
        original_prompt: Prompt the image was generated from.
        api_key: Chat model credential.
        api_endpoint: Optional images endpoint whose host is reused.
        http: Optional transport.

    Returns:
        Description text (the instruction asks for under 1500 characters; the
        composer caps it regardless).
    """
    payload = {
        "model": VISION_MODEL,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": build_vision_analysis_prompt(original_prompt)},
                    {"type": "image_url", "image_url": {"url": image_data_url(image_bytes)}},
                ],
            }
        ],
        "max_tokens": VISION_MAX_TOKENS,
    }
    return await send_chat_request(payload, api_key, api_endpoint, http=http)


async def enhance_prompt(
    prompt: str,
    image_bytes: bytes | None,
    api_key: str | None,
    api_endpoint: str | None = None,
    http: ProviderHttp | None = None,
) -> str:
    """Ask a chat model to rewrite a prompt using the previous image.

    Parameter semantics:
        - `temperature=0.7`: moderate variation in the rewrite.
        - Image content is attached only when bytes are available.
    """
    user_content = [{"type": "text", "text": build_enhancement_prompt(prompt)}]
    if image_bytes:
        user_content.append({"type": "image_url", "image_url": {"url": image_data_url(image_bytes)}})

    payload = {
        "model": ENHANCER_MODEL,
        "messages": [
            {"role": "system", "content": ENHANCER_SYSTEM_PROMPT},
            {"role": "user", "content": user_content},
        ],
        "temperature": ENHANCER_TEMPERATURE,
    }
    return await send_chat_request(payload, api_key, api_endpoint, http=http)
