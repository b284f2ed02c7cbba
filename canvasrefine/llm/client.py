"""Chat-completions transport for vision description and prompt enrichment.

Architectural role:
    Sends one OpenAI-compatible chat request and returns the first choice's
    message text. Used by `canvasrefine.llm.service`.

Model invocation flow:
    `service.describe_image` / `service.enhance_prompt` -> `send_chat_request`
    -> `ProviderHttp.post_json` -> `choices[0].message.content`.

Retry behavior:
    None. Each call is attempted once.

Failure handling model:
    Failures raise `GenerationError` (missing key -> `AuthRequired`, empty
    completion -> `MissingResult`, transport and status errors as classified by
    `ProviderHttp`). Callers decide whether a failure is fatal.
"""

from typing import Any

from canvasrefine.core.models import ErrorKind
from canvasrefine.image.client import ProviderHttp
from canvasrefine.image.errors import GenerationError
from canvasrefine.llm.provider_config import IMAGE_PROVIDERS


def chat_endpoint(api_endpoint: str | None) -> str:
    """Derive the chat-completions URL from a configured images endpoint.

    A custom endpoint such as `https://proxy.example/v1/images/generations`
    maps to `https://proxy.example/v1/chat/completions` on the same host.
    """
    if not api_endpoint:
        return IMAGE_PROVIDERS["openai"]["chat_url"]
    marker = "/v1/"
    if marker in api_endpoint:
        return api_endpoint.split(marker, 1)[0] + "/v1/chat/completions"
    return api_endpoint.rstrip("/") + "/v1/chat/completions"


async def send_chat_request(
    payload: dict[str, Any],
    api_key: str | None,
    api_endpoint: str | None = None,
    http: ProviderHttp | None = None,
) -> str:
    """Send one chat-completions request and return the reply text.

    Args:
        payload: OpenAI-compatible body (`model`, `messages`, limits).
        api_key: Bearer credential.
        api_endpoint: Optional images endpoint whose host is reused.
        http: Optional transport (tests inject a mocked one).

    Returns:
        Stripped message content of the first choice.
    """
    if not api_key:
        raise GenerationError(ErrorKind.AUTH_REQUIRED, "Chat model API key is not configured")

    http = http or ProviderHttp("chat")
    headers = {"Authorization": f"Bearer {api_key}"}
    data = await http.post_json(chat_endpoint(api_endpoint), payload, headers=headers)

    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        content = None

    if not isinstance(content, str) or not content.strip():
        raise GenerationError(ErrorKind.MISSING_RESULT, "Chat model returned no content")
    return content.strip()
